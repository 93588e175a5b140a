"""Tests for the branch store: fork, switch, rename, delete and write conflicts."""

import asyncio

import pytest
from sqlalchemy import update

from storyloom.database import AsyncSessionLocal
from storyloom.errors import ConcurrentWriteConflict, InvalidOperation, NotFound
from storyloom.models import Timeline
from storyloom.timeline import branches, prose_chain


async def _write_prose(story_id, add_fragment, *texts):
    ids = []
    for text in texts:
        fragment = await add_fragment(story_id, content=text)
        await prose_chain.add_prose_section(story_id, fragment.id)
        ids.append(fragment.id)
    return ids


class TestBranchIndex:

    async def test_default_index(self, story):
        index = await branches.get_branches_index(story.id)
        assert [b.id for b in index.branches] == ["main"]
        assert index.active_branch_id == "main"
        assert index.branches[0].entry_ids == []

    async def test_index_created_lazily(self, db):
        from storyloom.fragments import store
        meta = await store.create_story("No timeline yet")
        assert await branches.get_active_branch_id(meta.id) == "main"

    async def test_unknown_story(self, db):
        with pytest.raises(NotFound):
            await branches.create_branch("missing", "x", "main")

    async def test_stored_with_camel_case_keys(self, story):
        await branches.create_branch(story.id, "Alt", "main")
        async with AsyncSessionLocal() as session:
            row = await session.get(Timeline, story.id)
        assert "activeBranchId" in row.content
        assert "entryIds" in row.content["branches"][1]
        assert row.content["branches"][1]["parentBranchId"] == "main"


class TestCreateBranch:

    async def test_fork_copies_entries_and_activates(self, story, add_fragment):
        await _write_prose(story.id, add_fragment, "One", "Two", "Three")
        main = (await branches.get_branches_index(story.id)).find("main")

        fork = await branches.create_branch(story.id, "What if", "main")
        assert fork.entry_ids == main.entry_ids
        assert fork.parent_branch_id == "main"
        assert fork.order == 1
        assert fork.id.startswith("br-")
        assert await branches.get_active_branch_id(story.id) == fork.id

    async def test_fork_after_index(self, story, add_fragment):
        await _write_prose(story.id, add_fragment, "One", "Two", "Three")
        main = (await branches.get_branches_index(story.id)).find("main")

        fork = await branches.create_branch(story.id, "Early", "main", fork_after_index=1)
        assert fork.entry_ids == main.entry_ids[:2]
        assert fork.fork_after_index == 1

    async def test_fork_after_index_past_end_copies_everything(self, story, add_fragment):
        await _write_prose(story.id, add_fragment, "One")
        fork = await branches.create_branch(story.id, "Late", "main", fork_after_index=10)
        assert len(fork.entry_ids) == 1

    async def test_unknown_parent(self, story):
        with pytest.raises(NotFound):
            await branches.create_branch(story.id, "Orphan", "br-nope")

    async def test_writes_on_fork_leave_parent_alone(self, story, add_fragment):
        await _write_prose(story.id, add_fragment, "One")
        fork = await branches.create_branch(story.id, "Alt", "main")
        await _write_prose(story.id, add_fragment, "Only on the fork")

        assert len(await prose_chain.get_full_chain(story.id, fork.id)) == 2
        assert len(await prose_chain.get_full_chain(story.id, "main")) == 1


class TestSwitchRenameDelete:

    async def test_switch(self, story):
        fork = await branches.create_branch(story.id, "Alt", "main")
        index = await branches.switch_active_branch(story.id, "main")
        assert index.active_branch_id == "main"
        index = await branches.switch_active_branch(story.id, fork.id)
        assert index.active_branch_id == fork.id

    async def test_switch_unknown(self, story):
        with pytest.raises(NotFound):
            await branches.switch_active_branch(story.id, "br-nope")

    async def test_rename(self, story):
        fork = await branches.create_branch(story.id, "Alt", "main")
        renamed = await branches.rename_branch(story.id, fork.id, "Storm ending")
        assert renamed.name == "Storm ending"
        index = await branches.get_branches_index(story.id)
        assert index.find(fork.id).name == "Storm ending"

    async def test_delete_main_rejected(self, story):
        with pytest.raises(InvalidOperation):
            await branches.delete_branch(story.id, "main")

    async def test_delete_active_falls_back_to_main(self, story):
        fork = await branches.create_branch(story.id, "Alt", "main")
        index = await branches.delete_branch(story.id, fork.id)
        assert [b.id for b in index.branches] == ["main"]
        assert index.active_branch_id == "main"

    async def test_delete_inactive_keeps_active(self, story):
        first = await branches.create_branch(story.id, "A", "main")
        second = await branches.create_branch(story.id, "B", "main")
        index = await branches.delete_branch(story.id, first.id)
        assert index.active_branch_id == second.id

    async def test_delete_keeps_shared_entries(self, story, add_fragment):
        await _write_prose(story.id, add_fragment, "Shared")
        fork = await branches.create_branch(story.id, "Alt", "main")
        await branches.delete_branch(story.id, fork.id)
        assert len(await prose_chain.get_full_chain(story.id, "main")) == 1

    async def test_delete_unknown(self, story):
        with pytest.raises(NotFound):
            await branches.delete_branch(story.id, "br-nope")


class TestConcurrency:

    async def test_concurrent_forks_are_serialized(self, story):
        names = [f"Branch {i}" for i in range(5)]
        await asyncio.gather(*(branches.create_branch(story.id, n, "main") for n in names))
        index = await branches.get_branches_index(story.id)
        assert sorted(b.name for b in index.branches[1:]) == sorted(names)
        assert sorted(b.order for b in index.branches) == list(range(6))

    async def test_stale_write_conflicts(self, story):
        with pytest.raises(ConcurrentWriteConflict):
            async with branches.timeline_transaction(story.id) as (_, index):
                index.active_branch_id = "main"
                # Another process bumps the version behind our back
                async with AsyncSessionLocal() as other:
                    await other.execute(
                        update(Timeline)
                        .where(Timeline.story_id == story.id)
                        .values(version_number=Timeline.version_number + 1)
                    )
                    await other.commit()
