"""
Branch store.

A story's timeline is one ``BranchesIndex`` document in the ``timelines``
table. Each branch holds an ordered list of chain entry ids; the entries
themselves live in the append-only ``chain_entries`` arena, so a fork copies
ids and nothing else.

Every mutation runs inside ``timeline_transaction``: the per-story lock is
held, the index is loaded, the caller edits it in place, and the result is
written back with a version compare-and-set before the lock is released.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.database import AsyncSessionLocal
from storyloom.errors import InvalidOperation, NotFound
from storyloom.fragments.store import require_story
from storyloom.models import Timeline
from storyloom.schemas.timeline import DEFAULT_BRANCH_ID, BranchesIndex, BranchMeta
from storyloom.utils.ids import generate_branch_id
from storyloom.utils.logging_config import StoryAdapter, get_logger
from storyloom.utils.story_locks import story_locks
from storyloom.utils.versioned import load_document, save_document

_logger = get_logger("storyloom.timeline")


def _default_index() -> dict:
    return BranchesIndex.default().model_dump(by_alias=True, mode="json")


def _dump(index: BranchesIndex) -> dict:
    return index.model_dump(by_alias=True, mode="json")


def _require_branch(index: BranchesIndex, branch_id: str) -> BranchMeta:
    branch = index.find(branch_id)
    if branch is None:
        raise NotFound(f"Branch '{branch_id}' not found")
    return branch


@asynccontextmanager
async def timeline_transaction(story_id: str) -> AsyncIterator[tuple[AsyncSession, BranchesIndex]]:
    """Exclusive read-modify-write of a story's branches index.

    The yielded index is saved on normal exit. Raising inside the block
    discards every change, including chain entries added to the session.
    The story lock is not reentrant: do not call other mutating timeline
    functions from inside the block.
    """
    async with story_locks.hold(story_id):
        async with AsyncSessionLocal() as session:
            await require_story(session, story_id)
            content, version = await load_document(session, Timeline, story_id, _default_index)
            index = BranchesIndex.model_validate(content)
            yield session, index
            await save_document(session, Timeline, story_id, _dump(index), version)
            await session.commit()


async def init_timeline(story_id: str) -> BranchesIndex:
    """Create the default ``{branches: [main], activeBranchId: main}`` record if missing."""
    async with story_locks.hold(story_id):
        async with AsyncSessionLocal() as session:
            await require_story(session, story_id)
            content, _ = await load_document(session, Timeline, story_id, _default_index)
            await session.commit()
            return BranchesIndex.model_validate(content)


async def get_branches_index(story_id: str) -> BranchesIndex:
    async with AsyncSessionLocal() as session:
        row = await session.scalar(select(Timeline).where(Timeline.story_id == story_id))
        if row is not None:
            return BranchesIndex.model_validate(row.content)
    return await init_timeline(story_id)


async def get_active_branch_id(story_id: str) -> str:
    index = await get_branches_index(story_id)
    return index.active_branch_id


async def create_branch(
    story_id: str,
    name: str,
    parent_branch_id: str,
    fork_after_index: Optional[int] = None,
) -> BranchMeta:
    """Fork ``parent_branch_id`` at its current entries and make the fork active.

    With ``fork_after_index`` only ``entries[:fork_after_index + 1]`` are
    carried over.
    """
    async with timeline_transaction(story_id) as (_, index):
        parent = _require_branch(index, parent_branch_id)

        entry_ids = list(parent.entry_ids)
        if fork_after_index is not None:
            entry_ids = entry_ids[: fork_after_index + 1]

        branch_id = generate_branch_id()
        while index.find(branch_id) is not None:
            branch_id = generate_branch_id()

        branch = BranchMeta(
            id=branch_id,
            name=name,
            order=len(index.branches),
            parent_branch_id=parent_branch_id,
            fork_after_index=fork_after_index,
            entry_ids=entry_ids,
        )
        index.branches.append(branch)
        index.active_branch_id = branch_id

    StoryAdapter(_logger, story_id, branch_id=branch_id).info(
        "Branch created from %s (%d entries)", parent_branch_id, len(entry_ids),
        extra={"event_type": "branch_created"},
    )
    return branch


async def switch_active_branch(story_id: str, branch_id: str) -> BranchesIndex:
    async with timeline_transaction(story_id) as (_, index):
        _require_branch(index, branch_id)
        index.active_branch_id = branch_id
    return index


async def rename_branch(story_id: str, branch_id: str, name: str) -> BranchMeta:
    async with timeline_transaction(story_id) as (_, index):
        branch = _require_branch(index, branch_id)
        branch.name = name
    return branch


async def delete_branch(story_id: str, branch_id: str) -> BranchesIndex:
    """Remove a branch; the active pointer falls back to ``main`` if it pointed here.

    Chain entries stay in the arena since sibling branches may share them.
    """
    if branch_id == DEFAULT_BRANCH_ID:
        raise InvalidOperation("Cannot delete the main branch")

    async with timeline_transaction(story_id) as (_, index):
        _require_branch(index, branch_id)
        index.branches = [b for b in index.branches if b.id != branch_id]
        if index.active_branch_id == branch_id:
            index.active_branch_id = DEFAULT_BRANCH_ID

    StoryAdapter(_logger, story_id, branch_id=branch_id).info(
        "Branch deleted", extra={"event_type": "branch_deleted"},
    )
    return index
