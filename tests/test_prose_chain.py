"""Tests for the prose chain resolver: sections, variations, markers, copy-on-write."""

import pytest

from storyloom.errors import InvalidOperation, NotFound, OutOfRange
from storyloom.timeline import branches, prose_chain


@pytest.fixture
def write(story, add_fragment):
    async def _write(*texts, branch_id=None):
        ids = []
        for text in texts:
            fragment = await add_fragment(story.id, content=text)
            await prose_chain.add_prose_section(story.id, fragment.id, branch_id=branch_id)
            ids.append(fragment.id)
        return ids
    return _write


class TestReads:

    async def test_empty_chain(self, story):
        assert await prose_chain.get_full_chain(story.id) == []
        assert await prose_chain.get_active_prose_ids(story.id) == []

    async def test_sections_in_order(self, story, write):
        ids = await write("One", "Two", "Three")
        chain = await prose_chain.get_full_chain(story.id)
        assert [e.active for e in chain] == ids
        assert all(e.variations == [e.active] for e in chain)
        assert await prose_chain.get_active_prose_ids(story.id) == ids

    async def test_find_section_index(self, story, write, add_fragment):
        ids = await write("One", "Two")
        alt = await add_fragment(story.id, content="Two again")
        await prose_chain.add_prose_variation(story.id, 1, alt.id)

        assert await prose_chain.find_section_index(story.id, ids[0]) == 0
        assert await prose_chain.find_section_index(story.id, ids[1]) == 1
        assert await prose_chain.find_section_index(story.id, alt.id) == 1
        assert await prose_chain.find_section_index(story.id, "pr-nope") == -1

    async def test_unknown_branch(self, story):
        with pytest.raises(NotFound):
            await prose_chain.get_full_chain(story.id, "br-nope")


class TestVariations:

    async def test_add_variation_becomes_active(self, story, write, add_fragment):
        ids = await write("One")
        alt = await add_fragment(story.id, content="One, again")
        entry = await prose_chain.add_prose_variation(story.id, 0, alt.id)
        assert entry.variations == [ids[0], alt.id]
        assert entry.active == alt.id

    async def test_switch_variation(self, story, write, add_fragment):
        ids = await write("One")
        alt = await add_fragment(story.id, content="One, again")
        await prose_chain.add_prose_variation(story.id, 0, alt.id)

        entry = await prose_chain.switch_variation(story.id, 0, ids[0])
        assert entry.active == ids[0]
        assert entry.variations == [ids[0], alt.id]
        assert await prose_chain.get_active_prose_ids(story.id) == [ids[0]]

    async def test_switch_to_current_is_noop(self, story, write):
        ids = await write("One")
        before = (await prose_chain.get_full_chain(story.id))[0]
        entry = await prose_chain.switch_variation(story.id, 0, ids[0])
        assert entry.id == before.id

    async def test_switch_to_unknown_variation(self, story, write):
        await write("One")
        with pytest.raises(NotFound):
            await prose_chain.switch_variation(story.id, 0, "pr-nope")

    @pytest.mark.parametrize("index", [-1, 1, 5])
    async def test_index_out_of_range(self, story, write, index):
        ids = await write("One")
        with pytest.raises(OutOfRange):
            await prose_chain.switch_variation(story.id, index, ids[0])
        with pytest.raises(OutOfRange):
            await prose_chain.add_prose_variation(story.id, index, ids[0])
        with pytest.raises(OutOfRange):
            await prose_chain.remove_prose_section(story.id, index)

    async def test_out_of_range_is_invalid_operation(self):
        assert issubclass(OutOfRange, InvalidOperation)

    async def test_switch_on_fork_is_copy_on_write(self, story, write, add_fragment):
        ids = await write("One")
        alt = await add_fragment(story.id, content="One, again")
        await prose_chain.add_prose_variation(story.id, 0, alt.id)
        await prose_chain.switch_variation(story.id, 0, ids[0])

        fork = await branches.create_branch(story.id, "Alt", "main")
        await prose_chain.switch_variation(story.id, 0, alt.id)

        assert await prose_chain.get_active_prose_ids(story.id, fork.id) == [alt.id]
        assert await prose_chain.get_active_prose_ids(story.id, "main") == [ids[0]]

    async def test_variation_on_fork_does_not_touch_parent(self, story, write, add_fragment):
        await write("One")
        fork = await branches.create_branch(story.id, "Alt", "main")
        alt = await add_fragment(story.id, content="Fork only")
        await prose_chain.add_prose_variation(story.id, 0, alt.id, branch_id=fork.id)

        main_entry = (await prose_chain.get_full_chain(story.id, "main"))[0]
        assert alt.id not in main_entry.variations


class TestRemoveAndMarkers:

    async def test_remove_returns_variations(self, story, write, add_fragment):
        ids = await write("One", "Two")
        alt = await add_fragment(story.id, content="One, again")
        await prose_chain.add_prose_variation(story.id, 0, alt.id)

        removed = await prose_chain.remove_prose_section(story.id, 0)
        assert removed == [ids[0], alt.id]
        assert await prose_chain.get_active_prose_ids(story.id) == [ids[1]]

    async def test_insert_marker_and_boundaries(self, story, write, add_fragment):
        await write("One", "Two")
        marker = await add_fragment(story.id, type="marker", name="Chapter 2")
        entry = await prose_chain.insert_chapter_marker(story.id, marker.id, 1)
        assert entry.kind == "marker"

        chain = await prose_chain.get_full_chain(story.id)
        assert [e.kind for e in chain] == ["prose", "marker", "prose"]
        boundaries = await prose_chain.chapter_boundaries(story.id)
        assert [(b.index, b.fragment_id) for b in boundaries] == [(1, marker.id)]

    async def test_marker_at_end(self, story, write, add_fragment):
        await write("One")
        marker = await add_fragment(story.id, type="marker")
        await prose_chain.insert_chapter_marker(story.id, marker.id, 1)
        assert (await prose_chain.get_full_chain(story.id))[-1].kind == "marker"

    async def test_marker_out_of_range(self, story, write, add_fragment):
        await write("One")
        marker = await add_fragment(story.id, type="marker")
        with pytest.raises(OutOfRange):
            await prose_chain.insert_chapter_marker(story.id, marker.id, 3)

    async def test_marker_has_no_variations(self, story, write, add_fragment):
        await write("One")
        marker = await add_fragment(story.id, type="marker")
        await prose_chain.insert_chapter_marker(story.id, marker.id, 0)
        alt = await add_fragment(story.id, content="x")
        with pytest.raises(InvalidOperation):
            await prose_chain.add_prose_variation(story.id, 0, alt.id)

    async def test_failed_mutation_changes_nothing(self, story, write):
        await write("One")
        before = await prose_chain.get_full_chain(story.id)
        with pytest.raises(NotFound):
            await prose_chain.switch_variation(story.id, 0, "pr-nope")
        assert await prose_chain.get_full_chain(story.id) == before
