"""
Prose chain resolver.

Walks a branch's ``entry_ids`` and resolves them against the
``chain_entries`` arena. Entries are immutable: switching the active
variation or adding a variation writes a new entry and swaps its id into the
owning branch only, which is what keeps sibling branches that share the old
entry untouched.

Mutations default to the story's active branch; pass ``branch_id`` to pin a
specific one.
"""
from __future__ import annotations

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.database import AsyncSessionLocal
from storyloom.errors import InvalidOperation, NotFound, OutOfRange
from storyloom.models import ChainEntry as ChainEntryRow
from storyloom.schemas.timeline import BranchesIndex, BranchMeta, ChainEntry, ChapterBoundary, EntryKind
from storyloom.timeline.branches import get_branches_index, timeline_transaction
from storyloom.utils.ids import generate_entry_id
from storyloom.utils.logging_config import StoryAdapter, get_logger

_logger = get_logger("storyloom.timeline.chain")


def _to_schema(row: ChainEntryRow) -> ChainEntry:
    return ChainEntry(id=row.id, kind=row.kind, variations=list(row.variations), active=row.active)


def _branch(index: BranchesIndex, branch_id: Optional[str]) -> BranchMeta:
    target = branch_id or index.active_branch_id
    branch = index.find(target)
    if branch is None:
        raise NotFound(f"Branch '{target}' not found")
    return branch


def _check_index(branch: BranchMeta, entry_index: int) -> None:
    if entry_index < 0 or entry_index >= len(branch.entry_ids):
        raise OutOfRange(
            f"Entry index {entry_index} out of range for branch '{branch.id}' "
            f"({len(branch.entry_ids)} entries)"
        )


async def _load_entries(session: AsyncSession, story_id: str, entry_ids: List[str]) -> List[ChainEntry]:
    if not entry_ids:
        return []
    result = await session.execute(
        select(ChainEntryRow).where(
            ChainEntryRow.story_id == story_id,
            ChainEntryRow.id.in_(set(entry_ids)),
        )
    )
    by_id = {row.id: _to_schema(row) for row in result.scalars().all()}
    missing = [entry_id for entry_id in entry_ids if entry_id not in by_id]
    if missing:
        raise NotFound(f"Chain entries missing from story '{story_id}': {', '.join(missing)}")
    return [by_id[entry_id] for entry_id in entry_ids]


def _write_entry(
    session: AsyncSession,
    story_id: str,
    variations: List[str],
    active: str,
    kind: EntryKind = "prose",
) -> ChainEntry:
    entry = ChainEntry(id=generate_entry_id(), kind=kind, variations=list(variations), active=active)
    session.add(ChainEntryRow(
        id=entry.id,
        story_id=story_id,
        kind=entry.kind,
        variations=list(entry.variations),
        active=entry.active,
    ))
    return entry


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_full_chain(story_id: str, branch_id: Optional[str] = None) -> List[ChainEntry]:
    """Ordered entries of the active (or given) branch."""
    index = await get_branches_index(story_id)
    branch = _branch(index, branch_id)
    async with AsyncSessionLocal() as session:
        return await _load_entries(session, story_id, branch.entry_ids)


async def get_active_prose_ids(story_id: str, branch_id: Optional[str] = None) -> List[str]:
    return [entry.active for entry in await get_full_chain(story_id, branch_id)]


async def find_section_index(story_id: str, fragment_id: str, branch_id: Optional[str] = None) -> int:
    """Index of the entry holding ``fragment_id`` as any variation, or -1."""
    for position, entry in enumerate(await get_full_chain(story_id, branch_id)):
        if fragment_id in entry.variations:
            return position
    return -1


async def chapter_boundaries(story_id: str, branch_id: Optional[str] = None) -> List[ChapterBoundary]:
    return [
        ChapterBoundary(index=position, entry_id=entry.id, fragment_id=entry.active)
        for position, entry in enumerate(await get_full_chain(story_id, branch_id))
        if entry.kind == "marker"
    ]


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

async def add_prose_section(story_id: str, fragment_id: str, branch_id: Optional[str] = None) -> ChainEntry:
    """Append a new single-variation entry at the end of the branch."""
    async with timeline_transaction(story_id) as (session, index):
        branch = _branch(index, branch_id)
        entry = _write_entry(session, story_id, [fragment_id], fragment_id)
        branch.entry_ids.append(entry.id)
        position = len(branch.entry_ids) - 1

    StoryAdapter(_logger, story_id, branch_id=branch.id, fragment_id=fragment_id).debug(
        "Prose section appended at %d", position, extra={"event_type": "prose_appended"},
    )
    return entry


async def add_prose_variation(
    story_id: str,
    entry_index: int,
    fragment_id: str,
    branch_id: Optional[str] = None,
) -> ChainEntry:
    """Add ``fragment_id`` as a new variation of an entry and make it active."""
    async with timeline_transaction(story_id) as (session, index):
        branch = _branch(index, branch_id)
        _check_index(branch, entry_index)
        current = (await _load_entries(session, story_id, [branch.entry_ids[entry_index]]))[0]
        if current.kind == "marker":
            raise InvalidOperation(f"Entry {entry_index} is a chapter marker and has no variations")
        variations = list(current.variations)
        if fragment_id not in variations:
            variations.append(fragment_id)
        entry = _write_entry(session, story_id, variations, fragment_id)
        branch.entry_ids[entry_index] = entry.id
    return entry


async def switch_variation(
    story_id: str,
    entry_index: int,
    fragment_id: str,
    branch_id: Optional[str] = None,
) -> ChainEntry:
    """Make ``fragment_id`` the active variation of the entry at ``entry_index``."""
    async with timeline_transaction(story_id) as (session, index):
        branch = _branch(index, branch_id)
        _check_index(branch, entry_index)
        current = (await _load_entries(session, story_id, [branch.entry_ids[entry_index]]))[0]
        if fragment_id not in current.variations:
            raise NotFound(f"Fragment '{fragment_id}' is not a variation of entry {entry_index}")
        if current.active == fragment_id:
            return current
        entry = _write_entry(session, story_id, current.variations, fragment_id, kind=current.kind)
        branch.entry_ids[entry_index] = entry.id

    StoryAdapter(_logger, story_id, branch_id=branch.id, fragment_id=fragment_id).info(
        "Variation switched at entry %d", entry_index, extra={"event_type": "variation_switched"},
    )
    return entry


async def remove_prose_section(story_id: str, entry_index: int, branch_id: Optional[str] = None) -> List[str]:
    """Drop an entry from the branch and return the variation ids it held."""
    async with timeline_transaction(story_id) as (session, index):
        branch = _branch(index, branch_id)
        _check_index(branch, entry_index)
        removed = (await _load_entries(session, story_id, [branch.entry_ids[entry_index]]))[0]
        del branch.entry_ids[entry_index]
    return list(removed.variations)


async def insert_chapter_marker(
    story_id: str,
    marker_fragment_id: str,
    at_index: int,
    branch_id: Optional[str] = None,
) -> ChainEntry:
    """Insert a marker entry so that it ends up at position ``at_index``."""
    async with timeline_transaction(story_id) as (session, index):
        branch = _branch(index, branch_id)
        if at_index < 0 or at_index > len(branch.entry_ids):
            raise OutOfRange(
                f"Marker index {at_index} out of range for branch '{branch.id}' "
                f"({len(branch.entry_ids)} entries)"
            )
        entry = _write_entry(session, story_id, [marker_fragment_id], marker_fragment_id, kind="marker")
        branch.entry_ids.insert(at_index, entry.id)
    return entry
