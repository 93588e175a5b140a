"""
Fragment store.

Stories and fragments live in the ``stories`` / ``fragments`` tables. Every
function opens its own session from ``AsyncSessionLocal`` so callers outside
a request (the librarian scheduler, agents) use the same entry points as the
routers. Rows never leave this module; callers get frozen schema values.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import flag_modified

from storyloom.database import AsyncSessionLocal
from storyloom.errors import NotFound
from storyloom.models import Fragment as FragmentRow
from storyloom.models import Story as StoryRow
from storyloom.schemas.fragments import Fragment, FragmentCreate, StoryMeta, StorySettings
from storyloom.utils.ids import generate_fragment_id
from storyloom.utils.logging_config import get_logger

_logger = get_logger("storyloom.fragments")

_STORY_FIELDS = ("name", "description", "summary")
_FRAGMENT_FIELDS = ("type", "name", "description", "content", "sticky", "placement", "archived")


def _story_to_schema(row: StoryRow) -> StoryMeta:
    return StoryMeta(
        id=row.id,
        name=row.name,
        description=row.description or "",
        summary=row.summary or "",
        settings=StorySettings.model_validate(row.settings or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _fragment_to_schema(row: FragmentRow) -> Fragment:
    return Fragment(
        id=row.id,
        type=row.type,
        name=row.name or "",
        description=row.description or "",
        content=row.content or "",
        order=row.sort_order or 0,
        sticky=bool(row.sticky),
        placement=row.placement or "user",
        tags=list(row.tags or []),
        meta=dict(row.meta or {}),
        archived=bool(row.archived),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


async def _story_row(session: AsyncSession, story_id: str) -> StoryRow:
    row = await session.scalar(select(StoryRow).where(StoryRow.id == story_id))
    if row is None:
        raise NotFound(f"Story '{story_id}' not found")
    return row


async def _fragment_row(session: AsyncSession, story_id: str, fragment_id: str) -> FragmentRow:
    row = await session.scalar(
        select(FragmentRow).where(FragmentRow.story_id == story_id, FragmentRow.id == fragment_id)
    )
    if row is None:
        raise NotFound(f"Fragment '{fragment_id}' not found in story '{story_id}'")
    return row


async def require_story(session: AsyncSession, story_id: str) -> None:
    """Raise ``NotFound`` unless the story exists (used inside other stores' transactions)."""
    await _story_row(session, story_id)


# ---------------------------------------------------------------------------
# Stories
# ---------------------------------------------------------------------------

async def create_story(
    name: str,
    description: str = "",
    settings: Optional[StorySettings] = None,
    story_id: Optional[str] = None,
) -> StoryMeta:
    async with AsyncSessionLocal() as session:
        row = StoryRow(
            id=story_id or str(uuid.uuid4()),
            name=name,
            description=description,
            summary="",
            settings=(settings or StorySettings()).model_dump(mode="json"),
        )
        session.add(row)
        await session.commit()
        await session.refresh(row)
        _logger.info("Story created", extra={"story_id": row.id, "event_type": "story_created"})
        return _story_to_schema(row)


async def get_story(story_id: str) -> StoryMeta:
    async with AsyncSessionLocal() as session:
        return _story_to_schema(await _story_row(session, story_id))


async def list_stories() -> List[StoryMeta]:
    async with AsyncSessionLocal() as session:
        result = await session.execute(select(StoryRow).order_by(StoryRow.created_at))
        return [_story_to_schema(row) for row in result.scalars().all()]


async def update_story(story_id: str, **changes: Any) -> StoryMeta:
    """Update ``name``, ``description``, ``summary`` and/or ``settings``."""
    async with AsyncSessionLocal() as session:
        row = await _story_row(session, story_id)
        for field in _STORY_FIELDS:
            if changes.get(field) is not None:
                setattr(row, field, changes[field])
        settings = changes.get("settings")
        if settings is not None:
            if isinstance(settings, StorySettings):
                settings = settings.model_dump(mode="json")
            row.settings = {**(row.settings or {}), **settings}
            flag_modified(row, "settings")
        row.updated_at = datetime.now(timezone.utc)
        await session.commit()
        await session.refresh(row)
        return _story_to_schema(row)


# ---------------------------------------------------------------------------
# Fragments
# ---------------------------------------------------------------------------

async def get_fragment(story_id: str, fragment_id: str) -> Fragment:
    async with AsyncSessionLocal() as session:
        return _fragment_to_schema(await _fragment_row(session, story_id, fragment_id))


async def get_fragments(story_id: str, fragment_ids: List[str]) -> dict[str, Fragment]:
    """Batch lookup; ids that do not resolve are simply absent from the result."""
    if not fragment_ids:
        return {}
    async with AsyncSessionLocal() as session:
        result = await session.execute(
            select(FragmentRow).where(
                FragmentRow.story_id == story_id,
                FragmentRow.id.in_(fragment_ids),
            )
        )
        return {row.id: _fragment_to_schema(row) for row in result.scalars().all()}


async def list_fragments(story_id: str, type: Optional[str] = None) -> List[Fragment]:
    """All fragments of a story (optionally of one type) by order hint, then creation."""
    async with AsyncSessionLocal() as session:
        await _story_row(session, story_id)
        stmt = select(FragmentRow).where(FragmentRow.story_id == story_id)
        if type is not None:
            stmt = stmt.where(FragmentRow.type == type)
        stmt = stmt.order_by(FragmentRow.sort_order, FragmentRow.created_at, FragmentRow.id)
        result = await session.execute(stmt)
        return [_fragment_to_schema(row) for row in result.scalars().all()]


async def create_fragment(story_id: str, payload: FragmentCreate) -> Fragment:
    async with AsyncSessionLocal() as session:
        await _story_row(session, story_id)

        fragment_id = generate_fragment_id(payload.type)
        while await session.scalar(
            select(FragmentRow.id).where(FragmentRow.story_id == story_id, FragmentRow.id == fragment_id)
        ):
            fragment_id = generate_fragment_id(payload.type)

        row = FragmentRow(
            story_id=story_id,
            id=fragment_id,
            type=payload.type,
            name=payload.name,
            description=payload.description,
            content=payload.content,
            sort_order=payload.order,
            sticky=payload.sticky,
            placement=payload.placement,
            tags=list(payload.tags),
            meta=dict(payload.meta),
            archived=False,
        )
        session.add(row)
        await session.commit()
        await session.refresh(row)
        _logger.debug(
            "Fragment created",
            extra={"story_id": story_id, "fragment_id": fragment_id, "event_type": "fragment_created"},
        )
        return _fragment_to_schema(row)


async def update_fragment(story_id: str, fragment: Fragment) -> Fragment:
    """Persist every mutable field of ``fragment`` (the id and story are fixed)."""
    async with AsyncSessionLocal() as session:
        row = await _fragment_row(session, story_id, fragment.id)
        for field in _FRAGMENT_FIELDS:
            setattr(row, field, getattr(fragment, field))
        row.sort_order = fragment.order
        row.tags = list(fragment.tags)
        row.meta = dict(fragment.meta)
        flag_modified(row, "tags")
        flag_modified(row, "meta")
        row.updated_at = datetime.now(timezone.utc)
        await session.commit()
        await session.refresh(row)
        return _fragment_to_schema(row)


async def patch_fragment(story_id: str, fragment_id: str, **changes: Any) -> Fragment:
    """Set only the given columns on the current row; every other field keeps its stored value."""
    async with AsyncSessionLocal() as session:
        row = await _fragment_row(session, story_id, fragment_id)
        for field, value in changes.items():
            if field not in _FRAGMENT_FIELDS:
                raise ValueError(f"'{field}' cannot be patched")
            setattr(row, field, value)
        row.updated_at = datetime.now(timezone.utc)
        await session.commit()
        await session.refresh(row)
        return _fragment_to_schema(row)


async def merge_fragment_meta(story_id: str, fragment_id: str, updates: dict[str, Any]) -> Fragment:
    """Merge ``updates`` into the stored ``meta`` without touching content or other keys."""
    async with AsyncSessionLocal() as session:
        row = await _fragment_row(session, story_id, fragment_id)
        row.meta = {**(row.meta or {}), **updates}
        flag_modified(row, "meta")
        row.updated_at = datetime.now(timezone.utc)
        await session.commit()
        await session.refresh(row)
        return _fragment_to_schema(row)


async def append_story_summary(story_id: str, text: str) -> StoryMeta:
    """Append ``text`` as a new line of the summary as it is stored now."""
    async with AsyncSessionLocal() as session:
        row = await _story_row(session, story_id)
        row.summary = f"{row.summary or ''}\n{text}".strip()
        row.updated_at = datetime.now(timezone.utc)
        await session.commit()
        await session.refresh(row)
        return _story_to_schema(row)
