"""
Versioned JSON documents (``timelines`` and ``block_configs``).

Both tables hold one JSON ``content`` document per story plus a
``version_number``. Writes are a compare-and-set on that number: the UPDATE
only matches the version read at the start of the transaction, so a writer
that lost the race gets ``ConcurrentWriteConflict`` instead of silently
overwriting the other write.
"""
from __future__ import annotations

import copy
from typing import Any, Callable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.errors import ConcurrentWriteConflict
from storyloom.utils.logging_config import get_logger

_logger = get_logger("storyloom.storage")


async def load_document(
    session: AsyncSession,
    model: Any,
    story_id: str,
    default_factory: Callable[[], dict],
) -> tuple[dict, int]:
    """Return ``(content, version)``; the row is created from ``default_factory`` on first access."""
    row = await session.scalar(select(model).where(model.story_id == story_id))
    if row is None:
        row = model(story_id=story_id, content=default_factory(), version_number=1)
        session.add(row)
        await session.flush()
        _logger.info(
            "Created %s record", model.__tablename__,
            extra={"story_id": story_id, "event_type": "document_created"},
        )
    return copy.deepcopy(row.content or default_factory()), row.version_number


async def save_document(
    session: AsyncSession,
    model: Any,
    story_id: str,
    content: dict,
    expected_version: int,
) -> int:
    """Write ``content`` if the stored version is still ``expected_version``. Caller commits."""
    result = await session.execute(
        update(model)
        .where(model.story_id == story_id, model.version_number == expected_version)
        .values(content=content, version_number=expected_version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        _logger.warning(
            "Version conflict on %s (expected v%d)", model.__tablename__, expected_version,
            extra={"story_id": story_id, "event_type": "version_conflict"},
        )
        raise ConcurrentWriteConflict(
            f"{model.__tablename__} for story '{story_id}' changed since v{expected_version}"
        )
    return expected_version + 1
