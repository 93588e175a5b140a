"""
Block configuration persistence.

One ``BlockConfig`` document per story in the ``block_configs`` table,
created empty on first access. The config belongs to the story, not to a
branch. Writes take the per-story lock and go through the same version
compare-and-set as the branches index; each function returns the full
updated config.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

from pydantic import ValidationError

from storyloom.database import AsyncSessionLocal
from storyloom.errors import InvalidOperation, NotFound
from storyloom.fragments.store import require_story
from storyloom.models import BlockConfig as BlockConfigRow
from storyloom.schemas.blocks import BlockConfig, BlockOverride, CustomBlockDefinition, CustomBlockUpdate
from storyloom.utils.logging_config import StoryAdapter, get_logger
from storyloom.utils.story_locks import story_locks
from storyloom.utils.versioned import load_document, save_document

_logger = get_logger("storyloom.blocks.storage")


def _empty() -> dict:
    return BlockConfig().to_storage()


def _parse(story_id: str, content: dict) -> BlockConfig:
    try:
        return BlockConfig.model_validate(content)
    except ValidationError as exc:
        StoryAdapter(_logger, story_id).warning(
            "Stored block config is invalid, starting from an empty one",
            extra={"event_type": "block_config_invalid", "error": str(exc)},
        )
        return BlockConfig()


@asynccontextmanager
async def _editing(story_id: str) -> AsyncIterator[BlockConfig]:
    async with story_locks.hold(story_id):
        async with AsyncSessionLocal() as session:
            await require_story(session, story_id)
            content, version = await load_document(session, BlockConfigRow, story_id, _empty)
            config = _parse(story_id, content)
            yield config
            await save_document(session, BlockConfigRow, story_id, config.to_storage(), version)
            await session.commit()


async def get_block_config(story_id: str) -> BlockConfig:
    async with story_locks.hold(story_id):
        async with AsyncSessionLocal() as session:
            await require_story(session, story_id)
            content, _ = await load_document(session, BlockConfigRow, story_id, _empty)
            await session.commit()
    return _parse(story_id, content)


async def save_block_config(story_id: str, config: BlockConfig) -> BlockConfig:
    """Replace the whole config."""
    async with _editing(story_id) as current:
        current.custom_blocks = list(config.custom_blocks)
        current.overrides = dict(config.overrides)
        current.block_order = list(config.block_order)
    return current


async def add_custom_block(story_id: str, block: CustomBlockDefinition) -> BlockConfig:
    """Append a custom block and its id to ``blockOrder``."""
    async with _editing(story_id) as config:
        if any(existing.id == block.id for existing in config.custom_blocks):
            raise InvalidOperation(f"Custom block '{block.id}' already exists")
        config.custom_blocks.append(block)
        config.block_order.append(block.id)

    StoryAdapter(_logger, story_id).info(
        "Custom block added: %s", block.name,
        extra={"event_type": "custom_block_added", "metadata": {"block_id": block.id, "type": block.type}},
    )
    return config


async def update_custom_block(story_id: str, block_id: str, updates: CustomBlockUpdate) -> BlockConfig:
    async with _editing(story_id) as config:
        for position, existing in enumerate(config.custom_blocks):
            if existing.id == block_id:
                break
        else:
            raise NotFound(f"Custom block '{block_id}' not found")
        merged = {**existing.model_dump(), **updates.model_dump(exclude_unset=True, exclude_none=True)}
        config.custom_blocks[position] = CustomBlockDefinition.model_validate(merged)
    return config


async def delete_custom_block(story_id: str, block_id: str) -> BlockConfig:
    """Remove a custom block along with its ``blockOrder`` entry and override."""
    async with _editing(story_id) as config:
        config.custom_blocks = [b for b in config.custom_blocks if b.id != block_id]
        config.block_order = [i for i in config.block_order if i != block_id]
        config.overrides.pop(block_id, None)
    return config


async def update_block_overrides(
    story_id: str,
    overrides: Dict[str, BlockOverride],
    block_order: Optional[List[str]] = None,
) -> BlockConfig:
    """Merge ``overrides`` per block id; replace ``blockOrder`` when given."""
    async with _editing(story_id) as config:
        for block_id, override in overrides.items():
            existing = config.overrides.get(block_id)
            merged = existing.model_dump() if existing else {}
            merged.update(override.model_dump(exclude_unset=True))
            config.overrides[block_id] = BlockOverride.model_validate(merged)
        if block_order is not None:
            config.block_order = list(block_order)
    return config
