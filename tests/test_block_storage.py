"""Tests for block config persistence and full story assembly."""

import asyncio
import time
from unittest.mock import patch

import pytest
from sqlalchemy import update

from storyloom.blocks import storage
from storyloom.blocks.preview import assemble_blocks, evaluate_story_script, preview_blocks
from storyloom.database import AsyncSessionLocal
from storyloom.errors import InvalidOperation, NotFound
from storyloom.models import BlockConfig as BlockConfigRow
from storyloom.schemas.blocks import BlockConfig, BlockOverride, CustomBlockDefinition, CustomBlockUpdate
from storyloom.timeline import prose_chain


def _block(block_id="cb-cast", **fields):
    fields.setdefault("name", "Cast")
    return CustomBlockDefinition(id=block_id, **fields)


class TestBlockConfigStorage:

    async def test_empty_on_first_access(self, story):
        config = await storage.get_block_config(story.id)
        assert config == BlockConfig()

    async def test_unknown_story(self, db):
        with pytest.raises(NotFound):
            await storage.get_block_config("missing")

    async def test_add_appends_to_block_order(self, story):
        config = await storage.add_custom_block(story.id, _block(content="Hello"))
        assert [b.id for b in config.custom_blocks] == ["cb-cast"]
        assert config.block_order == ["cb-cast"]
        assert await storage.get_block_config(story.id) == config

    async def test_generated_block_id(self, story):
        config = await storage.add_custom_block(story.id, CustomBlockDefinition(name="Auto"))
        assert config.custom_blocks[0].id.startswith("cb-")

    async def test_duplicate_id_rejected(self, story):
        await storage.add_custom_block(story.id, _block())
        with pytest.raises(InvalidOperation):
            await storage.add_custom_block(story.id, _block())

    async def test_update_merges_fields(self, story):
        await storage.add_custom_block(story.id, _block(content="Old", order=10))
        config = await storage.update_custom_block(story.id, "cb-cast", CustomBlockUpdate(content="New"))
        block = config.custom_blocks[0]
        assert block.content == "New"
        assert block.order == 10
        assert block.name == "Cast"

    async def test_update_missing(self, story):
        with pytest.raises(NotFound):
            await storage.update_custom_block(story.id, "cb-nope", CustomBlockUpdate(name="x"))

    async def test_delete_strips_order_and_override(self, story):
        await storage.add_custom_block(story.id, _block())
        await storage.update_block_overrides(
            story.id,
            {"cb-cast": BlockOverride(enabled=False), "tools": BlockOverride(enabled=False)},
            ["cb-cast", "tools"],
        )
        config = await storage.delete_custom_block(story.id, "cb-cast")
        assert config.custom_blocks == []
        assert config.block_order == ["tools"]
        assert list(config.overrides) == ["tools"]

    async def test_overrides_merge_per_id(self, story):
        await storage.update_block_overrides(
            story.id, {"instructions": BlockOverride(content_mode="append", custom_content="Be brief.")},
        )
        config = await storage.update_block_overrides(story.id, {"instructions": BlockOverride(enabled=False)})
        override = config.overrides["instructions"]
        assert override.enabled is False
        assert override.content_mode == "append"
        assert override.custom_content == "Be brief."
        assert config.block_order == []

    async def test_save_replaces_everything(self, story):
        await storage.add_custom_block(story.id, _block())
        replacement = BlockConfig(block_order=["tools"])
        config = await storage.save_block_config(story.id, replacement)
        assert config.custom_blocks == []
        assert config.block_order == ["tools"]

    async def test_stored_with_camel_case_keys(self, story):
        await storage.update_block_overrides(
            story.id,
            {"tools": BlockOverride(content_mode="override", custom_content="None")},
            ["tools"],
        )
        async with AsyncSessionLocal() as session:
            row = await session.get(BlockConfigRow, story.id)
        assert row.content["blockOrder"] == ["tools"]
        assert row.content["overrides"]["tools"] == {"contentMode": "override", "customContent": "None"}

    async def test_invalid_stored_content_reads_as_empty(self, story):
        await storage.get_block_config(story.id)
        async with AsyncSessionLocal() as session:
            await session.execute(
                update(BlockConfigRow)
                .where(BlockConfigRow.story_id == story.id)
                .values(content={"customBlocks": "not a list"})
            )
            await session.commit()
        assert await storage.get_block_config(story.id) == BlockConfig()


class TestAssembly:
    """Resolver, builder, renderer and engine together."""

    async def test_assemble_with_custom_blocks(self, story, add_fragment):
        prose = await add_fragment(story.id, content="The first letter arrived.")
        await prose_chain.add_prose_section(story.id, prose.id)
        await add_fragment(story.id, type="character", name="Maren", sticky=True)

        await storage.add_custom_block(story.id, _block(
            type="script",
            order=350,
            content="return 'Cast: ' + ', '.join(c.name for c in ctx.sticky_characters)",
        ))
        await storage.update_block_overrides(
            story.id, {"instructions": BlockOverride(content_mode="append", custom_content="Be brief.")},
        )

        state, blocks = await assemble_blocks(story.id, "She writes back.")
        by_id = {b.id: b for b in blocks}
        assert state.author_input == "She writes back."
        assert by_id["cb-cast"].content == "Cast: Maren"
        assert by_id["cb-cast"].source == "custom"
        assert by_id["instructions"].content.endswith("\nBe brief.")
        assert "The first letter arrived." in by_id["prose"].content

    async def test_preview_compiles_messages(self, story):
        preview = await preview_blocks(story.id)
        assert [m.role for m in preview.messages] == ["system", "user"]
        assert "(preview)" in preview.messages[1].content

    async def test_evaluate_story_script(self, story):
        assert await evaluate_story_script(story.id, "ctx.story.name") == ("The Lighthouse Keeper", None)
        assert await evaluate_story_script(story.id, "''") == (None, None)
        result, error = await evaluate_story_script(story.id, "import os")
        assert result is None
        assert "imports" in error

    async def test_slow_scripts_do_not_block_the_event_loop(self, story):
        from storyloom.blocks import apply as block_apply

        def slow_apply(*args):
            time.sleep(0.3)
            return block_apply.apply_block_config(*args)

        ticks = 0
        done = asyncio.Event()

        async def ticker():
            nonlocal ticks
            while not done.is_set():
                await asyncio.sleep(0.01)
                ticks += 1

        ticking = asyncio.create_task(ticker())
        with patch("storyloom.blocks.preview.apply_block_config", slow_apply):
            _, blocks = await assemble_blocks(story.id, "She writes back.")
        done.set()
        await ticking

        assert blocks
        assert ticks >= 5
