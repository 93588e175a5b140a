"""Full block assembly for one story, plus single-script evaluation for the editor."""
from __future__ import annotations

import asyncio
from typing import List, Optional, Tuple

from pydantic import BaseModel

from storyloom.blocks.apply import apply_block_config
from storyloom.blocks.script import evaluate_script
from storyloom.blocks.storage import get_block_config
from storyloom.context.builder import load_context_state
from storyloom.context.render import compile_blocks, create_default_blocks
from storyloom.errors import ScriptEvaluationError
from storyloom.schemas.blocks import ContextBlock, ContextMessage
from storyloom.schemas.context import ContextBuildState

PREVIEW_AUTHOR_INPUT = "(preview)"


class BlockPreview(BaseModel):
    blocks: List[ContextBlock]
    messages: List[ContextMessage]


async def assemble_blocks(
    story_id: str,
    author_input: str,
    branch_id: Optional[str] = None,
    exclude_fragment_id: Optional[str] = None,
) -> Tuple[ContextBuildState, List[ContextBlock]]:
    """Resolver, builder, renderer and configuration engine in one pass."""
    state = await load_context_state(
        story_id, author_input, branch_id=branch_id, exclude_fragment_id=exclude_fragment_id,
    )
    config = await get_block_config(story_id)
    # Scripts can run up to their deadline; keep them off the event loop
    blocks = await asyncio.to_thread(apply_block_config, create_default_blocks(state), config, state.snapshot())
    return state, blocks


async def preview_blocks(story_id: str, author_input: str = PREVIEW_AUTHOR_INPUT) -> BlockPreview:
    _, blocks = await assemble_blocks(story_id, author_input)
    return BlockPreview(blocks=blocks, messages=compile_blocks(blocks))


async def evaluate_story_script(story_id: str, source: str) -> Tuple[Optional[str], Optional[str]]:
    """Run one script against the story's current state: ``(result, error)``.

    A blank result comes back as ``(None, None)``, matching a block that
    would be dropped.
    """
    state = await load_context_state(story_id, PREVIEW_AUTHOR_INPUT)
    try:
        result = await asyncio.to_thread(evaluate_script, source, state.snapshot())
    except ScriptEvaluationError as exc:
        return None, str(exc)
    if not result.strip():
        return None, None
    return result, None
