"""Context block configuration, preview and assembly REST endpoints."""

from __future__ import annotations

from typing import Dict, List, Optional

from fastapi import APIRouter
from pydantic import BaseModel, ConfigDict, Field

from storyloom.blocks import storage
from storyloom.blocks.preview import (
    PREVIEW_AUTHOR_INPUT,
    BlockPreview,
    assemble_blocks,
    evaluate_story_script,
    preview_blocks,
)
from storyloom.context.builder import load_context_state
from storyloom.context.render import compile_blocks, create_default_blocks
from storyloom.schemas.blocks import BlockConfig, BlockOverride, CustomBlockDefinition, CustomBlockUpdate

router = APIRouter()


class BuiltinBlockInfo(BaseModel):
    id: str
    role: str
    order: float
    content_preview: str


class BlockConfigResponse(BaseModel):
    config: BlockConfig
    builtin_blocks: List[BuiltinBlockInfo]


class UpdateOverridesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    overrides: Dict[str, BlockOverride] = Field(default_factory=dict)
    block_order: Optional[List[str]] = Field(default=None, alias="blockOrder")


class EvalScriptRequest(BaseModel):
    content: str


class EvalScriptResponse(BaseModel):
    result: Optional[str] = None
    error: Optional[str] = None


class AssembleContextRequest(BaseModel):
    author_input: str = ""
    branch_id: Optional[str] = None
    exclude_fragment_id: Optional[str] = None


@router.get("/stories/{story_id}/blocks", response_model=BlockConfigResponse)
async def get_blocks(story_id: str):
    """Stored config plus the builtin blocks it can target."""
    config = await storage.get_block_config(story_id)
    state = await load_context_state(story_id, PREVIEW_AUTHOR_INPUT)
    builtin = [
        BuiltinBlockInfo(id=b.id, role=b.role, order=b.order, content_preview=b.content[:200])
        for b in create_default_blocks(state)
    ]
    return BlockConfigResponse(config=config, builtin_blocks=builtin)


@router.get("/stories/{story_id}/blocks/preview", response_model=BlockPreview)
async def get_preview(story_id: str):
    return await preview_blocks(story_id)


@router.post("/stories/{story_id}/context", response_model=BlockPreview)
async def assemble_context(story_id: str, request: AssembleContextRequest):
    """The final block list and messages a generation request would send."""
    _, blocks = await assemble_blocks(
        story_id,
        request.author_input,
        branch_id=request.branch_id,
        exclude_fragment_id=request.exclude_fragment_id,
    )
    return BlockPreview(blocks=blocks, messages=compile_blocks(blocks))


@router.post("/stories/{story_id}/blocks/custom", response_model=BlockConfig)
async def add_custom_block(story_id: str, request: CustomBlockDefinition):
    return await storage.add_custom_block(story_id, request)


@router.put("/stories/{story_id}/blocks/custom/{block_id}", response_model=BlockConfig)
async def update_custom_block(story_id: str, block_id: str, request: CustomBlockUpdate):
    return await storage.update_custom_block(story_id, block_id, request)


@router.delete("/stories/{story_id}/blocks/custom/{block_id}", response_model=BlockConfig)
async def delete_custom_block(story_id: str, block_id: str):
    return await storage.delete_custom_block(story_id, block_id)


@router.patch("/stories/{story_id}/blocks/config", response_model=BlockConfig)
async def update_overrides(story_id: str, request: UpdateOverridesRequest):
    return await storage.update_block_overrides(story_id, request.overrides, request.block_order)


@router.post("/stories/{story_id}/blocks/eval-script", response_model=EvalScriptResponse)
async def eval_script(story_id: str, request: EvalScriptRequest):
    result, error = await evaluate_story_script(story_id, request.content)
    return EvalScriptResponse(result=result, error=error)
