"""Prose chain and chapter REST endpoints."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter
from pydantic import BaseModel, ConfigDict, Field

from storyloom.agents.chapters import AGENT_NAME as SUMMARIZE_AGENT
from storyloom.agents.chapters import collect_chapter_prose
from storyloom.agents.registry import invoke_agent
from storyloom.errors import InvalidOperation
from storyloom.fragments import store
from storyloom.schemas.fragments import Fragment, FragmentCreate
from storyloom.schemas.timeline import ChainEntry, ChapterBoundary
from storyloom.timeline import prose_chain

router = APIRouter()


class SwitchVariationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    fragment_id: str = Field(..., alias="fragmentId")


class CreateChapterRequest(BaseModel):
    name: str = Field(..., max_length=100)
    description: str = ""
    content: str = ""
    position: int = Field(..., ge=0)


class ChapterSummaryResponse(BaseModel):
    fragment_id: str
    summary: str
    run_id: str


@router.get("/stories/{story_id}/prose-chain", response_model=List[ChainEntry])
async def get_chain(story_id: str, branch_id: Optional[str] = None):
    return await prose_chain.get_full_chain(story_id, branch_id)


@router.post("/stories/{story_id}/prose-chain/{entry_index}/switch", response_model=ChainEntry)
async def switch_variation(story_id: str, entry_index: int, request: SwitchVariationRequest):
    return await prose_chain.switch_variation(story_id, entry_index, request.fragment_id)


@router.delete("/stories/{story_id}/prose-chain/{entry_index}")
async def remove_section(story_id: str, entry_index: int):
    removed = await prose_chain.remove_prose_section(story_id, entry_index)
    return {"status": "removed", "fragment_ids": removed}


@router.get("/stories/{story_id}/chapters", response_model=List[ChapterBoundary])
async def list_chapters(story_id: str, branch_id: Optional[str] = None):
    return await prose_chain.chapter_boundaries(story_id, branch_id)


@router.post("/stories/{story_id}/chapters", response_model=Fragment)
async def create_chapter(story_id: str, request: CreateChapterRequest):
    """Create a marker fragment and insert it into the chain at ``position``."""
    marker = await store.create_fragment(
        story_id,
        FragmentCreate(type="marker", name=request.name, description=request.description, content=request.content),
    )
    await prose_chain.insert_chapter_marker(story_id, marker.id, request.position)
    return marker


@router.post("/stories/{story_id}/chapters/{fragment_id}/summarize", response_model=ChapterSummaryResponse)
async def summarize_chapter(story_id: str, fragment_id: str):
    marker = await store.get_fragment(story_id, fragment_id)
    if marker.type != "marker":
        raise InvalidOperation(f"Fragment '{fragment_id}' is not a chapter marker")
    if not await collect_chapter_prose(story_id, fragment_id):
        raise InvalidOperation("No prose content in this chapter to summarize")
    result = await invoke_agent(story_id, SUMMARIZE_AGENT, {"fragment_id": fragment_id})
    return ChapterSummaryResponse(
        fragment_id=fragment_id,
        summary=result.output.get("summary", ""),
        run_id=result.run_id,
    )
