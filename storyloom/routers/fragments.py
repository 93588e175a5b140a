"""
Fragment REST endpoints.

Prose writes go through here: creating a prose fragment appends it to the
active branch's chain (or adds it as a variation of an existing entry), and
creating or editing prose re-arms the librarian.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from storyloom.app import get_scheduler
from storyloom.fragments import store
from storyloom.librarian.scheduler import LibrarianScheduler
from storyloom.schemas.fragments import Fragment, FragmentCreate, FragmentPlacement
from storyloom.timeline import prose_chain

router = APIRouter()


class UpdateFragmentRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=250)
    content: Optional[str] = None
    order: Optional[int] = None
    sticky: Optional[bool] = None
    placement: Optional[FragmentPlacement] = None
    tags: Optional[List[str]] = None
    meta: Optional[Dict[str, Any]] = None
    archived: Optional[bool] = None


class CreateVariationRequest(BaseModel):
    content: str
    name: str = ""
    description: str = ""


@router.post("/stories/{story_id}/fragments", response_model=Fragment)
async def create_fragment(
    story_id: str,
    request: FragmentCreate,
    scheduler: LibrarianScheduler = Depends(get_scheduler),
):
    fragment = await store.create_fragment(story_id, request)
    if fragment.type == "prose":
        await prose_chain.add_prose_section(story_id, fragment.id)
        await scheduler.trigger_librarian(story_id, fragment)
    return fragment


@router.get("/stories/{story_id}/fragments", response_model=List[Fragment])
async def list_fragments(story_id: str, type: Optional[str] = None):
    return await store.list_fragments(story_id, type=type)


@router.get("/stories/{story_id}/fragments/{fragment_id}", response_model=Fragment)
async def get_fragment(story_id: str, fragment_id: str):
    return await store.get_fragment(story_id, fragment_id)


@router.patch("/stories/{story_id}/fragments/{fragment_id}", response_model=Fragment)
async def update_fragment(
    story_id: str,
    fragment_id: str,
    request: UpdateFragmentRequest,
    scheduler: LibrarianScheduler = Depends(get_scheduler),
):
    current = await store.get_fragment(story_id, fragment_id)
    changes = request.model_dump(exclude_unset=True, exclude_none=True)
    fragment = await store.update_fragment(story_id, current.model_copy(update=changes))
    if fragment.type == "prose" and "content" in changes:
        await scheduler.trigger_librarian(story_id, fragment)
    return fragment


@router.post("/stories/{story_id}/prose-chain/{entry_index}/variations", response_model=Fragment)
async def create_variation(
    story_id: str,
    entry_index: int,
    request: CreateVariationRequest,
    scheduler: LibrarianScheduler = Depends(get_scheduler),
):
    """Store a regenerated take on an entry and make it the active variation."""
    fragment = await store.create_fragment(
        story_id,
        FragmentCreate(type="prose", name=request.name, description=request.description, content=request.content),
    )
    await prose_chain.add_prose_variation(story_id, entry_index, fragment.id)
    await scheduler.trigger_librarian(story_id, fragment)
    return fragment
