"""Story CRUD REST endpoints."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from storyloom.fragments import store
from storyloom.schemas.fragments import StoryMeta, StorySettings
from storyloom.timeline.branches import init_timeline

router = APIRouter()


class CreateStoryRequest(BaseModel):
    name: str = Field(default="Untitled Story", max_length=200)
    description: str = ""
    settings: Optional[StorySettings] = None


class UpdateStoryRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = None
    summary: Optional[str] = None
    settings: Optional[StorySettings] = None


@router.post("/stories", response_model=StoryMeta)
async def create_story(request: CreateStoryRequest):
    story = await store.create_story(request.name, request.description, request.settings)
    await init_timeline(story.id)
    return story


@router.get("/stories", response_model=List[StoryMeta])
async def list_stories():
    return await store.list_stories()


@router.get("/stories/{story_id}", response_model=StoryMeta)
async def get_story(story_id: str):
    return await store.get_story(story_id)


@router.patch("/stories/{story_id}", response_model=StoryMeta)
async def update_story(story_id: str, request: UpdateStoryRequest):
    """Partial update. ``settings`` keys are merged into the stored settings."""
    settings = request.settings.model_dump(exclude_unset=True) if request.settings else None
    return await store.update_story(
        story_id,
        name=request.name,
        description=request.description,
        summary=request.summary,
        settings=settings,
    )
