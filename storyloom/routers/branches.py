"""Timeline branch REST endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, ConfigDict, Field

from storyloom.schemas.timeline import DEFAULT_BRANCH_ID, BranchesIndex, BranchMeta
from storyloom.timeline import branches

router = APIRouter()


class CreateBranchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(default="New Branch", max_length=100)
    parent_branch_id: str = Field(default=DEFAULT_BRANCH_ID, alias="parentBranchId")
    fork_after_index: Optional[int] = Field(default=None, ge=0, alias="forkAfterIndex")


class RenameBranchRequest(BaseModel):
    name: str = Field(..., max_length=100)


@router.get("/stories/{story_id}/branches", response_model=BranchesIndex)
async def list_branches(story_id: str):
    return await branches.get_branches_index(story_id)


@router.post("/stories/{story_id}/branches", response_model=BranchMeta)
async def create_branch(story_id: str, request: CreateBranchRequest):
    """Fork a branch; the new branch becomes active."""
    return await branches.create_branch(
        story_id, request.name, request.parent_branch_id, request.fork_after_index,
    )


@router.post("/stories/{story_id}/branches/{branch_id}/activate", response_model=BranchesIndex)
async def switch_branch(story_id: str, branch_id: str):
    return await branches.switch_active_branch(story_id, branch_id)


@router.patch("/stories/{story_id}/branches/{branch_id}", response_model=BranchMeta)
async def rename_branch(story_id: str, branch_id: str, request: RenameBranchRequest):
    return await branches.rename_branch(story_id, branch_id, request.name)


@router.delete("/stories/{story_id}/branches/{branch_id}", response_model=BranchesIndex)
async def delete_branch(story_id: str, branch_id: str):
    return await branches.delete_branch(story_id, branch_id)
