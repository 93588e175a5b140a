"""Librarian status and agent run history endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.app import get_scheduler
from storyloom.database import get_db
from storyloom.fragments import store
from storyloom.librarian.scheduler import LibrarianScheduler
from storyloom.models import AgentRun
from storyloom.schemas.agents import LibrarianRuntimeStatus

router = APIRouter()


class AgentRunResponse(BaseModel):
    id: str
    agent_name: str
    branch_id: Optional[str]
    status: str
    error: Optional[str]
    started_at: Optional[datetime]
    finished_at: Optional[datetime]


@router.get("/stories/{story_id}/librarian/status", response_model=LibrarianRuntimeStatus)
async def librarian_status(story_id: str, scheduler: LibrarianScheduler = Depends(get_scheduler)):
    await store.get_story(story_id)
    return scheduler.get_runtime_status(story_id)


@router.get("/librarian/pending")
async def librarian_pending(scheduler: LibrarianScheduler = Depends(get_scheduler)):
    return {"pending": scheduler.get_pending_count()}


@router.get("/stories/{story_id}/agent-runs", response_model=List[AgentRunResponse])
async def list_agent_runs(story_id: str, limit: int = 20, db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(AgentRun)
        .where(AgentRun.story_id == story_id)
        .order_by(desc(AgentRun.started_at))
        .limit(min(limit, 100))
    )
    return [
        AgentRunResponse(
            id=run.id,
            agent_name=run.agent_name,
            branch_id=run.branch_id,
            status=run.status,
            error=run.error,
            started_at=run.started_at,
            finished_at=run.finished_at,
        )
        for run in result.scalars().all()
    ]
