"""
Agent I/O schemas.

``LibrarianAnalysis`` and ``ChapterSummary`` are ADK ``output_schema`` targets;
the model is forced to answer in exactly these shapes.
"""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

SchedulerStatus = Literal["idle", "scheduled", "running"]


class AgentRunResult(BaseModel):
    run_id: str
    output: Dict[str, Any] = Field(default_factory=dict)
    trace: List[Dict[str, Any]] = Field(default_factory=list)


class TimelineEventNote(BaseModel):
    event: str = Field(..., description="What happened, one sentence")
    position: Optional[str] = Field(default=None, description="When it happened relative to the story so far")


class LibrarianAnalysis(BaseModel):
    """Continuity notes for one freshly written prose fragment."""
    summary_update: str = Field(
        default="",
        description="One or two sentences to add to the running story summary",
    )
    mentioned_characters: List[str] = Field(
        default_factory=list,
        description="Ids of character fragments that appear in the prose",
    )
    contradictions: List[str] = Field(
        default_factory=list,
        description="Statements that conflict with established guidelines or knowledge",
    )
    timeline_events: List[TimelineEventNote] = Field(default_factory=list)


class ChapterSummary(BaseModel):
    summary: str = Field(..., description="A compact summary of the chapter's prose")


class LibrarianRuntimeStatus(BaseModel):
    story_id: str
    status: SchedulerStatus = "idle"
    pending_fragment_id: Optional[str] = None
    queued_fragment_id: Optional[str] = None
    branch_id: Optional[str] = None
    last_run_id: Optional[str] = None
    last_error: Optional[str] = None
