"""
Story and fragment schemas.

These mirror the ``stories`` / ``fragments`` tables but are what every layer
above storage works with: the context builder, block renderer and script
snapshots only ever see these frozen values, never ORM rows.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

FragmentPlacement = Literal["system", "user"]

SUPPORTING_TYPES = ("guideline", "knowledge", "character")


class StorySettings(BaseModel):
    """Per-story knobs for context assembly and the librarian."""
    model_config = ConfigDict(extra="ignore")

    prose_limit: Optional[int] = Field(default=None, ge=1, description="Recent prose entries kept in context")
    shortlist_limit: Optional[int] = Field(default=None, ge=0, description="Max shortlist entries per category")
    enabled_builtin_tools: Optional[List[str]] = None
    auto_apply_librarian_summary: bool = True


class StoryMeta(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    summary: str = ""
    settings: StorySettings = Field(default_factory=StorySettings)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Fragment(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    name: str = ""
    description: str = ""
    content: str = ""
    order: int = 0
    sticky: bool = False
    placement: FragmentPlacement = "user"
    tags: List[str] = Field(default_factory=list)
    meta: Dict[str, Any] = Field(default_factory=dict)
    archived: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class FragmentCreate(BaseModel):
    """Payload for creating a fragment; the store assigns the id."""
    type: str
    name: str = Field(default="", max_length=100)
    description: str = Field(default="", max_length=250)
    content: str = ""
    order: int = 0
    sticky: bool = False
    placement: FragmentPlacement = "user"
    tags: List[str] = Field(default_factory=list)
    meta: Dict[str, Any] = Field(default_factory=dict)
