"""
Timeline schemas: branches index and prose chain entries.

The branches index is persisted as one JSON document per story::

    {"branches": [{"id": "main", "name": "Main", "entryIds": [...], ...}],
     "activeBranchId": "main"}

Chain entries live in an append-only arena and are referenced from the
branch's ``entryIds`` list, so forking a branch copies ids, never entries.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_BRANCH_ID = "main"

EntryKind = Literal["prose", "marker"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BranchMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = Field(..., max_length=100)
    order: int = Field(default=0, ge=0)
    parent_branch_id: Optional[str] = Field(default=None, alias="parentBranchId")
    fork_after_index: Optional[int] = Field(default=None, ge=0, alias="forkAfterIndex")
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")
    entry_ids: List[str] = Field(default_factory=list, alias="entryIds")


class BranchesIndex(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    branches: List[BranchMeta]
    active_branch_id: str = Field(default=DEFAULT_BRANCH_ID, alias="activeBranchId")

    def find(self, branch_id: str) -> Optional[BranchMeta]:
        for branch in self.branches:
            if branch.id == branch_id:
                return branch
        return None

    @classmethod
    def default(cls) -> "BranchesIndex":
        return cls(
            branches=[BranchMeta(id=DEFAULT_BRANCH_ID, name="Main", order=0)],
            active_branch_id=DEFAULT_BRANCH_ID,
        )


class ChainEntry(BaseModel):
    """One slot of the prose chain: every variation plus the active one."""
    model_config = ConfigDict(frozen=True)

    id: str
    kind: EntryKind = "prose"
    variations: List[str]
    active: str

    @model_validator(mode="after")
    def _active_is_a_variation(self) -> "ChainEntry":
        if not self.variations:
            raise ValueError("chain entry needs at least one variation")
        if self.active not in self.variations:
            raise ValueError(f"active id {self.active!r} is not among the variations")
        return self


class ChapterBoundary(BaseModel):
    index: int
    entry_id: str
    fragment_id: str
