from datetime import datetime
from typing import Optional
from sqlalchemy import String, DateTime, ForeignKey, Text, JSON, Integer, Boolean, PrimaryKeyConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    pass


class Story(Base):
    __tablename__ = "stories"

    id: Mapped[str] = mapped_column(String, primary_key=True, index=True)  # Using UUID strings
    name: Mapped[str] = mapped_column(String, index=True, default="Untitled Story")
    description: Mapped[str] = mapped_column(Text, default="")
    summary: Mapped[str] = mapped_column(Text, default="")
    settings: Mapped[dict] = mapped_column(JSON, default=dict)  # StorySettings payload
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Fragment(Base):
    """A named unit of story content (prose, character, guideline, knowledge, marker...)."""
    __tablename__ = "fragments"

    story_id: Mapped[str] = mapped_column(ForeignKey("stories.id"), index=True)
    id: Mapped[str] = mapped_column(String(32))  # e.g. "pr-bakomi", unique within a story
    type: Mapped[str] = mapped_column(String(32), index=True)
    name: Mapped[str] = mapped_column(String(100), default="")
    description: Mapped[str] = mapped_column(String(250), default="")
    content: Mapped[str] = mapped_column(Text, default="")
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    sticky: Mapped[bool] = mapped_column(Boolean, default=False)
    placement: Mapped[str] = mapped_column(String(16), default="user")  # system | user
    tags: Mapped[list] = mapped_column(JSON, default=list)
    meta: Mapped[dict] = mapped_column(JSON, default=dict)
    archived: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        PrimaryKeyConstraint("story_id", "id", name="pk_fragments"),
    )


class Timeline(Base):
    """Per-story branches index: ``{branches: [...], activeBranchId}``."""
    __tablename__ = "timelines"

    story_id: Mapped[str] = mapped_column(ForeignKey("stories.id"), primary_key=True)
    content: Mapped[dict] = mapped_column(JSON, default=dict)
    version_number: Mapped[int] = mapped_column(Integer, default=1)  # Optimistic concurrency control: increment on each update


class ChainEntry(Base):
    """Append-only arena of prose chain slots. Rows are never updated in place."""
    __tablename__ = "chain_entries"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    story_id: Mapped[str] = mapped_column(ForeignKey("stories.id"), index=True)
    kind: Mapped[str] = mapped_column(String(16), default="prose")  # prose | marker
    variations: Mapped[list] = mapped_column(JSON, default=list)
    active: Mapped[str] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class BlockConfig(Base):
    """Per-story block customizations: custom blocks, overrides, explicit order."""
    __tablename__ = "block_configs"

    story_id: Mapped[str] = mapped_column(ForeignKey("stories.id"), primary_key=True)
    content: Mapped[dict] = mapped_column(JSON, default=dict)
    version_number: Mapped[int] = mapped_column(Integer, default=1)


class AgentRun(Base):
    """One background agent invocation (librarian analysis, chapter summary...)."""
    __tablename__ = "agent_runs"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    story_id: Mapped[str] = mapped_column(String, index=True)
    branch_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    agent_name: Mapped[str] = mapped_column(String(64), index=True)
    input: Mapped[dict] = mapped_column(JSON, default=dict)
    output: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    trace: Mapped[list] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String(16), default="running")  # running | success | error
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
