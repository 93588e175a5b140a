"""Chapter summaries (``chapters.summarize``): fill a marker's content from the prose that follows it."""
from __future__ import annotations

from typing import Any, Dict

from google.adk.agents import Agent

from storyloom.agents.registry import AgentContext
from storyloom.agents.runner import run_structured_agent
from storyloom.config import get_settings
from storyloom.errors import InvalidOperation, NotFound
from storyloom.fragments import store
from storyloom.schemas.agents import ChapterSummary
from storyloom.timeline import prose_chain

AGENT_NAME = "chapters.summarize"

SUMMARIZE_INSTRUCTIONS = (
    "You are a story summarizer for a collaborative writing app. "
    "Given the prose of one chapter, write a concise summary of at most two paragraphs "
    "capturing the key events, character actions and mood."
)


def create_summarizer_agent() -> Agent:
    return Agent(
        name="chapter_summarizer",
        model=get_settings().model_summarizer,
        output_schema=ChapterSummary,
        output_key="chapter_summary",
        instruction=SUMMARIZE_INSTRUCTIONS,
    )


async def collect_chapter_prose(story_id: str, marker_fragment_id: str, branch_id: str | None = None) -> list[str]:
    """Active prose from just after the marker up to the next marker or the end."""
    chain = await prose_chain.get_full_chain(story_id, branch_id)
    start = next(
        (i for i, entry in enumerate(chain) if entry.kind == "marker" and entry.active == marker_fragment_id),
        -1,
    )
    if start == -1:
        raise NotFound(f"Chapter marker '{marker_fragment_id}' is not in the prose chain")

    following = []
    for entry in chain[start + 1:]:
        if entry.kind == "marker":
            break
        following.append(entry.active)

    fragments = await store.get_fragments(story_id, following)
    return [fragments[i].content for i in following if i in fragments and not fragments[i].archived]


async def summarize(ctx: AgentContext, input: Dict[str, Any]) -> Dict[str, Any]:
    marker_id = input["fragment_id"]
    marker = await store.get_fragment(ctx.story_id, marker_id)
    if marker.type != "marker":
        raise InvalidOperation(f"Fragment '{marker_id}' is not a chapter marker")

    prose = await collect_chapter_prose(ctx.story_id, marker_id, ctx.branch_id)
    if not prose:
        raise InvalidOperation("No prose content in this chapter to summarize")
    ctx.record("chapter_collected", fragment_id=marker_id, prose_fragments=len(prose))

    result = await run_structured_agent(
        ctx,
        create_summarizer_agent(),
        "Summarize this chapter:\n\n" + "\n\n".join(prose),
        ChapterSummary,
    )
    summary = result.summary.strip()
    await store.patch_fragment(ctx.story_id, marker_id, content=summary)
    ctx.logger.info(
        "Chapter summarized",
        extra={"event_type": "chapter_summarized", "fragment_id": marker_id},
    )
    return {"fragment_id": marker_id, "summary": summary}
