"""
Librarian analysis agent (``librarian.analyze``).

Runs after prose writes settle. It reads the new prose fragment against the
story so far and reports continuity notes as a ``LibrarianAnalysis``. The
analysis is stored on the fragment under ``meta["_librarian"]`` and, unless
the story opts out, its summary update is appended to the story summary.
"""
from __future__ import annotations

from typing import Any, Dict, List, Sequence

from google.adk.agents import Agent

from storyloom.agents.registry import AgentContext
from storyloom.agents.runner import run_structured_agent
from storyloom.config import get_settings
from storyloom.context.builder import load_context_state
from storyloom.context.render import compile_blocks, render_fragment
from storyloom.fragments import store
from storyloom.schemas.agents import LibrarianAnalysis
from storyloom.schemas.blocks import ContextBlock
from storyloom.schemas.context import ContextBuildState
from storyloom.schemas.fragments import Fragment

AGENT_NAME = "librarian.analyze"

ANALYZE_INSTRUCTIONS = """
You are the librarian of a collaborative writing app.
Your job is to read a newly written prose fragment and keep the story consistent.

Report:
1. summary_update: one or two sentences describing what happened in the new prose.
2. mentioned_characters: the ids of known characters referenced by name, nickname or title (not pronouns).
3. contradictions: clear conflicts between the new prose and the summary, characters or knowledge. Skip ambiguities.
4. timeline_events: significant events, with position "before" for flashbacks, "during" for concurrent events, "after" otherwise.

Leave a list empty when there is nothing to report.
""".strip()


def create_librarian_blocks(
    state: ContextBuildState,
    fragment: Fragment,
    characters: Sequence[Fragment],
    knowledge: Sequence[Fragment],
) -> List[ContextBlock]:
    """Blocks for one analysis; everything except the instructions goes in the user turn."""
    blocks = [ContextBlock(id="instructions", role="system", content=ANALYZE_INSTRUCTIONS, order=100)]

    system_placed = [f for f in state.sticky_fragments() if f.placement == "system"]
    if system_placed:
        blocks.append(ContextBlock(
            id="system-fragments",
            role="user",
            content="\n\n".join(render_fragment(f) for f in system_placed),
            order=50,
        ))

    blocks.append(ContextBlock(
        id="story-summary",
        role="user",
        content="## Story Summary So Far\n"
        + (state.story.summary or "(No summary yet, this may be the beginning of the story.)"),
        order=100,
    ))
    if characters:
        blocks.append(ContextBlock(
            id="characters",
            role="user",
            content="\n".join(["## Known Characters", *(f"- {c.id}: {c.name} - {c.description}" for c in characters)]),
            order=200,
        ))
    if knowledge:
        blocks.append(ContextBlock(
            id="knowledge",
            role="user",
            content="\n".join(["## Knowledge Base", *(f"- {k.id}: {k.name} - {k.content}" for k in knowledge)]),
            order=300,
        ))
    if state.prose_fragments:
        blocks.append(ContextBlock(
            id="previous-prose",
            role="user",
            content="\n\n".join(["## Previous Prose", *(render_fragment(p) for p in state.prose_fragments[-3:])]),
            order=350,
        ))
    blocks.append(ContextBlock(
        id="new-prose",
        role="user",
        content=f"## New Prose Fragment\nFragment ID: {fragment.id}\n{fragment.content}",
        order=400,
    ))
    return blocks


def create_librarian_agent() -> Agent:
    """Structured-output librarian; the story material travels in the user message."""
    return Agent(
        name="librarian",
        model=get_settings().model_librarian,
        output_schema=LibrarianAnalysis,
        output_key="librarian_analysis",
        instruction=ANALYZE_INSTRUCTIONS,
    )


async def analyze(ctx: AgentContext, input: Dict[str, Any]) -> Dict[str, Any]:
    fragment_id = input["fragment_id"]
    fragment = await store.get_fragment(ctx.story_id, fragment_id)
    state = await load_context_state(
        ctx.story_id, branch_id=ctx.branch_id, exclude_fragment_id=fragment_id,
    )
    characters = await store.list_fragments(ctx.story_id, type="character")
    knowledge = await store.list_fragments(ctx.story_id, type="knowledge")

    blocks = create_librarian_blocks(state, fragment, characters, knowledge)
    prompt = "\n\n".join(m.content for m in compile_blocks([b for b in blocks if b.id != "instructions"]))
    ctx.record("prompt", fragment_id=fragment_id, blocks=[b.id for b in blocks])

    analysis = await run_structured_agent(ctx, create_librarian_agent(), prompt, LibrarianAnalysis)

    known_ids = {c.id for c in characters}
    analysis = analysis.model_copy(update={
        "mentioned_characters": [c for c in analysis.mentioned_characters if c in known_ids],
    })
    result = analysis.model_dump(mode="json")

    # The author may have edited while the model ran: write single fields
    # against the stored rows, never the copies read above.
    await store.merge_fragment_meta(ctx.story_id, fragment_id, {"_librarian": {**result, "run_id": ctx.run_id}})

    update = analysis.summary_update.strip()
    story = await store.get_story(ctx.story_id)
    if update and story.settings.auto_apply_librarian_summary:
        story = await store.append_story_summary(ctx.story_id, update)
        ctx.record("summary_applied", length=len(story.summary))

    if analysis.contradictions:
        ctx.logger.warning(
            "Librarian found %d contradiction(s)", len(analysis.contradictions),
            extra={"event_type": "librarian_contradictions", "fragment_id": fragment_id},
        )
    return result
