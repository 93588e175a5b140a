"""
Context state builder.

``build_context_state`` is the pure step: given the resolved chain and the
story's supporting fragments it returns one frozen ``ContextBuildState``.
``load_context_state`` gathers those inputs from the fragment store and the
prose chain for a story/branch and then calls it.
"""
from __future__ import annotations

import time
from typing import Dict, List, Optional, Sequence

from storyloom.config import get_settings
from storyloom.context.ranking import ShortlistRanker, keep_order_ranker
from storyloom.fragments import store
from storyloom.schemas.context import ContextBuildState
from storyloom.schemas.fragments import SUPPORTING_TYPES, Fragment, StoryMeta
from storyloom.timeline import branches, prose_chain
from storyloom.utils.logging_config import StoryAdapter, get_logger

_logger = get_logger("storyloom.context")


def _by_order(fragment: Fragment):
    return (fragment.order, fragment.created_at.isoformat() if fragment.created_at else "", fragment.id)


def build_context_state(
    story: StoryMeta,
    chain_fragments: Sequence[Fragment],
    supporting: Sequence[Fragment],
    author_input: str,
    *,
    branch_id: Optional[str] = None,
    chapter_markers: Sequence[Fragment] = (),
    prose_limit: Optional[int] = None,
    shortlist_limit: Optional[int] = None,
    ranker: Optional[ShortlistRanker] = None,
) -> ContextBuildState:
    """Assemble the build state. Inputs are never mutated.

    ``chain_fragments`` are the active variations in chain order. Archived
    ones are skipped and only the last ``prose_limit`` are kept. Sticky
    supporting fragments are always included; the rest of each category goes
    through ``ranker`` and is capped at ``shortlist_limit``.
    """
    settings = get_settings()
    if prose_limit is None:
        prose_limit = story.settings.prose_limit
    if prose_limit is None:
        prose_limit = settings.default_prose_limit
    if shortlist_limit is None:
        shortlist_limit = story.settings.shortlist_limit
    if shortlist_limit is None:
        shortlist_limit = settings.default_shortlist_limit
    ranker = ranker or keep_order_ranker

    prose = [fragment for fragment in chain_fragments if not fragment.archived]
    prose = prose[max(len(prose) - prose_limit, 0):]

    sticky: Dict[str, List[Fragment]] = {}
    shortlists: Dict[str, List[Fragment]] = {}
    for category in SUPPORTING_TYPES:
        members = [f for f in supporting if f.type == category and not f.archived]
        sticky[category] = sorted((f for f in members if f.sticky), key=_by_order)
        candidates = [f for f in members if not f.sticky]
        shortlists[category] = list(ranker(category, candidates, author_input, shortlist_limit))[:shortlist_limit]

    return ContextBuildState(
        story=story,
        branch_id=branch_id,
        prose_fragments=prose,
        chapter_markers=[m for m in chapter_markers if not m.archived],
        sticky_guidelines=sticky["guideline"],
        sticky_knowledge=sticky["knowledge"],
        sticky_characters=sticky["character"],
        guideline_shortlist=shortlists["guideline"],
        knowledge_shortlist=shortlists["knowledge"],
        character_shortlist=shortlists["character"],
        author_input=author_input,
    )


async def load_context_state(
    story_id: str,
    author_input: str = "",
    branch_id: Optional[str] = None,
    exclude_fragment_id: Optional[str] = None,
    ranker: Optional[ShortlistRanker] = None,
) -> ContextBuildState:
    """Load story, chain and supporting fragments, then build the state.

    ``exclude_fragment_id`` leaves one prose fragment out (regenerating it).
    """
    started = time.perf_counter()
    story = await store.get_story(story_id)
    branch_id = branch_id or await branches.get_active_branch_id(story_id)
    logger = StoryAdapter(_logger, story_id, branch_id=branch_id)

    chain = await prose_chain.get_full_chain(story_id, branch_id)
    fragments = await store.get_fragments(story_id, [entry.active for entry in chain])

    chain_fragments: List[Fragment] = []
    markers: List[Fragment] = []
    for entry in chain:
        if entry.active == exclude_fragment_id:
            continue
        fragment = fragments.get(entry.active)
        if fragment is None:
            logger.warning("Chain fragment not found: %s", entry.active, extra={"event_type": "chain_fragment_missing"})
            continue
        (markers if entry.kind == "marker" else chain_fragments).append(fragment)

    supporting: List[Fragment] = []
    for category in SUPPORTING_TYPES:
        supporting.extend(await store.list_fragments(story_id, type=category))

    state = build_context_state(
        story,
        chain_fragments,
        supporting,
        author_input,
        branch_id=branch_id,
        chapter_markers=markers,
        ranker=ranker,
    )
    logger.info(
        "Context state built",
        extra={
            "event_type": "context_built",
            "duration_ms": round((time.perf_counter() - started) * 1000, 1),
            "metadata": {
                "prose": len(state.prose_fragments),
                "markers": len(state.chapter_markers),
                "sticky": len(state.sticky_fragments()),
                "shortlisted": len(state.guideline_shortlist)
                + len(state.knowledge_shortlist)
                + len(state.character_shortlist),
            },
        },
    )
    return state
