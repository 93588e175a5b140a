"""
Builtin block renderer.

Turns a ``ContextBuildState`` into the builtin ``ContextBlock`` list for a
prose generation call. Block ids are fixed and orders are spaced by 100 so
custom blocks can be slotted in between:

    system: instructions 100, tools 200, system-fragments 300
    user:   story-info 100, prose 200, chapters 250, sticky-fragments 300,
            shortlist 400, author-input 600

Sections with nothing to show are left out.
"""
from __future__ import annotations

from typing import Dict, Iterable, List, Sequence

from storyloom.schemas.blocks import ContextBlock, ContextMessage
from storyloom.schemas.context import ContextBuildState
from storyloom.schemas.fragments import SUPPORTING_TYPES, Fragment

WRITER_INSTRUCTIONS = "\n".join([
    "You are a creative writing assistant. Your task is to write prose that continues "
    "the story based on the author's direction.",
    "Output the prose directly as your response. Saving prose is handled for you.",
    "Only use tools to look up context you need before writing.",
])

DEFAULT_TOOLS = ("guideline", "knowledge", "character", "prose")

_GROUP_LABELS = {"guideline": "Guidelines", "knowledge": "Knowledge", "character": "Characters"}
_SHORTLIST_LABELS = {
    "guideline": "Available Guidelines (use getGuideline(id) to retrieve)",
    "knowledge": "Available Knowledge (use getKnowledge(id) to retrieve)",
    "character": "Available Characters (use getCharacter(id) to retrieve)",
}


def render_fragment(fragment: Fragment) -> str:
    """Context rendering of one fragment, by type."""
    if fragment.type == "prose":
        return fragment.content
    if fragment.type == "character":
        return f"## {fragment.name}\n{fragment.content}"
    if fragment.type == "guideline":
        return f"**{fragment.name}**: {fragment.content}"
    if fragment.type == "knowledge":
        return f"### {fragment.name}\n{fragment.content}"
    return f"[{fragment.type}:{fragment.id}] {fragment.content}"


def _tool_lines(tool_types: Iterable[str]) -> List[str]:
    lines = []
    for fragment_type in tool_types:
        cap = fragment_type[:1].upper() + fragment_type[1:]
        plural = cap if fragment_type in ("prose", "knowledge") else cap + "s"
        lines.append(f"- get{cap}(id): Get full content of a {fragment_type} fragment")
        lines.append(f"- list{plural}(): List all {fragment_type} fragments")
    lines.append("- listFragmentTypes(): List all available fragment types")
    return lines


def _grouped(fragments: Sequence[Fragment]) -> str:
    parts: List[str] = []
    for category in SUPPORTING_TYPES:
        members = [f for f in fragments if f.type == category]
        if not members:
            continue
        parts.append(f"## {_GROUP_LABELS[category]}")
        parts.extend(render_fragment(f) for f in members)
    return "\n".join(parts)


def create_default_blocks(state: ContextBuildState) -> List[ContextBlock]:
    story = state.story
    sticky = state.sticky_fragments()
    system_placed = [f for f in sticky if f.placement == "system"]
    user_placed = [f for f in sticky if f.placement == "user"]

    blocks = [
        ContextBlock(id="instructions", role="system", content=WRITER_INSTRUCTIONS, order=100),
        ContextBlock(
            id="tools",
            role="system",
            content="\n".join([
                "## Available Tools",
                "You have access to the following tools:",
                *_tool_lines(story.settings.enabled_builtin_tools or DEFAULT_TOOLS),
            ]),
            order=200,
        ),
    ]
    if system_placed:
        blocks.append(ContextBlock(id="system-fragments", role="system", content=_grouped(system_placed), order=300))

    info = [f"## Story: {story.name}"]
    if story.description:
        info.append(story.description)
    if story.summary:
        info.append(f"\n## Story Summary So Far\n{story.summary}")
    blocks.append(ContextBlock(id="story-info", role="user", content="\n".join(info), order=100))

    if state.prose_fragments:
        blocks.append(ContextBlock(
            id="prose",
            role="user",
            content="\n".join(["## Recent Prose", *(render_fragment(f) for f in state.prose_fragments)]),
            order=200,
        ))

    if state.chapter_markers:
        chapters = ["## Chapters"]
        for marker in state.chapter_markers:
            chapters.append(f"### {marker.name or marker.id}")
            chapters.append(marker.content or "(not summarized yet)")
        blocks.append(ContextBlock(id="chapters", role="user", content="\n".join(chapters), order=250))

    if user_placed:
        blocks.append(ContextBlock(id="sticky-fragments", role="user", content=_grouped(user_placed), order=300))

    shortlists: Dict[str, List[Fragment]] = {
        "guideline": state.guideline_shortlist,
        "knowledge": state.knowledge_shortlist,
        "character": state.character_shortlist,
    }
    shortlist_parts: List[str] = []
    for category, members in shortlists.items():
        if not members:
            continue
        shortlist_parts.append(f"## {_SHORTLIST_LABELS[category]}")
        shortlist_parts.extend(f"- {f.id}: {f.name} - {f.description}" for f in members)
    if shortlist_parts:
        blocks.append(ContextBlock(id="shortlist", role="user", content="\n".join(shortlist_parts), order=400))

    if state.author_input.strip():
        blocks.append(ContextBlock(
            id="author-input",
            role="user",
            content=f"The author wants the following to happen next: {state.author_input}",
            order=600,
        ))
    return blocks


def compile_blocks(blocks: Sequence[ContextBlock]) -> List[ContextMessage]:
    """One system message then one user message, each joining its blocks by order."""
    ordered = sorted(blocks, key=lambda block: block.order)
    messages = []
    for role in ("system", "user"):
        parts = [block.content for block in ordered if block.role == role]
        if parts:
            messages.append(ContextMessage(role=role, content="\n\n".join(parts)))
    return messages
