"""
Block configuration engine.

``apply_block_config`` turns the builtin block list into the list actually
sent to the model:

1. builtin blocks, in their original relative order;
2. overrides: ``enabled=False`` drops a block, otherwise ``contentMode`` with
   ``customContent`` replaces, prepends to or appends to its content;
3. custom blocks: enabled ones are appended, ``script`` bodies are evaluated
   (a failing script yields a ``Script error`` diagnostic, an empty result
   drops the block) and their own overrides apply;
4. ``blockOrder``: listed blocks get ``order = position in blockOrder``;
5. stable sort by order within each role, system blocks first.

The function is pure. It never raises for script content and never mutates
its inputs.
"""
from __future__ import annotations

from typing import Any, List, Mapping, Optional, Sequence

from storyloom.blocks.script import evaluate_script
from storyloom.errors import ScriptEvaluationError
from storyloom.schemas.blocks import BlockConfig, BlockOverride, ContextBlock, CustomBlockDefinition
from storyloom.utils.logging_config import get_logger

_logger = get_logger("storyloom.blocks")

SCRIPT_ERROR_MARKER = "Script error"


def _override_content(content: str, override: Optional[BlockOverride]) -> str:
    if override is None or override.content_mode is None or override.custom_content is None:
        return content
    if override.content_mode == "override":
        return override.custom_content
    if override.content_mode == "prepend":
        return f"{override.custom_content}\n{content}"
    return f"{content}\n{override.custom_content}"


def _is_disabled(override: Optional[BlockOverride]) -> bool:
    return override is not None and override.enabled is False


def run_script_block(definition: CustomBlockDefinition, snapshot: Mapping[str, Any]) -> str:
    """Evaluate a script block; failures come back as diagnostic content."""
    try:
        return evaluate_script(definition.content, snapshot)
    except ScriptEvaluationError as exc:
        _logger.warning(
            "Custom block script failed: %s", definition.name,
            extra={"event_type": "block_script_failed", "error": str(exc),
                   "metadata": {"block_id": definition.id}},
        )
        return f"[{SCRIPT_ERROR_MARKER} in {definition.name}: {exc}]"


def apply_block_config(
    blocks: Sequence[ContextBlock],
    config: BlockConfig,
    snapshot: Optional[Mapping[str, Any]] = None,
) -> List[ContextBlock]:
    """Apply ``config`` to ``blocks``.

    ``snapshot`` is the JSON snapshot of the context build state that script
    blocks read as ``ctx``; without one they see an empty context.
    """
    snapshot = snapshot if snapshot is not None else {}
    result: List[ContextBlock] = []

    for block in blocks:
        override = config.overrides.get(block.id)
        if _is_disabled(override):
            continue
        content = _override_content(block.content, override)
        result.append(block if content == block.content else block.model_copy(update={"content": content}))

    for definition in config.custom_blocks:
        override = config.overrides.get(definition.id)
        if definition.enabled is False or _is_disabled(override):
            continue
        if definition.type == "script":
            content = run_script_block(definition, snapshot)
            if not content.strip():
                continue
        else:
            content = definition.content
        result.append(ContextBlock(
            id=definition.id,
            role=definition.role,
            content=_override_content(content, override),
            order=definition.order,
            source="custom",
            name=definition.name,
        ))

    if config.block_order:
        positions: dict[str, int] = {}
        for position, block_id in enumerate(config.block_order):
            positions.setdefault(block_id, position)
        result = [
            block.model_copy(update={"order": positions[block.id]}) if block.id in positions else block
            for block in result
        ]

    # sorted() is stable, so ties keep encounter order. Roles never interleave
    # in the compiled messages, so system blocks lead.
    return sorted(result, key=lambda block: (block.role != "system", block.order))
