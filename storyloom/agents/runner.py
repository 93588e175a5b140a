"""Runs a single ADK agent with a structured ``output_schema`` and returns the parsed result."""
from __future__ import annotations

import uuid
from typing import Type, TypeVar

from google.adk.agents import Agent
from google.adk.runners import InMemoryRunner
from google.genai import types
from pydantic import BaseModel, ValidationError

from storyloom.agents.registry import AgentContext

ModelT = TypeVar("ModelT", bound=BaseModel)

APP_NAME = "storyloom"


def _event_text(event) -> str:
    content = getattr(event, "content", None)
    if not content or not getattr(content, "parts", None):
        return ""
    return "".join(part.text for part in content.parts if getattr(part, "text", None))


async def run_structured_agent(
    ctx: AgentContext,
    agent: Agent,
    prompt: str,
    schema: Type[ModelT],
) -> ModelT:
    """Send ``prompt`` to ``agent`` once and validate its final answer as ``schema``.

    Events are appended to ``ctx.trace``; a final answer that does not match
    the schema raises ``ValueError``.
    """
    runner = InMemoryRunner(agent=agent, app_name=APP_NAME)
    session_id = f"{ctx.run_id}-{uuid.uuid4().hex[:8]}"
    await runner.session_service.create_session(
        app_name=APP_NAME,
        user_id=ctx.story_id,
        session_id=session_id,
    )

    message = types.Content(parts=[types.Part(text=prompt)], role="user")
    final_text = ""
    async with runner:
        async for event in runner.run_async(
            user_id=ctx.story_id,
            session_id=session_id,
            new_message=message,
        ):
            text = _event_text(event)
            if getattr(event, "error_message", None):
                ctx.record("error", author=event.author, message=event.error_message)
            elif text:
                ctx.record("text", author=event.author, text=text[:500])
            if event.is_final_response() and text:
                final_text = text

    if not final_text:
        raise ValueError(f"Agent '{agent.name}' returned no final response")
    try:
        return schema.model_validate_json(final_text)
    except ValidationError as exc:
        ctx.logger.warning(
            "Agent output did not match %s", schema.__name__,
            extra={"event_type": "agent_output_invalid", "error": str(exc)},
        )
        raise ValueError(f"Agent '{agent.name}' returned invalid {schema.__name__}") from exc
