"""
Agent registry and invocation.

Background workers (librarian analysis, chapter summaries) are registered by
name and invoked through ``invoke_agent``. Every invocation is recorded in
the ``agent_runs`` table with its input, output, trace and outcome. Handler
failures reach the caller as ``WorkerInvocationError``; an unknown agent
name is ``NotFound``.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select

from storyloom.config import get_settings
from storyloom.database import AsyncSessionLocal
from storyloom.errors import NotFound, WorkerInvocationError
from storyloom.models import AgentRun
from storyloom.schemas.agents import AgentRunResult
from storyloom.utils.ids import generate_run_id
from storyloom.utils.logging_config import StoryAdapter, get_logger

_logger = get_logger("storyloom.agents")


@dataclass
class AgentContext:
    """What a handler gets besides its input."""
    story_id: str
    branch_id: Optional[str]
    run_id: str
    logger: StoryAdapter
    trace: List[Dict[str, Any]] = field(default_factory=list)

    def record(self, event_type: str, **data: Any) -> None:
        self.trace.append({"type": event_type, **data})


AgentHandler = Callable[[AgentContext, Dict[str, Any]], Awaitable[Dict[str, Any]]]


async def _record_run_start(run_id: str, story_id: str, branch_id: Optional[str], agent_name: str, input: dict) -> None:
    async with AsyncSessionLocal() as session:
        session.add(AgentRun(
            id=run_id,
            story_id=story_id,
            branch_id=branch_id,
            agent_name=agent_name,
            input=input,
            trace=[],
            status="running",
        ))
        await session.commit()


async def _record_run_end(
    run_id: str,
    status: str,
    trace: List[Dict[str, Any]],
    output: Optional[dict] = None,
    error: Optional[str] = None,
) -> None:
    async with AsyncSessionLocal() as session:
        run = await session.scalar(select(AgentRun).where(AgentRun.id == run_id))
        if run is None:
            return
        run.status = status
        run.output = output
        run.trace = trace
        run.error = error
        run.finished_at = datetime.now(timezone.utc)
        await session.commit()


class AgentRegistry:
    def __init__(self) -> None:
        self._handlers: Dict[str, AgentHandler] = {}

    def register(self, name: str, handler: AgentHandler) -> None:
        self._handlers[name] = handler

    def names(self) -> List[str]:
        return sorted(self._handlers)

    async def invoke(
        self,
        story_id: str,
        agent_name: str,
        input: Dict[str, Any],
        branch_id: Optional[str] = None,
    ) -> AgentRunResult:
        handler = self._handlers.get(agent_name)
        if handler is None:
            raise NotFound(f"Agent '{agent_name}' is not registered")

        run_id = generate_run_id()
        logger = StoryAdapter(_logger, story_id, branch_id=branch_id, agent=agent_name, run_id=run_id)
        ctx = AgentContext(story_id=story_id, branch_id=branch_id, run_id=run_id, logger=logger)
        timeout = get_settings().agent_timeout_seconds

        await _record_run_start(run_id, story_id, branch_id, agent_name, input)
        logger.info("Agent run started", extra={"event_type": "agent_started"})
        started = time.perf_counter()
        try:
            async with asyncio.timeout(timeout):
                output = await handler(ctx, input)
        except TimeoutError as exc:
            message = f"timed out after {timeout}s"
            await _record_run_end(run_id, "error", ctx.trace, error=message)
            raise WorkerInvocationError(agent_name, message, run_id) from exc
        except Exception as exc:
            await _record_run_end(run_id, "error", ctx.trace, error=str(exc))
            raise WorkerInvocationError(agent_name, str(exc), run_id) from exc

        output = output or {}
        await _record_run_end(run_id, "success", ctx.trace, output=output)
        logger.info(
            "Agent run finished",
            extra={"event_type": "agent_finished", "duration_ms": round((time.perf_counter() - started) * 1000, 1)},
        )
        return AgentRunResult(run_id=run_id, output=output, trace=ctx.trace)


agent_registry = AgentRegistry()


def register_agent(name: str, handler: AgentHandler) -> None:
    agent_registry.register(name, handler)


async def invoke_agent(
    story_id: str,
    agent_name: str,
    input: Dict[str, Any],
    branch_id: Optional[str] = None,
) -> AgentRunResult:
    return await agent_registry.invoke(story_id, agent_name, input, branch_id=branch_id)
