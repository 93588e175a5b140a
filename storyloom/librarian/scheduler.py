"""
Librarian scheduler.

Debounces prose writes per story and runs the librarian once the writes
settle. Per story the state moves ``idle -> scheduled -> running -> idle``:

* ``trigger_librarian`` (re)arms a ``loop.call_later`` timer for the story.
  A pending timer is cancelled and replaced, so only the latest fragment
  fires.
* When the timer elapses the worker runs in a background task with the
  branch captured at trigger time. If a run for the same story is still in
  progress the new one is queued and starts when the current one ends, so
  runs for a story never overlap.
* Worker failures are logged (``event_type=librarian_failed``) and
  swallowed. There is no retry; the next write re-arms the timer.
* A story that settles back to ``idle`` is dropped from the live map. Only
  its last outcome (run id or error) is kept, for the most recent
  ``OUTCOME_HISTORY_LIMIT`` stories.

The scheduler is a plain object. The app keeps one on ``app.state`` and
tests build their own with a fake worker.
"""
from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple, Union

from storyloom.config import get_settings
from storyloom.schemas.agents import LibrarianRuntimeStatus, SchedulerStatus
from storyloom.schemas.fragments import Fragment
from storyloom.utils.logging_config import StoryAdapter, get_logger

_logger = get_logger("storyloom.librarian")

LIBRARIAN_AGENT = "librarian.analyze"

# Stories whose last run outcome is kept for status reads
OUTCOME_HISTORY_LIMIT = 1024

Worker = Callable[..., Awaitable[Any]]
BranchResolver = Callable[[str], Awaitable[str]]


@dataclass
class _PendingRun:
    story_id: str
    fragment_id: str
    branch_id: Optional[str]
    handle: Optional[asyncio.TimerHandle] = None


@dataclass
class _StoryState:
    status: SchedulerStatus = "idle"
    pending: Optional[_PendingRun] = None
    queued: Optional[_PendingRun] = None
    trigger_seq: int = 0
    resolving: int = 0

    def settled(self) -> bool:
        return self.status == "idle" and self.pending is None and self.queued is None and not self.resolving


def _default_worker() -> Worker:
    from storyloom.agents.registry import invoke_agent
    return invoke_agent


def _default_branch_resolver() -> BranchResolver:
    from storyloom.timeline.branches import get_active_branch_id
    return get_active_branch_id


class LibrarianScheduler:
    def __init__(
        self,
        worker: Optional[Worker] = None,
        branch_resolver: Optional[BranchResolver] = None,
        debounce_seconds: Optional[float] = None,
        agent_name: str = LIBRARIAN_AGENT,
    ):
        self._worker = worker or _default_worker()
        self._resolve_branch = branch_resolver or _default_branch_resolver()
        self.debounce_seconds = (
            debounce_seconds if debounce_seconds is not None
            else get_settings().librarian_debounce_seconds
        )
        self.agent_name = agent_name
        # Only stories with a pending, queued, running or resolving trigger
        self._stories: Dict[str, _StoryState] = {}
        self._outcomes: OrderedDict[str, Tuple[Optional[str], Optional[str]]] = OrderedDict()
        self._tasks: Set[asyncio.Task] = set()
        self._generation = 0

    # -- scheduling ---------------------------------------------------------

    async def trigger_librarian(self, story_id: str, fragment: Union[Fragment, str]) -> None:
        """Arm (or re-arm) the debounce timer for ``story_id`` with ``fragment``."""
        fragment_id = fragment if isinstance(fragment, str) else fragment.id
        logger = StoryAdapter(_logger, story_id, fragment_id=fragment_id)
        state = self._stories.setdefault(story_id, _StoryState())
        state.trigger_seq += 1
        seq, generation = state.trigger_seq, self._generation

        state.resolving += 1
        try:
            branch_id: Optional[str] = await self._resolve_branch(story_id)
        except Exception as exc:
            logger.warning(
                "Could not resolve active branch, the run will use the branch active at run time",
                extra={"event_type": "librarian_branch_unresolved", "error": str(exc)},
            )
            branch_id = None
        finally:
            state.resolving -= 1

        # A later trigger or a clear_pending() happened while resolving
        if seq != state.trigger_seq or generation != self._generation:
            self._forget_if_settled(story_id, state)
            return

        if state.pending is not None and state.pending.handle is not None:
            state.pending.handle.cancel()

        run = _PendingRun(story_id=story_id, fragment_id=fragment_id, branch_id=branch_id)
        run.handle = asyncio.get_running_loop().call_later(self.debounce_seconds, self._on_elapsed, run)
        state.pending = run
        if state.status == "idle":
            state.status = "scheduled"
        logger.debug(
            "Librarian scheduled in %.2fs", self.debounce_seconds,
            extra={"event_type": "librarian_scheduled", "branch_id": branch_id},
        )

    def _on_elapsed(self, run: _PendingRun) -> None:
        state = self._stories.get(run.story_id)
        if state is None or state.pending is not run:
            return
        state.pending = None
        if state.status == "running":
            state.queued = run
            StoryAdapter(_logger, run.story_id, fragment_id=run.fragment_id).debug(
                "Librarian run queued behind the current one", extra={"event_type": "librarian_queued"},
            )
            return
        self._start(state, run)

    def _start(self, state: _StoryState, run: _PendingRun) -> None:
        state.status = "running"
        task = asyncio.ensure_future(self._run(state, run))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, state: _StoryState, run: _PendingRun) -> None:
        logger = StoryAdapter(_logger, run.story_id, fragment_id=run.fragment_id, branch_id=run.branch_id)
        try:
            result = await self._worker(
                story_id=run.story_id,
                agent_name=self.agent_name,
                input={"fragment_id": run.fragment_id},
                branch_id=run.branch_id,
            )
            run_id = getattr(result, "run_id", None)
            self._remember(run.story_id, run_id, None)
            logger.info("Librarian analysis finished", extra={"event_type": "librarian_finished", "run_id": run_id})
        except Exception as exc:
            self._remember(run.story_id, None, str(exc))
            logger.error(
                "Librarian analysis failed",
                exc_info=True,
                extra={"event_type": "librarian_failed", "error": str(exc)},
            )
        finally:
            follow_up, state.queued = state.queued, None
            if follow_up is not None:
                self._start(state, follow_up)
            else:
                state.status = "scheduled" if state.pending is not None else "idle"
                self._forget_if_settled(run.story_id, state)

    def _remember(self, story_id: str, run_id: Optional[str], error: Optional[str]) -> None:
        self._outcomes[story_id] = (run_id, error)
        self._outcomes.move_to_end(story_id)
        while len(self._outcomes) > OUTCOME_HISTORY_LIMIT:
            self._outcomes.popitem(last=False)

    def _forget_if_settled(self, story_id: str, state: _StoryState) -> None:
        if state.settled() and self._stories.get(story_id) is state:
            del self._stories[story_id]

    # -- control & introspection -------------------------------------------

    def clear_pending(self) -> None:
        """Cancel every armed timer and queued follow-up. Runs already in progress finish."""
        self._generation += 1
        cancelled = 0
        for story_id, state in list(self._stories.items()):
            if state.pending is not None:
                if state.pending.handle is not None:
                    state.pending.handle.cancel()
                cancelled += 1
            if state.queued is not None:
                cancelled += 1
            state.pending = None
            state.queued = None
            if state.status == "scheduled":
                state.status = "idle"
            self._forget_if_settled(story_id, state)
        if cancelled:
            _logger.info("Cleared %d pending librarian run(s)", cancelled, extra={"event_type": "librarian_cleared"})

    def get_pending_count(self) -> int:
        """Runs waiting to start: armed timers plus queued follow-ups."""
        return sum(
            (state.pending is not None) + (state.queued is not None)
            for state in self._stories.values()
        )

    def get_runtime_status(self, story_id: str) -> LibrarianRuntimeStatus:
        last_run_id, last_error = self._outcomes.get(story_id, (None, None))
        state = self._stories.get(story_id)
        if state is None:
            return LibrarianRuntimeStatus(story_id=story_id, last_run_id=last_run_id, last_error=last_error)
        return LibrarianRuntimeStatus(
            story_id=story_id,
            status=state.status,
            pending_fragment_id=state.pending.fragment_id if state.pending else None,
            queued_fragment_id=state.queued.fragment_id if state.queued else None,
            branch_id=state.pending.branch_id if state.pending else None,
            last_run_id=last_run_id,
            last_error=last_error,
        )

    async def join(self) -> None:
        """Wait for in-flight runs, including follow-ups they start."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        self.clear_pending()
        await self.join()
