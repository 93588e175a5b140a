"""Domain error taxonomy.

Lookup and validation errors propagate to callers (routers translate them to
HTTP statuses). ``ScriptEvaluationError`` never leaves the block engine and
``WorkerInvocationError`` never leaves the librarian scheduler.
"""
from __future__ import annotations


class StoryloomError(Exception):
    """Base class for every error raised by the assembly core."""


class NotFound(StoryloomError):
    """A story, branch, chain entry, fragment or custom block id did not resolve."""


class InvalidOperation(StoryloomError):
    """The request is well-formed but not allowed (e.g. deleting ``main``)."""


class OutOfRange(InvalidOperation):
    """A chain entry index outside the current branch."""


class ScriptEvaluationError(StoryloomError):
    """A custom script block failed to evaluate."""


class WorkerInvocationError(StoryloomError):
    """A background agent invocation failed."""

    def __init__(self, agent_name: str, message: str, run_id: str | None = None):
        super().__init__(f"{agent_name}: {message}")
        self.agent_name = agent_name
        self.run_id = run_id


class ConcurrentWriteConflict(StoryloomError):
    """A stored record changed between read and write; the caller may retry."""
