"""
Structured JSON logging configuration for StoryLoom.

All log records are emitted as single-line JSON objects to both the
configured log file and stderr.

Usage::

    from storyloom.utils.logging_config import get_logger

    logger = get_logger(__name__)
    logger.info("context built", extra={"story_id": sid, "duration_ms": 12})

For code paths that act on one story, derive a story-scoped adapter and
narrow it further with ``child``::

    from storyloom.utils.logging_config import get_logger, StoryAdapter

    raw = get_logger("storyloom.librarian")
    logger = StoryAdapter(raw, story_id="abc-123")
    run_logger = logger.child(fragment_id="pr-bakomi")
    run_logger.info("analysis started")   # includes story_id and fragment_id
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, MutableMapping


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------

_EXTRA_KEYS = (
    "story_id", "branch_id", "fragment_id", "event_type", "agent",
    "run_id", "duration_ms", "error", "metadata",
)


class JSONFormatter(logging.Formatter):
    """Emits each record as a single-line JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in _EXTRA_KEYS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


# ---------------------------------------------------------------------------
# StoryAdapter: attaches story_id (and derived context) to every log call
# ---------------------------------------------------------------------------

class StoryAdapter(logging.LoggerAdapter):
    """Logger adapter that injects ``story_id`` into every record."""

    def __init__(self, logger: logging.Logger, story_id: str, **context: Any):
        super().__init__(logger, {"story_id": story_id, **context})

    def child(self, **context: Any) -> "StoryAdapter":
        """Derive an adapter carrying this adapter's context plus ``context``."""
        merged = {**self.extra, **context}
        story_id = merged.pop("story_id")
        return StoryAdapter(self.logger, story_id, **merged)

    def process(
        self,
        msg: str,
        kwargs: MutableMapping[str, Any],
    ) -> tuple[str, MutableMapping[str, Any]]:
        extra = kwargs.setdefault("extra", {})
        for key, value in self.extra.items():
            extra.setdefault(key, value)
        return msg, kwargs


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------

_CONFIGURED = False


def setup_logging(log_file: str | None = None, level: int | str | None = None) -> None:
    """Configure the root ``storyloom`` logger with JSON handlers.

    Safe to call multiple times; only the first call has effect.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return
    _CONFIGURED = True

    from storyloom.config import get_settings
    settings = get_settings()

    root = logging.getLogger("storyloom")
    root.setLevel(level or settings.log_level)
    root.propagate = False

    formatter = JSONFormatter()

    fh = logging.FileHandler(log_file or settings.log_file, encoding="utf-8")
    fh.setFormatter(formatter)
    root.addHandler(fh)

    # Stderr handler for docker / systemd journal visibility
    sh = logging.StreamHandler(sys.stderr)
    sh.setFormatter(formatter)
    sh.setLevel(logging.WARNING)
    root.addHandler(sh)


def get_logger(name: str = "storyloom") -> logging.Logger:
    """Return a child logger under the ``storyloom`` namespace.

    Automatically calls :func:`setup_logging` on first use.
    """
    setup_logging()
    if name.startswith("storyloom"):
        return logging.getLogger(name)
    return logging.getLogger(f"storyloom.{name}")
