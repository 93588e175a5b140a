"""Shared fixtures: a throwaway SQLite database and a ready-made story."""

import os
import tempfile

import pytest

_TMP = tempfile.mkdtemp(prefix="storyloom-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TMP, 'test.db')}"
os.environ["LOG_FILE"] = os.path.join(_TMP, "test.log")
os.environ["LIBRARIAN_DEBOUNCE_SECONDS"] = "0.05"

from storyloom.database import create_all, drop_all, engine  # noqa: E402
from storyloom.fragments import store  # noqa: E402
from storyloom.schemas.fragments import Fragment, FragmentCreate, StoryMeta  # noqa: E402
from storyloom.timeline.branches import init_timeline  # noqa: E402
from storyloom.utils.story_locks import story_locks  # noqa: E402


@pytest.fixture
async def db():
    """Fresh tables for every test that touches storage."""
    story_locks.reset()
    await drop_all()
    await create_all()
    yield
    story_locks.reset()
    # Pooled aiosqlite connections belong to this test's event loop
    await engine.dispose()


@pytest.fixture
async def story(db) -> StoryMeta:
    meta = await store.create_story("The Lighthouse Keeper", "Letters arrive from the sea.")
    await init_timeline(meta.id)
    return meta


@pytest.fixture
def make_fragment():
    """Build an in-memory fragment without touching storage."""
    def _make(fragment_id: str, type: str = "prose", **fields) -> Fragment:
        return Fragment(id=fragment_id, type=type, **fields)
    return _make


@pytest.fixture
def add_fragment(db):
    """Persist a fragment in a story."""
    async def _add(story_id: str, type: str = "prose", content: str = "", **fields) -> Fragment:
        return await store.create_fragment(story_id, FragmentCreate(type=type, content=content, **fields))
    return _add
