"""Tests for the agent registry and the librarian / chapter summary handlers.

The ADK round trip is patched out at ``run_structured_agent``; everything
else (fragment store, prose chain, run records) is real.
"""

import asyncio

import pytest
from sqlalchemy import select
from unittest.mock import AsyncMock, patch

from storyloom.agents import chapters, librarian
from storyloom.agents.builtin import register_builtin_agents
from storyloom.agents.registry import AgentContext, AgentRegistry
from storyloom.config import get_settings
from storyloom.database import AsyncSessionLocal
from storyloom.errors import InvalidOperation, NotFound, WorkerInvocationError
from storyloom.fragments import store
from storyloom.models import AgentRun
from storyloom.schemas.agents import ChapterSummary, LibrarianAnalysis
from storyloom.timeline import prose_chain
from storyloom.utils.logging_config import StoryAdapter, get_logger


async def _runs(story_id):
    async with AsyncSessionLocal() as session:
        result = await session.execute(select(AgentRun).where(AgentRun.story_id == story_id))
        return result.scalars().all()


def _ctx(story_id, branch_id=None):
    return AgentContext(
        story_id=story_id,
        branch_id=branch_id,
        run_id="ar-test",
        logger=StoryAdapter(get_logger("storyloom.tests"), story_id),
    )


# ---------------------------------------------------------------------------
# Tests: registry
# ---------------------------------------------------------------------------

class TestAgentRegistry:

    async def test_unknown_agent(self, story):
        with pytest.raises(NotFound):
            await AgentRegistry().invoke(story.id, "nobody.home", {})

    async def test_successful_run_is_recorded(self, story):
        registry = AgentRegistry()

        async def echo(ctx, input):
            ctx.record("echo", value=input["value"])
            return {"echo": input["value"], "branch": ctx.branch_id}

        registry.register("test.echo", echo)
        result = await registry.invoke(story.id, "test.echo", {"value": 7}, branch_id="main")

        assert result.output == {"echo": 7, "branch": "main"}
        assert result.trace == [{"type": "echo", "value": 7}]
        assert result.run_id.startswith("ar-")

        (run,) = await _runs(story.id)
        assert run.id == result.run_id
        assert run.status == "success"
        assert run.agent_name == "test.echo"
        assert run.input == {"value": 7}
        assert run.output == {"echo": 7, "branch": "main"}
        assert run.finished_at is not None

    async def test_failure_becomes_worker_invocation_error(self, story):
        registry = AgentRegistry()

        async def broken(ctx, input):
            raise ValueError("bad output")

        registry.register("test.broken", broken)
        with pytest.raises(WorkerInvocationError) as excinfo:
            await registry.invoke(story.id, "test.broken", {})

        assert excinfo.value.agent_name == "test.broken"
        assert "bad output" in str(excinfo.value)
        (run,) = await _runs(story.id)
        assert run.id == excinfo.value.run_id
        assert run.status == "error"
        assert run.error == "bad output"

    async def test_timeout(self, story, monkeypatch):
        monkeypatch.setattr(get_settings(), "agent_timeout_seconds", 0.05)
        registry = AgentRegistry()

        async def slow(ctx, input):
            await asyncio.sleep(1)
            return {}

        registry.register("test.slow", slow)
        with pytest.raises(WorkerInvocationError, match="timed out"):
            await registry.invoke(story.id, "test.slow", {})

    async def test_builtin_agents(self):
        registry = register_builtin_agents(AgentRegistry())
        assert registry.names() == ["chapters.summarize", "librarian.analyze"]


# ---------------------------------------------------------------------------
# Tests: librarian.analyze
# ---------------------------------------------------------------------------

class TestLibrarianAgent:

    async def test_analysis_is_stored_and_summary_applied(self, story, add_fragment):
        maren = await add_fragment(story.id, type="character", name="Maren", description="The keeper")
        earlier = await add_fragment(story.id, content="The lamp went dark.")
        fresh = await add_fragment(story.id, content="Maren relit the lamp.")
        await prose_chain.add_prose_section(story.id, earlier.id)
        await prose_chain.add_prose_section(story.id, fresh.id)

        analysis = LibrarianAnalysis(
            summary_update="Maren relit the lamp.",
            mentioned_characters=[maren.id, "ch-invented"],
        )
        with patch.object(librarian, "run_structured_agent", AsyncMock(return_value=analysis)) as run:
            registry = register_builtin_agents(AgentRegistry())
            result = await registry.invoke(story.id, librarian.AGENT_NAME, {"fragment_id": fresh.id})

        prompt = run.await_args.args[2]
        assert "## New Prose Fragment" in prompt
        assert "Maren relit the lamp." in prompt
        assert "The lamp went dark." in prompt
        assert f"{maren.id}: Maren - The keeper" in prompt
        assert run.await_args.args[3] is LibrarianAnalysis

        assert result.output["mentioned_characters"] == [maren.id]
        stored = await store.get_fragment(story.id, fresh.id)
        assert stored.meta["_librarian"]["run_id"] == result.run_id
        assert stored.meta["_librarian"]["summary_update"] == "Maren relit the lamp."
        assert (await store.get_story(story.id)).summary == "Maren relit the lamp."

    async def test_summary_not_applied_when_disabled(self, story, add_fragment):
        await store.update_story(story.id, summary="Before.", settings={"auto_apply_librarian_summary": False})
        fresh = await add_fragment(story.id, content="Something happened.")
        await prose_chain.add_prose_section(story.id, fresh.id)

        analysis = LibrarianAnalysis(summary_update="Something happened.")
        with patch.object(librarian, "run_structured_agent", AsyncMock(return_value=analysis)):
            await librarian.analyze(_ctx(story.id), {"fragment_id": fresh.id})

        assert (await store.get_story(story.id)).summary == "Before."

    async def test_edits_made_during_the_run_survive(self, story, add_fragment):
        await store.update_story(story.id, summary="Before.")
        fresh = await add_fragment(story.id, content="first draft", tags=["draft"])
        await prose_chain.add_prose_section(story.id, fresh.id)

        async def author_edits_meanwhile(*args):
            current = await store.get_fragment(story.id, fresh.id)
            await store.update_fragment(story.id, current.model_copy(update={"content": "EDITED BY AUTHOR"}))
            await store.update_story(story.id, summary="Rewritten by the author.")
            return LibrarianAnalysis(summary_update="The draft was revised.")

        with patch.object(librarian, "run_structured_agent", AsyncMock(side_effect=author_edits_meanwhile)):
            result = await register_builtin_agents(AgentRegistry()).invoke(
                story.id, librarian.AGENT_NAME, {"fragment_id": fresh.id},
            )

        stored = await store.get_fragment(story.id, fresh.id)
        assert stored.content == "EDITED BY AUTHOR"
        assert stored.tags == ["draft"]
        assert stored.meta["_librarian"]["run_id"] == result.run_id
        assert (await store.get_story(story.id)).summary == "Rewritten by the author.\nThe draft was revised."

    async def test_missing_fragment(self, story):
        with pytest.raises(NotFound):
            await librarian.analyze(_ctx(story.id), {"fragment_id": "pr-nope"})

    def test_blocks_put_story_material_in_user_turn(self, make_fragment):
        from storyloom.schemas.context import ContextBuildState
        from storyloom.schemas.fragments import StoryMeta

        state = ContextBuildState(
            story=StoryMeta(id="s1", name="T"),
            sticky_guidelines=[make_fragment("gl-a", "guideline", name="Tone", placement="system")],
        )
        blocks = librarian.create_librarian_blocks(state, make_fragment("pr-new", content="New"), [], [])
        roles = {b.id: b.role for b in blocks}
        assert roles["instructions"] == "system"
        assert roles["system-fragments"] == "user"
        assert "(No summary yet" in {b.id: b for b in blocks}["story-summary"].content


# ---------------------------------------------------------------------------
# Tests: chapters.summarize
# ---------------------------------------------------------------------------

class TestChapterSummaries:

    async def _chapter(self, story, add_fragment):
        one = await add_fragment(story.id, content="Chapter one prose.")
        two = await add_fragment(story.id, content="Chapter two prose.")
        first = await add_fragment(story.id, type="marker", name="Chapter 1")
        second = await add_fragment(story.id, type="marker", name="Chapter 2")
        await prose_chain.add_prose_section(story.id, one.id)
        await prose_chain.add_prose_section(story.id, two.id)
        await prose_chain.insert_chapter_marker(story.id, first.id, 0)
        await prose_chain.insert_chapter_marker(story.id, second.id, 2)
        return first, second

    async def test_collects_prose_up_to_next_marker(self, story, add_fragment):
        first, second = await self._chapter(story, add_fragment)
        assert await chapters.collect_chapter_prose(story.id, first.id) == ["Chapter one prose."]
        assert await chapters.collect_chapter_prose(story.id, second.id) == ["Chapter two prose."]

    async def test_summary_written_to_marker(self, story, add_fragment):
        first, _ = await self._chapter(story, add_fragment)
        summary = ChapterSummary(summary="  Maren meets the sea.  ")
        with patch.object(chapters, "run_structured_agent", AsyncMock(return_value=summary)) as run:
            output = await chapters.summarize(_ctx(story.id), {"fragment_id": first.id})

        assert output == {"fragment_id": first.id, "summary": "Maren meets the sea."}
        assert "Chapter one prose." in run.await_args.args[2]
        assert (await store.get_fragment(story.id, first.id)).content == "Maren meets the sea."

    async def test_marker_edits_during_the_run_survive(self, story, add_fragment):
        first, _ = await self._chapter(story, add_fragment)

        async def author_renames_meanwhile(*args):
            current = await store.get_fragment(story.id, first.id)
            await store.update_fragment(story.id, current.model_copy(update={"name": "Arrival", "sticky": True}))
            return ChapterSummary(summary="Maren meets the sea.")

        with patch.object(chapters, "run_structured_agent", AsyncMock(side_effect=author_renames_meanwhile)):
            await chapters.summarize(_ctx(story.id), {"fragment_id": first.id})

        stored = await store.get_fragment(story.id, first.id)
        assert stored.content == "Maren meets the sea."
        assert stored.name == "Arrival"
        assert stored.sticky is True

    async def test_not_a_marker(self, story, add_fragment):
        prose = await add_fragment(story.id, content="Just prose.")
        with pytest.raises(InvalidOperation):
            await chapters.summarize(_ctx(story.id), {"fragment_id": prose.id})

    async def test_empty_chapter(self, story, add_fragment):
        marker = await add_fragment(story.id, type="marker", name="Empty")
        await prose_chain.insert_chapter_marker(story.id, marker.id, 0)
        with pytest.raises(InvalidOperation):
            await chapters.summarize(_ctx(story.id), {"fragment_id": marker.id})

    async def test_marker_not_in_chain(self, story, add_fragment):
        marker = await add_fragment(story.id, type="marker", name="Loose")
        with pytest.raises(NotFound):
            await chapters.collect_chapter_prose(story.id, marker.id)
