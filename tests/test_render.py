"""Tests for the builtin block renderer and message compilation."""

from storyloom.context.render import (
    WRITER_INSTRUCTIONS,
    compile_blocks,
    create_default_blocks,
    render_fragment,
)
from storyloom.schemas.blocks import ContextBlock
from storyloom.schemas.context import ContextBuildState
from storyloom.schemas.fragments import StoryMeta, StorySettings


def _state(**fields):
    story = fields.pop("story", None) or StoryMeta(id="s1", name="Test Story", description="A test story")
    return ContextBuildState(story=story, **fields)


def _ids(blocks):
    return [(b.role, b.id, b.order) for b in blocks]


class TestRenderFragment:

    def test_by_type(self, make_fragment):
        assert render_fragment(make_fragment("pr-a", content="It rained.")) == "It rained."
        assert render_fragment(make_fragment("ch-a", "character", name="Maren", content="Stubborn")) == "## Maren\nStubborn"
        assert render_fragment(make_fragment("gl-a", "guideline", name="Tone", content="Quiet")) == "**Tone**: Quiet"
        assert render_fragment(make_fragment("kn-a", "knowledge", name="Isle", content="Cold")) == "### Isle\nCold"
        assert render_fragment(make_fragment("im-a", "image", content="x")) == "[image:im-a] x"


class TestCreateDefaultBlocks:
    """Builtin block ids, roles and orders."""

    def test_minimal_state(self):
        blocks = create_default_blocks(_state())
        assert _ids(blocks) == [
            ("system", "instructions", 100),
            ("system", "tools", 200),
            ("user", "story-info", 100),
        ]
        assert blocks[0].content == WRITER_INSTRUCTIONS
        assert all(b.source == "builtin" for b in blocks)

    def test_full_state(self, make_fragment):
        state = _state(
            prose_fragments=[make_fragment("pr-a", content="It rained.")],
            chapter_markers=[make_fragment("mk-a", "marker", name="Chapter 1")],
            sticky_guidelines=[make_fragment("gl-a", "guideline", name="Tone", content="Quiet", placement="system")],
            sticky_characters=[make_fragment("ch-a", "character", name="Maren", content="Stubborn")],
            knowledge_shortlist=[make_fragment("kn-a", "knowledge", name="Isle", description="Cold rock")],
            author_input="A storm arrives",
        )
        blocks = {b.id: b for b in create_default_blocks(state)}
        assert _ids(create_default_blocks(state)) == [
            ("system", "instructions", 100),
            ("system", "tools", 200),
            ("system", "system-fragments", 300),
            ("user", "story-info", 100),
            ("user", "prose", 200),
            ("user", "chapters", 250),
            ("user", "sticky-fragments", 300),
            ("user", "shortlist", 400),
            ("user", "author-input", 600),
        ]
        assert blocks["system-fragments"].content == "## Guidelines\n**Tone**: Quiet"
        assert blocks["sticky-fragments"].content == "## Characters\n## Maren\nStubborn"
        assert blocks["prose"].content == "## Recent Prose\nIt rained."
        assert "(not summarized yet)" in blocks["chapters"].content
        assert "- kn-a: Isle - Cold rock" in blocks["shortlist"].content
        assert blocks["author-input"].content.endswith("A storm arrives")

    def test_blank_author_input_omitted(self):
        blocks = create_default_blocks(_state(author_input="   "))
        assert "author-input" not in [b.id for b in blocks]

    def test_story_summary_in_story_info(self):
        story = StoryMeta(id="s1", name="Test Story", summary="Maren found a letter.")
        info = create_default_blocks(_state(story=story))[2]
        assert info.content.startswith("## Story: Test Story")
        assert "Maren found a letter." in info.content

    def test_enabled_tools_from_settings(self):
        story = StoryMeta(id="s1", name="T", settings=StorySettings(enabled_builtin_tools=["character"]))
        tools = create_default_blocks(_state(story=story))[1].content
        assert "getCharacter(id)" in tools
        assert "listCharacters()" in tools
        assert "getGuideline" not in tools
        assert tools.endswith("- listFragmentTypes(): List all available fragment types")


class TestCompileBlocks:

    def test_one_message_per_role_system_first(self):
        blocks = [
            ContextBlock(id="b", role="user", content="second", order=2),
            ContextBlock(id="a", role="user", content="first", order=1),
            ContextBlock(id="s", role="system", content="sys", order=5),
        ]
        messages = compile_blocks(blocks)
        assert [(m.role, m.content) for m in messages] == [("system", "sys"), ("user", "first\n\nsecond")]

    def test_missing_role_is_skipped(self):
        messages = compile_blocks([ContextBlock(id="a", role="user", content="only", order=1)])
        assert [m.role for m in messages] == ["user"]
