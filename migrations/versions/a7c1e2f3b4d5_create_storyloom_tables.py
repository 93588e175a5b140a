"""Create stories, fragments, timelines, chain_entries, block_configs and agent_runs."""
from alembic import op
import sqlalchemy as sa

revision = "a7c1e2f3b4d5"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "stories",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, server_default="Untitled Story"),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("summary", sa.Text(), nullable=False, server_default=""),
        sa.Column("settings", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_stories_id", "stories", ["id"])
    op.create_index("ix_stories_name", "stories", ["name"])

    op.create_table(
        "fragments",
        sa.Column("story_id", sa.String(), sa.ForeignKey("stories.id"), nullable=False),
        sa.Column("id", sa.String(32), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("name", sa.String(100), nullable=False, server_default=""),
        sa.Column("description", sa.String(250), nullable=False, server_default=""),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sticky", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("placement", sa.String(16), nullable=False, server_default="user"),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("story_id", "id", name="pk_fragments"),
    )
    op.create_index("ix_fragments_story_id", "fragments", ["story_id"])
    op.create_index("ix_fragments_type", "fragments", ["type"])

    op.create_table(
        "timelines",
        sa.Column("story_id", sa.String(), sa.ForeignKey("stories.id"), primary_key=True),
        sa.Column("content", sa.JSON(), nullable=True),
        sa.Column(
            "version_number",
            sa.Integer(),
            nullable=False,
            server_default="1",
            comment="Optimistic concurrency control: increment on each update",
        ),
    )

    op.create_table(
        "chain_entries",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("story_id", sa.String(), sa.ForeignKey("stories.id"), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False, server_default="prose"),
        sa.Column("variations", sa.JSON(), nullable=True),
        sa.Column("active", sa.String(32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_chain_entries_story_id", "chain_entries", ["story_id"])

    op.create_table(
        "block_configs",
        sa.Column("story_id", sa.String(), sa.ForeignKey("stories.id"), primary_key=True),
        sa.Column("content", sa.JSON(), nullable=True),
        sa.Column(
            "version_number",
            sa.Integer(),
            nullable=False,
            server_default="1",
            comment="Optimistic concurrency control: increment on each update",
        ),
    )

    op.create_table(
        "agent_runs",
        sa.Column("id", sa.String(40), primary_key=True),
        sa.Column("story_id", sa.String(), nullable=False),
        sa.Column("branch_id", sa.String(32), nullable=True),
        sa.Column("agent_name", sa.String(64), nullable=False),
        sa.Column("input", sa.JSON(), nullable=True),
        sa.Column("output", sa.JSON(), nullable=True),
        sa.Column("trace", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="running"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_agent_runs_story_id", "agent_runs", ["story_id"])
    op.create_index("ix_agent_runs_agent_name", "agent_runs", ["agent_name"])


def downgrade() -> None:
    op.drop_table("agent_runs")
    op.drop_table("block_configs")
    op.drop_table("chain_entries")
    op.drop_table("timelines")
    op.drop_table("fragments")
    op.drop_table("stories")
