"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON = sa.JSON().with_variant(JSONB(), "postgresql")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Check if tables already exist and skip if so
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = inspector.get_table_names()

    if "runs" in existing_tables:
        # Tables already exist, skip migration
        return

    # Create runs table
    op.create_table(
        "runs",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("owner_id", sa.Text, nullable=False),
        sa.Column("query", sa.Text, nullable=False),
        sa.Column("config", JSON, nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("current_iteration", sa.Integer, nullable=False, server_default="0"),
        sa.Column("progress_percentage", sa.Float, nullable=False, server_default="0"),
        sa.Column("results", JSON),
        sa.Column("error_message", sa.Text),
        sa.Column("cancel_requested", sa.Boolean, nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', 'cancelled')",
            name="ck_runs_status",
        ),
    )
    op.create_index("idx_runs_owner", "runs", ["owner_id"])
    op.create_index("idx_runs_status", "runs", ["status"])

    # Create papers table
    op.create_table(
        "papers",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("run_id", sa.Uuid, sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("paper_id", sa.Text, nullable=False),
        sa.Column("title", sa.Text, nullable=False),
        sa.Column("content_ref", sa.Text, nullable=False),
        sa.Column("metadata", JSON),
        *_timestamps(),
        sa.UniqueConstraint("run_id", "paper_id", name="uq_papers_run_paper"),
    )

    # Create iterations table
    op.create_table(
        "iterations",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("run_id", sa.Uuid, sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("iteration_number", sa.Integer, nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("gaps_found", sa.Integer, nullable=False, server_default="0"),
        sa.Column("insights", JSON),
        sa.Column("convergence_score", sa.Float),
        sa.Column("processing_time", sa.Float),
        sa.Column("error_message", sa.Text),
        *_timestamps(),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("run_id", "iteration_number", name="uq_iterations_run_number"),
    )

    # Create agents table
    op.create_table(
        "agents",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("run_id", sa.Uuid, sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("iteration_number", sa.Integer, nullable=False),
        sa.Column("agent_type", sa.Text, nullable=False),
        sa.Column("agent_id", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("input_data", JSON),
        sa.Column("output_data", JSON),
        sa.Column("error_message", sa.Text),
        sa.Column("processing_time", sa.Float),
        *_timestamps(),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("run_id", "iteration_number", "agent_id", name="uq_agents_run_iteration_agent"),
        sa.CheckConstraint("agent_type IN ('micro', 'meso', 'meta')", name="ck_agents_type"),
    )
    op.create_index("idx_agents_run_iteration_type", "agents", ["run_id", "iteration_number", "agent_type"])

    # Create results table
    op.create_table(
        "results",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("run_id", sa.Uuid, sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("agent_ref", sa.Uuid, sa.ForeignKey("agents.id", ondelete="SET NULL")),
        sa.Column("iteration_number", sa.Integer, nullable=False),
        sa.Column("result_type", sa.Text, nullable=False),
        sa.Column("data", JSON, nullable=False),
        *_timestamps(),
    )
    op.create_index("idx_results_run_iteration", "results", ["run_id", "iteration_number"])

    # Create logs table
    op.create_table(
        "logs",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("run_id", sa.Uuid, sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("agent_ref", sa.Uuid, sa.ForeignKey("agents.id", ondelete="SET NULL")),
        sa.Column("level", sa.Text, nullable=False, server_default="info"),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("metadata", JSON),
        *_timestamps(),
    )
    op.create_index("idx_logs_run_created", "logs", ["run_id", "created_at"])

    # Create contexts table
    op.create_table(
        "contexts",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("run_id", sa.Uuid, sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("agent_ref", sa.Uuid, sa.ForeignKey("agents.id", ondelete="SET NULL")),
        sa.Column("context_key", sa.Text, nullable=False),
        sa.Column("value", JSON),
        sa.Column("storage_path", sa.Text),
        sa.Column("storage_type", sa.Text, nullable=False),
        sa.Column("size_bytes", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("summary", sa.Text),
        sa.Column("metadata", JSON),
        *_timestamps(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("run_id", "context_key", "version", name="uq_contexts_run_key_version"),
    )
    # At most one active version per (run, key)
    op.create_index(
        "uq_contexts_run_key_active",
        "contexts",
        ["run_id", "context_key"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active"),
    )

    # Create context_versions table
    op.create_table(
        "context_versions",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("context_id", sa.Uuid, sa.ForeignKey("contexts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("storage_path", sa.Text),
        sa.Column("size_bytes", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("operation", sa.Text, nullable=False),
        sa.Column("modified_by_agent", sa.Uuid, sa.ForeignKey("agents.id", ondelete="SET NULL")),
        sa.Column("diff_summary", sa.Text),
        sa.Column("metadata", JSON),
        *_timestamps(),
        sa.UniqueConstraint("context_id", "version", name="uq_context_versions_context_version"),
        sa.CheckConstraint("operation IN ('create', 'append', 'overwrite')", name="ck_context_versions_operation"),
    )


def downgrade() -> None:
    op.drop_table("context_versions")
    op.drop_index("uq_contexts_run_key_active", table_name="contexts")
    op.drop_table("contexts")
    op.drop_table("logs")
    op.drop_table("results")
    op.drop_table("agents")
    op.drop_table("iterations")
    op.drop_table("papers")
    op.drop_table("runs")
