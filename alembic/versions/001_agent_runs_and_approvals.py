"""Agent runs, tool-call approvals, trust store and usage ledger.

Revision ID: 001
Revises:
Create Date: 2026-10-19

Tables:
- agents, threads, thread_messages: read by the run engine
- agent_runs: status lifecycle, pending approvals, resumable checkpoint
- tool_calls: every proposed call and its disposition
- trust_records: per-owner "always allow" grants
- usage_events: append-only consumption ledger
- workflow_tasks: workflow steps bridged onto agent runs
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=False),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def upgrade() -> None:
    # --- agents ---
    op.create_table(
        "agents",
        _uuid_pk(),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("system_prompt", sa.Text(), nullable=False, server_default=""),
        sa.Column("model", sa.String(100), nullable=True),
        sa.Column("tool_names", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
    )
    op.create_index("ix_agents_owner_id", "agents", ["owner_id"])

    # --- threads ---
    op.create_table(
        "threads",
        _uuid_pk(),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column(
            "agent_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("agents.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
    )
    op.create_index("ix_threads_owner_id", "threads", ["owner_id"])

    # --- thread_messages ---
    op.create_table(
        "thread_messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "thread_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("threads.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("run_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
    )
    op.create_index("ix_thread_messages_thread_id", "thread_messages", ["thread_id"])

    # --- agent_runs ---
    op.create_table(
        "agent_runs",
        _uuid_pk(),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column(
            "thread_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("threads.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "agent_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("agents.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(20), nullable=False, server_default="created"),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("input_text", sa.Text(), nullable=False, server_default=""),
        sa.Column("accumulated_output", sa.Text(), nullable=False, server_default=""),
        sa.Column(
            "pending_tool_calls",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("checkpoint", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("tokens_input", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tokens_output", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("cost", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("rounds", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_code", sa.String(50), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
    )
    op.create_index("ix_agent_runs_owner_id", "agent_runs", ["owner_id"])
    op.create_index("ix_agent_runs_thread_id", "agent_runs", ["thread_id"])
    op.create_index("ix_agent_runs_agent_id", "agent_runs", ["agent_id"])
    op.create_index("ix_agent_runs_status", "agent_runs", ["status"])

    # --- tool_calls ---
    op.create_table(
        "tool_calls",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "run_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("agent_runs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("call_id", sa.String(128), nullable=False),
        sa.Column("tool_name", sa.String(200), nullable=False),
        sa.Column("integration_id", sa.String(200), nullable=True),
        sa.Column("arguments", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("round", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "disposition",
            sa.String(20),
            nullable=False,
            server_default="pending",
            comment="pending|executed|failed|denied|superseded",
        ),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_tool_calls_run_id", "tool_calls", ["run_id"])
    op.create_unique_constraint("uq_tool_calls_run_call", "tool_calls", ["run_id", "call_id"])

    # --- trust_records ---
    op.create_table(
        "trust_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("scope", sa.String(20), nullable=False, comment="tool|integration"),
        sa.Column("key", sa.String(200), nullable=False),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_trust_records_owner_id", "trust_records", ["owner_id"])
    op.create_unique_constraint(
        "uq_trust_records_owner_scope_key", "trust_records", ["owner_id", "scope", "key"],
    )

    # --- usage_events ---
    op.create_table(
        "usage_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("run_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("model", sa.String(100), nullable=True),
        sa.Column("input_units", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("output_units", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("cost", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_usage_events_run_id", "usage_events", ["run_id"])
    op.create_index("ix_usage_events_owner_occurred", "usage_events", ["owner_id", "occurred_at"])

    # --- workflow_tasks ---
    op.create_table(
        "workflow_tasks",
        _uuid_pk(),
        sa.Column("workflow_run_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column(
            "agent_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("agents.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("task_type", sa.String(50), nullable=False, server_default="custom"),
        sa.Column("config", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column(
            "status",
            sa.String(20),
            nullable=False,
            server_default="pending",
            comment="pending|running|completed|failed",
        ),
        sa.Column("run_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("thread_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("output", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_workflow_tasks_workflow_run_id", "workflow_tasks", ["workflow_run_id"])
    op.create_index("ix_workflow_tasks_owner_id", "workflow_tasks", ["owner_id"])
    op.create_index("ix_workflow_tasks_run_id", "workflow_tasks", ["run_id"])


def downgrade() -> None:
    op.drop_table("workflow_tasks")
    op.drop_table("usage_events")
    op.drop_table("trust_records")
    op.drop_table("tool_calls")
    op.drop_table("agent_runs")
    op.drop_table("thread_messages")
    op.drop_table("threads")
    op.drop_table("agents")
