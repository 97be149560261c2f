"""Agent run model — one execution of an agent against a thread."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from agentrun.database import Base
from agentrun.schemas.agent_run import RunStatus


class AgentRun(Base):
    """Run row: status lifecycle, pending approvals and resumable checkpoint.

    ``version`` is bumped on every guarded transition; updates carry the
    version they read so two writers cannot both win.
    """

    __tablename__ = "agent_runs"

    id: Mapped[str] = mapped_column(
        PGUUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    thread_id: Mapped[str] = mapped_column(
        PGUUID(as_uuid=False),
        ForeignKey("threads.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    agent_id: Mapped[str] = mapped_column(
        PGUUID(as_uuid=False),
        ForeignKey("agents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=RunStatus.CREATED.value,
        nullable=False,
        index=True,
    )
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    input_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    accumulated_output: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Approval state + resumable checkpoint
    pending_tool_calls: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    checkpoint: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    # Usage
    tokens_input: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tokens_output: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cost: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    rounds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Error tracking
    error_code: Mapped[str | None] = mapped_column(String(50))
    failure_reason: Mapped[str | None] = mapped_column(Text)

    # Lifecycle timestamps
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
