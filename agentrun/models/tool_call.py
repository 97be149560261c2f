"""Tool call model — every proposed invocation and how it was resolved."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from agentrun.database import Base
from agentrun.schemas.agent_run import ToolCallDisposition


class ToolCall(Base):
    __tablename__ = "tool_calls"
    __table_args__ = (UniqueConstraint("run_id", "call_id", name="uq_tool_calls_run_call"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        PGUUID(as_uuid=False),
        ForeignKey("agent_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    call_id: Mapped[str] = mapped_column(String(128), nullable=False)
    tool_name: Mapped[str] = mapped_column(String(200), nullable=False)
    integration_id: Mapped[str | None] = mapped_column(String(200))
    arguments: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    round: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    disposition: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ToolCallDisposition.PENDING.value,
    )
    result: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
