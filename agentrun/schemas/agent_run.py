"""Agent run schemas — run snapshot, tool calls, approvals, checkpoint."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RunStatus(StrEnum):
    """Lifecycle of a run.

    ``resumed`` is the short hop between an accepted resume and the worker
    picking the run up again.
    """

    CREATED = "created"
    STREAMING = "streaming"
    INTERRUPTED = "interrupted"
    RESUMED = "resumed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELED})


class ApprovalOutcome(StrEnum):
    DENY = "deny"
    APPROVE_ONCE = "approve-once"
    APPROVE_ALWAYS_TOOL = "approve-always-tool"
    APPROVE_ALWAYS_INTEGRATION = "approve-always-integration"

    @property
    def approves(self) -> bool:
        return self is not ApprovalOutcome.DENY


class ToolCallDisposition(StrEnum):
    PENDING = "pending"
    EXECUTED = "executed"
    FAILED = "failed"
    DENIED = "denied"
    SUPERSEDED = "superseded"


# ── Tool calls & decisions ──────────────────────────────────────────


class ToolCallRequest(BaseModel):
    """One proposed tool invocation from a model turn."""

    call_id: str
    tool_name: str
    integration_id: str | None = None
    arguments: dict[str, Any] = Field(default_factory=dict)
    # Recorded by a partial resume, applied once every pending call has one.
    decision: ApprovalOutcome | None = None


class ApprovalDecision(BaseModel):
    call_id: str
    outcome: ApprovalOutcome


class ToolDescriptor(BaseModel):
    """Capability descriptor resolved once at conversation start.

    The run engine treats ``argument_schema`` as opaque data.
    """

    name: str
    description: str = ""
    argument_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    integration_id: str | None = None
    retryable: bool = True


# ── Resumable checkpoint ────────────────────────────────────────────


class RunCheckpoint(BaseModel):
    """Everything besides status/pending calls needed to continue a run.

    Serialised to JSON on the run row so any worker process can pick it up.
    """

    system_prompt: str = ""
    model: str | None = None
    messages: list[dict[str, Any]] = Field(default_factory=list)
    tools: list[ToolDescriptor] = Field(default_factory=list)
    rounds: int = 0
    segment: int = 0
    reserved_cost: float = 0.0
    reserved_window: str | None = None  # budget window the reservation was taken in
    failure_counts: dict[str, int] = Field(default_factory=dict)


# ── Run snapshot ────────────────────────────────────────────────────


class AgentRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    thread_id: str
    agent_id: str
    status: RunStatus
    version: int = 0
    input_text: str = ""
    pending_tool_calls: list[ToolCallRequest] = Field(default_factory=list)
    accumulated_output: str = ""
    checkpoint: RunCheckpoint = Field(default_factory=RunCheckpoint)
    cancel_requested: bool = False
    tokens_input: int = 0
    tokens_output: int = 0
    cost: float = 0.0
    rounds: int = 0
    error_code: str | None = None
    failure_reason: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def undecided_calls(self) -> list[ToolCallRequest]:
        return [c for c in self.pending_tool_calls if c.decision is None]


class ToolCallRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    run_id: str
    call_id: str
    tool_name: str
    integration_id: str | None = None
    arguments: dict[str, Any] = Field(default_factory=dict)
    disposition: ToolCallDisposition = ToolCallDisposition.PENDING
    result: str | None = None
    round: int = 0


# ── API payloads ────────────────────────────────────────────────────


class RunStartRequest(BaseModel):
    agent_id: str
    message: str = Field(min_length=1)


class ResumeRequest(BaseModel):
    decisions: list[ApprovalDecision] = Field(min_length=1)


class ResumeResponse(BaseModel):
    run: AgentRunRead
    # None while the run still waits on undecided calls.
    segment: int | None = None


class RunSummary(BaseModel):
    """State fetch for a (re)connecting caller."""

    id: str
    status: RunStatus
    pending_tool_calls: list[ToolCallRequest]
    accumulated_output: str
    failure_reason: str | None = None
    segment: int
    completed_at: datetime | None = None

    @classmethod
    def from_run(cls, run: AgentRunRead) -> "RunSummary":
        return cls(
            id=run.id,
            status=run.status,
            pending_tool_calls=run.pending_tool_calls,
            accumulated_output=run.accumulated_output,
            failure_reason=run.failure_reason,
            segment=run.checkpoint.segment,
            completed_at=run.completed_at,
        )
