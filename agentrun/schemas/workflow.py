"""Workflow task schemas."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TaskStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkflowApprovalPolicy(StrEnum):
    """What an unattended run does with calls that need approval."""

    REQUIRE_APPROVAL = "require_approval"  # stay interrupted until a human resumes
    DENY_UNTRUSTED = "deny_untrusted"  # only trusted calls run
    APPROVE_ALL = "approve_all"  # approve-once every pending call


class WorkflowTaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    workflow_run_id: str | None = None
    owner_id: str
    agent_id: str
    task_type: str = "custom"
    config: dict[str, Any] = Field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    run_id: str | None = None
    thread_id: str | None = None
    output: str | None = None
    error: str | None = None
    completed_at: datetime | None = None

    @property
    def prompt(self) -> str:
        return str(self.config.get("prompt") or "")
