"""Pydantic schemas for API request/response validation and domain snapshots."""

from agentrun.schemas.agent import AgentDefinition, ThreadMessageRead, ThreadRead
from agentrun.schemas.agent_run import (
    AgentRunRead,
    ApprovalDecision,
    ApprovalOutcome,
    ResumeRequest,
    ResumeResponse,
    RunCheckpoint,
    RunStartRequest,
    RunStatus,
    RunSummary,
    ToolCallDisposition,
    ToolCallRead,
    ToolCallRequest,
    ToolDescriptor,
)
from agentrun.schemas.trust import TrustRecordRead, TrustScope, TrustSnapshot
from agentrun.schemas.usage import Admission, BudgetWindow, UsageEventRead, UsageRead
from agentrun.schemas.workflow import TaskStatus, WorkflowApprovalPolicy, WorkflowTaskRead

__all__ = [
    "AgentDefinition",
    "ThreadMessageRead",
    "ThreadRead",
    "AgentRunRead",
    "ApprovalDecision",
    "ApprovalOutcome",
    "ResumeRequest",
    "ResumeResponse",
    "RunCheckpoint",
    "RunStartRequest",
    "RunStatus",
    "RunSummary",
    "ToolCallDisposition",
    "ToolCallRead",
    "ToolCallRequest",
    "ToolDescriptor",
    "TrustRecordRead",
    "TrustScope",
    "TrustSnapshot",
    "Admission",
    "BudgetWindow",
    "UsageEventRead",
    "UsageRead",
    "TaskStatus",
    "WorkflowApprovalPolicy",
    "WorkflowTaskRead",
]
