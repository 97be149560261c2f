"""SQLAlchemy models package."""

from agentrun.models.agent import Agent, Thread, ThreadMessage
from agentrun.models.agent_run import AgentRun
from agentrun.models.tool_call import ToolCall
from agentrun.models.trust_record import TrustRecord
from agentrun.models.usage_event import UsageEvent
from agentrun.models.workflow_task import WorkflowTask

__all__ = [
    "Agent",
    "Thread",
    "ThreadMessage",
    "AgentRun",
    "ToolCall",
    "TrustRecord",
    "UsageEvent",
    "WorkflowTask",
]
