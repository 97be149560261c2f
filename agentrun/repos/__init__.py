"""Persistence ports (Protocols) and their SQL and in-process implementations."""

from agentrun.repos.interfaces import (
    AgentCatalog,
    RunRepository,
    ToolCallRepository,
    TrustRepository,
    UsageRepository,
    WorkflowTaskRepository,
)
from agentrun.repos.memory import (
    InMemoryAgentCatalog,
    InMemoryRunRepository,
    InMemoryToolCallRepository,
    InMemoryTrustRepository,
    InMemoryUsageRepository,
    InMemoryWorkflowTaskRepository,
)
from agentrun.repos.sql import (
    SqlAgentCatalog,
    SqlRunRepository,
    SqlToolCallRepository,
    SqlTrustRepository,
    SqlUsageRepository,
    SqlWorkflowTaskRepository,
)

__all__ = [
    "AgentCatalog",
    "RunRepository",
    "ToolCallRepository",
    "TrustRepository",
    "UsageRepository",
    "WorkflowTaskRepository",
    "InMemoryAgentCatalog",
    "InMemoryRunRepository",
    "InMemoryToolCallRepository",
    "InMemoryTrustRepository",
    "InMemoryUsageRepository",
    "InMemoryWorkflowTaskRepository",
    "SqlAgentCatalog",
    "SqlRunRepository",
    "SqlToolCallRepository",
    "SqlTrustRepository",
    "SqlUsageRepository",
    "SqlWorkflowTaskRepository",
]
