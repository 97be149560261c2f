"""Tool invocation classifier.

Splits the calls proposed in one model turn into those that may run
straight away and those that need the owner's approval.  A call is
auto-approved when the owner trusts its tool name or, for a call that
belongs to an integration, that integration.  Either grant is enough.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from agentrun.schemas.agent_run import ToolCallRequest
from agentrun.schemas.trust import TrustSnapshot


@dataclass
class Classification:
    auto_approved: list[ToolCallRequest] = field(default_factory=list)
    needs_approval: list[ToolCallRequest] = field(default_factory=list)


def classify(calls: Sequence[ToolCallRequest], trust: TrustSnapshot) -> Classification:
    """Partition ``calls`` preserving their proposal order."""
    result = Classification()
    for call in calls:
        if trust.trusts(call.tool_name, call.integration_id):
            result.auto_approved.append(call)
        else:
            result.needs_approval.append(call)
    return result
