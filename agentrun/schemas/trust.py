"""Trust record schemas."""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict


class TrustScope(StrEnum):
    TOOL = "tool"
    INTEGRATION = "integration"


class TrustRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    owner_id: str
    scope: TrustScope
    key: str
    granted_at: datetime


class TrustSnapshot(BaseModel):
    """Point-in-time view of an owner's trusted tools and integrations."""

    owner_id: str
    tools: frozenset[str] = frozenset()
    integrations: frozenset[str] = frozenset()

    def trusts(self, tool_name: str, integration_id: str | None) -> bool:
        if tool_name in self.tools:
            return True
        return integration_id is not None and integration_id in self.integrations
