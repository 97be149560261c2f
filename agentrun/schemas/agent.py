"""Agent definition and thread schemas (owned by the external agent store)."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class AgentDefinition(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    name: str
    system_prompt: str = ""
    model: str | None = None
    tool_names: list[str] = Field(default_factory=list)


class ThreadMessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    role: str
    content: str
    created_at: datetime | None = None


class ThreadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    agent_id: str | None = None
    messages: list[ThreadMessageRead] = Field(default_factory=list)

    def history(self, limit: int = 20) -> list[dict]:
        """Last ``limit`` messages in provider format."""
        return [{"role": m.role, "content": m.content} for m in self.messages[-limit:]]
