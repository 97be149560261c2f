"""Centralized tool registry — single source of truth for agent tools.

Each tool has:
- A Pydantic-strict definition (name, integration, argument schema, limits)
- An OpenAI function-calling schema derived from it (passed to the model)
- An optional async handler

Tools from external integrations are only known once a connection exists,
so they register at runtime via ``register`` with whatever schema the
integration reports.  The run engine never looks inside a schema; it works
with the ``ToolDescriptor`` snapshots returned by ``descriptors()``.
"""

from __future__ import annotations

from collections.abc import Callable, Coroutine, Iterable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agentrun.core.logging import get_logger
from agentrun.schemas.agent_run import ToolDescriptor

logger = get_logger(__name__)

ToolHandler = Callable[..., Coroutine[Any, Any, Any]]


# ── Tool definition ──────────────────────────────────────────────────


class ToolDefinition(BaseModel):
    """Pydantic-strict tool registration entry."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    integration_id: str | None = None  # e.g. "gmail", None for builtins
    argument_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    retryable: bool = True  # False for tools with non-idempotent side effects
    timeout_seconds: float | None = None  # None = Settings.tool_timeout_seconds

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            argument_schema=self.argument_schema,
            integration_id=self.integration_id,
            retryable=self.retryable,
        )


def openai_schema(descriptor: ToolDescriptor) -> dict:
    """Render a descriptor as an OpenAI function-calling tool."""
    return {
        "type": "function",
        "function": {
            "name": descriptor.name,
            "description": descriptor.description,
            "parameters": descriptor.argument_schema,
        },
    }


# ── Registry ─────────────────────────────────────────────────────────


class ToolRegistry:
    """In-memory registry of available tools, keyed by name."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self._handlers: dict[str, ToolHandler] = {}

    def register(
        self,
        definition: ToolDefinition,
        handler: ToolHandler | None = None,
    ) -> None:
        self._tools[definition.name] = definition
        if handler is not None:
            self._handlers[definition.name] = handler
        logger.debug(
            "tool_registered",
            tool_name=definition.name,
            integration_id=definition.integration_id,
            has_handler=handler is not None,
        )

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)
        self._handlers.pop(name, None)

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def get_handler(self, name: str) -> ToolHandler | None:
        return self._handlers.get(name)

    def all_tools(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def by_integration(self, integration_id: str) -> list[ToolDefinition]:
        return [t for t in self._tools.values() if t.integration_id == integration_id]

    def names(self) -> set[str]:
        return set(self._tools.keys())

    def descriptors(self, names: Iterable[str] | None = None) -> list[ToolDescriptor]:
        """Resolve capability descriptors for an agent's tool list.

        Unknown names are skipped (the integration may have been
        disconnected since the agent was configured).
        """
        if names is None:
            return [t.descriptor() for t in self._tools.values()]
        result: list[ToolDescriptor] = []
        for name in names:
            tool = self._tools.get(name)
            if tool is None:
                logger.warning("tool_not_registered", tool_name=name)
                continue
            result.append(tool.descriptor())
        return result

    def openai_schemas(self, descriptors: Iterable[ToolDescriptor] | None = None) -> list[dict]:
        if descriptors is None:
            descriptors = self.descriptors()
        return [openai_schema(d) for d in descriptors]


# ── Singleton ────────────────────────────────────────────────────────

tool_registry = ToolRegistry()
