"""Tool executor — dispatches approved tool calls to registered handlers.

Used by the run engine once a call is auto-approved or approved by the
owner.  Handles timeouts, one retry for retryable tools on transient
failure, and returns structured results; it never raises for a tool
failure, the failure goes back to the model as the tool result.
"""

from __future__ import annotations

import asyncio
import json
from typing import Protocol

from agentrun.config import Settings, get_settings
from agentrun.core.errors import ToolExecutionError
from agentrun.core.logging import get_logger
from agentrun.core.tool_registry import ToolRegistry, tool_registry
from agentrun.schemas.agent_run import ToolCallRequest

logger = get_logger(__name__)


class ToolExecutionResult:
    """Result of executing a tool call."""

    __slots__ = ("call_id", "tool_name", "success", "result", "error", "attempts")

    def __init__(
        self,
        call_id: str,
        tool_name: str,
        *,
        success: bool = True,
        result: str | dict | list | None = None,
        error: str | None = None,
        attempts: int = 1,
    ) -> None:
        self.call_id = call_id
        self.tool_name = tool_name
        self.success = success
        self.result = result
        self.error = error
        self.attempts = attempts

    def to_tool_message(self) -> str:
        """Format as a string suitable for returning to the LLM."""
        if self.error:
            return json.dumps({"error": self.error})
        if isinstance(self.result, (dict, list)):
            return json.dumps(self.result, default=str)
        return str(self.result) if self.result is not None else ""


class ToolExecutor(Protocol):
    async def execute(self, call: ToolCallRequest, *, owner_id: str) -> ToolExecutionResult:
        ...


class RegistryToolExecutor:
    """Executes calls against handlers in a ``ToolRegistry``."""

    def __init__(
        self,
        registry: ToolRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._registry = registry or tool_registry
        self._settings = settings or get_settings()

    async def execute(self, call: ToolCallRequest, *, owner_id: str) -> ToolExecutionResult:
        definition = self._registry.get(call.tool_name)
        handler = self._registry.get_handler(call.tool_name)
        if definition is None or handler is None:
            logger.warning("tool_handler_not_found", tool_name=call.tool_name)
            return ToolExecutionResult(
                call.call_id,
                call.tool_name,
                success=False,
                error=f"No handler registered for tool: {call.tool_name}",
            )

        timeout = definition.timeout_seconds or self._settings.tool_timeout_seconds
        max_attempts = self._settings.tool_max_attempts if definition.retryable else 1

        attempt = 0
        while True:
            attempt += 1
            try:
                result = await asyncio.wait_for(
                    handler(args=call.arguments, owner_id=owner_id),
                    timeout=timeout,
                )
            except TimeoutError:
                logger.warning(
                    "tool_timeout",
                    tool_name=call.tool_name,
                    timeout=timeout,
                    attempt=attempt,
                )
                error = f"Tool timed out after {timeout}s"
                transient = True
            except ToolExecutionError as e:
                logger.warning(
                    "tool_execution_failed",
                    tool_name=call.tool_name,
                    transient=e.transient,
                    attempt=attempt,
                    error=e.message,
                )
                error = e.message
                transient = e.transient
            except Exception as e:
                logger.exception("tool_execution_error", tool_name=call.tool_name)
                error = str(e) or type(e).__name__
                transient = False
            else:
                logger.info(
                    "tool_executed",
                    tool_name=call.tool_name,
                    call_id=call.call_id,
                    attempts=attempt,
                )
                return ToolExecutionResult(
                    call.call_id, call.tool_name, result=result, attempts=attempt
                )

            if not transient or attempt >= max_attempts:
                return ToolExecutionResult(
                    call.call_id,
                    call.tool_name,
                    success=False,
                    error=error,
                    attempts=attempt,
                )
