"""Model-execution provider.

The run engine drives one *turn* at a time through ``ModelProvider.stream_turn``:
an async iterator yielding ``TextDelta`` chunks as text arrives and exactly
one final ``TurnComplete`` carrying the full text, proposed tool calls and
token usage.  Closing the iterator early (``aclose()``, or cancelling the
task that iterates it) closes the upstream HTTP stream.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import uuid4

from openai import AsyncOpenAI, OpenAIError

from agentrun.config import Settings, get_settings
from agentrun.core.errors import ProviderError
from agentrun.core.logging import get_logger
from agentrun.core.tool_registry import openai_schema
from agentrun.schemas.agent_run import ToolCallRequest, ToolDescriptor

logger = get_logger(__name__)


# ── Turn items ──────────────────────────────────────────────────────


@dataclass
class TextDelta:
    text: str


@dataclass
class TurnUsage:
    input_units: int = 0
    output_units: int = 0


@dataclass
class TurnComplete:
    text: str
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    usage: TurnUsage = field(default_factory=TurnUsage)

    def assistant_message(self) -> dict[str, Any]:
        """The assistant entry to append to the conversation history."""
        message: dict[str, Any] = {"role": "assistant", "content": self.text or None}
        if self.tool_calls:
            message["tool_calls"] = [
                {
                    "id": c.call_id,
                    "type": "function",
                    "function": {"name": c.tool_name, "arguments": json.dumps(c.arguments)},
                }
                for c in self.tool_calls
            ]
        return message


TurnItem = TextDelta | TurnComplete


class ModelProvider(Protocol):
    def stream_turn(
        self,
        *,
        system_prompt: str,
        messages: Sequence[dict[str, Any]],
        tools: Sequence[ToolDescriptor],
        trust_hints: Sequence[str] = (),
        model: str | None = None,
    ) -> AsyncIterator[TurnItem]:
        ...


# ── OpenAI-compatible implementation ────────────────────────────────


def _parse_arguments(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class OpenAIModelProvider:
    """Streams chat completions from any OpenAI-compatible endpoint."""

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client or AsyncOpenAI(
            api_key=self._settings.llm_api_key,
            base_url=self._settings.llm_base_url,
        )

    def _system_content(self, system_prompt: str, trust_hints: Sequence[str]) -> str:
        if not trust_hints:
            return system_prompt
        hint = "Tools that run without asking the user first: " + ", ".join(sorted(trust_hints))
        return f"{system_prompt}\n\n{hint}" if system_prompt else hint

    async def stream_turn(
        self,
        *,
        system_prompt: str,
        messages: Sequence[dict[str, Any]],
        tools: Sequence[ToolDescriptor],
        trust_hints: Sequence[str] = (),
        model: str | None = None,
    ) -> AsyncIterator[TurnItem]:
        integrations = {t.name: t.integration_id for t in tools}
        request_messages = [
            {"role": "system", "content": self._system_content(system_prompt, trust_hints)},
            *messages,
        ]
        kwargs: dict[str, Any] = {
            "model": model or self._settings.llm_model,
            "messages": request_messages,
            "max_completion_tokens": self._settings.llm_max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            kwargs["tools"] = [openai_schema(t) for t in tools]

        try:
            stream = await self._client.chat.completions.create(**kwargs)
        except OpenAIError as e:
            logger.warning("provider_request_failed", error=str(e))
            raise ProviderError(str(e)) from e

        text = ""
        tool_calls_acc: dict[int, dict[str, str]] = {}
        usage = TurnUsage()

        try:
            async for chunk in stream:
                # Usage info (last chunk, no choices)
                if getattr(chunk, "usage", None):
                    usage = TurnUsage(
                        input_units=chunk.usage.prompt_tokens or 0,
                        output_units=chunk.usage.completion_tokens or 0,
                    )

                choice = chunk.choices[0] if chunk.choices else None
                if not choice:
                    continue
                delta = choice.delta

                if delta.content:
                    text += delta.content
                    yield TextDelta(delta.content)

                # Tool calls (incremental accumulation by index)
                if delta.tool_calls:
                    for tc in delta.tool_calls:
                        acc = tool_calls_acc.setdefault(
                            tc.index, {"id": "", "name": "", "arguments": ""}
                        )
                        if tc.id:
                            acc["id"] = tc.id
                        if tc.function and tc.function.name:
                            acc["name"] = tc.function.name
                        if tc.function and tc.function.arguments:
                            acc["arguments"] += tc.function.arguments
        except OpenAIError as e:
            logger.warning("provider_stream_failed", error=str(e))
            raise ProviderError(str(e)) from e
        finally:
            await stream.close()

        calls = [
            ToolCallRequest(
                call_id=acc["id"] or f"call_{uuid4().hex}",
                tool_name=acc["name"],
                integration_id=integrations.get(acc["name"]),
                arguments=_parse_arguments(acc["arguments"]),
            )
            for _idx, acc in sorted(tool_calls_acc.items())
        ]
        yield TurnComplete(text=text, tool_calls=calls, usage=usage)
