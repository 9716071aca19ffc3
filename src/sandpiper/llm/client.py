"""Model collaborator: the protocol the engine consumes and a litellm implementation."""

from __future__ import annotations

import json
import os
from typing import Any, Protocol, runtime_checkable

import structlog

from sandpiper.models.message import (
    AgentTurn,
    ChatMessage,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from sandpiper.tokens.estimator import serialize_value

DEFAULT_ANTHROPIC_MODEL = "anthropic/claude-sonnet-4-5"
DEFAULT_OPENAI_MODEL = "openai/gpt-4o"


class ModelInvocationError(Exception):
    """Raised when a model call fails or no model can be resolved."""


@runtime_checkable
class ModelClient(Protocol):
    """What Sandpiper needs from a language model."""

    async def generate_text(
        self,
        system_prompt: str,
        user_prompt: str,
        max_output_tokens: int,
        temperature: float,
    ) -> str: ...

    async def complete(
        self,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None,
        max_output_tokens: int,
    ) -> AgentTurn: ...


def resolve_model(explicit: str | None = None) -> str:
    """
    Pick the model string for this run.

    Priority: ``explicit`` → ``SANDPIPER_MODEL`` env var → a default for
    whichever provider key (``ANTHROPIC_API_KEY``, ``OPENAI_API_KEY``) is set.

    Raises:
        ModelInvocationError: If no API key is available.
    """
    has_anthropic = bool(os.environ.get("ANTHROPIC_API_KEY"))
    has_openai = bool(os.environ.get("OPENAI_API_KEY"))
    if not has_anthropic and not has_openai:
        raise ModelInvocationError(
            "No API key found. Set ANTHROPIC_API_KEY or OPENAI_API_KEY."
        )
    if explicit:
        return explicit
    from_env = os.environ.get("SANDPIPER_MODEL")
    if from_env:
        return from_env
    return DEFAULT_ANTHROPIC_MODEL if has_anthropic else DEFAULT_OPENAI_MODEL


def to_wire_messages(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """Convert ChatMessages to the OpenAI-style message list litellm expects."""
    wire: list[dict[str, Any]] = []
    for msg in messages:
        if isinstance(msg.content, str):
            wire.append({"role": msg.role, "content": msg.content})
            continue

        if msg.role == "tool":
            for part in msg.content:
                if isinstance(part, ToolResultPart):
                    output = part.output if isinstance(part.output, str) else serialize_value(
                        part.output
                    )
                    wire.append(
                        {"role": "tool", "tool_call_id": part.tool_call_id, "content": output}
                    )
            continue

        text = "".join(p.text for p in msg.content if isinstance(p, TextPart))
        calls = [p for p in msg.content if isinstance(p, ToolCallPart)]
        entry: dict[str, Any] = {"role": msg.role, "content": text or None}
        if calls and msg.role == "assistant":
            entry["tool_calls"] = [
                {
                    "id": call.tool_call_id,
                    "type": "function",
                    "function": {
                        "name": call.tool_name,
                        "arguments": json.dumps(call.input),
                    },
                }
                for call in calls
            ]
        elif entry["content"] is None:
            entry["content"] = ""
        wire.append(entry)
    return wire


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return {"raw": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


class LiteLLMClient:
    """
    ModelClient backed by ``litellm.acompletion``.

    Any provider litellm understands works, e.g. ``anthropic/claude-sonnet-4-5``
    or ``openai/gpt-4o``. Provider errors are re-raised as
    :class:`ModelInvocationError`.
    """

    def __init__(self, model: str) -> None:
        self._model = model
        self._logger = structlog.get_logger("sandpiper.llm").bind(model=model)

    @property
    def model(self) -> str:
        return self._model

    async def generate_text(
        self,
        system_prompt: str,
        user_prompt: str,
        max_output_tokens: int,
        temperature: float,
    ) -> str:
        response = await self._acompletion(
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            max_tokens=max_output_tokens,
            temperature=temperature,
        )
        return response.choices[0].message.content or ""

    async def complete(
        self,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None,
        max_output_tokens: int,
    ) -> AgentTurn:
        kwargs: dict[str, Any] = {
            "messages": to_wire_messages(messages),
            "max_tokens": max_output_tokens,
        }
        if tools:
            kwargs["tools"] = tools
        response = await self._acompletion(**kwargs)

        choice = response.choices[0]
        message = choice.message
        tool_calls = [
            ToolCallPart(
                tool_call_id=call.id,
                tool_name=call.function.name,
                input=_parse_arguments(call.function.arguments),
            )
            for call in (getattr(message, "tool_calls", None) or [])
        ]
        return AgentTurn(
            text=message.content or "",
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "stop",
        )

    async def _acompletion(self, **kwargs: Any) -> Any:
        import litellm

        try:
            return await litellm.acompletion(model=self._model, **kwargs)
        except Exception as exc:
            self._logger.error("llm_call_failed", error=str(exc))
            raise ModelInvocationError(str(exc)) from exc
