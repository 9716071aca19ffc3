"""Sandpiper model collaborator."""

from sandpiper.llm.client import (
    LiteLLMClient,
    ModelClient,
    ModelInvocationError,
    resolve_model,
    to_wire_messages,
)

__all__ = [
    "LiteLLMClient",
    "ModelClient",
    "ModelInvocationError",
    "resolve_model",
    "to_wire_messages",
]
