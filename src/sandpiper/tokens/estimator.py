"""Conservative character-based token estimation."""

from __future__ import annotations

import json
import math
from collections.abc import Iterable
from typing import Any

from sandpiper.models.message import ChatMessage, TextPart, ToolCallPart, ToolResultPart

CHARS_PER_TOKEN = 4

MESSAGE_OVERHEAD = 2
"""Fixed per-message cost for the role and message framing."""


def serialize_value(value: Any) -> str:
    """Serialize a tool input/output the way it is sent to the model."""
    return json.dumps(value, ensure_ascii=False, default=str)


class TokenEstimator:
    """
    Heuristic token counting: ``ceil(len(text) / 4)``.

    The estimate deliberately over-counts. An unnecessary compaction costs one
    summary call; an under-count costs a context overflow from the provider.
    Exact counting is intentionally not attempted.
    """

    def estimate(self, text: str) -> int:
        """
        Estimate the token count for a string.

        Returns:
            ``ceil(len(text) / 4)``; 0 for empty text.
        """
        if not text:
            return 0
        return math.ceil(len(text) / CHARS_PER_TOKEN)

    def estimate_message(self, msg: ChatMessage) -> int:
        """
        Estimate total tokens for one message.

        Counts a fixed overhead plus every text-bearing piece: text segments,
        tool names, and the serialized form of tool inputs and outputs.
        """
        total = MESSAGE_OVERHEAD
        if isinstance(msg.content, str):
            return total + self.estimate(msg.content)

        for part in msg.content:
            if isinstance(part, TextPart):
                total += self.estimate(part.text)
            elif isinstance(part, ToolCallPart):
                total += self.estimate(part.tool_name)
                total += self.estimate(serialize_value(part.input))
            elif isinstance(part, ToolResultPart):
                total += self.estimate(part.tool_name)
                total += self.estimate(serialize_value(part.output))
        return total

    def estimate_conversation(self, messages: Iterable[ChatMessage]) -> int:
        """Sum of :meth:`estimate_message` over ``messages``. Never fails."""
        return sum(self.estimate_message(m) for m in messages)
