"""Partitions the active message list into a span to summarize and a span to keep.

Two rules shape the partition:

* **Tool pairing** — a ``tool`` result never becomes the first kept message,
  since it would reach the model without the call that produced it. Only the
  boundary message's own role is inspected; an assistant message whose
  multiple tool calls straddle the boundary is not re-checked.
* **Summary chaining** — a previous round's summary sitting directly after
  the system prompt is lifted out as ``prior_summary`` instead of being
  summarized again as ordinary history.
"""

from __future__ import annotations

from collections.abc import Sequence

from sandpiper.models.message import ChatMessage, Selection

SUMMARY_MARKER = "## Session Summary"
"""Literal prefix of every compaction summary message."""


def summary_header(round: int) -> str:
    """Return the first line of the summary for ``round``."""
    return f"{SUMMARY_MARKER} (Compaction Round {round})"


def is_summary_text(text: str) -> bool:
    """Return True if ``text`` is a compaction summary produced by this engine."""
    return text.startswith(SUMMARY_MARKER)


def is_summary_message(msg: ChatMessage) -> bool:
    return msg.role == "assistant" and is_summary_text(msg.text_content())


def select_messages(messages: Sequence[ChatMessage], keep_tail: int) -> Selection:
    """
    Choose which messages to summarize and which to keep verbatim.

    Args:
        messages: The full active message list; index 0 is the system prompt.
        keep_tail: Number of most recent messages that must stay intact.
            Values below zero are treated as zero.

    Returns:
        A Selection. ``to_keep`` holds the system prompt followed by the tail
        starting at ``boundary_index``; the summary message is inserted later
        by the coordinator. When nothing can be summarized safely,
        ``to_summarize`` is empty and ``to_keep`` is the whole input.
    """
    keep_tail = max(keep_tail, 0)
    everything = Selection(to_keep=list(messages))
    if len(messages) <= keep_tail + 1:
        return everything

    boundary = len(messages) - keep_tail
    while 1 < boundary < len(messages) and messages[boundary].role == "tool":
        boundary -= 1

    start = 1
    prior_summary: str | None = None
    if is_summary_message(messages[1]):
        prior_summary = messages[1].text_content()
        start = 2

    if boundary <= start:
        return everything

    return Selection(
        to_summarize=list(messages[start:boundary]),
        to_keep=[messages[0], *messages[boundary:]],
        prior_summary=prior_summary,
        boundary_index=boundary,
    )
