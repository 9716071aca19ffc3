"""Structured summary generation for compaction rounds.

The transcript handed to the model is bounded: tool results are cut to their
first 500 serialized characters and any single message body to 2000
characters, so the summarisation call itself cannot overflow on one huge
tool output.
"""

from __future__ import annotations

from collections.abc import Sequence

import structlog
from jinja2 import Template

from sandpiper.compaction.errors import SummaryGenerationError
from sandpiper.compaction.selector import summary_header
from sandpiper.llm.client import ModelClient
from sandpiper.models.config import CompactionConfig
from sandpiper.models.message import ChatMessage, TextPart, ToolCallPart, ToolResultPart
from sandpiper.tokens.estimator import serialize_value

logger = structlog.get_logger("sandpiper.compaction.summarizer")

MAX_RESULT_CHARS = 500
MAX_MESSAGE_CHARS = 2000
TRUNCATION_MARKER = "[...truncated...]"
UNKNOWN_TASK = "Unknown task"

SUMMARY_SYSTEM_PROMPT = Template("""\
You are compacting the working memory of an autonomous coding agent.
The agent will continue the task using ONLY your summary plus its most recent
messages, so anything you omit is lost.

Produce a document with exactly these sections, in this order:

{{ header }}

#### Original Task
(The original task, copied verbatim.)

#### Completed Work
| File/Component | Action | Description |
|----------------|--------|-------------|
(One row per file or component created, modified or verified.)

#### Key Technical Decisions
(Bullet list of choices made and constraints discovered.)

#### Current State
(What works right now, what is running, what was last being worked on.)

#### Pending Work
- [ ] (Checklist of what remains to be done.)

#### Errors & Resolutions
(Only if errors occurred: each error and how it was resolved. Omit this
section entirely otherwise.)

Rules:
- Start your reply with the line "{{ header }}".
- Keep exact file paths, commands, names and error messages.
- Stay under {{ max_tokens }} tokens.
""")

SUMMARY_USER_PROMPT = Template("""\
Original task:
{{ original_task }}
{% if prior_summary %}
A previous compaction round produced the summary below. Integrate it into
your new summary: carry its content forward, update anything that changed,
and do not repeat it separately.

<previous_summary>
{{ prior_summary }}
</previous_summary>
{% endif %}
Messages to summarize (compaction round {{ round }}):

<conversation>
{{ transcript }}
</conversation>
""")


def _render_body(msg: ChatMessage) -> str:
    if isinstance(msg.content, str):
        return msg.content
    pieces: list[str] = []
    for part in msg.content:
        if isinstance(part, TextPart):
            pieces.append(part.text)
        elif isinstance(part, ToolCallPart):
            pieces.append(f"[Tool: {part.tool_name}({serialize_value(part.input)})]")
        elif isinstance(part, ToolResultPart):
            output = serialize_value(part.output)
            if len(output) > MAX_RESULT_CHARS:
                output = output[:MAX_RESULT_CHARS] + "..."
            pieces.append(f"[Result: {output}]")
    return "\n".join(pieces)


def format_messages_for_summary(messages: Sequence[ChatMessage]) -> str:
    """Render messages as an indexed transcript, e.g. ``[0] USER:\\nHello``."""
    blocks: list[str] = []
    for index, msg in enumerate(messages):
        body = _render_body(msg)
        if len(body) > MAX_MESSAGE_CHARS:
            body = body[:MAX_MESSAGE_CHARS] + "\n" + TRUNCATION_MARKER
        blocks.append(f"[{index}] {msg.role.upper()}:\n{body}")
    return "\n\n".join(blocks)


def extract_original_task(messages: Sequence[ChatMessage]) -> str:
    """Return the text of the first user message, or ``"Unknown task"``."""
    for msg in messages:
        if msg.role == "user":
            return msg.text_content()
    return UNKNOWN_TASK


class SummaryGenerator:
    """
    Turns a span of messages (plus any prior summary) into replacement text.

    Makes exactly one model call per :meth:`generate`. Failures are raised as
    :class:`SummaryGenerationError`; retrying is the caller's decision.
    """

    def __init__(self, model: ModelClient, config: CompactionConfig) -> None:
        self._model = model
        self._config = config

    def build_prompts(
        self,
        to_summarize: Sequence[ChatMessage],
        prior_summary: str | None,
        original_task: str,
        round: int,
    ) -> tuple[str, str]:
        """Return the ``(system_prompt, user_prompt)`` pair for one round."""
        system_prompt = SUMMARY_SYSTEM_PROMPT.render(
            header=summary_header(round),
            max_tokens=self._config.summary_max_tokens,
        )
        user_prompt = SUMMARY_USER_PROMPT.render(
            original_task=original_task,
            prior_summary=prior_summary,
            round=round,
            transcript=format_messages_for_summary(to_summarize),
        )
        return system_prompt, user_prompt

    async def generate(
        self,
        to_summarize: Sequence[ChatMessage],
        prior_summary: str | None,
        original_task: str,
        round: int,
    ) -> str:
        """
        Produce the summary text for one compaction round.

        Raises:
            SummaryGenerationError: If the model call fails or returns nothing.
        """
        system_prompt, user_prompt = self.build_prompts(
            to_summarize, prior_summary, original_task, round
        )
        try:
            text = await self._model.generate_text(
                system_prompt,
                user_prompt,
                max_output_tokens=self._config.summary_max_tokens,
                temperature=self._config.summary_temperature,
            )
        except Exception as exc:
            logger.warning("summary_llm_failed", round=round, error=str(exc))
            raise SummaryGenerationError(round, str(exc)) from exc

        if not text or not text.strip():
            raise SummaryGenerationError(round, "model returned an empty summary")

        logger.debug(
            "summary_generated",
            round=round,
            messages=len(to_summarize),
            chained=prior_summary is not None,
            chars=len(text),
        )
        return text.strip()
