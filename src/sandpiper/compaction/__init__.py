"""Sandpiper context compaction."""

from sandpiper.compaction.engine import CompactionCoordinator, CompactionEngine
from sandpiper.compaction.errors import (
    BoundaryMappingError,
    CompactionError,
    SummaryGenerationError,
)
from sandpiper.compaction.selector import (
    SUMMARY_MARKER,
    is_summary_message,
    is_summary_text,
    select_messages,
    summary_header,
)
from sandpiper.compaction.summarizer import (
    SummaryGenerator,
    extract_original_task,
    format_messages_for_summary,
)
from sandpiper.compaction.trigger import CompactionTrigger

__all__ = [
    "SUMMARY_MARKER",
    "BoundaryMappingError",
    "CompactionCoordinator",
    "CompactionEngine",
    "CompactionError",
    "CompactionTrigger",
    "SummaryGenerationError",
    "SummaryGenerator",
    "extract_original_task",
    "format_messages_for_summary",
    "is_summary_message",
    "is_summary_text",
    "select_messages",
    "summary_header",
]
