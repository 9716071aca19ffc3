"""Exceptions raised by the compaction engine."""

from __future__ import annotations


class CompactionError(Exception):
    """Base class for compaction failures that skip a compaction cycle."""


class SummaryGenerationError(CompactionError):
    """Raised when the model call fails or returns an unusable summary."""

    def __init__(self, round: int, reason: str) -> None:
        super().__init__(f"Summary generation failed for round {round}: {reason}")
        self.round = round
        self.reason = reason


class BoundaryMappingError(CompactionError):
    """Raised when an in-memory boundary index has no persisted counterpart."""

    def __init__(self, session_id: str, boundary_index: int, active_count: int) -> None:
        super().__init__(
            f"Boundary index {boundary_index} is out of range for session {session_id!r} "
            f"({active_count} active messages)"
        )
        self.session_id = session_id
        self.boundary_index = boundary_index
        self.active_count = active_count
