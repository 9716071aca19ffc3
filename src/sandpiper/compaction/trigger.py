"""Decides when the conversation must be compacted."""

from __future__ import annotations

import math
from collections.abc import Sequence

from sandpiper.models.config import CompactionConfig
from sandpiper.models.message import ChatMessage
from sandpiper.tokens.estimator import TokenEstimator


class CompactionTrigger:
    """
    Token-budget check run before every model call.

    ``threshold = floor((context_size - system_reserve - output_reserve
    - safety_margin) * trigger_fraction)``.

    Example::

        trigger = CompactionTrigger(CompactionConfig.default(), TokenEstimator())
        trigger.threshold  # 93600
        if trigger.should_compact(messages):
            ...
    """

    def __init__(self, config: CompactionConfig, estimator: TokenEstimator) -> None:
        self._config = config
        self._estimator = estimator

    @property
    def available_budget(self) -> int:
        return self._config.available_budget

    @property
    def threshold(self) -> int:
        return math.floor(self.available_budget * self._config.trigger_fraction)

    @property
    def keep_tail(self) -> int:
        return self._config.keep_tail

    def should_compact(self, messages: Sequence[ChatMessage]) -> bool:
        """
        Return True if the conversation is at or above the trigger threshold.

        Lists of ``keep_tail + 1`` messages or fewer never trigger: after the
        system prompt and the protected tail there is nothing old to compact.
        """
        if len(messages) <= self._config.keep_tail + 1:
            return False
        return self._estimator.estimate_conversation(messages) >= self.threshold
