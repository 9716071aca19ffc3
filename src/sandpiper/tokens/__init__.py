"""Sandpiper token estimation."""

from sandpiper.tokens.estimator import MESSAGE_OVERHEAD, TokenEstimator, serialize_value

__all__ = ["MESSAGE_OVERHEAD", "TokenEstimator", "serialize_value"]
