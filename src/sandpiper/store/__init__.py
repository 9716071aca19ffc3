"""Sandpiper persistence layer."""

from sandpiper.store.pool import StorePool
from sandpiper.store.session_store import (
    DuplicateIDError,
    SandpiperStoreError,
    SessionNotFoundError,
    SessionStore,
    StaleRoundError,
)

__all__ = [
    "DuplicateIDError",
    "SandpiperStoreError",
    "SessionNotFoundError",
    "SessionStore",
    "StaleRoundError",
    "StorePool",
]
