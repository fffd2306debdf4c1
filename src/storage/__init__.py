"""Storage layer for CampusMind."""

from .key_value import (
    InMemoryStore,
    KeyValueStore,
    RateLimitStatus,
    RemoteStore,
    create_key_value_store,
    get_key_value_store,
    reset_key_value_store,
)

__all__ = [
    "KeyValueStore",
    "InMemoryStore",
    "RemoteStore",
    "RateLimitStatus",
    "create_key_value_store",
    "get_key_value_store",
    "reset_key_value_store",
]
