"""
Cluster object store contract and in-memory backend.
"""

from .base import (
    InMemoryStore,
    Store,
    WatchCallback,
    WatchEventType,
    kind_of,
    update_with_retry,
)

__all__ = [
    'InMemoryStore',
    'Store',
    'WatchCallback',
    'WatchEventType',
    'kind_of',
    'update_with_retry',
]
