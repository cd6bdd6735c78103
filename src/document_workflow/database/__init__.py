"""Persistence layer for workflow executions."""

from .transition_store import (
    InMemoryTransitionStore,
    SQLiteTransitionStore,
    TransitionStore,
    create_transition_store,
)

__all__ = [
    "TransitionStore",
    "InMemoryTransitionStore",
    "SQLiteTransitionStore",
    "create_transition_store",
]
