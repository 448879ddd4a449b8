"""Blocking directives and the hierarchy checker that enforces them."""

from .checker import BlockingChecker, current_state, current_states_by_service
from .models import (
    ENT_STATE_BLOCKED,
    ENT_STATE_CANCELLED,
    ENT_STATE_CLEAR,
    BlockableType,
    BlockingAction,
    BlockingAggregate,
    BlockingState,
)
from .repository import (
    BlockingStateRepository,
    InMemoryBlockingStateRepository,
    PostgresBlockingStateRepository,
)

__all__ = [
    "ENT_STATE_BLOCKED",
    "ENT_STATE_CANCELLED",
    "ENT_STATE_CLEAR",
    "BlockableType",
    "BlockingAction",
    "BlockingAggregate",
    "BlockingChecker",
    "BlockingState",
    "BlockingStateRepository",
    "InMemoryBlockingStateRepository",
    "PostgresBlockingStateRepository",
    "current_state",
    "current_states_by_service",
]
