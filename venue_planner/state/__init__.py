"""Event lifecycle and run progress state."""

from .machine import EventStateMachine, TransitionContext, TransitionResult, Trigger
from .progress_store import ProgressStore

__all__ = [
    "EventStateMachine",
    "TransitionContext",
    "TransitionResult",
    "Trigger",
    "ProgressStore",
]
