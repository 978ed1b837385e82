"""Storage package exposing the event repository and progress DAO helpers."""

from .dao import (
    ProgressSnapshotDAO,
    init_db,
    load_latest_for_event,
    load_snapshot,
    save_snapshot,
)
from .repository import EventRepository, InMemoryEventRepository

__all__ = [
    "ProgressSnapshotDAO",
    "init_db",
    "load_latest_for_event",
    "load_snapshot",
    "save_snapshot",
    "EventRepository",
    "InMemoryEventRepository",
]
