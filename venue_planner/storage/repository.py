# venue_planner/storage/repository.py
from __future__ import annotations

import threading
from typing import Dict, List, Optional

from venue_planner.errors import EventNotFound
from venue_planner.models.events import Event


class EventRepository:
    def get(self, event_id: str) -> Event:
        raise NotImplementedError

    def save(self, event: Event) -> None:
        raise NotImplementedError

    def list(self) -> List[Event]:
        raise NotImplementedError

    def latest_for_channel(self, channel_id: str) -> Optional[Event]:
        raise NotImplementedError

    def by_thread(self, channel_id: str, thread_ts: str) -> Optional[Event]:
        raise NotImplementedError


class InMemoryEventRepository(EventRepository):
    """Process-lifetime store. One Slack thread plans one event."""

    def __init__(self) -> None:
        self._events: Dict[str, Event] = {}
        self._lock = threading.Lock()

    def get(self, event_id: str) -> Event:
        with self._lock:
            event = self._events.get(event_id)
        if event is None:
            raise EventNotFound(event_id)
        return event

    def find(self, event_id: str) -> Optional[Event]:
        with self._lock:
            return self._events.get(event_id)

    def save(self, event: Event) -> None:
        with self._lock:
            self._events[event.event_id] = event

    def list(self) -> List[Event]:
        with self._lock:
            return list(self._events.values())

    def latest_for_channel(self, channel_id: str) -> Optional[Event]:
        """Last event saved for ``channel_id`` (insertion order, later wins)."""

        latest = None
        for ev in self.list():
            if ev.channel_id == channel_id:
                latest = ev
        return latest

    def by_thread(self, channel_id: str, thread_ts: str) -> Optional[Event]:
        for ev in self.list():
            if ev.channel_id == channel_id and ev.thread_ts == thread_ts:
                return ev
        return None
