"""In-memory store of progress snapshots with TTL and LRU eviction."""

from __future__ import annotations

import copy
import threading
import time
from collections import OrderedDict
from typing import Optional

from venue_planner.models.progress import AiAnalysisProgress
from venue_planner.services.progress import ProgressPublisher


class ProgressStore(ProgressPublisher):
    """Latest snapshot per run, readable by run id or by event.

    Pollers only ever get copies. Old runs expire after ``ttl`` seconds and the
    store never holds more than ``maxsize`` runs.
    """

    def __init__(self, maxsize: int = 256, ttl: int = 60 * 60) -> None:
        self.maxsize = maxsize
        self.ttl = ttl
        self._data: "OrderedDict[str, tuple[AiAnalysisProgress, float]]" = OrderedDict()
        self._latest_run: dict = {}
        self._lock = threading.Lock()

    def _evict_expired(self) -> None:
        now = time.time()
        expired = [rid for rid, (_, ts) in self._data.items() if now - ts > self.ttl]
        for rid in expired:
            self._drop(rid)

    def _drop(self, run_id: str) -> None:
        item = self._data.pop(run_id, None)
        if item and self._latest_run.get(item[0].event_id) == run_id:
            self._latest_run.pop(item[0].event_id, None)

    def publish(self, snapshot: AiAnalysisProgress) -> None:
        with self._lock:
            self._evict_expired()
            rid = snapshot.run_id
            if rid in self._data:
                self._data.move_to_end(rid)
            self._data[rid] = (copy.deepcopy(snapshot), time.time())
            self._latest_run[snapshot.event_id] = rid
            # LRU eviction
            while len(self._data) > self.maxsize:
                oldest = next(iter(self._data))
                self._drop(oldest)

    def get(self, run_id: str) -> Optional[AiAnalysisProgress]:
        with self._lock:
            self._evict_expired()
            item = self._data.get(run_id)
            if not item:
                return None
            self._data.move_to_end(run_id)
            return copy.deepcopy(item[0])

    def latest_for_event(self, event_id: str) -> Optional[AiAnalysisProgress]:
        with self._lock:
            self._evict_expired()
            rid = self._latest_run.get(event_id)
            item = self._data.get(rid) if rid else None
            return copy.deepcopy(item[0]) if item else None

    def evict(self, run_id: str) -> None:
        with self._lock:
            self._drop(run_id)
