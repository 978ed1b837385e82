"""SQLite Data Access Object for progress snapshots."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from datetime import datetime
from typing import Any, Dict, Optional

from venue_planner.models.progress import AiAnalysisProgress, AnalysisStep
from venue_planner.services.progress import ProgressPublisher

log = logging.getLogger(__name__)


def init_db(db_path: str) -> None:
    """Initialize database and ensure table exists."""
    directory = os.path.dirname(db_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(db_path)
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS progress_snapshots (
            run_id TEXT PRIMARY KEY,
            event_id TEXT NOT NULL,
            current_step INTEGER NOT NULL,
            progress_percentage REAL NOT NULL,
            failed INTEGER NOT NULL DEFAULT 0,
            snapshot_json TEXT NOT NULL,
            last_updated TEXT NOT NULL
        )
        """
    )
    cur.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_progress_event_updated
            ON progress_snapshots(event_id, last_updated DESC)
        """
    )
    conn.commit()
    conn.close()


def save_snapshot(db_path: str, snapshot: AiAnalysisProgress) -> None:
    """Upsert the snapshot for its run. Older snapshots never overwrite newer ones."""
    data = snapshot.to_dict()
    conn = sqlite3.connect(db_path)
    cur = conn.cursor()
    cur.execute(
        "INSERT INTO progress_snapshots"
        " (run_id, event_id, current_step, progress_percentage, failed, snapshot_json, last_updated)"
        " VALUES (?,?,?,?,?,?,?)"
        " ON CONFLICT(run_id) DO UPDATE SET"
        "  current_step=excluded.current_step,"
        "  progress_percentage=excluded.progress_percentage,"
        "  failed=excluded.failed,"
        "  snapshot_json=excluded.snapshot_json,"
        "  last_updated=excluded.last_updated"
        " WHERE excluded.last_updated >= progress_snapshots.last_updated",
        (
            snapshot.run_id,
            snapshot.event_id,
            int(snapshot.current_step),
            snapshot.progress_percentage,
            1 if snapshot.failed else 0,
            json.dumps(data, ensure_ascii=False),
            snapshot.last_updated.isoformat(),
        ),
    )
    conn.commit()
    conn.close()


def _from_row(js: Dict[str, Any]) -> AiAnalysisProgress:
    js = dict(js)
    js["current_step"] = AnalysisStep(js["current_step"])
    js["last_updated"] = datetime.fromisoformat(js["last_updated"])
    return AiAnalysisProgress(**js)


def load_snapshot(db_path: str, run_id: str) -> Optional[AiAnalysisProgress]:
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    cur = conn.cursor()
    cur.execute("SELECT snapshot_json FROM progress_snapshots WHERE run_id=?", (run_id,))
    row = cur.fetchone()
    conn.close()
    if not row:
        return None
    return _from_row(json.loads(row["snapshot_json"]))


def load_latest_for_event(db_path: str, event_id: str) -> Optional[AiAnalysisProgress]:
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    cur = conn.cursor()
    cur.execute(
        "SELECT snapshot_json FROM progress_snapshots"
        " WHERE event_id=? ORDER BY last_updated DESC LIMIT 1",
        (event_id,),
    )
    row = cur.fetchone()
    conn.close()
    if not row:
        return None
    return _from_row(json.loads(row["snapshot_json"]))


class ProgressSnapshotDAO(ProgressPublisher):
    """Publisher that keeps the last snapshot of every run in SQLite."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        init_db(db_path)

    def publish(self, snapshot: AiAnalysisProgress) -> None:
        save_snapshot(self.db_path, snapshot)

    def get(self, run_id: str) -> Optional[AiAnalysisProgress]:
        return load_snapshot(self.db_path, run_id)

    def latest_for_event(self, event_id: str) -> Optional[AiAnalysisProgress]:
        return load_latest_for_event(self.db_path, event_id)
