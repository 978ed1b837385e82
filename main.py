"""Slack entry point: event planning flow with venue recommendations.
In-memory event store (lost on restart); progress snapshots optionally kept in SQLite.
"""

import logging
import os
import sys
import threading

from dotenv import load_dotenv
from slack_bolt import App
from slack_bolt.adapter.socket_mode import SocketModeHandler

from venue_planner.blocks.venues import status_blocks
from venue_planner.config import Settings, load_settings
from venue_planner.errors import ConfigurationError
from venue_planner.flows.event_flow import GUIDE, register_event_flow
from venue_planner.services.catalog import load_catalog
from venue_planner.services.geo import TrackAsiaClient
from venue_planner.services.pipeline import RecommendationPipeline
from venue_planner.services.planner import EventPlanner
from venue_planner.services.reranking import build_recommender
from venue_planner.services.scoring import VenueScoringEngine
from venue_planner.services.sourcing import VenueSourcer
from venue_planner.state.machine import EventStateMachine
from venue_planner.state.progress_store import ProgressStore
from venue_planner.storage.dao import ProgressSnapshotDAO
from venue_planner.storage.repository import InMemoryEventRepository

load_dotenv()

REQUIRED_ENV = [
    "SLACK_BOT_TOKEN",
    "SLACK_APP_TOKEN",
]
missing = [k for k in REQUIRED_ENV if not os.environ.get(k)]
if missing:
    sys.stderr.write(f"[ERROR] Missing environment variables: {', '.join(missing)}\n")
    sys.exit(1)

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("venue_planner")

app = App(token=os.environ["SLACK_BOT_TOKEN"])
planner = None  # built at startup


def _strip_mention(text: str) -> str:
    if not text:
        return ""
    if text.startswith("<@"):
        after = text.split(">", 1)
        return after[1].strip() if len(after) == 2 else text
    return text


def build_planner(settings: Settings) -> EventPlanner:
    geo = None
    if settings.track_asia_api_key:
        geo = TrackAsiaClient(
            settings.track_asia_api_key, settings.track_asia_base_url, timeout=settings.geo_timeout_sec
        )
    else:
        log.warning("TRACKASIA_API_KEY not set; venues come from the catalog only")
    sourcer = VenueSourcer(
        load_catalog(settings.catalog_path), geo, settings.geo_timeout_sec, settings.dedup_tolerance_m
    )
    pipeline = RecommendationPipeline(
        sourcer,
        VenueScoringEngine(settings.min_score, settings.top_n),
        build_recommender(settings),
        settings,
    )
    publishers = [ProgressSnapshotDAO(settings.progress_db_path)] if settings.progress_db_path else []
    return EventPlanner(
        InMemoryEventRepository(),
        EventStateMachine(),
        pipeline,
        settings,
        geo=geo,
        progress_store=ProgressStore(),
        publishers=publishers,
    )


def _start_sweeper(p: EventPlanner, interval: float, announce=None) -> threading.Thread:
    stop = threading.Event()

    def _loop():
        while not stop.wait(interval):
            try:
                actions = p.sweep()
                if actions and announce:
                    announce(actions)
            except Exception:
                log.exception("Deadline sweep failed")

    t = threading.Thread(target=_loop, name="deadline-sweeper", daemon=True)
    t.start()
    return t


@app.event("app_mention")
def on_mention(event, say, logger):
    user = event.get("user")
    text = _strip_mention(event.get("text", "")).lower()
    current = planner.repo.latest_for_channel(event.get("channel")) if planner else None
    if current is None or text in ("", "help"):
        say(text=f"<@{user}>\n{GUIDE}", thread_ts=event.get("ts"))
        return
    say(
        text=f"<@{user}> status of {current.title}",
        blocks=status_blocks(current, planner.get_progress(current.event_id)),
        thread_ts=event.get("ts"),
    )


if __name__ == "__main__":
    try:
        settings = load_settings()
        planner = build_planner(settings)
    except ConfigurationError as e:
        sys.stderr.write(f"[ERROR] {e}\n")
        sys.exit(1)

    announce = register_event_flow(app, planner)
    _start_sweeper(planner, float(os.environ.get("SWEEP_INTERVAL_SEC", "60")), announce)

    handler = SocketModeHandler(app, os.environ["SLACK_APP_TOKEN"])
    handler.start()
