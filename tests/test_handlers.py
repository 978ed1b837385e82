import os, sys
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

import importlib
import inspect
import json
import logging
import threading

from fakes import default_places, make_planner

from venue_planner.blocks.venues import PREFS_CALLBACK, RSVP_ACCEPT, RSVP_DECLINE, VOTE_ACTION, vote_value
from venue_planner.flows.event_flow import (
    SlackProgressPoster,
    parse_start_args,
    parse_user_ids,
    preference_from_view,
    register_event_flow,
    sweep_announcement,
)
from venue_planner.models.events import EventState
from venue_planner.models.progress import AnalysisStep
from venue_planner.models.venues import GeoPoint
from venue_planner.services.progress import ProgressTracker


class DummyApp:
    def __init__(self, *args, **kwargs):
        pass

    def event(self, *args, **kwargs):
        def decorator(func):
            return func

        return decorator

    command = view = action = event


def test_strip_mention(monkeypatch):
    monkeypatch.setenv("SLACK_BOT_TOKEN", "x")
    monkeypatch.setenv("SLACK_APP_TOKEN", "x")
    monkeypatch.setattr("slack_bolt.App", DummyApp)
    main = importlib.reload(importlib.import_module("main"))
    assert main._strip_mention("<@U123> hello") == "hello"
    assert main._strip_mention("no mention") == "no mention"


class FakeClient:
    def __init__(self):
        self.posted = []
        self.ephemeral = []
        self.views = []
        self._ts = 100

    def chat_postMessage(self, **kwargs):
        self.posted.append(kwargs)
        self._ts += 1
        return {"ok": True, "ts": f"{self._ts}.0001"}

    def chat_postEphemeral(self, **kwargs):
        self.ephemeral.append(kwargs)
        return {"ok": True}

    def views_open(self, **kwargs):
        self.views.append(kwargs)
        return {"ok": True}


class RecordingApp:
    """Collects the handlers registered by the flow so tests can call them directly."""

    def __init__(self):
        self.client = FakeClient()
        self.handlers = {}

    def _register(self, key):
        def decorator(func):
            self.handlers[key] = func
            return func

        return decorator

    def command(self, name):
        return self._register(name)

    def action(self, action_id):
        return self._register(action_id)

    def view(self, callback_id):
        return self._register(callback_id)


class Acks:
    def __init__(self):
        self.calls = []

    def __call__(self, **kwargs):
        self.calls.append(kwargs)


LOGGER = logging.getLogger("tests")


def setup_flow():
    app = RecordingApp()
    planner = make_planner(default_places())
    register_event_flow(app, planner)
    return app, planner


def call(handler, **kwargs):
    # bolt passes only the arguments a listener asks for
    wanted = inspect.signature(handler).parameters
    return handler(**{k: v for k, v in kwargs.items() if k in wanted})


def command(app, name, text, user="U1", channel="C1"):
    ack = Acks()
    said = []
    call(
        app.handlers[name],
        ack=ack,
        body={"channel_id": channel, "user_id": user, "text": text},
        client=app.client,
        logger=LOGGER,
        say=lambda **kw: said.append(kw),
    )
    assert ack.calls == [{}]
    return said


def rsvp(app, event_id, user, accept=True):
    action_id = RSVP_ACCEPT if accept else RSVP_DECLINE
    ack = Acks()
    app.handlers[action_id](
        ack=ack,
        body={"user": {"id": user}, "channel": {"id": "C1"}, "trigger_id": f"trig-{user}"},
        action={"action_id": action_id, "value": event_id},
        client=app.client,
        logger=LOGGER,
    )
    return ack


def view_values(**fields):
    values = {k: {"v": {"type": "plain_text_input", "value": v}} for k, v in fields.items() if k != "priorities"}
    if "priorities" in fields:
        values["priorities"] = {"v": {"selected_options": [{"value": p} for p in fields["priorities"]]}}
    return values


def submit_view(app, event_id, user, **fields):
    ack = Acks()
    app.handlers[PREFS_CALLBACK](
        ack=ack,
        body={"user": {"id": user}},
        view={"private_metadata": json.dumps({"event_id": event_id}), "state": {"values": view_values(**fields)}},
        client=app.client,
        logger=LOGGER,
    )
    return ack


def test_start_invite_rsvp_and_preferences():
    app, planner = setup_flow()

    command(app, "/event-start", "Team dinner | 2026-11-20 19:00 | 10.77,106.70")
    event = planner.repo.latest_for_channel("C1")
    assert event.title == "Team dinner"
    assert event.state is EventState.PLANNING
    assert event.search_location == GeoPoint(10.77, 106.70)
    assert event.thread_ts == "101.0001"

    command(app, "/event-invite", "<@U2> <@U3|bob> <@U2>")
    assert event.state is EventState.INVITING
    assert sorted(event.participants) == ["U2", "U3"]
    invite_msg = app.client.posted[-1]
    assert invite_msg["thread_ts"] == event.thread_ts
    assert invite_msg["blocks"][1]["elements"][0]["action_id"] == RSVP_ACCEPT

    rsvp(app, event.event_id, "U2")
    assert app.client.views[-1]["trigger_id"] == "trig-U2"
    assert app.client.views[-1]["view"]["callback_id"] == PREFS_CALLBACK
    rsvp(app, event.event_id, "U3", accept=False)
    assert event.participants["U3"].status == "declined"
    assert event.state is EventState.INVITING  # 1 of 2 accepted

    ack = submit_view(app, event.event_id, "U2", cuisines="bbq, seafood", budget="$40", location="10.78,106.70")
    assert ack.calls == [{}]
    assert event.preferences["U2"].cuisines == ["bbq", "seafood"]
    assert event.preferences["U2"].budget == 40
    assert event.participants["U2"].location == GeoPoint(10.78, 106.70)


def test_preference_form_errors_are_returned_to_the_modal():
    app, planner = setup_flow()
    ack = submit_view(app, "whatever", "U2", budget="lots", radius_km="-1", location="north")
    (response,) = ack.calls
    assert response["response_action"] == "errors"
    assert set(response["errors"]) == {"budget", "radius_km", "location"}


def test_start_usage_and_missing_event_messages():
    app, _ = setup_flow()
    command(app, "/event-start", "Only a title")
    assert "Usage" in app.client.ephemeral[-1]["text"]
    command(app, "/event-start", "Dinner | 2026-11-20 | not-a-place")
    assert "Location must look like" in app.client.ephemeral[-1]["text"]
    command(app, "/event-invite", "<@U2>", channel="C-empty")
    assert "No event" in app.client.ephemeral[-1]["text"]


def test_status_and_cancel_commands():
    app, planner = setup_flow()
    command(app, "/event-start", "Team dinner | 2026-11-20 19:00")
    event = planner.repo.latest_for_channel("C1")

    said = command(app, "/event-status", "")
    assert said[0]["blocks"][0]["text"]["text"] == "Team dinner"

    command(app, "/event-cancel", "budget freeze", user="U2")
    assert "organizer" in app.client.ephemeral[-1]["text"]
    command(app, "/event-cancel", "budget freeze")
    assert event.state is EventState.CANCELLED
    assert "budget freeze" in app.client.posted[-1]["text"]


def test_recommend_then_vote_to_confirmation():
    app, planner = setup_flow()
    command(app, "/event-start", "Team dinner | 2026-11-20 19:00 | 10.7769,106.7009")
    event = planner.repo.latest_for_channel("C1")
    command(app, "/event-invite", "<@U1> <@U2>")
    for uid in ("U1", "U2"):
        rsvp(app, event.event_id, uid)
        submit_view(app, event.event_id, uid, cuisines="vietnamese", budget="25")
    assert event.state is EventState.GATHERING_PREFERENCES

    command(app, "/event-recommend", "")
    for t in threading.enumerate():
        if t.name == f"recommend-{event.event_id}":
            t.join(timeout=10)
    assert event.state is EventState.VOTING
    assert "Please vote" in app.client.posted[-1]["text"]

    for uid in ("U1", "U2"):
        for vid in event.shortlist_ids():
            app.handlers[VOTE_ACTION](
                ack=Acks(),
                body={"user": {"id": uid}, "channel": {"id": "C1"}},
                action={"selected_option": {"value": vote_value(event.event_id, vid, 4)}},
                client=app.client,
                logger=LOGGER,
            )
    assert event.state is EventState.CONFIRMED
    assert "Voting is done" in app.client.posted[-1]["text"]


def test_progress_poster_posts_once_per_step():
    app, planner = setup_flow()
    command(app, "/event-start", "Team dinner | 2026-11-20 19:00")
    event = planner.repo.latest_for_channel("C1")
    poster = next(p for p in planner.publishers if isinstance(p, SlackProgressPoster))
    before = len(app.client.posted)

    tracker = ProgressTracker("run-x", event.event_id, [poster])
    tracker.record(venues_found=3)
    assert len(app.client.posted) == before + 1
    assert app.client.posted[-1]["thread_ts"] == event.thread_ts


def test_progress_poster_forgets_finished_runs():
    app, planner = setup_flow()
    command(app, "/event-start", "Team dinner | 2026-11-20 19:00")
    event = planner.repo.latest_for_channel("C1")
    poster = next(p for p in planner.publishers if isinstance(p, SlackProgressPoster))

    done = ProgressTracker("run-done", event.event_id, [poster])
    done.advance(AnalysisStep.SEARCHING_VENUES)
    assert "run-done" in poster._last_step
    done.advance(AnalysisStep.FINAL_RECOMMENDATIONS)

    broken = ProgressTracker("run-broken", event.event_id, [poster])
    broken.advance(AnalysisStep.GATHERING_PREFERENCES)
    broken.fail("catalog offline")

    assert poster._last_step == {}


def test_sweep_results_are_announced_in_the_event_thread():
    app = RecordingApp()
    planner = make_planner(default_places())
    announce = register_event_flow(app, planner)
    command(app, "/event-start", "Team dinner | 2026-11-20 19:00 | 10.7769,106.7009")
    event = planner.repo.latest_for_channel("C1")
    command(app, "/event-invite", "<@U1> <@U2>")
    for uid in ("U1", "U2"):
        rsvp(app, event.event_id, uid)
    submit_view(app, event.event_id, "U1", cuisines="vietnamese", budget="25")
    event.preference_deadline = planner.clock()

    actions = planner.sweep()
    assert actions == [(event.event_id, "recommended")]
    announce(actions)

    msg = app.client.posted[-1]
    assert msg["channel"] == "C1"
    assert msg["thread_ts"] == event.thread_ts
    assert "Please vote" in msg["text"]
    menus = {b["accessory"]["action_id"] for b in msg["blocks"] if "accessory" in b}
    assert menus == {VOTE_ACTION}

    before = len(app.client.posted)
    announce([("no-such-event", "cancelled")])
    assert len(app.client.posted) == before

    event.confirmed_venue_id = event.shortlist_ids()[0]
    text, blocks = sweep_announcement(event, "confirmed")
    assert event.shortlist[0].venue_name in text
    assert blocks is None
    event.cancellation_reason = "Only 1 of 4 accepted by the RSVP deadline"
    assert "Only 1 of 4" in sweep_announcement(event, "cancelled")[0]


def test_parsers():
    title, when, where = parse_start_args("Offsite | 2026-12-01")
    assert title == "Offsite"
    assert when.year == 2026 and when.tzinfo is not None
    assert where is None
    assert parse_user_ids("<@U1> hi <@U2|ann> <@U1>") == ["U1", "U2"]

    pref, loc, errors = preference_from_view("U5", view_values(radius_km="2.5", priorities=["budget", "quality"]))
    assert errors == {}
    assert pref.radius_m == 2500
    assert pref.weight_hints == {"budget": 1, "quality": 1}
    assert loc is None
