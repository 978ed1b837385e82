import os, sys
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

import threading
from datetime import timedelta

import pytest
from fakes import T0

from venue_planner.models.events import ACCEPTED, Event, EventState, Participant
from venue_planner.models.preferences import ParticipantPreference
from venue_planner.models.venues import VenueRecommendation
from venue_planner.state.machine import (
    TRANSITIONS,
    EventStateMachine,
    TransitionContext,
    Trigger,
    acceptance_reached,
    preferences_ready,
)

S, T = EventState, Trigger
REC = VenueRecommendation("pho", "Pho Hoa", 3.5, "Strong cuisine fit")


def make_event(state=S.DRAFT, accepted=("U1", "U2"), invited=(), **kw):
    ev = Event(event_id="e1", title="Dinner", organizer_id="U1", state=state, scheduled_at=T0 + timedelta(days=7), **kw)
    for uid in accepted:
        ev.participants[uid] = Participant(uid, status=ACCEPTED)
    for uid in invited:
        ev.participants[uid] = Participant(uid)
    return ev


def ctx(**kw):
    kw.setdefault("now", T0)
    return TransitionContext(**kw)


def test_table_has_no_way_out_of_terminal_states():
    for (state, _trigger) in TRANSITIONS:
        assert state not in (S.COMPLETED, S.CANCELLED)
    assert (S.CONFIRMED, T.CANCEL) not in TRANSITIONS
    assert (S.AI_RECOMMENDING, T.START_RECOMMENDING) not in TRANSITIONS


def test_start_planning_needs_title_and_schedule():
    m = EventStateMachine()
    ev = make_event()
    ev.scheduled_at = None
    assert not m.fire(ev, T.START_PLANNING, ctx()).admitted
    ev.scheduled_at = T0
    res = m.fire(ev, T.START_PLANNING, ctx())
    assert res.admitted and ev.state is S.PLANNING
    assert ev.state_entered_at[S.PLANNING] == T0


def test_send_invitations_needs_invitees():
    m = EventStateMachine()
    ev = make_event(S.PLANNING, accepted=())
    assert not m.fire(ev, T.SEND_INVITATIONS, ctx()).admitted
    ev.participants["U2"] = Participant("U2")
    assert m.fire(ev, T.SEND_INVITATIONS, ctx()).admitted
    assert ev.state is S.INVITING


def test_acceptance_threshold_and_override():
    ev = make_event(S.INVITING, accepted=("U1", "U2"), invited=("U3",))
    assert not acceptance_reached(ev, ctx(acceptance_threshold=0.7))
    assert acceptance_reached(ev, ctx(acceptance_threshold=0.6))
    assert acceptance_reached(ev, ctx(acceptance_threshold=0.7, override=True))
    ev.acceptance_threshold = 0.5
    assert acceptance_reached(ev, ctx(acceptance_threshold=0.7))


def test_start_recommending_opens_run_once_preferences_are_in():
    m = EventStateMachine()
    ev = make_event(S.GATHERING_PREFERENCES)
    ev.preferences["U1"] = ParticipantPreference("U1")
    assert not preferences_ready(ev, ctx(run_id="r1"))
    ev.preferences["U2"] = ParticipantPreference("U2")
    assert not preferences_ready(ev, ctx())  # no run id

    res = m.fire(ev, T.START_RECOMMENDING, ctx(run_id="r1"))
    assert res.admitted
    assert ev.state is S.AI_RECOMMENDING
    assert ev.active_run_id == "r1"
    # second request is a no-op while the run is in flight
    again = m.fire(ev, T.START_RECOMMENDING, ctx(run_id="r2"))
    assert not again.admitted
    assert ev.active_run_id == "r1"


def test_preference_deadline_unblocks_recommending():
    ev = make_event(S.GATHERING_PREFERENCES, preference_deadline=T0)
    assert not preferences_ready(ev, ctx(run_id="r1", now=T0 - timedelta(minutes=1)))
    assert preferences_ready(ev, ctx(run_id="r1", now=T0))


def test_recommendations_ready_publishes_for_active_run_only():
    m = EventStateMachine()
    ev = make_event(S.AI_RECOMMENDING, active_run_id="r1")
    ev.votes[("U1", "old")] = 3
    assert not m.fire(ev, T.RECOMMENDATIONS_READY, ctx(run_id="r0", shortlist=(REC,))).admitted
    assert not m.fire(ev, T.RECOMMENDATIONS_READY, ctx(run_id="r1", shortlist=())).admitted

    res = m.fire(ev, T.RECOMMENDATIONS_READY, ctx(run_id="r1", shortlist=(REC,), insight="Go local"))
    assert res.admitted
    assert ev.state is S.VOTING
    assert ev.shortlist == (REC,)
    assert ev.ai_insight == "Go local"
    assert ev.votes == {}
    assert ev.active_run_id is None
    assert ev.voting_deadline == T0 + timedelta(hours=72)


def test_recommendations_failed_returns_to_gathering_with_error():
    m = EventStateMachine()
    ev = make_event(S.AI_RECOMMENDING, active_run_id="r1")
    assert not m.fire(ev, T.RECOMMENDATIONS_FAILED, ctx(run_id="other")).admitted
    assert m.fire(ev, T.RECOMMENDATIONS_FAILED, ctx(run_id="r1")).admitted
    assert ev.state is S.GATHERING_PREFERENCES
    assert ev.last_error == "Could not generate recommendations, please retry."
    assert ev.active_run_id is None


def test_confirm_requires_shortlisted_winner():
    m = EventStateMachine()
    ev = make_event(S.VOTING, shortlist=(REC,))
    assert not m.fire(ev, T.CONFIRM, ctx(winner_id="elsewhere")).admitted
    assert m.fire(ev, T.CONFIRM, ctx(winner_id="pho")).admitted
    assert ev.state is S.CONFIRMED
    assert ev.confirmed_venue_id == "pho"
    assert not m.fire(ev, T.CANCEL, ctx()).admitted


def test_complete_after_scheduled_time():
    m = EventStateMachine()
    ev = make_event(S.CONFIRMED)
    assert not m.fire(ev, T.COMPLETE, ctx(now=ev.scheduled_at - timedelta(hours=1))).admitted
    assert m.fire(ev, T.COMPLETE, ctx(now=ev.scheduled_at)).admitted
    assert ev.state is S.COMPLETED


@pytest.mark.parametrize(
    "state",
    [S.DRAFT, S.PLANNING, S.INVITING, S.GATHERING_PREFERENCES, S.AI_RECOMMENDING, S.VOTING],
)
def test_cancel_from_every_open_state(state):
    m = EventStateMachine()
    ev = make_event(state, active_run_id="r1")
    assert m.fire(ev, T.CANCEL, ctx(reason="venue closed")).admitted
    assert ev.state is S.CANCELLED
    assert ev.cancellation_reason == "venue closed"
    assert ev.active_run_id is None
    assert not m.fire(ev, T.START_PLANNING, ctx()).admitted


def test_concurrent_start_recommending_admits_exactly_one():
    m = EventStateMachine()
    ev = make_event(S.GATHERING_PREFERENCES)
    ev.preferences["U1"] = ParticipantPreference("U1")
    ev.preferences["U2"] = ParticipantPreference("U2")

    workers = 8
    barrier = threading.Barrier(workers)
    results = []
    lock = threading.Lock()

    def attempt(i):
        barrier.wait()
        res = m.fire(ev, T.START_RECOMMENDING, ctx(run_id=f"r{i}"))
        with lock:
            results.append((i, res.admitted))

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    admitted = [i for i, ok in results if ok]
    assert len(admitted) == 1
    assert ev.active_run_id == f"r{admitted[0]}"
