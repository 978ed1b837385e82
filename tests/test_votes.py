import os, sys
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from datetime import timedelta

import pytest
from fakes import T0

from venue_planner.errors import VoteRejected
from venue_planner.models.events import ACCEPTED, REJECT, Event, EventState, Participant
from venue_planner.models.venues import VenueRecommendation
from venue_planner.services.votes import decide_consensus, tally_votes, validate_vote

VOTERS = ["U1", "U2", "U3", "U4", "U5"]


def voting_event(venues=("A", "B"), voters=VOTERS):
    ev = Event(
        event_id="e1",
        title="Offsite dinner",
        organizer_id="U1",
        state=EventState.VOTING,
        shortlist=tuple(VenueRecommendation(v, v, 3.0, "") for v in venues),
        voting_deadline=T0 + timedelta(hours=72),
    )
    for uid in voters:
        ev.participants[uid] = Participant(uid, status=ACCEPTED)
    return ev


def cast(ev, venue_id, values):
    for uid, value in zip(VOTERS, values):
        ev.votes[(uid, venue_id)] = value


def test_highest_total_wins_once_everyone_voted():
    ev = voting_event()
    cast(ev, "A", [5, 4, 5, 3, REJECT])
    cast(ev, "B", [2, 2, 3, 2, 2])

    decision = decide_consensus(ev, T0, quorum_ratio=0.5, rejection_threshold=0.5)

    assert decision.reached
    assert decision.winner_id == "A"
    assert decision.reason == "everyone voted"
    a, b = decision.ranked
    assert (a.total, a.numeric_votes, a.rejections) == (17, 4, 1)
    assert b.total == 11


def test_mostly_rejected_venue_is_disqualified():
    ranked, disqualified = tally_votes(
        ["A", "B"],
        {("U1", "A"): 5, ("U2", "A"): REJECT, ("U3", "A"): REJECT, ("U1", "B"): 1},
        rejection_threshold=0.5,
    )
    assert [t.venue_id for t in ranked] == ["B"]
    assert disqualified[0].venue_id == "A"
    assert disqualified[0].rejection_ratio == pytest.approx(2 / 3)


def test_exactly_half_rejected_stays_eligible():
    ranked, disqualified = tally_votes(["A"], {("U1", "A"): 4, ("U2", "A"): REJECT}, 0.5)
    assert [t.venue_id for t in ranked] == ["A"]
    assert disqualified == []


def test_tie_goes_to_higher_shortlist_rank():
    ranked, _ = tally_votes(["A", "B", "C"], {("U1", "C"): 4, ("U1", "B"): 4, ("U1", "A"): 2}, 0.5)
    assert [t.venue_id for t in ranked] == ["B", "C", "A"]


def test_votes_outside_shortlist_or_from_strangers_ignored():
    ranked, _ = tally_votes(["A"], {("U1", "A"): 3, ("U9", "A"): 5, ("U1", "Z"): 5}, 0.5, eligible=["U1"])
    assert ranked[0].total == 3


def test_waiting_until_deadline():
    ev = voting_event()
    cast(ev, "A", [5, 4])
    decision = decide_consensus(ev, T0, 0.5, 0.5)
    assert not decision.reached
    assert decision.reason == "waiting for votes"


def test_deadline_with_quorum_picks_winner():
    ev = voting_event()
    cast(ev, "A", [5, 4, 3])
    cast(ev, "B", [4])
    decision = decide_consensus(ev, ev.voting_deadline, 0.5, 0.5)
    assert decision.reached
    assert decision.winner_id == "A"
    assert decision.reason == "deadline with quorum"


def test_deadline_without_quorum_keeps_voting_open():
    ev = voting_event()
    cast(ev, "A", [5, 4])
    decision = decide_consensus(ev, ev.voting_deadline + timedelta(hours=1), 0.5, 0.5)
    assert not decision.reached
    assert decision.reason == "no quorum"


def test_all_rejected_has_no_winner():
    ev = voting_event(venues=("A",))
    cast(ev, "A", [REJECT] * 5)
    decision = decide_consensus(ev, T0, 0.5, 0.5)
    assert not decision.reached
    assert decision.reason == "every venue was rejected"


def test_empty_shortlist():
    decision = decide_consensus(voting_event(venues=()), T0, 0.5, 0.5)
    assert decision.reason == "nothing to vote on"


@pytest.mark.parametrize("raw, expected", [(3, 3), ("5", 5), (" Reject ", REJECT), ("1", 1)])
def test_validate_vote_accepts(raw, expected):
    assert validate_vote(raw) == expected


@pytest.mark.parametrize("raw", [0, 6, "7", "great", True, 2.5, None])
def test_validate_vote_rejects(raw):
    with pytest.raises(VoteRejected):
        validate_vote(raw)
