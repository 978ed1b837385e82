import os, sys
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

import pytest
from fakes import CENTER, RecordingPublisher, T0, default_places, make_settings

from venue_planner.errors import EmptyShortlistError, NoCandidatesError
from venue_planner.models.events import ACCEPTED, Event, EventState, Participant
from venue_planner.models.preferences import ParticipantPreference
from venue_planner.models.progress import AnalysisStep
from venue_planner.models.venues import GeoPoint
from venue_planner.services.catalog import PlaceCatalog
from venue_planner.services.pipeline import RecommendationPipeline, search_center
from venue_planner.services.progress import ProgressTracker
from venue_planner.services.reranking import DeterministicRecommender
from venue_planner.services.scoring import VenueScoringEngine
from venue_planner.services.sourcing import VenueSourcer


def gathering_event(with_prefs=True):
    ev = Event(
        event_id="e1",
        title="Sprint dinner",
        organizer_id="U1",
        state=EventState.AI_RECOMMENDING,
        scheduled_at=T0,
        search_location=CENTER,
    )
    for uid in ("U1", "U2"):
        ev.participants[uid] = Participant(uid, status=ACCEPTED, location=CENTER)
    if with_prefs:
        ev.preferences["U1"] = ParticipantPreference("U1", cuisines=["vietnamese"], budget=20)
        ev.preferences["U2"] = ParticipantPreference("U2", cuisines=["bbq"], budget=40, radius_m=4000)
    return ev


def pipeline(places, **kw):
    settings = make_settings(**kw)
    return RecommendationPipeline(
        VenueSourcer(PlaceCatalog(places), None, external_timeout=0.5),
        VenueScoringEngine(settings.min_score, settings.top_n),
        DeterministicRecommender(),
        settings,
    )


def test_run_walks_all_six_steps():
    pub = RecordingPublisher()
    tracker = ProgressTracker("run-1", "e1", [pub])

    result = pipeline(default_places()).run(gathering_event(), tracker)

    steps = [s.current_step for s in pub.snapshots]
    assert steps == sorted(steps)
    final = tracker.snapshot()
    assert final.current_step == AnalysisStep.FINAL_RECOMMENDATIONS
    assert final.progress_percentage == 100.0
    assert final.preferences_collected == 2
    assert final.average_budget == 30.0
    assert final.search_radius_km == 4.0
    assert final.venues_from_database == final.venues_found
    assert final.final_recommendations_count == len(result.shortlist)
    assert not final.failed
    assert result.run_id == "run-1"
    assert result.shortlist
    assert len(result.recommendations) >= len(result.shortlist)


def test_missing_preferences_fall_back_to_defaults():
    tracker = ProgressTracker("run-1", "e1")
    result = pipeline(default_places()).run(gathering_event(with_prefs=False), tracker)
    assert result.preferences.average_budget == 30
    assert result.preferences.max_distance_radius == 5000
    assert any("default" in w for w in tracker.snapshot().warnings)


def test_empty_shortlist_fails_the_run():
    tracker = ProgressTracker("run-1", "e1")
    with pytest.raises(EmptyShortlistError):
        pipeline(default_places(), min_score=99.0).run(gathering_event(), tracker)
    snap = tracker.snapshot()
    assert snap.failed
    assert snap.current_step == AnalysisStep.EVALUATING_VENUES
    assert "minimum score" in snap.error


def test_no_candidates_fails_the_run():
    tracker = ProgressTracker("run-1", "e1")
    with pytest.raises(NoCandidatesError):
        pipeline([]).run(gathering_event(), tracker)
    assert tracker.snapshot().failed


def test_search_center_order():
    ev = gathering_event()
    assert search_center(ev, (0.0, 0.0)) == CENTER

    ev.search_location = None
    ev.participants["U1"].location = GeoPoint(10.0, 106.0)
    ev.participants["U2"].location = GeoPoint(11.0, 107.0)
    mid = search_center(ev, (0.0, 0.0))
    assert mid.lat == pytest.approx(10.5)
    assert mid.lng == pytest.approx(106.5)

    for p in ev.participants.values():
        p.location = None
    assert search_center(ev, (1.0, 2.0)) == GeoPoint(1.0, 2.0)
