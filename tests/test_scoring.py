import os, sys
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from fakes import CENTER, make_prefs, venue

from venue_planner.models.events import EventContext
from venue_planner.models.venues import VenueRecommendation
from venue_planner.services.scoring import VenueScoringEngine, budget_tier, rank_key

CTX = EventContext(title="Team dinner", expected_headcount=4)


def candidates():
    return [
        venue("far-bar", category="bar", lat=CENTER.lat + 0.03, rating=2.0, price_level=4),
        venue("pho", rating=4.5, price_level=2),
        venue("unknown", rating=None, price_level=None),
    ]


def test_budget_tiers():
    assert budget_tier(10) == 1
    assert budget_tier(15) == 1
    assert budget_tier(25) == 2
    assert budget_tier(60) == 3
    assert budget_tier(200) == 4


def test_ranked_best_first_and_low_scores_flagged():
    engine = VenueScoringEngine(min_score=1.6, top_n=5)
    result = engine.score(candidates(), make_prefs(), CTX, [CENTER])

    ids = [r.venue_id for r in result.recommendations]
    assert ids == ["pho", "unknown", "far-bar"]
    pho, unknown, bar = result.recommendations
    assert pho.score == 3.9
    assert pho.sub_scores == {"cuisine": 1.0, "budget": 1.0, "distance": 1.0, "quality": 0.9}
    # missing rating and price score neutral
    assert unknown.score == 3.0
    assert bar.below_threshold
    assert [r.venue_id for r in result.shortlist] == ["pho", "unknown"]
    assert result.passed_threshold == 2


def test_top_n_limits_shortlist():
    engine = VenueScoringEngine(min_score=0.0, top_n=1)
    result = engine.score(candidates(), make_prefs(), CTX, [CENTER])
    assert len(result.recommendations) == 3
    assert [r.venue_id for r in result.shortlist] == ["pho"]


def test_scoring_is_deterministic():
    engine = VenueScoringEngine(min_score=1.6, top_n=5)
    first = engine.score(candidates(), make_prefs(), CTX, [CENTER])
    second = engine.score(list(reversed(candidates())), make_prefs(), CTX, [CENTER])
    assert first == second


def test_weights_scale_sub_scores():
    engine = VenueScoringEngine(min_score=0.0, top_n=5)
    prefs = make_prefs(preference_weights={"quality": 3})
    rec = engine.score_one(venue("pho", rating=4.0), prefs, CTX, [CENTER])
    assert rec.score == round(1.0 + 1.0 + 1.0 + 0.8 * 3, 4)
    assert engine.max_score(prefs) == 6.0


def test_distance_fit_penalizes_participants_outside_radius():
    engine = VenueScoringEngine(min_score=0.0, top_n=5)
    assert engine.distance_fit([], 1000) == 0.5
    assert engine.distance_fit([0.0], 0) == 1.0
    assert engine.distance_fit([10.0], 0) == 0.0
    inside = engine.distance_fit([200.0, 400.0], 1000)
    partly_outside = engine.distance_fit([200.0, 1500.0], 1000)
    assert inside > partly_outside


def test_dietary_coverage_counts_toward_match():
    engine = VenueScoringEngine(min_score=0.0, top_n=5)
    prefs = make_prefs(cuisine_types=(), dietary_restrictions=frozenset({"vegetarian", "halal"}))
    v = venue("veg", category="vegetarian")
    assert engine.preference_match(v, prefs) == 0.5
    rec = engine.score_one(v, prefs, CTX, [CENTER])
    assert any("halal" in c for c in rec.cons)


def test_reasoning_names_strong_sub_scores():
    engine = VenueScoringEngine(min_score=0.0, top_n=5)
    rec = engine.score_one(venue("pho", rating=4.8), make_prefs(), CTX, [CENTER])
    assert rec.reasoning.startswith("Strong cuisine and budget fit")
    assert any("Excellent rating" in p for p in rec.pros)


def test_capacity_below_headcount_is_a_con():
    engine = VenueScoringEngine(min_score=0.0, top_n=5)
    rec = engine.score_one(venue("tiny", capacity=2), make_prefs(), CTX, [CENTER])
    assert any("too small" in c for c in rec.cons)


def test_rank_key_breaks_ties_by_rating_then_distance():
    a = VenueRecommendation("a", "A", 3.0, "", rating=4.0, max_distance_m=900.0)
    b = VenueRecommendation("b", "B", 3.0, "", rating=4.5, max_distance_m=2000.0)
    c = VenueRecommendation("c", "C", 3.0, "", rating=4.0, max_distance_m=300.0)
    assert [r.venue_id for r in sorted([a, b, c], key=rank_key)] == ["b", "c", "a"]
