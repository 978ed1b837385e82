"""One recommendation run: aggregate, source, score, re-rank.

The run works on copies of the event's inputs and returns a ``PipelineResult``;
it never writes to the event. Publishing the result is the planner's job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from venue_planner.config import Settings
from venue_planner.errors import EmptyShortlistError, PreferenceValidationError, RecommendationFailure
from venue_planner.models.events import Event
from venue_planner.models.preferences import AggregatedPreferences
from venue_planner.models.progress import AnalysisStep
from venue_planner.models.venues import GeoPoint, VenueRecommendation
from venue_planner.services.aggregation import aggregate_preferences
from venue_planner.services.geo import centroid
from venue_planner.services.progress import ProgressTracker
from venue_planner.services.reranking import Recommender
from venue_planner.services.scoring import VenueScoringEngine
from venue_planner.services.sourcing import VenueSourcer

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineResult:
    run_id: str
    preferences: AggregatedPreferences
    recommendations: Tuple[VenueRecommendation, ...]
    shortlist: Tuple[VenueRecommendation, ...]
    insight: Optional[str] = None
    suggested_category: Optional[str] = None
    suggested_tags: Tuple[str, ...] = ()
    external_failed: bool = False
    ai_applied: bool = False


def search_center(event: Event, default_center: Tuple[float, float]) -> GeoPoint:
    """Organizer's location, else participants' centroid, else the default."""

    if event.search_location is not None:
        return event.search_location
    mid = centroid(event.participant_locations())
    if mid is not None:
        return mid
    return GeoPoint(*default_center)


class RecommendationPipeline:
    def __init__(
        self,
        sourcer: VenueSourcer,
        scorer: VenueScoringEngine,
        recommender: Recommender,
        settings: Settings,
    ) -> None:
        self.sourcer = sourcer
        self.scorer = scorer
        self.recommender = recommender
        self.settings = settings

    def run(self, event: Event, tracker: ProgressTracker) -> PipelineResult:
        """Marks the tracker failed before re-raising a terminal run error."""

        try:
            return self._run(event, tracker)
        except (RecommendationFailure, PreferenceValidationError) as e:
            log.warning("Run %s for event %s failed: %s", tracker.run_id, event.event_id, e)
            tracker.fail(str(e))
            raise

    def _run(self, event: Event, tracker: ProgressTracker) -> PipelineResult:
        accepted = list(event.accepted_ids)
        records = [event.preferences[uid] for uid in accepted if uid in event.preferences]
        locations = list(event.participant_locations())
        context = event.context()

        # 1. gathering
        tracker.advance(
            AnalysisStep.GATHERING_PREFERENCES,
            preferences_collected=len(records),
            total_participants=len(accepted),
        )

        # 2. analyzing
        prefs = aggregate_preferences(
            records,
            default_budget=self.settings.default_budget,
            default_radius_m=self.settings.default_radius_m,
            participant_ids=accepted,
        )
        if not records and accepted:
            tracker.warn("No preferences submitted; using default budget and radius")
        tracker.advance(
            AnalysisStep.ANALYZING_PREFERENCES,
            preferences_analyzed=True,
            cuisine_types_identified=len(prefs.cuisine_types),
            average_budget=float(prefs.average_budget),
        )

        # 3. searching
        center = search_center(event, self.settings.default_center)
        tracker.advance(
            AnalysisStep.SEARCHING_VENUES,
            search_radius_km=round(prefs.max_distance_radius / 1000.0, 2),
        )
        sourced = self.sourcer.gather(center, prefs.max_distance_radius, prefs.cuisine_types, tracker)
        tracker.record(
            venues_found=len(sourced.candidates),
            venues_from_track_asia=sourced.from_external,
            venues_from_database=sourced.from_database,
            external_source_degraded=sourced.external_failed,
        )

        # 4. evaluating
        tracker.advance(AnalysisStep.EVALUATING_VENUES, venues_evaluated=len(sourced.candidates))
        scored = self.scorer.score(sourced.candidates, prefs, context, locations)
        tracker.record(venues_scored=len(scored.recommendations), venues_passed_threshold=scored.passed_threshold)
        if not scored.shortlist:
            raise EmptyShortlistError(
                f"none of {len(scored.recommendations)} venues reached the minimum score {self.scorer.min_score}"
            )

        # 5. AI analysis (never fails the run)
        by_id = {c.venue_id: c for c in sourced.candidates}
        outcome = self.recommender.recommend(
            scored.shortlist,
            by_id,
            prefs,
            context,
            locations,
            tracker,
            self.scorer.max_score(prefs),
        )

        # 6. final
        tracker.advance(AnalysisStep.FINAL_RECOMMENDATIONS, final_recommendations_count=len(outcome.shortlist))
        log.info(
            "Run %s for event %s finished with %d recommendations (ai=%s)",
            tracker.run_id, event.event_id, len(outcome.shortlist), outcome.ai_applied,
        )
        return PipelineResult(
            run_id=tracker.run_id,
            preferences=prefs,
            recommendations=scored.recommendations,
            shortlist=outcome.shortlist,
            insight=outcome.insight,
            suggested_category=outcome.suggested_category,
            suggested_tags=outcome.suggested_tags,
            external_failed=sourced.external_failed,
            ai_applied=outcome.ai_applied,
        )
