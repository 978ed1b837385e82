"""Recommendation strategies applied after deterministic scoring.

Two interchangeable variants exist, picked once when the app is wired:

* ``DeterministicRecommender`` keeps the scorer's shortlist as is.
* ``AiEnhancedRecommender`` asks the reasoning service to refine it under a
  hard timeout and falls back to the scorer's shortlist on timeout or error.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, replace
from typing import Mapping, Optional, Sequence, Tuple

from venue_planner.config import Settings
from venue_planner.errors import ReasoningServiceError
from venue_planner.models.events import EventContext
from venue_planner.models.preferences import AggregatedPreferences
from venue_planner.models.progress import AnalysisStep
from venue_planner.models.venues import GeoPoint, VenueCandidate, VenueRecommendation
from venue_planner.services.progress import ProgressTracker
from venue_planner.services.reasoning import (
    AiAnalysis,
    GeminiReasoningService,
    ReasoningService,
    analysis_by_venue,
)
from venue_planner.services.scoring import rank_key

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RerankOutcome:
    shortlist: Tuple[VenueRecommendation, ...]
    insight: Optional[str] = None
    suggested_category: Optional[str] = None
    suggested_tags: Tuple[str, ...] = ()
    ai_applied: bool = False


def merge_analysis(
    shortlist: Sequence[VenueRecommendation],
    analysis: AiAnalysis,
    max_score: float,
) -> Tuple[VenueRecommendation, ...]:
    """Fold AI output into new recommendation values and re-rank.

    Venue ids the service made up are ignored. Reasoning is replaced, never
    appended to; pros/cons are replaced when the service returned any.
    """

    by_id = analysis_by_venue(analysis)
    known = {r.venue_id for r in shortlist}
    unknown = sorted(set(by_id) - known)
    if unknown:
        log.info("Ignoring AI analyses for unknown venues: %s", ", ".join(unknown))

    merged = []
    for rec in shortlist:
        a = by_id.get(rec.venue_id)
        if a is None:
            merged.append(rec)
            continue
        merged.append(
            replace(
                rec,
                score=round(min(max(a.adjusted_score, 0.0), max_score), 4),
                reasoning=a.reasoning or rec.reasoning,
                pros=a.pros or rec.pros,
                cons=a.cons or rec.cons,
                suggested_category=a.suggested_category,
                suggested_tags=a.suggested_tags,
                ai_adjusted=True,
            )
        )
    merged.sort(key=rank_key)
    return tuple(merged)


class Recommender:
    def recommend(
        self,
        shortlist: Sequence[VenueRecommendation],
        candidates: Mapping[str, VenueCandidate],
        preferences: AggregatedPreferences,
        context: EventContext,
        participant_locations: Sequence[GeoPoint],
        tracker: ProgressTracker,
        max_score: float,
    ) -> RerankOutcome:
        raise NotImplementedError


class DeterministicRecommender(Recommender):
    def recommend(self, shortlist, candidates, preferences, context, participant_locations, tracker, max_score):
        tracker.advance(
            AnalysisStep.AI_ANALYSIS,
            gemini_analysis_completed=False,
            venues_analyzed_by_gemini=0,
            gemini_timeout=False,
        )
        return RerankOutcome(shortlist=tuple(shortlist))


class AiEnhancedRecommender(Recommender):
    def __init__(self, service: ReasoningService, timeout_sec: float) -> None:
        self.service = service
        self.timeout_sec = timeout_sec

    def recommend(
        self,
        shortlist: Sequence[VenueRecommendation],
        candidates: Mapping[str, VenueCandidate],
        preferences: AggregatedPreferences,
        context: EventContext,
        participant_locations: Sequence[GeoPoint],
        tracker: ProgressTracker,
        max_score: float,
    ) -> RerankOutcome:
        fallback = RerankOutcome(shortlist=tuple(shortlist))
        tracker.advance(AnalysisStep.AI_ANALYSIS, venues_analyzed_by_gemini=0)
        if not shortlist:
            tracker.record(gemini_analysis_completed=False, gemini_timeout=False)
            return fallback

        venues = [candidates[r.venue_id] for r in shortlist if r.venue_id in candidates]
        scores = {r.venue_id: r.score for r in shortlist}

        # single attempt, no retry
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ai-rerank")
        try:
            future = executor.submit(
                self.service.analyze,
                venues,
                preferences,
                context,
                list(participant_locations),
                scores,
                max_score,
            )
            try:
                analysis = future.result(timeout=self.timeout_sec)
            except FutureTimeout:
                log.warning(
                    "AI analysis timed out after %.1fs, using deterministic ranking", self.timeout_sec
                )
                tracker.record(gemini_analysis_completed=False, gemini_timeout=True)
                return fallback
            except ReasoningServiceError as e:
                log.warning("AI analysis failed, using deterministic ranking: %s", e)
                tracker.record(gemini_analysis_completed=False, gemini_timeout=False)
                return fallback
            except Exception:
                log.exception("Unexpected error in AI analysis, using deterministic ranking")
                tracker.record(gemini_analysis_completed=False, gemini_timeout=False)
                return fallback
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        merged = merge_analysis(shortlist, analysis, max_score)
        tracker.record(
            gemini_analysis_completed=True, gemini_timeout=False, venues_analyzed_by_gemini=len(venues)
        )
        return RerankOutcome(
            shortlist=merged,
            insight=analysis.overall_insight or None,
            suggested_category=analysis.suggested_event_category,
            suggested_tags=analysis.suggested_event_tags,
            ai_applied=True,
        )


def build_recommender(settings: Settings, service: Optional[ReasoningService] = None) -> Recommender:
    """Pick the variant once, from ``RECOMMENDER_MODE``."""

    if settings.recommender_mode == "deterministic":
        return DeterministicRecommender()
    if service is None:
        service = GeminiReasoningService.from_settings(settings.gemini_api_key, settings.gemini_model)
    return AiEnhancedRecommender(service, settings.ai_timeout_sec)
