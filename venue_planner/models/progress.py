from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Dict, List, Optional


class AnalysisStep(IntEnum):
    GATHERING_PREFERENCES = 1
    ANALYZING_PREFERENCES = 2
    SEARCHING_VENUES = 3
    EVALUATING_VENUES = 4
    AI_ANALYSIS = 5
    FINAL_RECOMMENDATIONS = 6


STEP_NAMES: Dict[AnalysisStep, str] = {
    AnalysisStep.GATHERING_PREFERENCES: "Collecting team preferences",
    AnalysisStep.ANALYZING_PREFERENCES: "Analyzing preferences and requirements",
    AnalysisStep.SEARCHING_VENUES: "Searching for suitable venues",
    AnalysisStep.EVALUATING_VENUES: "Evaluating and scoring venues",
    AnalysisStep.AI_ANALYSIS: "Building recommendation list",
    AnalysisStep.FINAL_RECOMMENDATIONS: "Completed",
}

STEP_PERCENTAGES: Dict[AnalysisStep, float] = {
    AnalysisStep.GATHERING_PREFERENCES: 0.0,
    AnalysisStep.ANALYZING_PREFERENCES: 20.0,
    AnalysisStep.SEARCHING_VENUES: 40.0,
    AnalysisStep.EVALUATING_VENUES: 60.0,
    AnalysisStep.AI_ANALYSIS: 80.0,
    AnalysisStep.FINAL_RECOMMENDATIONS: 100.0,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AiAnalysisProgress:
    """Live status of one pipeline run."""

    run_id: str
    event_id: str
    current_step: AnalysisStep = AnalysisStep.GATHERING_PREFERENCES
    current_step_name: str = STEP_NAMES[AnalysisStep.GATHERING_PREFERENCES]
    progress_percentage: float = 0.0

    # step 1
    preferences_collected: Optional[int] = None
    total_participants: Optional[int] = None
    # step 2
    preferences_analyzed: Optional[bool] = None
    cuisine_types_identified: Optional[int] = None
    average_budget: Optional[float] = None
    # step 3
    venues_found: Optional[int] = None
    venues_from_track_asia: Optional[int] = None
    venues_from_database: Optional[int] = None
    search_radius_km: Optional[float] = None
    external_source_degraded: Optional[bool] = None
    # step 4
    venues_evaluated: Optional[int] = None
    venues_scored: Optional[int] = None
    venues_passed_threshold: Optional[int] = None
    # step 5
    gemini_analysis_completed: Optional[bool] = None
    venues_analyzed_by_gemini: Optional[int] = None
    gemini_timeout: Optional[bool] = None
    # step 6
    final_recommendations_count: Optional[int] = None

    failed: bool = False
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    last_updated: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["current_step"] = int(self.current_step)
        data["last_updated"] = self.last_updated.isoformat()
        return data
