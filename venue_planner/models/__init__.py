"""Domain dataclasses."""

from .events import (
    ACCEPTED,
    DECLINED,
    INVITED,
    REJECT,
    TERMINAL_STATES,
    VOTE_SCALE,
    Event,
    EventContext,
    EventState,
    Participant,
)
from .preferences import PREFERENCE_CATEGORIES, AggregatedPreferences, ParticipantPreference
from .progress import AiAnalysisProgress, AnalysisStep
from .venues import GeoPoint, VenueCandidate, VenueRecommendation

__all__ = [
    "ACCEPTED",
    "DECLINED",
    "INVITED",
    "REJECT",
    "TERMINAL_STATES",
    "VOTE_SCALE",
    "Event",
    "EventContext",
    "EventState",
    "Participant",
    "PREFERENCE_CATEGORIES",
    "AggregatedPreferences",
    "ParticipantPreference",
    "AiAnalysisProgress",
    "AnalysisStep",
    "GeoPoint",
    "VenueCandidate",
    "VenueRecommendation",
]
