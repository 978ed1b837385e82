from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from venue_planner.models.preferences import ParticipantPreference
from venue_planner.models.venues import GeoPoint, VenueRecommendation


class EventState(str, Enum):
    DRAFT = "draft"
    PLANNING = "planning"
    INVITING = "inviting"
    GATHERING_PREFERENCES = "gathering_preferences"
    AI_RECOMMENDING = "ai_recommending"
    VOTING = "voting"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({EventState.COMPLETED, EventState.CANCELLED})

INVITED = "invited"
ACCEPTED = "accepted"
DECLINED = "declined"

# A vote is 1..5, or REJECT. REJECT is not a score: it never adds to a tally.
VOTE_SCALE = range(1, 6)
REJECT = "reject"
VoteValue = Union[int, str]


@dataclass(frozen=True)
class EventContext:
    """Event metadata handed to the scorer and the AI service."""

    title: str
    event_type: str = ""
    description: str = ""
    scheduled_at: Optional[datetime] = None
    expected_headcount: int = 0


@dataclass
class Participant:
    user_id: str
    status: str = INVITED
    location: Optional[GeoPoint] = None


@dataclass
class Event:
    """Lifecycle-relevant view of a team event."""

    event_id: str
    title: str
    organizer_id: str
    state: EventState = EventState.DRAFT
    scheduled_at: Optional[datetime] = None
    expected_headcount: int = 0
    description: str = ""
    event_type: str = ""

    # where to search; falls back to the participants' centroid
    search_location: Optional[GeoPoint] = None
    acceptance_threshold: Optional[float] = None

    participants: Dict[str, Participant] = field(default_factory=dict)
    preferences: Dict[str, ParticipantPreference] = field(default_factory=dict)

    rsvp_deadline: Optional[datetime] = None
    preference_deadline: Optional[datetime] = None
    voting_deadline: Optional[datetime] = None

    active_run_id: Optional[str] = None
    last_run_id: Optional[str] = None
    last_error: Optional[str] = None
    # preference deadline the sweep already started a run for
    auto_run_deadline: Optional[datetime] = None

    recommendations: Tuple[VenueRecommendation, ...] = ()
    shortlist: Tuple[VenueRecommendation, ...] = ()
    ai_insight: Optional[str] = None
    suggested_category: Optional[str] = None
    suggested_tags: Tuple[str, ...] = ()

    # votes[(user_id, venue_id)] = 1..5 | REJECT
    votes: Dict[Tuple[str, str], VoteValue] = field(default_factory=dict)
    confirmed_venue_id: Optional[str] = None
    cancellation_reason: Optional[str] = None

    state_entered_at: Dict[EventState, datetime] = field(default_factory=dict)

    # Slack thread this event is planned in, if any
    channel_id: Optional[str] = None
    thread_ts: Optional[str] = None

    def context(self) -> EventContext:
        return EventContext(
            title=self.title,
            event_type=self.event_type,
            description=self.description,
            scheduled_at=self.scheduled_at,
            expected_headcount=self.expected_headcount or len(self.accepted_ids),
        )

    def ids_with_status(self, status: str) -> List[str]:
        return sorted(uid for uid, p in self.participants.items() if p.status == status)

    @property
    def invited_count(self) -> int:
        return len(self.participants)

    @property
    def accepted_ids(self) -> List[str]:
        return self.ids_with_status(ACCEPTED)

    def participant_locations(self) -> List[GeoPoint]:
        return [
            self.participants[uid].location
            for uid in self.accepted_ids
            if self.participants[uid].location is not None
        ]

    def shortlist_ids(self) -> List[str]:
        return [r.venue_id for r in self.shortlist]
