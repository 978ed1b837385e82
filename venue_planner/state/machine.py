"""Event lifecycle as an explicit transition table.

``TRANSITIONS[(state, trigger)]`` gives the next state, a guard and an
optional side effect. Guards only read the event and the context; effects are
the only place lifecycle fields on the event are written. ``fire`` does the
lookup, the guard and the write under one per-event lock, so two callers
racing on the same event see exactly one admitted transition.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from venue_planner.errors import RecommendationFailure
from venue_planner.models.events import TERMINAL_STATES, Event, EventState
from venue_planner.models.progress import utcnow
from venue_planner.models.venues import VenueRecommendation

log = logging.getLogger(__name__)


class Trigger(str, Enum):
    START_PLANNING = "start_planning"
    SEND_INVITATIONS = "send_invitations"
    START_GATHERING = "start_gathering"
    START_RECOMMENDING = "start_recommending"
    RECOMMENDATIONS_READY = "recommendations_ready"
    RECOMMENDATIONS_FAILED = "recommendations_failed"
    CONFIRM = "confirm"
    COMPLETE = "complete"
    CANCEL = "cancel"


@dataclass
class TransitionContext:
    now: datetime = field(default_factory=utcnow)
    actor_id: Optional[str] = None
    override: bool = False
    acceptance_threshold: float = 0.7
    voting_window: timedelta = timedelta(hours=72)

    # pipeline results
    run_id: Optional[str] = None
    recommendations: Tuple[VenueRecommendation, ...] = ()
    shortlist: Tuple[VenueRecommendation, ...] = ()
    insight: Optional[str] = None
    suggested_category: Optional[str] = None
    suggested_tags: Tuple[str, ...] = ()
    error: Optional[str] = None

    winner_id: Optional[str] = None
    reason: str = ""


Guard = Callable[[Event, TransitionContext], bool]
Effect = Callable[[Event, TransitionContext], None]


@dataclass(frozen=True)
class Transition:
    next_state: EventState
    guard: Guard
    effect: Optional[Effect] = None


@dataclass(frozen=True)
class TransitionResult:
    admitted: bool
    from_state: EventState
    to_state: EventState
    reason: str = ""


# ===================== guards =====================
def always(event: Event, ctx: TransitionContext) -> bool:
    return True


def has_title_and_schedule(event: Event, ctx: TransitionContext) -> bool:
    return bool(event.title and event.title.strip()) and event.scheduled_at is not None


def has_invitees(event: Event, ctx: TransitionContext) -> bool:
    return event.invited_count >= 1


def acceptance_reached(event: Event, ctx: TransitionContext) -> bool:
    if ctx.override:
        return True
    if not event.invited_count:
        return False
    threshold = (
        event.acceptance_threshold if event.acceptance_threshold is not None else ctx.acceptance_threshold
    )
    return len(event.accepted_ids) / event.invited_count >= threshold


def preferences_ready(event: Event, ctx: TransitionContext) -> bool:
    if not ctx.run_id or event.active_run_id is not None:
        return False
    if ctx.override:
        return True
    accepted = event.accepted_ids
    if accepted and all(uid in event.preferences for uid in accepted):
        return True
    return event.preference_deadline is not None and ctx.now >= event.preference_deadline


def is_active_run(event: Event, ctx: TransitionContext) -> bool:
    return ctx.run_id is not None and ctx.run_id == event.active_run_id


def active_run_has_shortlist(event: Event, ctx: TransitionContext) -> bool:
    return is_active_run(event, ctx) and bool(ctx.shortlist)


def winner_on_shortlist(event: Event, ctx: TransitionContext) -> bool:
    return ctx.winner_id is not None and ctx.winner_id in event.shortlist_ids()


def scheduled_time_elapsed(event: Event, ctx: TransitionContext) -> bool:
    return event.scheduled_at is not None and ctx.now >= event.scheduled_at


# ===================== side effects =====================
def open_run(event: Event, ctx: TransitionContext) -> None:
    event.active_run_id = ctx.run_id
    event.last_run_id = ctx.run_id
    event.last_error = None


def publish_shortlist(event: Event, ctx: TransitionContext) -> None:
    event.recommendations = tuple(ctx.recommendations)
    event.shortlist = tuple(ctx.shortlist)
    event.ai_insight = ctx.insight
    event.suggested_category = ctx.suggested_category
    event.suggested_tags = tuple(ctx.suggested_tags)
    event.votes.clear()
    event.voting_deadline = ctx.now + ctx.voting_window
    event.active_run_id = None
    event.last_error = None


def record_failure(event: Event, ctx: TransitionContext) -> None:
    event.active_run_id = None
    event.last_error = ctx.error or RecommendationFailure.user_message


def confirm_venue(event: Event, ctx: TransitionContext) -> None:
    event.confirmed_venue_id = ctx.winner_id


def close_event(event: Event, ctx: TransitionContext) -> None:
    # an in-flight run no longer matches and its result is dropped on publish
    event.active_run_id = None
    event.cancellation_reason = ctx.reason or None


def _table() -> Dict[Tuple[EventState, Trigger], Transition]:
    S, T = EventState, Trigger
    table = {
        (S.DRAFT, T.START_PLANNING): Transition(S.PLANNING, has_title_and_schedule),
        (S.PLANNING, T.SEND_INVITATIONS): Transition(S.INVITING, has_invitees),
        (S.INVITING, T.START_GATHERING): Transition(S.GATHERING_PREFERENCES, acceptance_reached),
        (S.GATHERING_PREFERENCES, T.START_RECOMMENDING): Transition(
            S.AI_RECOMMENDING, preferences_ready, open_run
        ),
        (S.AI_RECOMMENDING, T.RECOMMENDATIONS_READY): Transition(
            S.VOTING, active_run_has_shortlist, publish_shortlist
        ),
        (S.AI_RECOMMENDING, T.RECOMMENDATIONS_FAILED): Transition(
            S.GATHERING_PREFERENCES, is_active_run, record_failure
        ),
        (S.VOTING, T.CONFIRM): Transition(S.CONFIRMED, winner_on_shortlist, confirm_venue),
        (S.CONFIRMED, T.COMPLETE): Transition(S.COMPLETED, scheduled_time_elapsed),
    }
    for state in EventState:
        if state in TERMINAL_STATES or state is S.CONFIRMED:
            continue
        table[(state, T.CANCEL)] = Transition(S.CANCELLED, always, close_event)
    return table


# no (AI_RECOMMENDING, START_RECOMMENDING) entry: a second
# request while a run is in flight is a no-op.
TRANSITIONS: Dict[Tuple[EventState, Trigger], Transition] = _table()


class EventStateMachine:
    def __init__(self, table: Optional[Dict[Tuple[EventState, Trigger], Transition]] = None) -> None:
        self.table = TRANSITIONS if table is None else table
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def lock_for(self, event_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(event_id)
            if lock is None:
                lock = self._locks[event_id] = threading.RLock()
            return lock

    def can_fire(self, event: Event, trigger: Trigger, ctx: Optional[TransitionContext] = None) -> bool:
        ctx = ctx or TransitionContext()
        t = self.table.get((event.state, trigger))
        return t is not None and t.guard(event, ctx)

    def fire(
        self,
        event: Event,
        trigger: Trigger,
        ctx: Optional[TransitionContext] = None,
    ) -> TransitionResult:
        """Check-and-set one transition. Never raises for a refused transition."""

        ctx = ctx or TransitionContext()
        with self.lock_for(event.event_id):
            current = event.state
            t = self.table.get((current, trigger))
            if t is None:
                log.info("Event %s: %s not allowed from %s", event.event_id, trigger.value, current.value)
                return TransitionResult(False, current, current, "not allowed from " + current.value)
            if not t.guard(event, ctx):
                log.info("Event %s: guard %s refused %s", event.event_id, t.guard.__name__, trigger.value)
                return TransitionResult(False, current, current, t.guard.__name__)
            if t.effect is not None:
                t.effect(event, ctx)
            event.state = t.next_state
            event.state_entered_at[t.next_state] = ctx.now
        log.info("Event %s: %s -> %s (%s)", event.event_id, current.value, t.next_state.value, trigger.value)
        return TransitionResult(True, current, t.next_state)
