"""Application service tying the repository, state machine and pipeline together.

Every lifecycle change goes through ``EventStateMachine.fire``; this module
only decides *which* trigger to fire and reports refusals as exceptions to
the caller (the Slack flow turns them into ephemeral messages).
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence, Tuple

from venue_planner.config import Settings
from venue_planner.errors import (
    GeoSourceError,
    GuardRejected,
    NotInvited,
    PermissionDenied,
    PreferenceValidationError,
    RecommendationFailure,
    TransitionError,
    VoteRejected,
)
from venue_planner.models.events import ACCEPTED, DECLINED, Event, EventState, Participant
from venue_planner.models.preferences import ParticipantPreference
from venue_planner.models.progress import AiAnalysisProgress, utcnow
from venue_planner.models.venues import GeoPoint, VenueRecommendation
from venue_planner.services.aggregation import validate_preference
from venue_planner.services.geo import GeoSource, haversine_m
from venue_planner.services.pipeline import RecommendationPipeline
from venue_planner.services.progress import ProgressPublisher, ProgressTracker
from venue_planner.services.votes import ConsensusDecision, VenueTally, decide_consensus, tally_votes, validate_vote
from venue_planner.state.machine import EventStateMachine, TransitionContext, TransitionResult, Trigger
from venue_planner.state.progress_store import ProgressStore
from venue_planner.storage.repository import EventRepository

log = logging.getLogger(__name__)

# auto-cancel after the RSVP deadline when fewer accepted than this
MIN_ACCEPTED = 2
MIN_ACCEPTED_RATIO = 0.5

# assumed city speed when the provider cannot give a duration
FALLBACK_SPEED_MPS = 25 * 1000 / 3600


@dataclass(frozen=True)
class RunOutcome:
    admitted: bool
    run_id: Optional[str]
    published: bool = False
    error: Optional[str] = None
    shortlist: Tuple[VenueRecommendation, ...] = ()


@dataclass(frozen=True)
class VoteOutcome:
    recorded: bool
    decision: ConsensusDecision
    confirmed: bool = False


@dataclass(frozen=True)
class TravelLeg:
    user_id: str
    distance_m: float
    duration_sec: Optional[float]
    estimated: bool  # straight-line fallback


class EventPlanner:
    def __init__(
        self,
        repo: EventRepository,
        machine: EventStateMachine,
        pipeline: RecommendationPipeline,
        settings: Settings,
        geo: Optional[GeoSource] = None,
        progress_store: Optional[ProgressStore] = None,
        publishers: Sequence[ProgressPublisher] = (),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repo = repo
        self.machine = machine
        self.pipeline = pipeline
        self.settings = settings
        self.geo = geo
        self.progress_store = progress_store
        self.publishers = list(publishers)
        if progress_store is not None and progress_store not in self.publishers:
            self.publishers.insert(0, progress_store)
        self.clock = clock

    # ===================== helpers =====================
    def _ctx(self, **kwargs) -> TransitionContext:
        kwargs.setdefault("now", self.clock())
        kwargs.setdefault("acceptance_threshold", self.settings.acceptance_threshold)
        kwargs.setdefault("voting_window", timedelta(hours=self.settings.voting_window_hours))
        return TransitionContext(**kwargs)

    def _require(self, event: Event, trigger: Trigger, ctx: TransitionContext) -> TransitionResult:
        res = self.machine.fire(event, trigger, ctx)
        if not res.admitted:
            if (event.state, trigger) in self.machine.table:
                raise GuardRejected(f"cannot {trigger.value}: {res.reason}")
            raise TransitionError(f"cannot {trigger.value} while {event.state.value}")
        self.repo.save(event)
        return res

    def _check_organizer(self, event: Event, actor_id: Optional[str]) -> None:
        if actor_id is not None and actor_id != event.organizer_id:
            raise PermissionDenied(f"only the organizer <@{event.organizer_id}> can do this")

    # ===================== setup =====================
    def create_event(
        self,
        title: str,
        organizer_id: str,
        scheduled_at: Optional[datetime] = None,
        *,
        description: str = "",
        event_type: str = "",
        expected_headcount: int = 0,
        search_location: Optional[GeoPoint] = None,
        acceptance_threshold: Optional[float] = None,
        rsvp_deadline: Optional[datetime] = None,
        preference_deadline: Optional[datetime] = None,
        channel_id: Optional[str] = None,
        thread_ts: Optional[str] = None,
    ) -> Event:
        if acceptance_threshold is not None and not 0.0 <= acceptance_threshold <= 1.0:
            raise ValueError("acceptance_threshold must be within [0, 1]")
        event = Event(
            event_id=uuid.uuid4().hex[:12],
            title=title.strip(),
            organizer_id=organizer_id,
            scheduled_at=scheduled_at,
            description=description,
            event_type=event_type,
            expected_headcount=expected_headcount,
            search_location=search_location,
            acceptance_threshold=acceptance_threshold,
            rsvp_deadline=rsvp_deadline,
            preference_deadline=preference_deadline,
            channel_id=channel_id,
            thread_ts=thread_ts,
        )
        event.state_entered_at[EventState.DRAFT] = self.clock()
        self.repo.save(event)
        log.info("Created event %s (%s) for organizer %s", event.event_id, event.title, organizer_id)
        return event

    def start_planning(self, event_id: str) -> Event:
        event = self.repo.get(event_id)
        self._require(event, Trigger.START_PLANNING, self._ctx())
        return event

    def invite(self, event_id: str, user_ids: Sequence[str]) -> Event:
        event = self.repo.get(event_id)
        with self.machine.lock_for(event_id):
            if event.state not in (EventState.PLANNING, EventState.INVITING):
                raise TransitionError(f"cannot invite while {event.state.value}")
            for uid in user_ids:
                event.participants.setdefault(uid, Participant(user_id=uid))
            self.repo.save(event)
        if event.state is EventState.PLANNING and event.participants:
            self._require(event, Trigger.SEND_INVITATIONS, self._ctx())
        return event

    def respond_invitation(
        self,
        event_id: str,
        user_id: str,
        accept: bool,
        location: Optional[GeoPoint] = None,
    ) -> Event:
        """Record an RSVP. Reaching the acceptance threshold opens preference gathering."""

        event = self.repo.get(event_id)
        with self.machine.lock_for(event_id):
            if event.state not in (EventState.INVITING, EventState.GATHERING_PREFERENCES):
                raise TransitionError(f"RSVPs are closed while {event.state.value}")
            participant = event.participants.get(user_id)
            if participant is None:
                raise NotInvited(f"{user_id} was not invited to {event.title}")
            participant.status = ACCEPTED if accept else DECLINED
            if location is not None:
                participant.location = location
            if not accept:
                event.preferences.pop(user_id, None)
            self.repo.save(event)

        if event.state is EventState.INVITING:
            res = self.machine.fire(event, Trigger.START_GATHERING, self._ctx())
            if res.admitted:
                self.repo.save(event)
        return event

    def begin_gathering(self, event_id: str, actor_id: Optional[str] = None, override: bool = False) -> Event:
        event = self.repo.get(event_id)
        if override:
            self._check_organizer(event, actor_id)
        self._require(event, Trigger.START_GATHERING, self._ctx(actor_id=actor_id, override=override))
        return event

    def submit_preferences(self, event_id: str, preference: ParticipantPreference) -> Event:
        """Upsert one participant's preferences; raises ``PreferenceValidationError``."""

        validate_preference(preference)
        event = self.repo.get(event_id)
        with self.machine.lock_for(event_id):
            if event.state not in (EventState.INVITING, EventState.GATHERING_PREFERENCES):
                raise TransitionError(f"preferences are closed while {event.state.value}")
            participant = event.participants.get(preference.user_id)
            if participant is None or participant.status != ACCEPTED:
                raise NotInvited(f"{preference.user_id} has not accepted the invitation")
            event.preferences[preference.user_id] = preference
            self.repo.save(event)
        log.info(
            "Event %s: preferences from %s (%d/%d)",
            event_id, preference.user_id, len(event.preferences), len(event.accepted_ids),
        )
        return event

    def update_location(self, event_id: str, user_id: str, location: GeoPoint) -> Event:
        event = self.repo.get(event_id)
        with self.machine.lock_for(event_id):
            participant = event.participants.get(user_id)
            if participant is None:
                raise NotInvited(f"{user_id} was not invited to {event.title}")
            participant.location = location
            self.repo.save(event)
        return event

    def missing_preferences(self, event_id: str) -> List[str]:
        event = self.repo.get(event_id)
        return [uid for uid in event.accepted_ids if uid not in event.preferences]

    # ===================== recommendation run =====================
    def request_recommendations(
        self,
        event_id: str,
        actor_id: Optional[str] = None,
        override: bool = False,
    ) -> RunOutcome:
        """Admit at most one run per event and execute it synchronously.

        A second request while a run is in flight returns ``admitted=False``
        with the running run's id.
        """

        event = self.repo.get(event_id)
        if override:
            self._check_organizer(event, actor_id)
        run_id = uuid.uuid4().hex
        res = self.machine.fire(
            event, Trigger.START_RECOMMENDING, self._ctx(actor_id=actor_id, override=override, run_id=run_id)
        )
        if not res.admitted:
            if event.state is EventState.AI_RECOMMENDING:
                log.info("Event %s: run %s already in flight", event_id, event.active_run_id)
                return RunOutcome(admitted=False, run_id=event.active_run_id)
            if event.state is EventState.GATHERING_PREFERENCES:
                missing = [uid for uid in event.accepted_ids if uid not in event.preferences]
                raise GuardRejected(
                    f"waiting for preferences from {len(missing)} participant(s)"
                    if missing else "no accepted participants yet"
                )
            raise TransitionError(f"cannot start recommending while {event.state.value}")
        self.repo.save(event)

        tracker = ProgressTracker(run_id, event_id, self.publishers, clock=self.clock)
        try:
            result = self.pipeline.run(event, tracker)
        except RecommendationFailure as e:
            return self._fail_run(event, run_id, e.user_message)
        except PreferenceValidationError as e:
            return self._fail_run(event, run_id, f"Invalid preferences: {e}")
        except Exception as e:
            tracker.fail(f"{type(e).__name__}: {e}")
            self._fail_run(event, run_id, RecommendationFailure.user_message)
            raise

        res = self.machine.fire(
            event,
            Trigger.RECOMMENDATIONS_READY,
            self._ctx(
                run_id=run_id,
                recommendations=result.recommendations,
                shortlist=result.shortlist,
                insight=result.insight,
                suggested_category=result.suggested_category,
                suggested_tags=result.suggested_tags,
            ),
        )
        if not res.admitted:
            log.info("Event %s: discarding result of run %s (state %s)", event_id, run_id, event.state.value)
            return RunOutcome(admitted=True, run_id=run_id, published=False)
        self.repo.save(event)
        return RunOutcome(admitted=True, run_id=run_id, published=True, shortlist=result.shortlist)

    def _fail_run(self, event: Event, run_id: str, message: str) -> RunOutcome:
        res = self.machine.fire(event, Trigger.RECOMMENDATIONS_FAILED, self._ctx(run_id=run_id, error=message))
        if res.admitted:
            self.repo.save(event)
        else:
            log.info("Event %s: failure of stale run %s ignored", event.event_id, run_id)
        return RunOutcome(admitted=True, run_id=run_id, published=False, error=message)

    def get_progress(self, event_id: str, run_id: Optional[str] = None) -> Optional[AiAnalysisProgress]:
        if self.progress_store is None:
            return None
        if run_id:
            return self.progress_store.get(run_id)
        return self.progress_store.latest_for_event(event_id)

    # ===================== voting =====================
    def cast_vote(self, event_id: str, user_id: str, venue_id: str, value) -> VoteOutcome:
        """Upsert a vote and confirm the event as soon as consensus is reached."""

        event = self.repo.get(event_id)
        vote = validate_vote(value)
        with self.machine.lock_for(event_id):
            if event.state is not EventState.VOTING:
                raise VoteRejected(f"voting is not open ({event.state.value})")
            if user_id not in event.accepted_ids:
                raise VoteRejected(f"{user_id} is not an accepted participant")
            if venue_id not in event.shortlist_ids():
                raise VoteRejected(f"{venue_id} is not on the shortlist")
            event.votes[(user_id, venue_id)] = vote
            decision = self._decide(event)
            confirmed = False
            if decision.reached:
                confirmed = self.machine.fire(
                    event, Trigger.CONFIRM, self._ctx(winner_id=decision.winner_id, reason=decision.reason)
                ).admitted
            self.repo.save(event)
        return VoteOutcome(recorded=True, decision=decision, confirmed=confirmed)

    def _decide(self, event: Event, now: Optional[datetime] = None) -> ConsensusDecision:
        return decide_consensus(
            event,
            now or self.clock(),
            quorum_ratio=self.settings.quorum_ratio,
            rejection_threshold=self.settings.rejection_threshold,
        )

    def tally(self, event_id: str) -> Tuple[List[VenueTally], List[VenueTally]]:
        event = self.repo.get(event_id)
        return tally_votes(
            event.shortlist_ids(), event.votes, self.settings.rejection_threshold, event.accepted_ids
        )

    def force_confirm(self, event_id: str, actor_id: str, venue_id: str) -> Event:
        event = self.repo.get(event_id)
        self._check_organizer(event, actor_id)
        self._require(event, Trigger.CONFIRM, self._ctx(actor_id=actor_id, winner_id=venue_id, reason="organizer"))
        return event

    # ===================== end of life =====================
    def cancel(self, event_id: str, actor_id: Optional[str] = None, reason: str = "") -> Event:
        event = self.repo.get(event_id)
        self._check_organizer(event, actor_id)
        self._require(event, Trigger.CANCEL, self._ctx(actor_id=actor_id, reason=reason))
        return event

    def complete(self, event_id: str) -> Event:
        event = self.repo.get(event_id)
        self._require(event, Trigger.COMPLETE, self._ctx())
        return event

    def sweep(self, now: Optional[datetime] = None) -> List[Tuple[str, str]]:
        """Apply every deadline that has passed. Returns ``(event_id, action)`` pairs."""

        now = now or self.clock()
        actions: List[Tuple[str, str]] = []
        for event in self.repo.list():
            action = None
            if event.state is EventState.INVITING and event.rsvp_deadline and now >= event.rsvp_deadline:
                action = self._sweep_rsvp(event, now)
            elif (
                event.state is EventState.GATHERING_PREFERENCES
                and event.preference_deadline
                and now >= event.preference_deadline
                and event.auto_run_deadline != event.preference_deadline
            ):
                # one automatic run per deadline; later retries are manual
                event.auto_run_deadline = event.preference_deadline
                self.repo.save(event)
                outcome = self.request_recommendations(event.event_id)
                if outcome.published:
                    action = "recommended"
                elif outcome.error:
                    action = "recommendation_failed"
            elif event.state is EventState.VOTING:
                with self.machine.lock_for(event.event_id):
                    decision = self._decide(event, now)
                    if decision.reached and self.machine.fire(
                        event, Trigger.CONFIRM, self._ctx(now=now, winner_id=decision.winner_id, reason=decision.reason)
                    ).admitted:
                        action = "confirmed"
            elif event.state is EventState.CONFIRMED:
                if self.machine.fire(event, Trigger.COMPLETE, self._ctx(now=now)).admitted:
                    action = "completed"
            if action:
                self.repo.save(event)
                actions.append((event.event_id, action))
        if actions:
            log.info("Sweep applied %d deadline action(s)", len(actions))
        return actions

    def _sweep_rsvp(self, event: Event, now: datetime) -> Optional[str]:
        if self.machine.fire(event, Trigger.START_GATHERING, self._ctx(now=now)).admitted:
            return "gathering"
        needed = max(MIN_ACCEPTED, math.ceil(event.invited_count * MIN_ACCEPTED_RATIO))
        if len(event.accepted_ids) < needed:
            reason = f"Only {len(event.accepted_ids)} of {event.invited_count} accepted by the RSVP deadline"
            if self.machine.fire(event, Trigger.CANCEL, self._ctx(now=now, reason=reason)).admitted:
                return "cancelled"
            return None
        # enough people to go ahead even though the threshold was missed
        if self.machine.fire(event, Trigger.START_GATHERING, self._ctx(now=now, override=True)).admitted:
            return "gathering"
        return None

    # ===================== travel =====================
    def travel_summary(self, event_id: str) -> List[TravelLeg]:
        """Per-participant distance to the confirmed venue.

        Uses the provider's distance matrix and falls back to straight-line
        distances (flagged ``estimated``) for anything it cannot answer.
        """

        event = self.repo.get(event_id)
        venue = next((r for r in event.shortlist if r.venue_id == event.confirmed_venue_id), None)
        if venue is None or venue.location is None:
            raise TransitionError("no confirmed venue with a known location")
        users = [uid for uid in event.accepted_ids if event.participants[uid].location is not None]
        origins = [event.participants[uid].location for uid in users]

        elements: list = [None] * len(origins)
        if self.geo is not None and origins:
            try:
                elements = list(self.geo.distance_matrix(origins, venue.location))
            except GeoSourceError as e:
                log.warning("Distance matrix failed for event %s: %s", event_id, e)
            elements += [None] * (len(origins) - len(elements))

        legs: List[TravelLeg] = []
        for uid, origin, el in zip(users, origins, elements):
            if el is not None:
                legs.append(TravelLeg(uid, el.distance_m, el.duration_sec, estimated=False))
            else:
                meters = haversine_m(origin, venue.location)
                legs.append(TravelLeg(uid, round(meters, 1), round(meters / FALLBACK_SPEED_MPS, 1), estimated=True))
        return legs
