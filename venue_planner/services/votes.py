"""Vote tallying and the consensus rule."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from venue_planner.errors import VoteRejected
from venue_planner.models.events import REJECT, VOTE_SCALE, Event, VoteValue

log = logging.getLogger(__name__)


def validate_vote(value) -> VoteValue:
    """Accept 1..5 (int or numeric string) or ``"reject"``."""

    if isinstance(value, str):
        v = value.strip().lower()
        if v == REJECT:
            return REJECT
        if not v.isdigit():
            raise VoteRejected(f"invalid vote {value!r}")
        value = int(v)
    if isinstance(value, bool) or not isinstance(value, int) or value not in VOTE_SCALE:
        raise VoteRejected(f"vote must be {VOTE_SCALE.start}..{VOTE_SCALE.stop - 1} or '{REJECT}', got {value!r}")
    return value


@dataclass(frozen=True)
class VenueTally:
    venue_id: str
    rank: int  # position in the shortlist, 0 = best
    total: int
    numeric_votes: int
    rejections: int

    @property
    def votes_cast(self) -> int:
        return self.numeric_votes + self.rejections

    @property
    def rejection_ratio(self) -> float:
        return self.rejections / self.votes_cast if self.votes_cast else 0.0


def tally_votes(
    shortlist_ids: Sequence[str],
    votes: Mapping[Tuple[str, str], VoteValue],
    rejection_threshold: float,
    eligible: Optional[Sequence[str]] = None,
) -> Tuple[List[VenueTally], List[VenueTally]]:
    """Return ``(ranked, disqualified)``.

    ``ranked`` is best first (tally desc, then shortlist rank). Votes on
    venues outside the shortlist, or from voters outside ``eligible``, are
    ignored.
    """

    allowed = set(eligible) if eligible is not None else None
    sums: Dict[str, List[int]] = {vid: [0, 0, 0] for vid in shortlist_ids}
    for (user_id, venue_id), value in votes.items():
        if venue_id not in sums or (allowed is not None and user_id not in allowed):
            continue
        bucket = sums[venue_id]
        if value == REJECT:
            bucket[2] += 1
        else:
            bucket[0] += int(value)
            bucket[1] += 1

    ranked: List[VenueTally] = []
    disqualified: List[VenueTally] = []
    for rank, vid in enumerate(shortlist_ids):
        total, numeric, rejections = sums[vid]
        t = VenueTally(vid, rank, total, numeric, rejections)
        if t.rejection_ratio > rejection_threshold:
            disqualified.append(t)
        else:
            ranked.append(t)
    ranked.sort(key=lambda t: (-t.total, t.rank))
    return ranked, disqualified


@dataclass(frozen=True)
class ConsensusDecision:
    reached: bool
    winner_id: Optional[str]
    reason: str
    ranked: Tuple[VenueTally, ...] = ()
    disqualified: Tuple[VenueTally, ...] = ()


def decide_consensus(
    event: Event,
    now: datetime,
    quorum_ratio: float,
    rejection_threshold: float,
) -> ConsensusDecision:
    shortlist = event.shortlist_ids()
    voters = event.accepted_ids
    ranked, disqualified = tally_votes(shortlist, event.votes, rejection_threshold, voters)

    if not shortlist or not voters:
        return ConsensusDecision(False, None, "nothing to vote on", tuple(ranked), tuple(disqualified))

    all_voted = all((uid, vid) in event.votes for uid in voters for vid in shortlist)
    if all_voted:
        reason = "everyone voted"
    else:
        deadline_passed = event.voting_deadline is not None and now >= event.voting_deadline
        if not deadline_passed:
            return ConsensusDecision(False, None, "waiting for votes", tuple(ranked), tuple(disqualified))
        participating = {uid for (uid, vid) in event.votes if uid in voters and vid in shortlist}
        if len(participating) / len(voters) < quorum_ratio:
            log.info(
                "Event %s: voting deadline passed without quorum (%d/%d)",
                event.event_id, len(participating), len(voters),
            )
            return ConsensusDecision(False, None, "no quorum", tuple(ranked), tuple(disqualified))
        reason = "deadline with quorum"

    if not ranked:
        return ConsensusDecision(False, None, "every venue was rejected", (), tuple(disqualified))
    return ConsensusDecision(True, ranked[0].venue_id, reason, tuple(ranked), tuple(disqualified))
