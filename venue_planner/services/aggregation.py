"""Merge per-participant preferences into one group profile.

No I/O happens here. Missing fields fall back to neutral defaults, but a
record that breaks an invariant (negative radius, unknown weight category,
duplicate participant) is rejected with ``PreferenceValidationError``.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, Iterable, List, Sequence

from venue_planner.errors import PreferenceValidationError
from venue_planner.models.preferences import (
    PREFERENCE_CATEGORIES,
    AggregatedPreferences,
    ParticipantPreference,
)

MAX_WEIGHT = 3

log = logging.getLogger(__name__)


def _is_int(v) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def validate_preference(rec: ParticipantPreference) -> None:
    who = rec.user_id or "<unknown>"
    if not rec.user_id:
        raise PreferenceValidationError("preference record without user_id")
    if rec.budget is not None and (not _is_int(rec.budget) or rec.budget < 0):
        raise PreferenceValidationError(f"{who}: budget must be a non-negative integer, got {rec.budget!r}")
    if rec.radius_m is not None and (not _is_int(rec.radius_m) or rec.radius_m < 0):
        raise PreferenceValidationError(f"{who}: radius must be a non-negative integer, got {rec.radius_m!r}")
    for c in rec.cuisines:
        if not isinstance(c, str):
            raise PreferenceValidationError(f"{who}: cuisine entries must be strings, got {c!r}")
    for d in rec.dietary:
        if not isinstance(d, str):
            raise PreferenceValidationError(f"{who}: dietary tags must be strings, got {d!r}")
    for cat, n in rec.weight_hints.items():
        if cat not in PREFERENCE_CATEGORIES:
            raise PreferenceValidationError(f"{who}: unknown preference category {cat!r}")
        if not _is_int(n) or n < 0:
            raise PreferenceValidationError(f"{who}: weight hint for {cat} must be >= 0, got {n!r}")


def _clean(values: Iterable[str]) -> List[str]:
    out: List[str] = []
    for v in values:
        key = v.strip().lower()
        if key and key not in out:
            out.append(key)
    return out


def rank_cuisines(records: Sequence[ParticipantPreference]) -> List[str]:
    """Distinct cuisines, most popular first, alphabetical among equals.

    Each participant counts once per cuisine no matter how often they list it.
    """

    counts: Counter = Counter()
    for rec in records:
        counts.update(_clean(rec.cuisines))
    return sorted(counts, key=lambda c: (-counts[c], c))


def rounded_mean(values: Sequence[int]) -> int:
    """Mean rounded half up (20.5 -> 21). Values are non-negative."""

    n = len(values)
    return (2 * sum(values) + n) // (2 * n)


def normalize_weights(records: Sequence[ParticipantPreference]) -> Dict[str, int]:
    """Scale summed hint counts to integers in 1..MAX_WEIGHT.

    The most hinted category gets MAX_WEIGHT. Categories nobody hinted are
    left out and score with weight 1.
    """

    totals: Counter = Counter()
    for rec in records:
        for cat, n in rec.weight_hints.items():
            totals[cat] += n
    totals = Counter({k: v for k, v in totals.items() if v > 0})
    if not totals:
        return {}
    top = max(totals.values())
    return {
        cat: 1 + int((total * (MAX_WEIGHT - 1)) / top + 0.5)
        for cat, total in sorted(totals.items())
    }


def aggregate_preferences(
    records: Sequence[ParticipantPreference],
    default_budget: int,
    default_radius_m: int,
    participant_ids: Sequence[str] = (),
) -> AggregatedPreferences:
    seen = set()
    for rec in records:
        validate_preference(rec)
        if rec.user_id in seen:
            raise PreferenceValidationError(f"duplicate preference record for {rec.user_id}")
        seen.add(rec.user_id)

    if not records and participant_ids:
        log.warning(
            "No preferences submitted by %d participants; using defaults", len(participant_ids)
        )

    budgets = [r.budget for r in records if r.budget is not None]
    radii = [r.radius_m for r in records if r.radius_m is not None]
    dietary = set()
    for r in records:
        dietary.update(_clean(r.dietary))

    return AggregatedPreferences(
        cuisine_types=tuple(rank_cuisines(records)),
        average_budget=rounded_mean(budgets) if budgets else default_budget,
        max_distance_radius=min(radii) if radii else default_radius_m,
        dietary_restrictions=frozenset(dietary),
        preference_weights=normalize_weights(records),
        participant_ids=frozenset(seen),
    )
