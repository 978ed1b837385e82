"""Deterministic venue scoring.

Every candidate gets four sub-scores in [0, 1]:

* ``cuisine``  - how well the venue's category/tags match the team's cuisines
  (earlier, more popular cuisines count more) and dietary needs
* ``budget``   - distance between the venue price level and the team's budget tier
* ``distance`` - driven by the farthest participant, so nobody is left out;
  participants beyond the radius pull the score down further
* ``quality``  - rating / 5

The final score is the sum of sub-score x category weight. Missing data scores
``NEUTRAL`` so unrated or unpriced venues are neither punished nor boosted.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from venue_planner.models.events import EventContext
from venue_planner.models.preferences import PREFERENCE_CATEGORIES, AggregatedPreferences
from venue_planner.models.venues import GeoPoint, VenueCandidate, VenueRecommendation
from venue_planner.services.geo import haversine_m

NEUTRAL = 0.5
MIN_TIER, MAX_TIER = 1, 4

# upper bound of each budget tier, per person
BUDGET_TIERS: List[Tuple[int, int]] = [(1, 15), (2, 30), (3, 60)]

log = logging.getLogger(__name__)


def budget_tier(amount: Optional[int]) -> Optional[int]:
    """Map a per-person budget to the 1..4 price level scale."""

    if amount is None:
        return None
    for tier, upper in BUDGET_TIERS:
        if amount <= upper:
            return tier
    return MAX_TIER


def venue_terms(c: VenueCandidate) -> set:
    terms = {t.strip().lower() for t in c.tags if t}
    if c.category:
        terms.add(c.category.strip().lower())
    return terms


@dataclass(frozen=True)
class ScoringResult:
    recommendations: Tuple[VenueRecommendation, ...]  # every candidate, best first
    shortlist: Tuple[VenueRecommendation, ...]  # top-N above threshold

    @property
    def passed_threshold(self) -> int:
        return sum(1 for r in self.recommendations if not r.below_threshold)


class VenueScoringEngine:
    def __init__(
        self,
        min_score: float,
        top_n: int,
        distance_fn: Callable[[GeoPoint, GeoPoint], float] = haversine_m,
    ) -> None:
        self.min_score = min_score
        self.top_n = top_n
        self.distance_fn = distance_fn

    # ----- sub-scores -----

    def preference_match(self, c: VenueCandidate, prefs: AggregatedPreferences) -> float:
        terms = venue_terms(c)
        parts: List[float] = []
        if prefs.cuisine_types:
            n = len(prefs.cuisine_types)
            best = 0.0
            for i, cuisine in enumerate(prefs.cuisine_types):
                if cuisine in terms:
                    best = max(best, 1.0 - i / n)
            parts.append(best)
        if prefs.dietary_restrictions:
            covered = len(prefs.dietary_restrictions & terms)
            parts.append(covered / len(prefs.dietary_restrictions))
        if not parts:
            return NEUTRAL
        return sum(parts) / len(parts)

    def budget_fit(self, c: VenueCandidate, prefs: AggregatedPreferences) -> float:
        if c.price_level is None:
            return NEUTRAL
        venue = min(max(c.price_level, MIN_TIER), MAX_TIER)
        team = budget_tier(prefs.average_budget)
        return 1.0 - abs(venue - team) / (MAX_TIER - MIN_TIER)

    def distances(self, c: VenueCandidate, locations: Sequence[GeoPoint]) -> List[float]:
        return [self.distance_fn(loc, c.location) for loc in locations]

    def distance_fit(self, distances: Sequence[float], radius: int) -> float:
        if not distances:
            return NEUTRAL
        farthest = max(distances)
        if radius <= 0:
            return 1.0 if farthest == 0 else 0.0
        average = sum(distances) / len(distances)
        fairness = 1.0 - min(farthest / radius, 1.0)
        closeness = 1.0 - min(average / radius, 1.0)
        fit = 0.75 * fairness + 0.25 * closeness
        inside = sum(1 for d in distances if d <= radius) / len(distances)
        return fit * inside

    def quality(self, c: VenueCandidate) -> float:
        if c.rating is None:
            return NEUTRAL
        return min(max(c.rating / 5.0, 0.0), 1.0)

    # ----- explanation -----

    def _matched_cuisine(self, c: VenueCandidate, prefs: AggregatedPreferences) -> Optional[Tuple[int, str]]:
        terms = venue_terms(c)
        for i, cuisine in enumerate(prefs.cuisine_types):
            if cuisine in terms:
                return i, cuisine
        return None

    def _phrase(
        self,
        cat: str,
        c: VenueCandidate,
        prefs: AggregatedPreferences,
        farthest: Optional[float],
    ) -> str:
        if cat == "cuisine":
            match = self._matched_cuisine(c, prefs)
            if match:
                return f"serves {match[1]}, #{match[0] + 1} on the team's list"
            return "fits the team's dietary needs"
        if cat == "budget":
            return f"priced for the ~{prefs.average_budget}/person budget"
        if cat == "distance":
            if farthest is None:
                return "central location"
            return f"everyone is within {farthest / 1000:.1f} km"
        return f"rated {c.rating:.1f}/5" if c.rating is not None else "solid reputation"

    def reasoning(
        self,
        c: VenueCandidate,
        prefs: AggregatedPreferences,
        subs: Dict[str, float],
        farthest: Optional[float],
    ) -> str:
        contributions = sorted(
            ((subs[cat] * prefs.weight(cat), cat) for cat in PREFERENCE_CATEGORIES),
            key=lambda x: (-x[0], PREFERENCE_CATEGORIES.index(x[1])),
        )
        strong = [cat for _, cat in contributions if subs[cat] >= 0.6][:2]
        weak = [cat for _, cat in reversed(contributions) if subs[cat] < 0.3][:1]
        if strong:
            text = "Strong " + " and ".join(strong) + " fit: " + ", ".join(
                self._phrase(cat, c, prefs, farthest) for cat in strong
            )
        else:
            text = "Balanced option with no standout strength"
        if weak:
            text += f"; weaker on {weak[0]}"
        return text

    def pros_cons(
        self,
        c: VenueCandidate,
        prefs: AggregatedPreferences,
        ctx: EventContext,
        distances: Sequence[float],
    ) -> Tuple[List[str], List[str]]:
        pros: List[str] = []
        cons: List[str] = []
        terms = venue_terms(c)

        match = self._matched_cuisine(c, prefs)
        if match:
            pros.append(f"Popular choice: {match[1]} is #{match[0] + 1} on the team's list")
        if prefs.dietary_restrictions:
            missing = sorted(prefs.dietary_restrictions - terms)
            if not missing:
                pros.append("Covers dietary needs: " + ", ".join(sorted(prefs.dietary_restrictions)))
            else:
                cons.append("May not cater to: " + ", ".join(missing))

        if c.rating is None:
            cons.append("No rating available yet")
        elif c.rating >= 4.5:
            pros.append(f"Excellent rating ({c.rating:.1f}/5)")
        elif c.rating >= 4.0:
            pros.append(f"High rating ({c.rating:.1f}/5)")
        elif c.rating < 3.0:
            cons.append(f"Low rating: {c.rating:.1f}/5 may not meet expectations")
        elif c.rating < 3.5:
            cons.append(f"Moderate rating: {c.rating:.1f}/5")

        if c.price_level is not None:
            diff = c.price_level - budget_tier(prefs.average_budget)
            if diff == 0:
                pros.append("Budget-friendly: matches the team's budget")
            elif diff == -1:
                pros.append("Reasonable pricing, a bit under budget")
            elif diff == 1:
                cons.append("Slightly above budget")
            elif diff >= 2:
                cons.append("Price above budget")

        radius = prefs.max_distance_radius
        if distances:
            farthest = max(distances)
            outside = sum(1 for d in distances if d > radius)
            if outside:
                cons.append(f"{outside} participant(s) outside the {radius / 1000:.1f} km radius")
            elif farthest <= radius / 2:
                pros.append(f"Close for everyone (farthest {farthest / 1000:.1f} km)")

        if c.capacity is not None and ctx.expected_headcount:
            if c.capacity < ctx.expected_headcount:
                cons.append(
                    f"May be too small: capacity {c.capacity} for {ctx.expected_headcount} attendees"
                )
            elif c.capacity >= ctx.expected_headcount * 1.2:
                pros.append(f"Spacious: fits {ctx.expected_headcount} people comfortably")

        missing_info = [n for n, v in (("pricing", c.price_level), ("rating", c.rating)) if v is None]
        if len(missing_info) == 2:
            cons.append("Missing key information: " + ", ".join(missing_info))
        return pros, cons

    # ----- ranking -----

    def score_one(
        self,
        c: VenueCandidate,
        prefs: AggregatedPreferences,
        ctx: EventContext,
        locations: Sequence[GeoPoint],
    ) -> VenueRecommendation:
        distances = self.distances(c, locations)
        farthest = max(distances) if distances else None
        subs = {
            "cuisine": self.preference_match(c, prefs),
            "budget": self.budget_fit(c, prefs),
            "distance": self.distance_fit(distances, prefs.max_distance_radius),
            "quality": self.quality(c),
        }
        subs = {k: round(v, 4) for k, v in subs.items()}
        score = round(sum(subs[cat] * prefs.weight(cat) for cat in PREFERENCE_CATEGORIES), 4)
        pros, cons = self.pros_cons(c, prefs, ctx, distances)
        return VenueRecommendation(
            venue_id=c.venue_id,
            venue_name=c.name,
            score=score,
            reasoning=self.reasoning(c, prefs, subs, farthest),
            pros=tuple(pros),
            cons=tuple(cons),
            estimated_cost_per_person=c.estimated_cost,
            sub_scores=subs,
            rating=c.rating,
            max_distance_m=round(farthest, 1) if farthest is not None else None,
            below_threshold=score < self.min_score,
            location=c.location,
            address=c.address,
        )

    def score(
        self,
        candidates: Sequence[VenueCandidate],
        prefs: AggregatedPreferences,
        ctx: EventContext,
        locations: Sequence[GeoPoint],
    ) -> ScoringResult:
        recs = [self.score_one(c, prefs, ctx, locations) for c in candidates]
        recs.sort(key=rank_key)
        shortlist = [r for r in recs if not r.below_threshold][: self.top_n]
        log.info(
            "Scored %d venues, %d passed min score %.2f, shortlisted %d",
            len(recs), sum(1 for r in recs if not r.below_threshold), self.min_score, len(shortlist),
        )
        return ScoringResult(recommendations=tuple(recs), shortlist=tuple(shortlist))

    def max_score(self, prefs: AggregatedPreferences) -> float:
        return float(sum(prefs.weight(cat) for cat in PREFERENCE_CATEGORIES))


def rank_key(r: VenueRecommendation):
    """Score desc, then rating desc, then shorter farthest distance, then id."""

    rating = r.rating if r.rating is not None else NEUTRAL * 5
    farthest = r.max_distance_m if r.max_distance_m is not None else math.inf
    return (-r.score, -rating, farthest, r.venue_id)
