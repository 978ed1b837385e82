from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Tuple

# Categories a participant can weight. They match the scoring sub-scores.
PREFERENCE_CATEGORIES: Tuple[str, ...] = ("cuisine", "budget", "distance", "quality")


@dataclass
class ParticipantPreference:
    """Preferences submitted by one participant. Every field is optional."""

    user_id: str
    cuisines: List[str] = field(default_factory=list)
    budget: Optional[int] = None
    radius_m: Optional[int] = None
    dietary: List[str] = field(default_factory=list)
    weight_hints: Dict[str, int] = field(default_factory=dict)
    notes: str = ""


@dataclass(frozen=True)
class AggregatedPreferences:
    """Group profile computed from all submitted preferences."""

    cuisine_types: Tuple[str, ...]
    average_budget: int
    max_distance_radius: int
    dietary_restrictions: FrozenSet[str]
    preference_weights: Dict[str, int]
    participant_ids: FrozenSet[str]

    def weight(self, category: str) -> int:
        return self.preference_weights.get(category, 1)
