from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

SOURCE_CATALOG = "catalog"
SOURCE_EXTERNAL = "external"


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float


@dataclass(frozen=True)
class VenueCandidate:
    """A place eligible for scoring, from the internal catalog or the geo provider."""

    venue_id: str
    name: str
    location: GeoPoint
    category: Optional[str] = None
    tags: Tuple[str, ...] = ()
    rating: Optional[float] = None
    price_level: Optional[int] = None  # 1 (cheap) .. 4 (expensive)
    address: str = ""
    external_id: Optional[str] = None
    estimated_cost: Optional[float] = None
    capacity: Optional[int] = None
    source: str = SOURCE_CATALOG


@dataclass(frozen=True)
class VenueRecommendation:
    """Scored venue. New instances replace old ones; nothing mutates them."""

    venue_id: str
    venue_name: str
    score: float
    reasoning: str
    pros: Tuple[str, ...] = ()
    cons: Tuple[str, ...] = ()
    estimated_cost_per_person: Optional[float] = None
    sub_scores: Dict[str, float] = field(default_factory=dict)
    rating: Optional[float] = None
    max_distance_m: Optional[float] = None
    below_threshold: bool = False
    suggested_category: Optional[str] = None
    suggested_tags: Tuple[str, ...] = ()
    ai_adjusted: bool = False
    location: Optional[GeoPoint] = None
    address: str = ""
