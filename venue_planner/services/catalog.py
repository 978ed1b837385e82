"""Internal place catalog."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from venue_planner.errors import ConfigurationError
from venue_planner.models.venues import SOURCE_CATALOG, GeoPoint, VenueCandidate
from venue_planner.services.geo import haversine_m

log = logging.getLogger(__name__)


class PlaceCatalog:
    """In-memory list of vetted places, searchable by radius and category."""

    def __init__(self, places: Iterable[VenueCandidate] = ()) -> None:
        self._places: List[VenueCandidate] = list(places)

    def __len__(self) -> int:
        return len(self._places)

    def add(self, place: VenueCandidate) -> None:
        self._places.append(place)

    def search(
        self,
        center: GeoPoint,
        radius_m: int,
        category_hints: Sequence[str] = (),
    ) -> List[VenueCandidate]:
        """Places within ``radius_m`` of ``center``.

        Category hints narrow the result only when at least one place matches
        them; otherwise every place in range is returned.
        """

        in_range = [p for p in self._places if haversine_m(center, p.location) <= radius_m]
        hints = {h.strip().lower() for h in category_hints if h and h.strip()}
        if not hints:
            return in_range
        matching = [p for p in in_range if _terms(p) & hints]
        return matching or in_range


def _terms(place: VenueCandidate) -> set:
    terms = {t.lower() for t in place.tags}
    if place.category:
        terms.add(place.category.lower())
    return terms


def _place_from_dict(row: Dict[str, Any]) -> VenueCandidate:
    return VenueCandidate(
        venue_id=str(row["id"]),
        name=str(row["name"]),
        location=GeoPoint(float(row["lat"]), float(row["lng"])),
        category=row.get("category"),
        tags=tuple(row.get("tags") or ()),
        rating=row.get("rating"),
        price_level=row.get("price_level"),
        address=row.get("address") or "",
        external_id=row.get("external_id"),
        estimated_cost=row.get("estimated_cost"),
        source=SOURCE_CATALOG,
    )


def load_catalog(path: Optional[str]) -> PlaceCatalog:
    """Load a JSON array of places. A missing path yields an empty catalog."""

    if not path:
        return PlaceCatalog()
    try:
        with open(path, encoding="utf-8") as f:
            rows = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"cannot load catalog {path}: {e}") from e
    catalog = PlaceCatalog(_place_from_dict(r) for r in rows)
    log.info("Loaded %d catalog places from %s", len(catalog), path)
    return catalog
