"""TrackAsia place search / distance matrix client and distance helpers."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import requests

from venue_planner.errors import GeoSourceError
from venue_planner.models.venues import SOURCE_EXTERNAL, GeoPoint, VenueCandidate

EARTH_RADIUS_M = 6371000.0
DEFAULT_TIMEOUT = 8.0

log = logging.getLogger(__name__)


def haversine_m(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance in meters."""

    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) * math.sin(d_lng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def centroid(points: Sequence[GeoPoint]) -> Optional[GeoPoint]:
    if not points:
        return None
    return GeoPoint(
        lat=sum(p.lat for p in points) / len(points),
        lng=sum(p.lng for p in points) / len(points),
    )


@dataclass(frozen=True)
class DistanceElement:
    distance_m: float
    duration_sec: float


class GeoSource:
    """Place search provider. Implementations raise ``GeoSourceError`` on failure."""

    def search_nearby(
        self,
        lat: float,
        lng: float,
        radius_m: int,
        category_hint: Optional[str] = None,
    ) -> List[VenueCandidate]:
        raise NotImplementedError

    def distance_matrix(
        self, origins: Sequence[GeoPoint], destination: GeoPoint
    ) -> List[Optional[DistanceElement]]:
        raise NotImplementedError


def _price_level(raw) -> Optional[int]:
    if raw is None:
        return None
    try:
        level = int(raw)
    except (TypeError, ValueError):
        return None
    # provider uses 0..4, the scorer uses 1..4
    return min(max(level, 1), 4)


def _extract(place: Dict) -> Optional[VenueCandidate]:
    place_id = place.get("place_id")
    loc = (place.get("geometry") or {}).get("location") or {}
    lat, lng = loc.get("lat"), loc.get("lng")
    if not place_id or lat is None or lng is None:
        return None
    types = [str(t) for t in (place.get("types") or [])]
    rating = place.get("rating")
    return VenueCandidate(
        venue_id=f"ta:{place_id}",
        name=str(place.get("name") or ""),
        location=GeoPoint(float(lat), float(lng)),
        category=types[0] if types else None,
        tags=tuple(types[1:]),
        rating=float(rating) if rating is not None else None,
        price_level=_price_level(place.get("price_level")),
        address=place.get("vicinity") or place.get("formatted_address") or "",
        external_id=str(place_id),
        source=SOURCE_EXTERNAL,
    )


class TrackAsiaClient(GeoSource):
    """Thin ``requests`` wrapper over the TrackAsia v2 place and v1 matrix APIs."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://maps.track-asia.com/api",
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _get(self, path: str, params: Dict[str, object]) -> Dict:
        p = {**params, "key": self.api_key}
        try:
            resp = self.session.get(f"{self.base_url}{path}", params=p, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise GeoSourceError(f"TrackAsia request to {path} failed: {e}") from e
        status = data.get("status")
        if status not in (None, "OK", "ZERO_RESULTS"):
            raise GeoSourceError(
                f"TrackAsia returned status {status}: {data.get('error_message') or 'no message'}"
            )
        return data

    def search_nearby(
        self,
        lat: float,
        lng: float,
        radius_m: int,
        category_hint: Optional[str] = None,
    ) -> List[VenueCandidate]:
        params: Dict[str, object] = {"location": f"{lat},{lng}", "radius": int(radius_m)}
        if category_hint:
            params["type"] = category_hint
        data = self._get("/v2/place/nearbysearch/json", params)

        results = data.get("results") or []
        center = GeoPoint(lat, lng)
        out: List[VenueCandidate] = []
        for raw in results:
            cand = _extract(raw)
            if cand is None:
                continue
            # the provider sometimes returns places outside the radius
            if haversine_m(center, cand.location) > radius_m:
                continue
            out.append(cand)
        log.info(
            "TrackAsia returned %d places, %d within %dm", len(results), len(out), radius_m
        )
        return out

    def distance_matrix(
        self, origins: Sequence[GeoPoint], destination: GeoPoint
    ) -> List[Optional[DistanceElement]]:
        if not origins:
            return []
        params = {
            "origins": "|".join(f"{o.lat},{o.lng}" for o in origins),
            "destinations": f"{destination.lat},{destination.lng}",
        }
        data = self._get("/v1/distancematrix", params)
        rows = data.get("rows") or []
        out: List[Optional[DistanceElement]] = []
        for i in range(len(origins)):
            elements = (rows[i].get("elements") or []) if i < len(rows) else []
            el = elements[0] if elements else {}
            if el.get("status") != "OK":
                out.append(None)
                continue
            out.append(
                DistanceElement(
                    distance_m=float((el.get("distance") or {}).get("value") or 0.0),
                    duration_sec=float((el.get("duration") or {}).get("value") or 0.0),
                )
            )
        return out
