"""Gather venue candidates from the internal catalog and the geo provider."""

from __future__ import annotations

import logging
import time
import unicodedata
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from venue_planner.errors import GeoSourceError, NoCandidatesError
from venue_planner.models.venues import GeoPoint, VenueCandidate
from venue_planner.services.catalog import PlaceCatalog
from venue_planner.services.geo import GeoSource, haversine_m
from venue_planner.services.progress import ProgressTracker

log = logging.getLogger(__name__)

# values the provider accepts for its `type` filter
PLACE_TYPES = frozenset({"restaurant", "cafe", "bar", "bakery", "night_club", "meal_takeaway"})
DEFAULT_PLACE_TYPE = "restaurant"


@dataclass(frozen=True)
class SourcingResult:
    candidates: Tuple[VenueCandidate, ...]
    from_database: int
    from_external: int
    external_failed: bool


def normalize_name(name: str) -> str:
    """Lowercase, accents and punctuation stripped: 'Phở  Hòa!' -> 'phohoa'."""

    decomposed = unicodedata.normalize("NFKD", name.casefold())
    return "".join(ch for ch in decomposed if ch.isalnum())


def same_venue(a: VenueCandidate, b: VenueCandidate, tolerance_m: float) -> bool:
    if a.external_id and b.external_id and a.external_id == b.external_id:
        return True
    if not a.name or not b.name:
        return False
    return (
        normalize_name(a.name) == normalize_name(b.name)
        and haversine_m(a.location, b.location) <= tolerance_m
    )


def merge_candidates(
    internal: Sequence[VenueCandidate],
    external: Sequence[VenueCandidate],
    tolerance_m: float,
) -> Tuple[List[VenueCandidate], int]:
    """Catalog entries win over provider duplicates. Returns (merged, externals kept)."""

    merged: List[VenueCandidate] = []
    for c in internal:
        if not any(same_venue(c, m, tolerance_m) for m in merged):
            merged.append(c)
    added = 0
    for c in external:
        if any(same_venue(c, m, tolerance_m) for m in merged):
            continue
        merged.append(c)
        added += 1
    return merged, added


class VenueSourcer:
    def __init__(
        self,
        catalog: PlaceCatalog,
        geo: Optional[GeoSource],
        external_timeout: float,
        dedup_tolerance_m: float = 50.0,
    ) -> None:
        self.catalog = catalog
        self.geo = geo
        self.external_timeout = external_timeout
        self.dedup_tolerance_m = dedup_tolerance_m

    def gather(
        self,
        center: GeoPoint,
        radius_m: int,
        category_hints: Sequence[str] = (),
        tracker: Optional[ProgressTracker] = None,
    ) -> SourcingResult:
        """Query both channels concurrently; only the external call is time-boxed.

        Raises ``NoCandidatesError`` when both channels come back empty.
        """

        hint = next((h for h in category_hints if h in PLACE_TYPES), DEFAULT_PLACE_TYPE)
        executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="sourcing")
        try:
            started = time.monotonic()
            ext_future = None
            if self.geo is not None:
                ext_future = executor.submit(
                    self.geo.search_nearby, center.lat, center.lng, radius_m, hint
                )
            cat_future = executor.submit(self.catalog.search, center, radius_m, category_hints)

            internal = cat_future.result()
            external: List[VenueCandidate] = []
            failed = False
            if ext_future is not None:
                remaining = max(0.0, self.external_timeout - (time.monotonic() - started))
                try:
                    external = list(ext_future.result(timeout=remaining))
                except FutureTimeout:
                    failed = True
                    log.warning("External venue search timed out after %.1fs", self.external_timeout)
                    if tracker:
                        tracker.warn("External venue search timed out; using catalog venues only")
                except GeoSourceError as e:
                    failed = True
                    log.warning("External venue search failed: %s", e)
                    if tracker:
                        tracker.warn("External venue search unavailable; using catalog venues only")
                except Exception:
                    failed = True
                    log.exception("Unexpected error from external venue search")
                    if tracker:
                        tracker.warn("External venue search unavailable; using catalog venues only")
        finally:
            # a hung provider call must not hold the run; its thread is left to finish
            executor.shutdown(wait=False, cancel_futures=True)

        merged, added = merge_candidates(internal, external, self.dedup_tolerance_m)
        log.info(
            "Sourced %d venues (%d catalog, %d external, external_failed=%s)",
            len(merged), len(merged) - added, added, failed,
        )
        if not merged:
            raise NoCandidatesError(
                f"no venues within {radius_m}m of ({center.lat:.5f}, {center.lng:.5f})"
            )
        return SourcingResult(
            candidates=tuple(merged),
            from_database=len(merged) - added,
            from_external=added,
            external_failed=failed,
        )
