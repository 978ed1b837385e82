"""Runtime settings read from the environment.

Everything has a default except the API keys. ``load_settings`` validates the
numbers once at startup and raises ``ConfigurationError`` so that a bad value
never surfaces in the middle of a pipeline run.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from venue_planner.errors import ConfigurationError

RECOMMENDER_MODES = ("ai", "deterministic")

# Ho Chi Minh City center, used when neither the organizer nor any participant
# gave a location.
DEFAULT_CENTER: Tuple[float, float] = (10.762622, 106.660172)


@dataclass(frozen=True)
class Settings:
    # aggregation defaults
    default_budget: int = 30
    default_radius_m: int = 5000

    # scoring
    min_score: float = 1.6
    top_n: int = 5
    dedup_tolerance_m: float = 50.0

    # external calls
    geo_timeout_sec: float = 8.0
    ai_timeout_sec: float = 30.0
    recommender_mode: str = "ai"

    # lifecycle / voting
    acceptance_threshold: float = 0.7
    rejection_threshold: float = 0.5
    quorum_ratio: float = 0.5
    voting_window_hours: int = 72

    default_center: Tuple[float, float] = DEFAULT_CENTER

    track_asia_api_key: str = ""
    track_asia_base_url: str = "https://maps.track-asia.com/api"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"

    catalog_path: Optional[str] = None
    progress_db_path: Optional[str] = None

    def validate(self) -> "Settings":
        if self.default_budget < 0:
            raise ConfigurationError("DEFAULT_BUDGET must be >= 0")
        if self.default_radius_m < 0:
            raise ConfigurationError("DEFAULT_RADIUS_M must be >= 0")
        if self.min_score < 0:
            raise ConfigurationError("MIN_SCORE must be >= 0")
        if self.top_n < 1:
            raise ConfigurationError("TOP_N must be >= 1")
        if self.dedup_tolerance_m < 0:
            raise ConfigurationError("DEDUP_TOLERANCE_M must be >= 0")
        if self.geo_timeout_sec <= 0 or self.ai_timeout_sec <= 0:
            raise ConfigurationError("GEO_TIMEOUT_SEC and AI_TIMEOUT_SEC must be > 0")
        for name in ("acceptance_threshold", "rejection_threshold", "quorum_ratio"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name.upper()} must be within [0, 1], got {value}")
        if self.voting_window_hours < 1:
            raise ConfigurationError("VOTING_WINDOW_HOURS must be >= 1")
        if self.recommender_mode not in RECOMMENDER_MODES:
            raise ConfigurationError(
                f"RECOMMENDER_MODE must be one of {RECOMMENDER_MODES}, got {self.recommender_mode!r}"
            )
        if self.recommender_mode == "ai" and not self.gemini_api_key:
            raise ConfigurationError("GEMINI_API_KEY is required when RECOMMENDER_MODE=ai")
        return self


def _num(env: Mapping[str, str], key: str, default, cast):
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        return cast(str(raw).strip())
    except ValueError:
        raise ConfigurationError(f"{key} is not a valid {cast.__name__}: {raw!r}") from None


def _center(env: Mapping[str, str]) -> Tuple[float, float]:
    raw = (env.get("DEFAULT_CENTER") or "").strip()
    if not raw:
        return DEFAULT_CENTER
    try:
        lat, lng = (float(x) for x in raw.split(","))
    except ValueError:
        raise ConfigurationError(f"DEFAULT_CENTER must look like 'lat,lng', got {raw!r}") from None
    return lat, lng


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build validated ``Settings`` from ``env`` (defaults to ``os.environ``)."""

    env = os.environ if env is None else env
    settings = Settings(
        default_budget=_num(env, "DEFAULT_BUDGET", 30, int),
        default_radius_m=_num(env, "DEFAULT_RADIUS_M", 5000, int),
        min_score=_num(env, "MIN_SCORE", 1.6, float),
        top_n=_num(env, "TOP_N", 5, int),
        dedup_tolerance_m=_num(env, "DEDUP_TOLERANCE_M", 50.0, float),
        geo_timeout_sec=_num(env, "GEO_TIMEOUT_SEC", 8.0, float),
        ai_timeout_sec=_num(env, "AI_TIMEOUT_SEC", 30.0, float),
        recommender_mode=(env.get("RECOMMENDER_MODE") or "ai").strip().lower(),
        acceptance_threshold=_num(env, "ACCEPTANCE_THRESHOLD", 0.7, float),
        rejection_threshold=_num(env, "REJECTION_THRESHOLD", 0.5, float),
        quorum_ratio=_num(env, "QUORUM_RATIO", 0.5, float),
        voting_window_hours=_num(env, "VOTING_WINDOW_HOURS", 72, int),
        default_center=_center(env),
        track_asia_api_key=(env.get("TRACKASIA_API_KEY") or "").strip(),
        track_asia_base_url=(env.get("TRACKASIA_BASE_URL") or "https://maps.track-asia.com/api").rstrip("/"),
        gemini_api_key=(env.get("GEMINI_API_KEY") or "").strip(),
        gemini_model=(env.get("GEMINI_MODEL") or "gemini-2.5-flash").strip(),
        catalog_path=env.get("CATALOG_PATH") or None,
        progress_db_path=env.get("PROGRESS_DB_PATH") or None,
    )
    return settings.validate()
