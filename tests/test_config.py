import os, sys
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

import pytest

from venue_planner.config import DEFAULT_CENTER, load_settings
from venue_planner.errors import ConfigurationError


def test_defaults_in_deterministic_mode():
    s = load_settings({"RECOMMENDER_MODE": "deterministic"})
    assert s.min_score == 1.6
    assert s.top_n == 5
    assert s.default_budget == 30
    assert s.voting_window_hours == 72
    assert s.default_center == DEFAULT_CENTER
    assert s.catalog_path is None


def test_values_are_read_and_trimmed():
    s = load_settings(
        {
            "RECOMMENDER_MODE": " AI ",
            "GEMINI_API_KEY": " key ",
            "TOP_N": "3",
            "MIN_SCORE": "2.5",
            "DEFAULT_CENTER": "21.0285, 105.8542",
            "TRACKASIA_BASE_URL": "https://maps.example/api/",
            "QUORUM_RATIO": "",
        }
    )
    assert s.recommender_mode == "ai"
    assert s.gemini_api_key == "key"
    assert s.top_n == 3
    assert s.min_score == 2.5
    assert s.default_center == (21.0285, 105.8542)
    assert s.track_asia_base_url == "https://maps.example/api"
    assert s.quorum_ratio == 0.5


@pytest.mark.parametrize(
    "env",
    [
        {"RECOMMENDER_MODE": "ai"},
        {"RECOMMENDER_MODE": "magic"},
        {"RECOMMENDER_MODE": "deterministic", "TOP_N": "0"},
        {"RECOMMENDER_MODE": "deterministic", "TOP_N": "five"},
        {"RECOMMENDER_MODE": "deterministic", "ACCEPTANCE_THRESHOLD": "1.5"},
        {"RECOMMENDER_MODE": "deterministic", "AI_TIMEOUT_SEC": "0"},
        {"RECOMMENDER_MODE": "deterministic", "DEFAULT_CENTER": "somewhere"},
    ],
)
def test_bad_values_fail_at_startup(env):
    with pytest.raises(ConfigurationError):
        load_settings(env)
