# venue_planner/services/reasoning.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from langchain_core.prompts import ChatPromptTemplate
from langchain_google_genai import ChatGoogleGenerativeAI

from venue_planner.errors import ReasoningServiceError
from venue_planner.models.events import EventContext
from venue_planner.models.preferences import AggregatedPreferences
from venue_planner.models.venues import GeoPoint, VenueCandidate

DEFAULT_CATEGORY = "restaurant"

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class VenueAnalysis:
    venue_id: str
    adjusted_score: float
    reasoning: str
    pros: Tuple[str, ...] = ()
    cons: Tuple[str, ...] = ()
    suggested_category: str = DEFAULT_CATEGORY
    suggested_tags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AiAnalysis:
    venue_analyses: Tuple[VenueAnalysis, ...]
    overall_insight: str = ""
    suggested_event_category: str = DEFAULT_CATEGORY
    suggested_event_tags: Tuple[str, ...] = ()


class ReasoningService:
    """External reasoning over a shortlist. Raises ``ReasoningServiceError``."""

    def analyze(
        self,
        candidates: Sequence[VenueCandidate],
        preferences: AggregatedPreferences,
        context: EventContext,
        participant_locations: Sequence[GeoPoint],
        scores: Optional[Mapping[str, float]] = None,
        max_score: float = 4.0,
    ) -> AiAnalysis:
        raise NotImplementedError


# ===================== prompt =====================
SYSTEM_PROMPT = (
    "You are an AI event planner helping a team choose the best venue for their event. "
    "Answer with JSON only, no extra text."
)

# request text is substituted verbatim
ANALYSIS_PROMPT = ChatPromptTemplate.from_messages([("system", SYSTEM_PROMPT), ("human", "{request}")])


def build_analysis_prompt(
    candidates: Sequence[VenueCandidate],
    preferences: AggregatedPreferences,
    context: EventContext,
    participant_locations: Sequence[GeoPoint],
    scores: Optional[Mapping[str, float]] = None,
    max_score: float = 4.0,
) -> str:
    scores = scores or {}
    venue_lines = []
    for i, c in enumerate(candidates, start=1):
        venue_lines.append(
            f"{i}. {c.name} - venueId: {c.venue_id}, Category: {c.category or 'N/A'}, "
            f"Tags: {', '.join(c.tags) or 'N/A'}, Rating: {c.rating if c.rating is not None else 'N/A'}/5, "
            f"Price level: {c.price_level if c.price_level is not None else 'N/A'}/4, "
            f"Capacity: {c.capacity if c.capacity is not None else 'N/A'}, "
            f"Current score: {scores.get(c.venue_id, 'N/A')}"
        )
    when = context.scheduled_at.strftime("%Y-%m-%d %H:%M") if context.scheduled_at else "N/A"
    schema = {
        "venueAnalyses": [
            {
                "venueId": "id from the list",
                "adjustedScore": round(max_score * 0.8, 2),
                "detailedReasoning": "2-3 sentences",
                "pros": ["pro1", "pro2"],
                "cons": ["con1"],
                "suggestedCategory": DEFAULT_CATEGORY,
                "suggestedPlaceTags": ["tag1"],
            }
        ],
        "overallInsight": "general insight about the options",
        "suggestedEventCategory": DEFAULT_CATEGORY,
        "suggestedEventTags": ["tag1", "tag2"],
    }
    return (
        "Event details:\n"
        f"- Title: {context.title}\n"
        f"- Type: {context.event_type or 'N/A'}\n"
        f"- Description: {context.description or 'N/A'}\n"
        f"- When: {when}\n"
        f"- Expected attendees: {context.expected_headcount}\n\n"
        f"Team preferences (aggregated from {len(preferences.participant_ids)} members):\n"
        f"- Popular cuisines: {', '.join(preferences.cuisine_types) or 'none'}\n"
        f"- Average budget: {preferences.average_budget} per person\n"
        f"- Max distance: {preferences.max_distance_radius} m\n"
        f"- Dietary restrictions: {', '.join(sorted(preferences.dietary_restrictions)) or 'none'}\n"
        f"- Participants with a known location: {len(participant_locations)}\n\n"
        "Candidate venues:\n"
        + "\n".join(venue_lines)
        + "\n\n"
        f"Score every venue on a 0-{max_score:g} scale (higher is better) in adjustedScore. "
        "Only use venueId values from the list. Decide whether this is a dining, drinking or "
        "casual event and suggest a category (e.g. restaurant, cafe, bar) and tags for each venue "
        "and for the event.\n"
        "Respond with JSON exactly in this shape:\n"
        + json.dumps(schema, ensure_ascii=False, indent=2)
    )


# ===================== response parsing =====================
def strip_code_fence(text: str) -> str:
    """Remove a surrounding ```json ... ``` block if the model added one."""

    cleaned = text.strip()
    if cleaned.startswith("```"):
        first_nl = cleaned.find("\n")
        last = cleaned.rfind("```")
        if 0 < first_nl < last:
            cleaned = cleaned[first_nl + 1:last].strip()
    return cleaned


def _str_list(v: Any) -> Tuple[str, ...]:
    if not isinstance(v, list):
        return ()
    return tuple(str(x).strip() for x in v if str(x).strip())


def parse_analysis(text: str) -> AiAnalysis:
    try:
        data = json.loads(strip_code_fence(text))
    except json.JSONDecodeError as e:
        raise ReasoningServiceError(f"reasoning service returned invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ReasoningServiceError("reasoning service returned a non-object JSON value")

    analyses: List[VenueAnalysis] = []
    for raw in data.get("venueAnalyses") or []:
        if not isinstance(raw, dict):
            continue
        venue_id = raw.get("venueId") or raw.get("placeId")
        try:
            score = float(raw.get("adjustedScore"))
        except (TypeError, ValueError):
            log.warning("Dropping analysis for %s: adjustedScore=%r", venue_id, raw.get("adjustedScore"))
            continue
        if not venue_id:
            continue
        analyses.append(
            VenueAnalysis(
                venue_id=str(venue_id),
                adjusted_score=score,
                reasoning=str(raw.get("detailedReasoning") or "").strip(),
                pros=_str_list(raw.get("pros")),
                cons=_str_list(raw.get("cons")),
                suggested_category=str(raw.get("suggestedCategory") or DEFAULT_CATEGORY),
                suggested_tags=_str_list(raw.get("suggestedPlaceTags")),
            )
        )
    return AiAnalysis(
        venue_analyses=tuple(analyses),
        overall_insight=str(data.get("overallInsight") or ""),
        suggested_event_category=str(data.get("suggestedEventCategory") or DEFAULT_CATEGORY),
        suggested_event_tags=_str_list(data.get("suggestedEventTags")),
    )


def _content_text(resp: Any) -> str:
    content = getattr(resp, "content", resp)
    if isinstance(content, list):
        # multi-part messages: keep the text parts
        return "".join(p.get("text", "") if isinstance(p, dict) else str(p) for p in content)
    return str(content)


# ===================== Gemini =====================
class GeminiReasoningService(ReasoningService):
    def __init__(self, llm: ChatGoogleGenerativeAI) -> None:
        self.llm = llm

    @classmethod
    def from_settings(cls, api_key: str, model: str) -> "GeminiReasoningService":
        return cls(ChatGoogleGenerativeAI(model=model, google_api_key=api_key, temperature=0.7))

    def analyze(
        self,
        candidates: Sequence[VenueCandidate],
        preferences: AggregatedPreferences,
        context: EventContext,
        participant_locations: Sequence[GeoPoint],
        scores: Optional[Mapping[str, float]] = None,
        max_score: float = 4.0,
    ) -> AiAnalysis:
        prompt = build_analysis_prompt(
            candidates, preferences, context, participant_locations, scores, max_score
        )
        log.debug("Sending %d venues to Gemini (prompt %d chars)", len(candidates), len(prompt))
        try:
            resp = self.llm.invoke(ANALYSIS_PROMPT.format_messages(request=prompt))
        except Exception as e:
            raise ReasoningServiceError(f"Gemini call failed: {type(e).__name__}: {e}") from e
        text = _content_text(resp)
        if not text.strip():
            raise ReasoningServiceError("empty response from Gemini")
        return parse_analysis(text)


def analysis_by_venue(analysis: AiAnalysis) -> Dict[str, VenueAnalysis]:
    """First analysis per venue id wins."""

    out: Dict[str, VenueAnalysis] = {}
    for a in analysis.venue_analyses:
        out.setdefault(a.venue_id, a)
    return out
