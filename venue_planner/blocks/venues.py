"""Utilities to build Slack Block Kit structures for events and venues."""

from __future__ import annotations

import json
from typing import Dict, List, Optional, Sequence

from venue_planner.models.events import REJECT, VOTE_SCALE, Event
from venue_planner.models.preferences import PREFERENCE_CATEGORIES
from venue_planner.models.progress import AiAnalysisProgress
from venue_planner.models.venues import VenueRecommendation

VOTE_ACTION = "cast_vote"
RSVP_ACCEPT = "rsvp_accept"
RSVP_DECLINE = "rsvp_decline"
PREFS_CALLBACK = "venue_prefs"

STATE_LABELS = {
    "draft": "Draft",
    "planning": "Planning",
    "inviting": "Waiting for RSVPs",
    "gathering_preferences": "Collecting preferences",
    "ai_recommending": "Finding venues",
    "voting": "Voting",
    "confirmed": "Confirmed",
    "completed": "Completed",
    "cancelled": "Cancelled",
}


def _section(text: str) -> Dict:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def vote_value(event_id: str, venue_id: str, value) -> str:
    return f"{event_id}|{venue_id}|{value}"


def parse_vote_value(raw: str):
    # event ids are hex; venue ids may contain the separator
    event_id, rest = raw.split("|", 1)
    venue_id, value = rest.rsplit("|", 1)
    return event_id, venue_id, value


def _vote_select(event_id: str, venue_id: str) -> Dict:
    options = [
        {"text": {"type": "plain_text", "text": "★" * n}, "value": vote_value(event_id, venue_id, n)}
        for n in reversed(VOTE_SCALE)
    ]
    options.append(
        {"text": {"type": "plain_text", "text": "✗ Not this one"}, "value": vote_value(event_id, venue_id, REJECT)}
    )
    return {
        "type": "static_select",
        "action_id": VOTE_ACTION,
        "placeholder": {"type": "plain_text", "text": "Your vote"},
        "options": options,
    }


def recommendation_blocks(rec: VenueRecommendation, rank: int, event_id: Optional[str] = None) -> List[Dict]:
    """Convert one recommendation to Block Kit blocks, with a vote menu when ``event_id`` is set."""

    facts = [f"score {rec.score:.2f}"]
    if rec.rating is not None:
        facts.append(f"rating {rec.rating:.1f}/5")
    if rec.estimated_cost_per_person is not None:
        facts.append(f"~{rec.estimated_cost_per_person:g}/person")
    if rec.max_distance_m is not None:
        facts.append(f"farthest {rec.max_distance_m / 1000:.1f} km")
    lines = [f"*{rank}. {rec.venue_name}*  ({', '.join(facts)})"]
    if rec.address:
        lines.append(rec.address)
    lines.append(rec.reasoning)
    if rec.pros:
        lines.append(":white_check_mark: " + "; ".join(rec.pros))
    if rec.cons:
        lines.append(":warning: " + "; ".join(rec.cons))

    block = _section("\n".join(lines))
    if event_id:
        block["accessory"] = _vote_select(event_id, rec.venue_id)
    blocks = [block]
    if rec.suggested_tags:
        blocks.append(
            {"type": "context", "elements": [{"type": "mrkdwn", "text": " ".join(f"`{t}`" for t in rec.suggested_tags)}]}
        )
    return blocks


def shortlist_blocks(event: Event, with_votes: bool = True) -> List[Dict]:
    if not event.shortlist:
        return [_section("No recommendations yet.")]

    blocks: List[Dict] = [
        {"type": "header", "text": {"type": "plain_text", "text": f"Venue shortlist: {event.title}"}}
    ]
    if event.ai_insight:
        blocks.append(_section(f":bulb: {event.ai_insight}"))
    for i, rec in enumerate(event.shortlist, start=1):
        blocks += recommendation_blocks(rec, i, event.event_id if with_votes else None)
    if with_votes and event.voting_deadline:
        blocks.append(
            {
                "type": "context",
                "elements": [
                    {
                        "type": "mrkdwn",
                        "text": f"Rate every venue 1-5 or reject it. Voting closes {event.voting_deadline:%Y-%m-%d %H:%M} UTC.",
                    }
                ],
            }
        )
    return blocks


def progress_blocks(p: AiAnalysisProgress) -> List[Dict]:
    filled = int(p.progress_percentage // 10)
    bar = "█" * filled + "░" * (10 - filled)
    lines = [f"*{p.current_step_name}*  {bar} {p.progress_percentage:.0f}%"]
    if p.venues_found is not None:
        lines.append(
            f"Venues found: {p.venues_found} "
            f"({p.venues_from_database or 0} catalog, {p.venues_from_track_asia or 0} TrackAsia)"
        )
    if p.venues_passed_threshold is not None:
        lines.append(f"Passed minimum score: {p.venues_passed_threshold}/{p.venues_scored or 0}")
    if p.gemini_timeout:
        lines.append("AI analysis timed out; showing the standard ranking")
    for w in p.warnings:
        lines.append(f":warning: {w}")
    if p.failed:
        lines.append(f":x: {p.error}")
    return [_section("\n".join(lines))]


def status_blocks(event: Event, progress: Optional[AiAnalysisProgress] = None) -> List[Dict]:
    when = f"{event.scheduled_at:%Y-%m-%d %H:%M}" if event.scheduled_at else "-"
    accepted = len(event.accepted_ids)
    lines = [
        f"*State*: {STATE_LABELS.get(event.state.value, event.state.value)}",
        f"*When*: {when}",
        f"*Accepted*: {accepted}/{event.invited_count}",
        f"*Preferences*: {sum(1 for uid in event.accepted_ids if uid in event.preferences)}/{accepted}",
    ]
    if event.confirmed_venue_id:
        venue = next((r for r in event.shortlist if r.venue_id == event.confirmed_venue_id), None)
        lines.append(f"*Venue*: {venue.venue_name if venue else event.confirmed_venue_id}")
    if event.last_error:
        lines.append(f":x: {event.last_error}")
    if event.cancellation_reason:
        lines.append(f"*Cancelled*: {event.cancellation_reason}")
    blocks = [
        {"type": "header", "text": {"type": "plain_text", "text": event.title}},
        _section("\n".join(lines)),
    ]
    if progress is not None:
        blocks += progress_blocks(progress)
    return blocks


def tally_blocks(event: Event, ranked: Sequence, disqualified: Sequence) -> List[Dict]:
    names = {r.venue_id: r.venue_name for r in event.shortlist}
    lines = [
        f"*{names.get(t.venue_id, t.venue_id)}*: {t.total} pts ({t.numeric_votes} votes, {t.rejections} rejections)"
        for t in ranked
    ]
    lines += [f"~{names.get(t.venue_id, t.venue_id)}~: rejected by {t.rejections}/{t.votes_cast}" for t in disqualified]
    voters = {uid for (uid, _vid) in event.votes}
    lines.append(f"_Voted_: {len(voters)}/{len(event.accepted_ids)}")
    return [_section("\n".join(lines))]


def rsvp_blocks(event: Event) -> List[Dict]:
    return [
        _section(f"You're invited to *{event.title}*. Are you in?"),
        {
            "type": "actions",
            "elements": [
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": "I'm in"},
                    "style": "primary",
                    "action_id": RSVP_ACCEPT,
                    "value": event.event_id,
                },
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": "Can't make it"},
                    "style": "danger",
                    "action_id": RSVP_DECLINE,
                    "value": event.event_id,
                },
            ],
        },
    ]


def _text_input(block_id: str, label: str, placeholder: str = "", optional: bool = True) -> Dict:
    element: Dict = {"type": "plain_text_input", "action_id": "v"}
    if placeholder:
        element["placeholder"] = {"type": "plain_text", "text": placeholder}
    return {
        "type": "input",
        "block_id": block_id,
        "optional": optional,
        "label": {"type": "plain_text", "text": label},
        "element": element,
    }


def preference_modal(event_id: str, title: str) -> Dict:
    return {
        "type": "modal",
        "callback_id": PREFS_CALLBACK,
        "private_metadata": json.dumps({"event_id": event_id}),
        "title": {"type": "plain_text", "text": "Your preferences"},
        "submit": {"type": "plain_text", "text": "Save"},
        "close": {"type": "plain_text", "text": "Cancel"},
        "blocks": [
            _section(f"Help pick a venue for *{title}*."),
            _text_input("cuisines", "Cuisines (comma separated)", "vietnamese, bbq, seafood"),
            _text_input("budget", "Budget per person (USD)", "30"),
            _text_input("radius_km", "Max distance (km)", "5"),
            _text_input("dietary", "Dietary needs (comma separated)", "vegetarian, halal"),
            _text_input("location", "Where you'll come from (lat,lng)", "10.7769,106.7009"),
            {
                "type": "input",
                "block_id": "priorities",
                "optional": True,
                "label": {"type": "plain_text", "text": "What matters most?"},
                "element": {
                    "type": "checkboxes",
                    "action_id": "v",
                    "options": [
                        {"text": {"type": "plain_text", "text": cat.capitalize()}, "value": cat}
                        for cat in PREFERENCE_CATEGORIES
                    ],
                },
            },
        ],
    }


def travel_blocks(venue_name: str, legs: Sequence) -> List[Dict]:
    if not legs:
        return [_section(f"No participant locations to route to *{venue_name}*.")]
    lines = []
    for leg in legs:
        mins = f"{leg.duration_sec / 60:.0f} min" if leg.duration_sec is not None else "-"
        approx = " (approx.)" if leg.estimated else ""
        lines.append(f"<@{leg.user_id}>: {leg.distance_m / 1000:.1f} km, {mins}{approx}")
    return [_section(f"*Getting to {venue_name}*\n" + "\n".join(lines))]
