# venue_planner/flows/event_flow.py
from __future__ import annotations

import json
import logging
import re
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from slack_bolt import App

from venue_planner.blocks.venues import (
    PREFS_CALLBACK,
    RSVP_ACCEPT,
    RSVP_DECLINE,
    VOTE_ACTION,
    parse_vote_value,
    preference_modal,
    progress_blocks,
    rsvp_blocks,
    shortlist_blocks,
    status_blocks,
    tally_blocks,
    travel_blocks,
)
from venue_planner.errors import EventNotFound, PlannerError
from venue_planner.models.events import Event
from venue_planner.models.preferences import ParticipantPreference
from venue_planner.models.progress import AiAnalysisProgress, AnalysisStep
from venue_planner.models.venues import GeoPoint
from venue_planner.services.planner import EventPlanner
from venue_planner.services.progress import ProgressPublisher

log = logging.getLogger(__name__)

USER_MENTION = re.compile(r"<@([A-Z0-9]+)(?:\|[^>]*)?>")
DATE_FORMATS = ("%Y-%m-%d %H:%M", "%Y-%m-%d")

NO_EVENT = "No event found here. Run `/event-start` in this channel first."

GUIDE = (
    "*How to plan an event*\n"
    "1) `/event-start Title | 2026-11-20 19:00 | lat,lng`: creates the event (location optional).\n"
    "2) `/event-invite @a @b @c`: posts RSVP buttons. Accepting opens the preference form.\n"
    "3) `/event-gather [force]`: start collecting preferences (automatic once enough people accept).\n"
    "4) `/event-recommend [force]`: find and rank venues, then vote on the shortlist.\n"
    "5) `/event-status`, `/event-tally`: check progress and votes.\n"
    "6) `/event-confirm <number>`: organizer picks a venue. `/event-cancel [reason]` cancels.\n"
    "7) `/event-route`: distance and travel time to the confirmed venue.\n"
)


# ===== parsing helpers =====

def parse_datetime(raw: str) -> Optional[datetime]:
    raw = (raw or "").strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(raw, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def parse_location(raw: Optional[str]) -> Optional[GeoPoint]:
    """'10.77, 106.70' -> GeoPoint. Returns None for blanks; raises ValueError otherwise."""

    raw = (raw or "").strip()
    if not raw:
        return None
    lat_s, lng_s = raw.split(",", 1)
    lat, lng = float(lat_s), float(lng_s)
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        raise ValueError(f"coordinates out of range: {raw}")
    return GeoPoint(lat, lng)


def parse_start_args(text: str) -> Tuple[str, Optional[datetime], Optional[GeoPoint]]:
    parts = [p.strip() for p in (text or "").split("|")]
    title = parts[0] if parts else ""
    when = parse_datetime(parts[1]) if len(parts) > 1 else None
    where = parse_location(parts[2]) if len(parts) > 2 else None
    return title, when, where


def parse_user_ids(text: str) -> List[str]:
    seen: List[str] = []
    for uid in USER_MENTION.findall(text or ""):
        if uid not in seen:
            seen.append(uid)
    return seen


def _split_list(raw: Optional[str]) -> List[str]:
    return [x.strip() for x in (raw or "").split(",") if x.strip()]


def preference_from_view(
    user_id: str, values: Dict
) -> Tuple[Optional[ParticipantPreference], Optional[GeoPoint], Dict[str, str]]:
    """Read the preference modal state. Returns (preference, location, field errors)."""

    def _get_val(block_id: str) -> Optional[str]:
        block = values.get(block_id, {})
        return next((v.get("value") for v in block.values() if isinstance(v, dict)), None)

    errors: Dict[str, str] = {}
    budget = None
    budget_raw = (_get_val("budget") or "").replace("$", "").replace(",", "").strip()
    if budget_raw:
        try:
            budget = int(float(budget_raw))
            if budget < 0:
                errors["budget"] = "Budget can't be negative"
        except ValueError:
            errors["budget"] = "Enter a number, e.g. 30"

    radius = None
    radius_raw = (_get_val("radius_km") or "").replace("km", "").strip()
    if radius_raw:
        try:
            radius = int(float(radius_raw) * 1000)
            if radius < 0:
                errors["radius_km"] = "Distance can't be negative"
        except ValueError:
            errors["radius_km"] = "Enter a number of km, e.g. 5"

    location = None
    try:
        location = parse_location(_get_val("location"))
    except ValueError:
        errors["location"] = "Use lat,lng, e.g. 10.7769,106.7009"

    picked = values.get("priorities", {}).get("v", {}).get("selected_options") or []
    hints = {opt["value"]: 1 for opt in picked if opt.get("value")}

    if errors:
        return None, None, errors
    pref = ParticipantPreference(
        user_id=user_id,
        cuisines=_split_list(_get_val("cuisines")),
        budget=budget,
        radius_m=radius,
        dietary=_split_list(_get_val("dietary")),
        weight_hints=hints,
    )
    return pref, location, errors


# ===== progress posting =====

class SlackProgressPoster(ProgressPublisher):
    """Posts a thread message whenever a run reaches a new step."""

    def __init__(self, client, planner: EventPlanner) -> None:
        self.client = client
        self.planner = planner
        self._last_step: Dict[str, int] = {}
        self._lock = threading.Lock()

    def publish(self, snapshot: AiAnalysisProgress) -> None:
        step = int(snapshot.current_step)
        with self._lock:
            if self._last_step.get(snapshot.run_id) == step and not snapshot.failed:
                return
            if snapshot.failed or snapshot.current_step == AnalysisStep.FINAL_RECOMMENDATIONS:
                self._last_step.pop(snapshot.run_id, None)
            else:
                self._last_step[snapshot.run_id] = step
        try:
            event = self.planner.repo.get(snapshot.event_id)
        except EventNotFound:
            return
        if not event.channel_id:
            return
        self.client.chat_postMessage(
            channel=event.channel_id,
            thread_ts=event.thread_ts,
            text=f"{snapshot.current_step_name} ({snapshot.progress_percentage:.0f}%)",
            blocks=progress_blocks(snapshot),
        )


# ===== deadline sweep announcements =====

def _confirmed_text(event: Event) -> str:
    venue = next((r for r in event.shortlist if r.venue_id == event.confirmed_venue_id), None)
    name = venue.venue_name if venue else event.confirmed_venue_id
    return f":tada: *Voting is done! {event.title} will be at {name}.*"


def sweep_announcement(event: Event, action: str) -> Tuple[str, Optional[List[Dict]]]:
    """Thread message (text, blocks) for one action applied by the deadline sweep."""

    if action == "recommended":
        text = f"Preference deadline reached. Here are {len(event.shortlist)} venues. Please vote!"
        return text, shortlist_blocks(event)
    if action == "recommendation_failed":
        return f"Preference deadline reached. {event.last_error or 'No venues were found.'}", None
    if action == "confirmed":
        return _confirmed_text(event), None
    if action == "cancelled":
        reason = event.cancellation_reason
        return f":no_entry: {event.title} was cancelled" + (f": {reason}" if reason else "."), None
    if action == "gathering":
        return "RSVP deadline reached. Collecting preferences now.", None
    if action == "completed":
        return f"{event.title} is over. Thanks for coming!", None
    return f"{event.title}: {action}", None


# ===== main registration =====

def register_event_flow(app: App, planner: EventPlanner) -> Callable[[List[Tuple[str, str]]], None]:
    """Register the handlers. Returns the callback that announces sweep actions."""

    planner.publishers.append(SlackProgressPoster(app.client, planner))

    def announce_sweep(actions: List[Tuple[str, str]]) -> None:
        for event_id, action in actions:
            try:
                event = planner.repo.get(event_id)
            except EventNotFound:
                continue
            if not event.channel_id:
                continue
            text, blocks = sweep_announcement(event, action)
            kwargs = {"channel": event.channel_id, "thread_ts": event.thread_ts, "text": text}
            if blocks:
                kwargs["blocks"] = blocks
            try:
                app.client.chat_postMessage(**kwargs)
            except Exception:
                log.exception("Could not announce %s for event %s", action, event_id)

    def _resolve_event(body) -> Optional[Event]:
        ch = body.get("channel_id")
        thread_ts = body.get("thread_ts")
        if ch and thread_ts:
            ev = planner.repo.by_thread(ch, thread_ts)
            if ev:
                return ev
        return planner.repo.latest_for_channel(ch) if ch else None

    def _reply(client, channel, user, text):
        client.chat_postEphemeral(channel=channel, user=user, text=text)

    @app.command("/event-help")
    def cmd_help(ack, say):
        ack()
        say(text=GUIDE)

    # start
    @app.command("/event-start")
    def cmd_start(ack, body, client, logger):
        ack()
        channel_id = body["channel_id"]
        user_id = body["user_id"]
        try:
            title, when, where = parse_start_args(body.get("text", ""))
        except ValueError:
            _reply(client, channel_id, user_id, "Location must look like `10.77,106.70`.")
            return
        if not title or when is None:
            _reply(client, channel_id, user_id, "Usage: `/event-start Title | 2026-11-20 19:00 | lat,lng`")
            return
        try:
            res = client.chat_postMessage(
                channel=channel_id,
                text=f":calendar: <@{user_id}> is planning *{title}* on {when:%Y-%m-%d %H:%M}",
            )
            event = planner.create_event(
                title, user_id, when, search_location=where, channel_id=channel_id, thread_ts=res["ts"]
            )
            planner.start_planning(event.event_id)
            client.chat_postMessage(
                channel=channel_id,
                thread_ts=res["ts"],
                text="Invite people with `/event-invite @someone @someone-else`.",
            )
        except PlannerError as e:
            _reply(client, channel_id, user_id, str(e))
        except Exception as e:
            logger.exception(e)
            _reply(client, channel_id, user_id, "Could not create the event. Please try again.")

    @app.command("/event-invite")
    def cmd_invite(ack, body, client, logger):
        ack()
        channel_id, user_id = body["channel_id"], body["user_id"]
        event = _resolve_event(body)
        if not event:
            _reply(client, channel_id, user_id, NO_EVENT)
            return
        invitees = parse_user_ids(body.get("text", ""))
        if not invitees:
            _reply(client, channel_id, user_id, "Mention the people to invite: `/event-invite @a @b`")
            return
        try:
            planner.invite(event.event_id, invitees)
            client.chat_postMessage(
                channel=channel_id,
                thread_ts=event.thread_ts,
                text=" ".join(f"<@{u}>" for u in invitees) + f" you're invited to {event.title}",
                blocks=rsvp_blocks(event),
            )
        except PlannerError as e:
            _reply(client, channel_id, user_id, str(e))
        except Exception as e:
            logger.exception(e)

    # RSVP (shared handler)
    @app.action(RSVP_ACCEPT)
    @app.action(RSVP_DECLINE)
    def on_rsvp(ack, body, action, client, logger):
        ack()
        user_id = body["user"]["id"]
        channel_id = (body.get("channel") or {}).get("id")
        event_id = action["value"]
        accept = action["action_id"] == RSVP_ACCEPT
        try:
            event = planner.respond_invitation(event_id, user_id, accept)
            if accept:
                client.views_open(trigger_id=body["trigger_id"], view=preference_modal(event_id, event.title))
            elif channel_id:
                _reply(client, channel_id, user_id, "Got it, maybe next time!")
        except PlannerError as e:
            if channel_id:
                _reply(client, channel_id, user_id, str(e))
        except Exception as e:
            logger.exception(e)

    @app.view(PREFS_CALLBACK)
    def on_preferences(ack, body, view, client, logger):
        meta = json.loads(view.get("private_metadata") or "{}")
        event_id = meta.get("event_id")
        user_id = body["user"]["id"]
        pref, location, errors = preference_from_view(user_id, view["state"]["values"])
        if errors:
            ack(response_action="errors", errors=errors)
            return
        ack()
        try:
            if location is not None:
                planner.update_location(event_id, user_id, location)
            event = planner.submit_preferences(event_id, pref)
            if event.channel_id:
                missing = planner.missing_preferences(event_id)
                text = "Preferences saved, thanks!"
                if not missing:
                    text += " Everyone has answered; the organizer can run `/event-recommend`."
                _reply(client, event.channel_id, user_id, text)
        except PlannerError as e:
            log.info("Preference submission by %s rejected: %s", user_id, e)
            client.chat_postMessage(channel=user_id, text=f"Your preferences were not saved: {e}")
        except Exception as e:
            logger.exception(e)

    @app.command("/event-gather")
    def cmd_gather(ack, body, client, logger):
        ack()
        channel_id, user_id = body["channel_id"], body["user_id"]
        event = _resolve_event(body)
        if not event:
            _reply(client, channel_id, user_id, NO_EVENT)
            return
        force = (body.get("text") or "").strip().lower() == "force"
        try:
            planner.begin_gathering(event.event_id, actor_id=user_id, override=force)
            client.chat_postMessage(
                channel=channel_id,
                thread_ts=event.thread_ts,
                text="Collecting preferences now. Use the RSVP button above if you haven't yet.",
            )
        except PlannerError as e:
            _reply(client, channel_id, user_id, str(e))
        except Exception as e:
            logger.exception(e)

    # recommendations (background thread)
    @app.command("/event-recommend")
    def cmd_recommend(ack, body, client, logger):
        ack()
        channel_id, user_id = body["channel_id"], body["user_id"]
        event = _resolve_event(body)
        if not event:
            _reply(client, channel_id, user_id, NO_EVENT)
            return
        force = (body.get("text") or "").strip().lower() == "force"

        def _run():
            try:
                outcome = planner.request_recommendations(event.event_id, actor_id=user_id, override=force)
                if not outcome.admitted:
                    _reply(client, channel_id, user_id, "Recommendations are already being prepared.")
                elif outcome.published:
                    client.chat_postMessage(
                        channel=channel_id,
                        thread_ts=event.thread_ts,
                        text=f"Here are {len(outcome.shortlist)} venues. Please vote!",
                        blocks=shortlist_blocks(event),
                    )
                elif outcome.error:
                    client.chat_postMessage(channel=channel_id, thread_ts=event.thread_ts, text=outcome.error)
            except PlannerError as e:
                _reply(client, channel_id, user_id, str(e))
            except Exception as e:
                logger.exception(e)
                client.chat_postMessage(
                    channel=channel_id, thread_ts=event.thread_ts, text="Could not generate recommendations, please retry."
                )

        threading.Thread(target=_run, name=f"recommend-{event.event_id}", daemon=True).start()

    @app.command("/event-status")
    def cmd_status(ack, body, client, say):
        ack()
        event = _resolve_event(body)
        if not event:
            _reply(client, body["channel_id"], body["user_id"], NO_EVENT)
            return
        progress = planner.get_progress(event.event_id)
        say(text=f"Status of {event.title}", blocks=status_blocks(event, progress))

    # voting
    @app.action(VOTE_ACTION)
    def on_vote(ack, body, action, client, logger):
        ack()
        user_id = body["user"]["id"]
        channel_id = (body.get("channel") or {}).get("id")
        event_id, venue_id, value = parse_vote_value(action["selected_option"]["value"])
        try:
            outcome = planner.cast_vote(event_id, user_id, venue_id, value)
            event = planner.repo.get(event_id)
            if channel_id:
                _reply(client, channel_id, user_id, "Vote saved.")
            if outcome.confirmed:
                client.chat_postMessage(
                    channel=event.channel_id or channel_id,
                    thread_ts=event.thread_ts,
                    text=_confirmed_text(event),
                )
        except PlannerError as e:
            if channel_id:
                _reply(client, channel_id, user_id, str(e))
        except Exception as e:
            logger.exception(e)

    @app.command("/event-tally")
    def cmd_tally(ack, body, client, say):
        ack()
        event = _resolve_event(body)
        if not event:
            _reply(client, body["channel_id"], body["user_id"], NO_EVENT)
            return
        ranked, disqualified = planner.tally(event.event_id)
        say(text="Current votes", blocks=tally_blocks(event, ranked, disqualified), thread_ts=event.thread_ts)

    # organizer confirms manually
    @app.command("/event-confirm")
    def cmd_confirm(ack, body, client, logger):
        ack()
        channel_id, user_id = body["channel_id"], body["user_id"]
        event = _resolve_event(body)
        if not event:
            _reply(client, channel_id, user_id, NO_EVENT)
            return
        arg = (body.get("text") or "").strip()
        venue_id = arg
        if arg.isdigit() and 1 <= int(arg) <= len(event.shortlist):
            venue_id = event.shortlist[int(arg) - 1].venue_id
        try:
            planner.force_confirm(event.event_id, user_id, venue_id)
            venue = next(r for r in event.shortlist if r.venue_id == venue_id)
            client.chat_postMessage(
                channel=channel_id,
                text=f":white_check_mark: <@{user_id}> confirmed *{venue.venue_name}* for {event.title}.",
            )
        except PlannerError as e:
            _reply(client, channel_id, user_id, str(e))
        except Exception as e:
            logger.exception(e)

    @app.command("/event-cancel")
    def cmd_cancel(ack, body, client, logger):
        ack()
        channel_id, user_id = body["channel_id"], body["user_id"]
        event = _resolve_event(body)
        if not event:
            _reply(client, channel_id, user_id, NO_EVENT)
            return
        reason = (body.get("text") or "").strip()
        try:
            planner.cancel(event.event_id, actor_id=user_id, reason=reason)
            client.chat_postMessage(
                channel=channel_id,
                text=f":no_entry: {event.title} was cancelled" + (f": {reason}" if reason else "."),
            )
        except PlannerError as e:
            _reply(client, channel_id, user_id, str(e))
        except Exception as e:
            logger.exception(e)

    @app.command("/event-route")
    def cmd_route(ack, body, client, say, logger):
        ack()
        channel_id, user_id = body["channel_id"], body["user_id"]
        event = _resolve_event(body)
        if not event:
            _reply(client, channel_id, user_id, NO_EVENT)
            return
        try:
            legs = planner.travel_summary(event.event_id)
            venue = next(r for r in event.shortlist if r.venue_id == event.confirmed_venue_id)
            say(text=f"Getting to {venue.venue_name}", blocks=travel_blocks(venue.venue_name, legs), thread_ts=event.thread_ts)
        except PlannerError as e:
            _reply(client, channel_id, user_id, str(e))
        except Exception as e:
            logger.exception(e)

    return announce_sweep
