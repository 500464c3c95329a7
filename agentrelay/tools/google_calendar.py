from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib import parse as urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from agentrelay.config import settings
from agentrelay.errors import CapabilityProviderError, CapabilityValidationError

from .base import Capability, CapabilityContext
from .google_api import api_request_json

logger = logging.getLogger(__name__)

CALENDAR_EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"
CALENDAR_FREEBUSY_URL = "https://www.googleapis.com/calendar/v3/freeBusy"
CALENDAR_HOME_URL = "https://calendar.google.com/"
GOOGLE_PROVIDER = "google"
_EMAIL_PATTERN = re.compile(r"^[A-Z0-9._%+\-]+@[A-Z0-9.\-]+\.[A-Z]{2,}$", re.IGNORECASE)


@dataclass(frozen=True)
class ListEventsRequest:
    time_min: datetime
    time_max: datetime | None
    max_results: int

    @classmethod
    def from_args(cls, args: dict[str, Any], tz: ZoneInfo) -> "ListEventsRequest":
        time_min = _parse_datetime(args.get("time_min"), "time_min", tz)
        time_max = _parse_datetime(args.get("time_max"), "time_max", tz)
        if time_min is None:
            time_min = datetime.now(timezone.utc)
        if time_max is not None and time_max <= time_min:
            raise CapabilityValidationError("list_events: time_max must be after time_min.")
        raw_limit = args.get("max_results", 10)
        if not isinstance(raw_limit, int) or isinstance(raw_limit, bool):
            raise CapabilityValidationError("list_events: max_results must be an integer.")
        if raw_limit < 1 or raw_limit > 50:
            raise CapabilityValidationError("list_events: max_results must be between 1 and 50.")
        return cls(time_min=time_min, time_max=time_max, max_results=raw_limit)


@dataclass(frozen=True)
class CreateEventRequest:
    title: str
    start: datetime
    end: datetime
    time_zone: str
    description: str | None
    attendees: tuple[str, ...]

    @classmethod
    def from_args(cls, args: dict[str, Any], default_time_zone: str) -> "CreateEventRequest":
        time_zone = str(args.get("time_zone") or default_time_zone).strip()
        tz = _load_zone(time_zone)
        start = _parse_datetime(args.get("start"), "start", tz)
        end = _parse_datetime(args.get("end"), "end", tz)
        if start is None:
            raise CapabilityValidationError("create_event: start is required.")
        if end is None:
            raise CapabilityValidationError("create_event: end is required.")
        if end <= start:
            raise CapabilityValidationError("create_event: end must be after start.")

        title = str(args.get("title") or "").strip() or "Appointment"
        description = str(args.get("description") or "").strip() or None

        raw_attendees = args.get("attendees") or []
        if not isinstance(raw_attendees, list):
            raise CapabilityValidationError("create_event: attendees must be a list of emails.")
        attendees: list[str] = []
        for row in raw_attendees:
            email = str(row or "").strip().lower()
            if not _EMAIL_PATTERN.match(email):
                raise CapabilityValidationError(
                    f"create_event: '{row}' is not a valid attendee email."
                )
            if email not in attendees:
                attendees.append(email)
        return cls(
            title=title[:200],
            start=start,
            end=end,
            time_zone=time_zone,
            description=description,
            attendees=tuple(attendees),
        )


@dataclass(frozen=True)
class AvailabilityRequest:
    start: datetime
    end: datetime

    @classmethod
    def from_args(cls, args: dict[str, Any], tz: ZoneInfo) -> "AvailabilityRequest":
        start = _parse_datetime(args.get("start"), "start", tz)
        end = _parse_datetime(args.get("end"), "end", tz)
        if start is None:
            raise CapabilityValidationError("check_availability: start is required.")
        if end is None:
            raise CapabilityValidationError("check_availability: end is required.")
        if end <= start:
            raise CapabilityValidationError("check_availability: end must be after start.")
        return cls(start=start, end=end)


class GoogleCalendarClient:
    """Google Calendar v3 adapter for a single user's primary calendar."""

    def __init__(self, timeout_seconds: int = 8) -> None:
        self._timeout_seconds = max(1, timeout_seconds)

    def list_events(self, access_token: str, request: ListEventsRequest) -> list[dict[str, Any]]:
        params = {
            "maxResults": str(request.max_results),
            "singleEvents": "true",
            "orderBy": "startTime",
            "timeMin": request.time_min.isoformat(),
        }
        if request.time_max is not None:
            params["timeMax"] = request.time_max.isoformat()
        payload = api_request_json(
            url=f"{CALENDAR_EVENTS_URL}?{urlparse.urlencode(params)}",
            method="GET",
            access_token=access_token,
            timeout=self._timeout_seconds,
            service_name="Google Calendar",
        )
        rows = payload.get("items", [])
        if not isinstance(rows, list):
            return []
        return [row for row in rows if isinstance(row, dict)]

    def insert_event(self, access_token: str, request: CreateEventRequest) -> dict[str, Any]:
        body: dict[str, object] = {
            "summary": request.title,
            "start": {
                "dateTime": request.start.isoformat(),
                "timeZone": request.time_zone,
            },
            "end": {
                "dateTime": request.end.isoformat(),
                "timeZone": request.time_zone,
            },
        }
        if request.description:
            body["description"] = request.description
        if request.attendees:
            body["attendees"] = [{"email": email} for email in request.attendees]
        return api_request_json(
            url=CALENDAR_EVENTS_URL,
            method="POST",
            access_token=access_token,
            timeout=self._timeout_seconds,
            service_name="Google Calendar",
            body=body,
        )

    def query_free_busy(
        self, access_token: str, request: AvailabilityRequest
    ) -> list[dict[str, Any]]:
        payload = api_request_json(
            url=CALENDAR_FREEBUSY_URL,
            method="POST",
            access_token=access_token,
            timeout=self._timeout_seconds,
            service_name="Google Calendar",
            body={
                "timeMin": request.start.isoformat(),
                "timeMax": request.end.isoformat(),
                "items": [{"id": "primary"}],
            },
        )
        calendars = payload.get("calendars")
        primary = calendars.get("primary") if isinstance(calendars, dict) else None
        if not isinstance(primary, dict):
            raise CapabilityProviderError("Google Calendar freeBusy response had no primary calendar.")
        busy = primary.get("busy", [])
        if not isinstance(busy, list):
            return []
        return [row for row in busy if isinstance(row, dict)]


class ListEventsCapability(Capability):
    name = "list_events"
    unavailable_message = "The calendar service is unavailable right now."

    def __init__(self, client: GoogleCalendarClient | None = None) -> None:
        self._client = client or GoogleCalendarClient()

    def run(self, args: dict[str, Any], context: CapabilityContext) -> dict[str, Any]:
        request = ListEventsRequest.from_args(
            args, _load_zone(settings.calendar_default_time_zone)
        )
        token = _require_token(context)
        rows = self._client.list_events(token, request)
        events = [_event_summary(row) for row in rows]
        return {"events": events, "count": len(events)}


class CreateEventCapability(Capability):
    name = "create_event"
    unavailable_message = "The calendar service is unavailable right now."

    def __init__(self, client: GoogleCalendarClient | None = None) -> None:
        self._client = client or GoogleCalendarClient()

    def run(self, args: dict[str, Any], context: CapabilityContext) -> dict[str, Any]:
        request = CreateEventRequest.from_args(args, settings.calendar_default_time_zone)
        token = _require_token(context)
        created = self._client.insert_event(token, request)
        event_id = str(created.get("id") or "").strip()
        if not event_id:
            raise CapabilityProviderError("Google Calendar returned no event id.")
        logger.info(
            "Created calendar event %s for caller %s agent %s",
            event_id,
            context.caller_id,
            context.agent_id,
        )
        return {
            "event_id": event_id,
            "link": str(created.get("htmlLink") or CALENDAR_HOME_URL),
            "title": request.title,
            "start": request.start.isoformat(),
            "end": request.end.isoformat(),
            "message": "Event created.",
        }


class CheckAvailabilityCapability(Capability):
    name = "check_availability"
    unavailable_message = "The calendar service is unavailable right now."

    def __init__(self, client: GoogleCalendarClient | None = None) -> None:
        self._client = client or GoogleCalendarClient()

    def run(self, args: dict[str, Any], context: CapabilityContext) -> dict[str, Any]:
        request = AvailabilityRequest.from_args(
            args, _load_zone(settings.calendar_default_time_zone)
        )
        token = _require_token(context)
        busy = [
            {"start": str(row.get("start") or ""), "end": str(row.get("end") or "")}
            for row in self._client.query_free_busy(token, request)
        ]
        return {
            "start": request.start.isoformat(),
            "end": request.end.isoformat(),
            "busy": busy,
            "available": not busy,
        }


def _require_token(context: CapabilityContext) -> str:
    token = context.credential(GOOGLE_PROVIDER)
    if token is None:
        raise CapabilityProviderError(
            f"No Google token for caller {context.caller_id} agent {context.agent_id}.",
            user_message="Google account is not connected for this agent.",
        )
    return token


def _event_summary(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": str(row.get("id") or ""),
        "title": str(row.get("summary") or "Untitled event").strip(),
        "start": _event_time(row.get("start")),
        "end": _event_time(row.get("end")),
        "location": str(row.get("location") or "").strip() or None,
        "link": str(row.get("htmlLink") or CALENDAR_HOME_URL),
    }


def _event_time(value: object) -> str | None:
    if not isinstance(value, dict):
        return None
    for key in ("dateTime", "date"):
        raw = value.get(key)
        if isinstance(raw, str) and raw.strip():
            return raw.strip()
    return None


def _load_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise CapabilityValidationError(f"Unknown time zone '{name}'.") from exc


def _parse_datetime(value: object, field_name: str, tz: ZoneInfo) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise CapabilityValidationError(f"{field_name} must be an ISO-8601 date-time string.")
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise CapabilityValidationError(
            f"{field_name} '{value}' is not a valid ISO-8601 date-time."
        ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed
