from __future__ import annotations

from .gmail import SendEmailCapability
from .google_calendar import CheckAvailabilityCapability, CreateEventCapability, ListEventsCapability
from .registry import CapabilityRegistry
from .web_search import WebSearchCapability


def build_default_registry() -> CapabilityRegistry:
    registry = CapabilityRegistry()
    registry.register(
        capability=ListEventsCapability(),
        label="Google Calendar",
        description="List upcoming events in the connected Google Calendar.",
        schema={
            "type": "object",
            "required": [],
            "properties": {
                "time_min": {
                    "type": "string",
                    "description": "ISO-8601 lower bound for event start. Defaults to now.",
                },
                "time_max": {
                    "type": "string",
                    "description": "ISO-8601 upper bound for event start.",
                },
                "max_results": {
                    "type": "integer",
                    "description": "Maximum events to return (1-50).",
                },
            },
        },
    )
    registry.register(
        capability=CreateEventCapability(),
        label="Google Calendar",
        description="Create an event in the connected Google Calendar.",
        schema={
            "type": "object",
            "required": ["start", "end"],
            "properties": {
                "title": {"type": "string", "description": "Event title."},
                "start": {"type": "string", "description": "ISO-8601 start date-time."},
                "end": {"type": "string", "description": "ISO-8601 end date-time."},
                "description": {"type": "string", "description": "Optional notes."},
                "attendees": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Attendee email addresses.",
                },
                "time_zone": {
                    "type": "string",
                    "description": "IANA time zone used for naive date-times.",
                },
            },
        },
    )
    registry.register(
        capability=CheckAvailabilityCapability(),
        label="Google Calendar",
        description="Check whether the connected Google Calendar is free between two times.",
        schema={
            "type": "object",
            "required": ["start", "end"],
            "properties": {
                "start": {"type": "string", "description": "ISO-8601 window start."},
                "end": {"type": "string", "description": "ISO-8601 window end."},
            },
        },
    )
    registry.register(
        capability=SendEmailCapability(),
        label="Gmail",
        description="Send an email from the connected Gmail account.",
        schema={
            "type": "object",
            "required": ["to", "subject", "body"],
            "properties": {
                "to": {"type": "string", "description": "Recipient email address."},
                "subject": {"type": "string", "description": "Subject line."},
                "body": {"type": "string", "description": "Plain-text message body."},
            },
        },
    )
    registry.register(
        capability=WebSearchCapability(),
        label="Web search",
        description="Search the web and return a short narrative with sources.",
        schema={
            "type": "object",
            "required": ["query"],
            "properties": {
                "query": {"type": "string", "description": "Search query."},
                "max_results": {
                    "type": "integer",
                    "description": "Maximum sources to consider.",
                },
                "language": {
                    "type": "string",
                    "description": "Result language: en or tr.",
                },
            },
        },
    )
    return registry
