from .base import Capability, CapabilityContext, CapabilityResult
from .gmail import SendEmailCapability
from .google_calendar import CheckAvailabilityCapability, CreateEventCapability, ListEventsCapability
from .registry import CapabilityRegistry
from .web_search import WebSearchCapability

__all__ = [
    "Capability",
    "CapabilityContext",
    "CapabilityResult",
    "CapabilityRegistry",
    "CheckAvailabilityCapability",
    "CreateEventCapability",
    "ListEventsCapability",
    "SendEmailCapability",
    "WebSearchCapability",
]
