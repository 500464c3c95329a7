from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

RESULT_FORMAT_JSON = "json"
RESULT_FORMAT_TEXT = "text"


@dataclass(frozen=True)
class CapabilityContext:
    caller_id: str
    agent_id: str
    conversation_id: str | None = None
    language: str = "en"
    credentials: dict[str, str] = field(default_factory=dict)

    def credential(self, provider: str) -> str | None:
        token = self.credentials.get(provider)
        if isinstance(token, str) and token.strip():
            return token.strip()
        return None


@dataclass(frozen=True)
class CapabilityResult:
    call_id: str
    name: str
    ok: bool
    payload: Any = None
    error_message: str | None = None
    raw_error: str | None = None
    result_format: str = RESULT_FORMAT_JSON

    def to_output(self) -> str:
        if not self.ok:
            return json.dumps(
                {"success": False, "error": self.error_message or "Capability failed."},
                ensure_ascii=False,
            )
        if self.result_format == RESULT_FORMAT_TEXT:
            return self.payload if isinstance(self.payload, str) else str(self.payload or "")
        return json.dumps(self.payload, ensure_ascii=False, default=str)


class Capability(ABC):
    name: str
    result_format: str = RESULT_FORMAT_JSON
    unavailable_message: str = "The service is unavailable right now."

    @abstractmethod
    def run(self, args: dict[str, Any], context: CapabilityContext) -> Any:
        raise NotImplementedError
