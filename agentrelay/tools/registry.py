from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from agentrelay.errors import CapabilityError, CapabilityValidationError
from agentrelay.services.token_security import redact_sensitive_text

from .base import Capability, CapabilityContext, CapabilityResult, RESULT_FORMAT_JSON

logger = logging.getLogger(__name__)

_TYPE_CHECKS: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list,),
}


@dataclass(frozen=True)
class CapabilityDefinition:
    name: str
    label: str
    description: str
    capability: Capability
    schema: dict[str, object]

    def validate_args(self, args: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(args, dict):
            raise CapabilityValidationError(f"Capability '{self.name}' args must be an object.")

        required = self.schema.get("required")
        required_fields = required if isinstance(required, list) else []
        for field_name in required_fields:
            if not isinstance(field_name, str):
                continue
            value = args.get(field_name)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise CapabilityValidationError(
                    f"Capability '{self.name}' missing required arg '{field_name}'."
                )

        properties = self.schema.get("properties")
        if not isinstance(properties, dict):
            return dict(args)

        clean: dict[str, Any] = {}
        for key, value in args.items():
            prop = properties.get(key)
            if not isinstance(prop, dict):
                continue
            if value is None:
                continue
            expected = prop.get("type")
            allowed = _TYPE_CHECKS.get(expected) if isinstance(expected, str) else None
            if allowed is None:
                clean[key] = value
                continue
            # bool is an int subclass; only accept it where a boolean is expected.
            if isinstance(value, bool) and expected != "boolean":
                allowed = ()
            if not isinstance(value, allowed):
                raise CapabilityValidationError(
                    f"Capability '{self.name}' arg '{key}' must be {_article(expected)} {expected}."
                )
            clean[key] = value
        return clean

    def tool_spec(self) -> dict[str, object]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.schema,
            },
        }


class CapabilityRegistry:
    def __init__(self) -> None:
        self._capabilities: dict[str, CapabilityDefinition] = {}

    def register(
        self,
        *,
        capability: Capability,
        label: str,
        description: str,
        schema: dict[str, object],
    ) -> None:
        if capability.name in self._capabilities:
            raise ValueError(f"Capability '{capability.name}' is already registered.")
        self._capabilities[capability.name] = CapabilityDefinition(
            name=capability.name,
            label=label,
            description=description,
            capability=capability,
            schema=schema,
        )

    def get_definition(self, name: str) -> CapabilityDefinition | None:
        return self._capabilities.get(name)

    def list_capabilities(self) -> list[str]:
        return sorted(self._capabilities.keys())

    def tool_specs(self) -> list[dict[str, object]]:
        return [self._capabilities[name].tool_spec() for name in self.list_capabilities()]

    def invoke(
        self,
        name: str,
        args: dict[str, Any],
        context: CapabilityContext,
        call_id: str = "",
    ) -> CapabilityResult:
        definition = self.get_definition(name)
        if definition is None:
            logger.warning("Unknown capability requested: %s (call %s)", name, call_id)
            return CapabilityResult(
                call_id=call_id,
                name=name,
                ok=False,
                error_message=f"Unknown capability '{name}'.",
            )

        capability = definition.capability
        result_format = getattr(capability, "result_format", RESULT_FORMAT_JSON)
        try:
            clean_args = definition.validate_args(args)
            payload = capability.run(clean_args, context)
        except CapabilityValidationError as exc:
            logger.info("Capability %s rejected args (call %s): %s", name, call_id, exc)
            return CapabilityResult(
                call_id=call_id,
                name=name,
                ok=False,
                error_message=str(exc),
                result_format=result_format,
            )
        except Exception as exc:
            raw_error = redact_sensitive_text(str(exc)) or exc.__class__.__name__
            user_message = None
            if isinstance(exc, CapabilityError):
                user_message = exc.user_message
            user_message = user_message or capability.unavailable_message
            logger.warning(
                "Capability %s failed (call %s, caller %s, agent %s): %s",
                name,
                call_id,
                context.caller_id,
                context.agent_id,
                raw_error,
            )
            return CapabilityResult(
                call_id=call_id,
                name=name,
                ok=False,
                error_message=user_message,
                raw_error=raw_error,
                result_format=result_format,
            )

        return CapabilityResult(
            call_id=call_id,
            name=name,
            ok=True,
            payload=payload,
            result_format=result_format,
        )


def _article(type_name: str) -> str:
    return "an" if type_name[:1] in {"a", "e", "i", "o", "u"} else "a"
