from __future__ import annotations

import json
import logging
from typing import Any

import requests

from agentrelay.errors import RemoteEngineError

from .remote_job import CapabilityInvocation, RemoteJob, RunStatus
from .token_security import redact_sensitive_text

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "queued": RunStatus.POLLING,
    "in_progress": RunStatus.POLLING,
    "cancelling": RunStatus.POLLING,
    "requires_action": RunStatus.NEEDS_CAPABILITY,
    "completed": RunStatus.COMPLETED,
    "failed": RunStatus.FAILED,
    "incomplete": RunStatus.FAILED,
    "cancelled": RunStatus.CANCELLED,
    "expired": RunStatus.EXPIRED,
}


class AssistantsClient:
    """Reasoning-engine client for the OpenAI Assistants v2 REST protocol."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: int = 30,
        session: requests.Session | None = None,
    ) -> None:
        self._api_key = (api_key or "").strip()
        if not self._api_key:
            raise RuntimeError("OPENAI_API_KEY is required.")
        self._base_url = (base_url or "").strip().rstrip("/") or "https://api.openai.com/v1"
        self._timeout_seconds = max(1, int(timeout_seconds))
        self._session = session or requests.Session()

    def create_thread(self, metadata: dict[str, str] | None = None) -> str:
        body: dict[str, Any] = {}
        if metadata:
            body["metadata"] = metadata
        payload = self._request("POST", "/threads", body, action="create thread")
        return _require_id(payload, "thread")

    def submit_turn(
        self,
        *,
        thread_id: str | None,
        assistant_id: str,
        text: str,
        tools: list[dict[str, object]] | None = None,
    ) -> RemoteJob:
        run_options: dict[str, Any] = {"assistant_id": assistant_id}
        if tools:
            run_options["tools"] = tools
        if thread_id:
            self._request(
                "POST",
                f"/threads/{thread_id}/messages",
                {"role": "user", "content": text},
                action="add message",
            )
            payload = self._request(
                "POST", f"/threads/{thread_id}/runs", run_options, action="create run"
            )
        else:
            payload = self._request(
                "POST",
                "/threads/runs",
                {**run_options, "thread": {"messages": [{"role": "user", "content": text}]}},
                action="create thread and run",
            )
        return parse_run(payload)

    def poll_job(self, job: RemoteJob) -> RemoteJob:
        payload = self._request(
            "GET", f"/threads/{job.thread_id}/runs/{job.job_id}", None, action="retrieve run"
        )
        return parse_run(payload)

    def submit_results(self, job: RemoteJob, outputs: list[tuple[str, str]]) -> None:
        self._request(
            "POST",
            f"/threads/{job.thread_id}/runs/{job.job_id}/submit_tool_outputs",
            {
                "tool_outputs": [
                    {"tool_call_id": call_id, "output": output} for call_id, output in outputs
                ]
            },
            action="submit tool outputs",
        )

    def get_latest_reply(self, thread_id: str) -> str | None:
        payload = self._request(
            "GET",
            f"/threads/{thread_id}/messages?order=desc&limit=20",
            None,
            action="list messages",
        )
        rows = payload.get("data")
        if not isinstance(rows, list):
            return None
        assistant_rows = [
            row for row in rows if isinstance(row, dict) and row.get("role") == "assistant"
        ]
        assistant_rows.sort(key=lambda row: _as_int(row.get("created_at")), reverse=True)
        for row in assistant_rows:
            text = _first_text_part(row.get("content"))
            if text is not None:
                return text
        return None

    def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None,
        *,
        action: str,
    ) -> dict[str, Any]:
        try:
            response = self._session.request(
                method,
                f"{self._base_url}{path}",
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                    "OpenAI-Beta": "assistants=v2",
                },
                json=body,
                timeout=self._timeout_seconds,
            )
        except requests.RequestException as exc:
            raise RemoteEngineError(
                f"Reasoning engine {action} failed: {redact_sensitive_text(str(exc))}"
            ) from exc
        if not response.ok:
            detail = redact_sensitive_text(response.text.strip())[:400]
            raise RemoteEngineError(
                f"Reasoning engine {action} failed ({response.status_code}): "
                f"{detail or 'request failed'}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteEngineError(f"Reasoning engine {action} returned invalid JSON.") from exc
        if not isinstance(payload, dict):
            raise RemoteEngineError(f"Reasoning engine {action} returned unexpected payload.")
        return payload


def parse_run(payload: dict[str, Any]) -> RemoteJob:
    job_id = _require_id(payload, "run")
    thread_id = str(payload.get("thread_id") or "").strip()
    if not thread_id:
        raise RemoteEngineError("Reasoning engine run is missing thread_id.")
    raw_status = str(payload.get("status") or "").strip().lower()
    status = _STATUS_MAP.get(raw_status)
    if status is None:
        logger.warning("Unrecognised run status %r for run %s; treating as in progress", raw_status, job_id)
        status = RunStatus.POLLING

    invocations: tuple[CapabilityInvocation, ...] = ()
    if status is RunStatus.NEEDS_CAPABILITY:
        invocations = _parse_tool_calls(payload.get("required_action"))

    last_error = None
    error_row = payload.get("last_error")
    if isinstance(error_row, dict):
        last_error = str(error_row.get("message") or error_row.get("code") or "").strip() or None
    return RemoteJob(
        job_id=job_id,
        thread_id=thread_id,
        status=status,
        pending_invocations=invocations,
        last_error=last_error,
    )


def _parse_tool_calls(required_action: object) -> tuple[CapabilityInvocation, ...]:
    if not isinstance(required_action, dict):
        return ()
    submit = required_action.get("submit_tool_outputs")
    calls = submit.get("tool_calls") if isinstance(submit, dict) else None
    if not isinstance(calls, list):
        return ()
    out: list[CapabilityInvocation] = []
    for call in calls:
        if not isinstance(call, dict):
            continue
        call_id = str(call.get("id") or "").strip()
        function = call.get("function") if isinstance(call.get("function"), dict) else {}
        name = str(function.get("name") or "").strip()
        if not call_id:
            logger.warning("Dropping tool call without id (function %s)", name or "unnamed")
            continue
        out.append(
            CapabilityInvocation(
                call_id=call_id,
                name=name,
                args=_safe_parse_args(function.get("arguments")),
            )
        )
    return tuple(out)


def _safe_parse_args(raw: object) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _first_text_part(content: object) -> str | None:
    if not isinstance(content, list):
        return None
    for part in content:
        if not isinstance(part, dict) or part.get("type") != "text":
            continue
        text = part.get("text")
        if isinstance(text, dict) and isinstance(text.get("value"), str):
            return text["value"]
    return None


def _require_id(payload: dict[str, Any], kind: str) -> str:
    value = payload.get("id")
    if not isinstance(value, str) or not value.strip():
        raise RemoteEngineError(f"Reasoning engine {kind} payload is missing an id.")
    return value.strip()


def _as_int(value: object) -> int:
    return value if isinstance(value, int) else 0
