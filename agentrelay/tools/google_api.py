from __future__ import annotations

import json
import logging
import time
from urllib import error as urlerror
from urllib import request as urlrequest

from agentrelay.errors import CapabilityProviderError

logger = logging.getLogger(__name__)

MAX_RETRIES = 2
INITIAL_BACKOFF_SECONDS = 0.5
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def api_request_json(
    url: str,
    method: str,
    access_token: str,
    timeout: int,
    service_name: str,
    body: dict[str, object] | None = None,
) -> dict:
    """Call a Google JSON API, retrying transient failures with backoff.

    401/403, 400 and 404 surface immediately; 429 and 5xx responses and
    connection errors are retried up to MAX_RETRIES extra times.
    """
    encoded = None if body is None else json.dumps(body).encode("utf-8")
    headers = {
        "Accept": "application/json",
        "Authorization": f"Bearer {access_token}",
    }
    if body is not None:
        headers["Content-Type"] = "application/json"

    backoff = INITIAL_BACKOFF_SECONDS
    for attempt in range(MAX_RETRIES + 1):
        req = urlrequest.Request(url, data=encoded, method=method, headers=headers)
        try:
            with urlrequest.urlopen(req, timeout=timeout) as res:
                raw = res.read().decode("utf-8")
        except urlerror.HTTPError as exc:
            detail = _error_detail(exc)
            if exc.code in RETRYABLE_STATUS_CODES and attempt < MAX_RETRIES:
                logger.info(
                    "%s API returned %s, retrying in %.1fs", service_name, exc.code, backoff
                )
                time.sleep(backoff)
                backoff *= 2
                continue
            if exc.code in {401, 403}:
                raise CapabilityProviderError(
                    f"{service_name} authorization failed ({exc.code}){detail}.",
                    user_message=(
                        f"{service_name} authorization failed. "
                        "Please reconnect the Google account for this agent."
                    ),
                ) from exc
            if exc.code == 400:
                raise CapabilityProviderError(
                    f"{service_name} rejected the request (400){detail}.",
                    user_message=(
                        f"{service_name} could not process that request. "
                        "Please check the details and try again."
                    ),
                ) from exc
            if exc.code == 404:
                raise CapabilityProviderError(
                    f"{service_name} could not find the requested resource.",
                    user_message=f"{service_name} could not find the requested resource.",
                ) from exc
            raise CapabilityProviderError(f"{service_name} API failed ({exc.code}){detail}.") from exc
        except (urlerror.URLError, TimeoutError, ConnectionError) as exc:
            if attempt < MAX_RETRIES:
                logger.info("%s API unreachable (%s), retrying in %.1fs", service_name, exc, backoff)
                time.sleep(backoff)
                backoff *= 2
                continue
            raise CapabilityProviderError(f"{service_name} API failed: {exc}") from exc

        if not raw.strip():
            return {}
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CapabilityProviderError(f"{service_name} returned invalid JSON.") from exc
        if not isinstance(payload, dict):
            raise CapabilityProviderError(f"{service_name} returned an unexpected payload.")
        return payload

    raise CapabilityProviderError(f"{service_name} API failed after retries.")


def _error_detail(exc: urlerror.HTTPError) -> str:
    try:
        raw_error = exc.read().decode("utf-8", errors="replace")
        parsed_error = json.loads(raw_error)
    except (AttributeError, OSError, ValueError):
        return ""
    if not isinstance(parsed_error, dict):
        return ""
    nested = parsed_error.get("error")
    if isinstance(nested, dict):
        message = str(nested.get("message") or "").strip()
        if message:
            return f": {message}"
    return ""
