from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import requests

from .token_security import TokenCipher, build_token_cipher_from_env, redact_sensitive_text

logger = logging.getLogger(__name__)

GOOGLE_PROVIDER = "google"


@dataclass(frozen=True)
class ConnectedAccount:
    id: str
    user_id: str
    agent_id: str
    provider: str
    access_token: str | None
    status: str

    def usable_token(self) -> str | None:
        if self.status != "active" or not self.access_token:
            return None
        return self.access_token.strip() or None


class ConnectedAccountsRepository:
    """Read-only lookup of provider tokens, scoped by (user, agent).

    Rows come from the per-agent Google calendar link table
    (`google_access_token`, `is_active`), so every token resolves under the
    "google" provider. Token acquisition and refresh happen elsewhere; an
    inactive or missing row simply leaves the provider out.
    """

    def __init__(
        self,
        supabase_url: str | None,
        supabase_service_role_key: str | None,
        table: str = "user_google_calendars",
        timeout_seconds: int = 8,
        token_cipher: TokenCipher | None = None,
    ) -> None:
        self.supabase_url = (supabase_url or "").rstrip("/")
        self.supabase_service_role_key = (supabase_service_role_key or "").strip()
        self.table = (table or "user_google_calendars").strip()
        self.timeout_seconds = max(1, int(timeout_seconds))
        self.token_cipher = token_cipher or build_token_cipher_from_env()

    def is_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key and self.table)

    def get_accounts(self, user_id: str, agent_id: str) -> list[ConnectedAccount]:
        if not self.is_configured():
            raise RuntimeError(
                "Connected accounts repository is not configured. "
                "Set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY."
            )
        response = requests.get(
            f"{self.supabase_url}/rest/v1/{self.table}",
            headers={
                "apikey": self.supabase_service_role_key,
                "Authorization": f"Bearer {self.supabase_service_role_key}",
            },
            params={
                "select": "id,user_id,agent_id,google_access_token,is_active",
                "user_id": f"eq.{user_id}",
                "agent_id": f"eq.{agent_id}",
                "is_active": "eq.true",
                "order": "updated_at.desc",
            },
            timeout=self.timeout_seconds,
        )
        if not response.ok:
            detail = redact_sensitive_text(response.text.strip())
            raise RuntimeError(
                f"Failed to fetch connected accounts: HTTP {response.status_code} "
                f"{detail or 'request failed'}"
            )
        payload = response.json()
        if not isinstance(payload, list):
            raise RuntimeError("Unexpected connected accounts response payload.")
        return [self._to_account(row) for row in payload if isinstance(row, dict)]

    def resolve_credentials(self, user_id: str, agent_id: str) -> dict[str, str]:
        if not self.is_configured():
            return {}
        try:
            accounts = self.get_accounts(user_id=user_id, agent_id=agent_id)
        except (requests.RequestException, RuntimeError, ValueError) as exc:
            logger.warning(
                "Credential lookup failed for user %s agent %s: %s",
                user_id,
                agent_id,
                redact_sensitive_text(str(exc)),
            )
            return {}
        out: dict[str, str] = {}
        for account in accounts:
            if account.provider in out:
                continue
            token = account.usable_token()
            if token:
                out[account.provider] = token
        return out

    def _to_account(self, row: dict[str, Any]) -> ConnectedAccount:
        return ConnectedAccount(
            id=str(row.get("id", "")),
            user_id=str(row.get("user_id", "")),
            agent_id=str(row.get("agent_id", "")),
            provider=GOOGLE_PROVIDER,
            access_token=self.token_cipher.decrypt(_opt_str(row.get("google_access_token"))),
            status="active" if row.get("is_active", True) is True else "inactive",
        )


def _opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value != "" else None

