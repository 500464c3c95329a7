from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import requests

from agentrelay.errors import PersistenceError

from .token_security import redact_sensitive_text

SENDER_USER = "user"
SENDER_AGENT = "agent"


@dataclass(frozen=True)
class AgentProfile:
    id: str
    name: str
    assistant_id: str | None


@dataclass(frozen=True)
class Conversation:
    id: str
    user_id: str
    agent_id: str
    thread_id: str | None
    channel: str = "web"
    status: str = "active"
    meta: dict[str, Any] = field(default_factory=dict)
    last_message_at: datetime | None = None


@dataclass(frozen=True)
class StoredMessage:
    id: str
    conversation_id: str
    sender: str
    content: str
    created_at: datetime | None


class TurnStore(Protocol):
    def record_user_message(self, conversation_id: str, text: str) -> None: ...

    def record_assistant_message(self, conversation_id: str, text: str) -> None: ...


class ConversationStore(TurnStore, Protocol):
    def get_agent(self, agent_id: str) -> AgentProfile | None: ...

    def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    def create_conversation(
        self,
        *,
        user_id: str,
        agent_id: str,
        thread_id: str | None,
        meta: dict[str, Any] | None = None,
    ) -> Conversation: ...

    def touch_conversation(self, conversation_id: str) -> None: ...

    def list_conversations(self, user_id: str, agent_id: str) -> list[Conversation]: ...

    def list_messages(self, conversation_id: str) -> list[StoredMessage]: ...


class InMemoryConversationStore:
    """Process-local store used when no database is configured."""

    def __init__(
        self,
        agents: list[AgentProfile] | None = None,
        default_assistant_id: str | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._agents = {agent.id: agent for agent in agents or []}
        self._default_assistant_id = default_assistant_id
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[StoredMessage]] = {}

    def get_agent(self, agent_id: str) -> AgentProfile | None:
        agent = self._agents.get(agent_id)
        if agent is not None:
            return agent
        if self._default_assistant_id:
            return AgentProfile(id=agent_id, name=agent_id, assistant_id=self._default_assistant_id)
        return None

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._lock:
            return self._conversations.get(conversation_id)

    def create_conversation(
        self,
        *,
        user_id: str,
        agent_id: str,
        thread_id: str | None,
        meta: dict[str, Any] | None = None,
    ) -> Conversation:
        conversation = Conversation(
            id=str(uuid.uuid4()),
            user_id=user_id,
            agent_id=agent_id,
            thread_id=thread_id,
            meta=dict(meta or {}),
            last_message_at=_now(),
        )
        with self._lock:
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
        return conversation

    def touch_conversation(self, conversation_id: str) -> None:
        with self._lock:
            current = self._conversations.get(conversation_id)
            if current is None:
                raise KeyError(f"Conversation {conversation_id} not found.")
            self._conversations[conversation_id] = Conversation(
                id=current.id,
                user_id=current.user_id,
                agent_id=current.agent_id,
                thread_id=current.thread_id,
                channel=current.channel,
                status=current.status,
                meta=current.meta,
                last_message_at=_now(),
            )

    def list_conversations(self, user_id: str, agent_id: str) -> list[Conversation]:
        with self._lock:
            rows = [
                row
                for row in self._conversations.values()
                if row.user_id == user_id and row.agent_id == agent_id
            ]
        return sorted(rows, key=lambda row: row.last_message_at or _EPOCH, reverse=True)

    def list_messages(self, conversation_id: str) -> list[StoredMessage]:
        with self._lock:
            return list(self._messages.get(conversation_id, []))

    def record_user_message(self, conversation_id: str, text: str) -> None:
        self._append(conversation_id, SENDER_USER, text)

    def record_assistant_message(self, conversation_id: str, text: str) -> None:
        self._append(conversation_id, SENDER_AGENT, text)

    def _append(self, conversation_id: str, sender: str, text: str) -> None:
        with self._lock:
            if conversation_id not in self._conversations:
                raise KeyError(f"Conversation {conversation_id} not found.")
            self._messages[conversation_id].append(
                StoredMessage(
                    id=str(uuid.uuid4()),
                    conversation_id=conversation_id,
                    sender=sender,
                    content=text,
                    created_at=_now(),
                )
            )


class SupabaseConversationStore:
    """Conversation history in Supabase tables, via the PostgREST API."""

    def __init__(
        self,
        supabase_url: str | None,
        supabase_service_role_key: str | None,
        conversations_table: str = "conversations",
        messages_table: str = "messages",
        agents_table: str = "agents",
        timeout_seconds: int = 8,
        default_assistant_id: str | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.supabase_url = (supabase_url or "").rstrip("/")
        self.supabase_service_role_key = (supabase_service_role_key or "").strip()
        self.conversations_table = conversations_table
        self.messages_table = messages_table
        self.agents_table = agents_table
        self.timeout_seconds = max(1, int(timeout_seconds))
        self.default_assistant_id = default_assistant_id
        self._session = session or requests.Session()

    def is_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)

    def get_agent(self, agent_id: str) -> AgentProfile | None:
        rows = self._select(
            self.agents_table,
            {"select": "id,name,assistant_id", "id": f"eq.{agent_id}", "limit": "1"},
            action="fetch agent",
        )
        if not rows:
            return None
        row = rows[0]
        assistant_id = _opt_str(row.get("assistant_id")) or self.default_assistant_id
        return AgentProfile(
            id=str(row.get("id") or agent_id),
            name=str(row.get("name") or "").strip() or agent_id,
            assistant_id=assistant_id,
        )

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        rows = self._select(
            self.conversations_table,
            {"select": "*", "id": f"eq.{conversation_id}", "limit": "1"},
            action="fetch conversation",
        )
        return _to_conversation(rows[0]) if rows else None

    def create_conversation(
        self,
        *,
        user_id: str,
        agent_id: str,
        thread_id: str | None,
        meta: dict[str, Any] | None = None,
    ) -> Conversation:
        rows = self._write(
            "POST",
            self.conversations_table,
            params=None,
            body={
                "user_id": user_id,
                "agent_id": agent_id,
                "thread_id": thread_id,
                "channel": "web",
                "status": "active",
                "meta": meta or {},
                "last_message_at": _now().isoformat(),
            },
            action="create conversation",
        )
        if not rows:
            raise PersistenceError("Create conversation returned no rows.")
        return _to_conversation(rows[0])

    def touch_conversation(self, conversation_id: str) -> None:
        self._write(
            "PATCH",
            self.conversations_table,
            params={"id": f"eq.{conversation_id}"},
            body={"last_message_at": _now().isoformat()},
            action="update conversation",
        )

    def list_conversations(self, user_id: str, agent_id: str) -> list[Conversation]:
        rows = self._select(
            self.conversations_table,
            {
                "select": "*",
                "user_id": f"eq.{user_id}",
                "agent_id": f"eq.{agent_id}",
                "order": "last_message_at.desc",
            },
            action="list conversations",
        )
        return [_to_conversation(row) for row in rows]

    def list_messages(self, conversation_id: str) -> list[StoredMessage]:
        rows = self._select(
            self.messages_table,
            {
                "select": "id,conversation_id,sender,content,created_at",
                "conversation_id": f"eq.{conversation_id}",
                "order": "created_at.asc",
            },
            action="list messages",
        )
        return [
            StoredMessage(
                id=str(row.get("id") or ""),
                conversation_id=str(row.get("conversation_id") or conversation_id),
                sender=str(row.get("sender") or ""),
                content=str(row.get("content") or ""),
                created_at=_parse_time(row.get("created_at")),
            )
            for row in rows
        ]

    def record_user_message(self, conversation_id: str, text: str) -> None:
        self._insert_message(conversation_id, SENDER_USER, text)

    def record_assistant_message(self, conversation_id: str, text: str) -> None:
        self._insert_message(conversation_id, SENDER_AGENT, text)

    def _insert_message(self, conversation_id: str, sender: str, text: str) -> None:
        self._write(
            "POST",
            self.messages_table,
            params=None,
            body={
                "conversation_id": conversation_id,
                "sender": sender,
                "content": text,
                "attachments": [],
            },
            action=f"store {sender} message",
        )

    def _select(self, table: str, params: dict[str, str], *, action: str) -> list[dict[str, Any]]:
        self._ensure_configured()
        try:
            response = self._session.get(
                self._table_url(table),
                headers=self._headers(),
                params=params,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise PersistenceError(
                f"Failed to {action}: {redact_sensitive_text(str(exc))}"
            ) from exc
        return self._rows(response, action)

    def _write(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None,
        body: dict[str, Any],
        action: str,
    ) -> list[dict[str, Any]]:
        self._ensure_configured()
        try:
            response = self._session.request(
                method,
                self._table_url(table),
                headers=self._headers(prefer="return=representation"),
                params=params,
                json=body,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise PersistenceError(
                f"Failed to {action}: {redact_sensitive_text(str(exc))}"
            ) from exc
        return self._rows(response, action)

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {
            "apikey": self.supabase_service_role_key,
            "Authorization": f"Bearer {self.supabase_service_role_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _table_url(self, table: str) -> str:
        return f"{self.supabase_url}/rest/v1/{table}"

    def _ensure_configured(self) -> None:
        if self.is_configured():
            return
        raise PersistenceError(
            "Conversation store is not configured. Set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY."
        )

    @staticmethod
    def _rows(response: requests.Response, action: str) -> list[dict[str, Any]]:
        if not response.ok:
            detail = redact_sensitive_text(response.text.strip())
            raise PersistenceError(
                f"Failed to {action}: HTTP {response.status_code} {detail or 'request failed'}"
            )
        if not response.text.strip():
            return []
        try:
            payload = response.json()
        except ValueError as exc:
            raise PersistenceError(f"Invalid JSON while trying to {action}.") from exc
        if not isinstance(payload, list):
            raise PersistenceError(f"Unexpected payload while trying to {action}.")
        return [row for row in payload if isinstance(row, dict)]


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_conversation(row: dict[str, Any]) -> Conversation:
    meta = row.get("meta")
    return Conversation(
        id=str(row.get("id") or ""),
        user_id=str(row.get("user_id") or ""),
        agent_id=str(row.get("agent_id") or ""),
        thread_id=_opt_str(row.get("thread_id")),
        channel=str(row.get("channel") or "web"),
        status=str(row.get("status") or "active"),
        meta=meta if isinstance(meta, dict) else {},
        last_message_at=_parse_time(row.get("last_message_at")),
    )


def _opt_str(value: Any) -> str | None:
    return value.strip() if isinstance(value, str) and value.strip() else None


def _parse_time(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
