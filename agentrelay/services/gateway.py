from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from agentrelay.errors import NotFoundError, RemoteEngineError, RemoteJobError, ValidationError

from .connected_accounts_repo import ConnectedAccountsRepository
from .conversation_store import Conversation, ConversationStore
from .orchestrator import RunOrchestrator, Turn, TurnResult
from .token_security import redact_sensitive_text

logger = logging.getLogger(__name__)

MAX_TEXT_CHARS = 6000


class ThreadFactory(Protocol):
    def create_thread(self, metadata: dict[str, str] | None = None) -> str: ...


@dataclass(frozen=True)
class ChatCommand:
    caller_id: str
    agent_id: str
    text: str
    conversation_id: str | None = None


class ConversationGateway:
    """Entry point for one chat message: validate, resolve the conversation, run the turn."""

    def __init__(
        self,
        *,
        orchestrator: RunOrchestrator,
        store: ConversationStore,
        threads: ThreadFactory,
        accounts: ConnectedAccountsRepository | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._store = store
        self._threads = threads
        self._accounts = accounts

    def handle(self, command: ChatCommand) -> TurnResult:
        text = _validate(command)
        caller_id = command.caller_id.strip()
        agent_id = command.agent_id.strip()

        agent = self._store.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("Agent not found.")
        if not agent.assistant_id:
            raise ValidationError("Agent has no assistant configured.")

        conversation = self._resolve_conversation(
            command.conversation_id, caller_id, agent_id, agent.name, agent.assistant_id
        )
        credentials = self._resolve_credentials(caller_id, agent_id)
        turn = Turn(
            conversation_id=conversation.id,
            caller_id=caller_id,
            agent_id=agent_id,
            assistant_id=agent.assistant_id,
            user_text=text,
            thread_id=conversation.thread_id,
        )
        result = self._orchestrator.run_turn(turn, credentials=credentials)
        try:
            self._store.touch_conversation(conversation.id)
        except Exception as exc:
            logger.warning(
                "Failed to update conversation %s: %s",
                conversation.id,
                redact_sensitive_text(str(exc)),
            )
        return result

    def _resolve_conversation(
        self,
        conversation_id: str | None,
        caller_id: str,
        agent_id: str,
        agent_name: str,
        assistant_id: str,
    ) -> Conversation:
        requested = (conversation_id or "").strip()
        if requested:
            conversation = self._store.get_conversation(requested)
            if (
                conversation is None
                or conversation.user_id != caller_id
                or conversation.agent_id != agent_id
            ):
                raise NotFoundError("Conversation not found.")
            # Threadless rows are started on a fresh engine thread by submit_turn.
            return conversation

        try:
            thread_id = self._threads.create_thread(
                metadata={"agent_id": agent_id, "caller_id": caller_id}
            )
        except RemoteEngineError as exc:
            raise RemoteJobError(f"Could not create thread: {exc}") from exc
        conversation = self._store.create_conversation(
            user_id=caller_id,
            agent_id=agent_id,
            thread_id=thread_id,
            meta={"agentName": agent_name, "assistantId": assistant_id},
        )
        logger.info("Conversation %s created on thread %s", conversation.id, thread_id)
        return conversation

    def _resolve_credentials(self, caller_id: str, agent_id: str) -> dict[str, str]:
        if self._accounts is None:
            return {}
        return self._accounts.resolve_credentials(user_id=caller_id, agent_id=agent_id)


def _validate(command: ChatCommand) -> str:
    text = (command.text or "").strip()
    if not text:
        raise ValidationError("Message text is required.")
    if len(text) > MAX_TEXT_CHARS:
        raise ValidationError(f"Message text must be at most {MAX_TEXT_CHARS} characters.")
    if not (command.caller_id or "").strip():
        raise ValidationError("Caller id is required.")
    if not (command.agent_id or "").strip():
        raise ValidationError("Agent id is required.")
    return text
