from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException

from agentrelay.config import settings
from agentrelay.errors import NotFoundError, PersistenceError, RemoteJobError, ValidationError
from agentrelay.models import ChatRequest, ChatResponse, ConversationSummary, MessageRow
from agentrelay.services.assistants_client import AssistantsClient
from agentrelay.services.connected_accounts_repo import ConnectedAccountsRepository
from agentrelay.services.conversation_store import (
    ConversationStore,
    InMemoryConversationStore,
    SupabaseConversationStore,
)
from agentrelay.services.gateway import ChatCommand, ConversationGateway
from agentrelay.services.orchestrator import RunOrchestrator
from agentrelay.tools.catalog import build_default_registry

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="AgentRelay API", version="0.1.0")


def _build_store() -> ConversationStore:
    supabase = SupabaseConversationStore(
        supabase_url=settings.supabase_url,
        supabase_service_role_key=settings.supabase_service_role_key,
        conversations_table=settings.conversations_table,
        messages_table=settings.messages_table,
        agents_table=settings.agents_table,
        timeout_seconds=settings.persistence_timeout_seconds,
        default_assistant_id=settings.default_assistant_id,
    )
    if supabase.is_configured():
        return supabase
    logger.warning("Supabase is not configured; conversation history is kept in memory")
    return InMemoryConversationStore(default_assistant_id=settings.default_assistant_id)


def _build_gateway(store: ConversationStore) -> ConversationGateway | None:
    key = (settings.openai_api_key or "").strip()
    if not key:
        logger.warning("OPENAI_API_KEY is not set; chat is disabled")
        return None
    engine = AssistantsClient(
        api_key=key,
        base_url=settings.openai_api_base_url,
        timeout_seconds=settings.engine_timeout_seconds,
    )
    orchestrator = RunOrchestrator(
        engine=engine,
        registry=build_default_registry(),
        store=store,
        max_attempts=settings.run_max_attempts,
        poll_interval_seconds=settings.run_poll_interval_seconds,
        tool_interval_seconds=settings.run_tool_interval_seconds,
        max_parallel_invocations=settings.run_max_parallel_invocations,
    )
    return ConversationGateway(
        orchestrator=orchestrator,
        store=store,
        threads=engine,
        accounts=ConnectedAccountsRepository(
            supabase_url=settings.supabase_url,
            supabase_service_role_key=settings.supabase_service_role_key,
            table=settings.connected_accounts_table,
            timeout_seconds=settings.persistence_timeout_seconds,
        ),
    )


store = _build_store()
gateway = _build_gateway(store)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/v1/chat", response_model=ChatResponse)
def chat_route(payload: ChatRequest) -> ChatResponse:
    if gateway is None:
        raise HTTPException(
            status_code=503,
            detail="Reasoning engine is not configured. Set OPENAI_API_KEY.",
        )
    command = ChatCommand(
        caller_id=payload.caller_id,
        agent_id=payload.agent_id,
        text=payload.text,
        conversation_id=payload.conversation_id,
    )
    try:
        result = gateway.handle(command)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RemoteJobError as exc:
        logger.error("Turn failed (job=%s status=%s): %s", exc.job_id, exc.status, exc)
        raise HTTPException(status_code=503, detail=exc.user_message) from exc
    except PersistenceError as exc:
        logger.error("Conversation store unavailable: %s", exc)
        raise HTTPException(status_code=503, detail="Conversation history is unavailable.") from exc
    return ChatResponse(
        reply_text=result.reply_text,
        conversation_id=result.conversation_id,
        tools_invoked=result.tools_invoked,
        language=result.language,
    )


@app.get("/v1/agents/{agent_id}/conversations", response_model=list[ConversationSummary])
def list_conversations_route(agent_id: str, caller_id: str) -> list[ConversationSummary]:
    if not caller_id.strip():
        raise HTTPException(status_code=400, detail="caller_id is required.")
    try:
        rows = store.list_conversations(user_id=caller_id.strip(), agent_id=agent_id)
    except PersistenceError as exc:
        logger.error("Listing conversations failed: %s", exc)
        raise HTTPException(status_code=503, detail="Conversation history is unavailable.") from exc
    return [
        ConversationSummary(
            id=row.id,
            agent_id=row.agent_id,
            thread_id=row.thread_id,
            channel=row.channel,
            status=row.status,
            last_message_at=row.last_message_at.isoformat() if row.last_message_at else None,
        )
        for row in rows
    ]


@app.get("/v1/conversations/{conversation_id}/messages", response_model=list[MessageRow])
def list_messages_route(conversation_id: str, caller_id: str) -> list[MessageRow]:
    if not caller_id.strip():
        raise HTTPException(status_code=400, detail="caller_id is required.")
    try:
        conversation = store.get_conversation(conversation_id)
        if conversation is None or conversation.user_id != caller_id.strip():
            raise HTTPException(status_code=404, detail="Conversation not found.")
        rows = store.list_messages(conversation_id)
    except PersistenceError as exc:
        logger.error("Listing messages failed: %s", exc)
        raise HTTPException(status_code=503, detail="Conversation history is unavailable.") from exc
    return [
        MessageRow(
            id=row.id,
            sender=row.sender,
            content=row.content,
            created_at=row.created_at.isoformat() if row.created_at else None,
        )
        for row in rows
    ]
