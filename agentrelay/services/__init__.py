from .assistants_client import AssistantsClient
from .connected_accounts_repo import ConnectedAccount, ConnectedAccountsRepository
from .conversation_store import (
    AgentProfile,
    Conversation,
    InMemoryConversationStore,
    StoredMessage,
    SupabaseConversationStore,
)
from .remote_job import CapabilityInvocation, RemoteJob, RunStatus

__all__ = [
    "AssistantsClient",
    "ConnectedAccount",
    "ConnectedAccountsRepository",
    "AgentProfile",
    "Conversation",
    "InMemoryConversationStore",
    "StoredMessage",
    "SupabaseConversationStore",
    "CapabilityInvocation",
    "RemoteJob",
    "RunStatus",
    "RunOrchestrator",
    "TurnResult",
    "ConversationGateway",
    "ChatCommand",
]


def __getattr__(name: str):
    if name in {"RunOrchestrator", "TurnResult"}:
        from .orchestrator import RunOrchestrator, TurnResult

        return {"RunOrchestrator": RunOrchestrator, "TurnResult": TurnResult}[name]
    if name in {"ConversationGateway", "ChatCommand"}:
        from .gateway import ChatCommand, ConversationGateway

        return {"ConversationGateway": ConversationGateway, "ChatCommand": ChatCommand}[name]
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
