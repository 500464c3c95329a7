import unittest

from agentrelay.errors import NotFoundError, RemoteEngineError, RemoteJobError, ValidationError
from agentrelay.services.conversation_store import AgentProfile, InMemoryConversationStore
from agentrelay.services.gateway import ChatCommand, ConversationGateway
from agentrelay.services.orchestrator import RunOrchestrator, TurnResult
from agentrelay.services.remote_job import RemoteJob, RunStatus
from agentrelay.tools.registry import CapabilityRegistry


class _FakeThreads:
    def __init__(self, error=None):
        self.error = error
        self.created = []

    def create_thread(self, metadata=None):
        if self.error is not None:
            raise self.error
        self.created.append(metadata)
        return f"thread-{len(self.created)}"


class _FakeOrchestrator:
    def __init__(self):
        self.turns = []

    def run_turn(self, turn, credentials=None):
        self.turns.append((turn, credentials))
        return TurnResult(
            reply_text="ok",
            conversation_id=turn.conversation_id,
            thread_id=turn.thread_id,
            tools_invoked=[],
            language="en",
            status=RunStatus.COMPLETED,
            history_saved=True,
        )


class _FakeAccounts:
    def __init__(self, credentials):
        self.credentials = credentials
        self.lookups = []

    def resolve_credentials(self, user_id, agent_id):
        self.lookups.append((user_id, agent_id))
        return dict(self.credentials)


class _EchoEngine:
    def __init__(self):
        self.texts = []

    def submit_turn(self, *, thread_id, assistant_id, text, tools=None):
        self.texts.append(text)
        return RemoteJob(job_id="run-1", thread_id=thread_id, status=RunStatus.POLLING)

    def poll_job(self, job):
        return RemoteJob(job_id=job.job_id, thread_id=job.thread_id, status=RunStatus.COMPLETED)

    def submit_results(self, job, outputs):
        raise AssertionError("no capabilities expected")

    def get_latest_reply(self, thread_id):
        return f"reply #{len(self.texts)}"


def _store():
    return InMemoryConversationStore(
        agents=[
            AgentProfile(id="agent-1", name="Ada", assistant_id="asst-1"),
            AgentProfile(id="agent-2", name="NoAssistant", assistant_id=None),
        ]
    )


class ConversationGatewayTests(unittest.TestCase):
    def setUp(self):
        self.store = _store()
        self.threads = _FakeThreads()
        self.orchestrator = _FakeOrchestrator()
        self.accounts = _FakeAccounts({"google": "tok"})
        self.gateway = ConversationGateway(
            orchestrator=self.orchestrator,
            store=self.store,
            threads=self.threads,
            accounts=self.accounts,
        )

    def test_blank_text_is_rejected_before_remote_calls(self):
        for text in ("", "   ", "x" * 6001):
            with self.subTest(length=len(text)):
                with self.assertRaises(ValidationError):
                    self.gateway.handle(ChatCommand(caller_id="user-1", agent_id="agent-1", text=text))
        self.assertEqual(self.threads.created, [])
        self.assertEqual(self.orchestrator.turns, [])

    def test_blank_ids_are_rejected(self):
        with self.assertRaises(ValidationError):
            self.gateway.handle(ChatCommand(caller_id=" ", agent_id="agent-1", text="hi"))
        with self.assertRaises(ValidationError):
            self.gateway.handle(ChatCommand(caller_id="user-1", agent_id="", text="hi"))

    def test_unknown_agent_is_not_found(self):
        with self.assertRaises(NotFoundError):
            self.gateway.handle(ChatCommand(caller_id="user-1", agent_id="agent-x", text="hi"))

    def test_agent_without_assistant_is_rejected(self):
        with self.assertRaises(ValidationError):
            self.gateway.handle(ChatCommand(caller_id="user-1", agent_id="agent-2", text="hi"))

    def test_new_conversation_creates_thread_then_record(self):
        result = self.gateway.handle(
            ChatCommand(caller_id="user-1", agent_id="agent-1", text="  hello  ")
        )

        conversation = self.store.get_conversation(result.conversation_id)
        self.assertEqual(conversation.thread_id, "thread-1")
        self.assertEqual(conversation.channel, "web")
        self.assertEqual(conversation.status, "active")
        self.assertEqual(conversation.meta, {"agentName": "Ada", "assistantId": "asst-1"})
        turn, credentials = self.orchestrator.turns[0]
        self.assertEqual(turn.user_text, "hello")
        self.assertEqual(turn.thread_id, "thread-1")
        self.assertEqual(turn.assistant_id, "asst-1")
        self.assertEqual(credentials, {"google": "tok"})
        self.assertEqual(self.accounts.lookups, [("user-1", "agent-1")])

    def test_existing_conversation_reuses_its_thread(self):
        conversation = self.store.create_conversation(
            user_id="user-1", agent_id="agent-1", thread_id="thread-existing"
        )

        self.gateway.handle(
            ChatCommand(
                caller_id="user-1", agent_id="agent-1", text="again", conversation_id=conversation.id
            )
        )

        self.assertEqual(self.threads.created, [])
        turn, _ = self.orchestrator.turns[0]
        self.assertEqual(turn.thread_id, "thread-existing")
        self.assertEqual(turn.conversation_id, conversation.id)

    def test_conversation_of_another_caller_is_not_found(self):
        conversation = self.store.create_conversation(
            user_id="user-2", agent_id="agent-1", thread_id="thread-x"
        )

        with self.assertRaises(NotFoundError):
            self.gateway.handle(
                ChatCommand(
                    caller_id="user-1", agent_id="agent-1", text="hi", conversation_id=conversation.id
                )
            )
        self.assertEqual(self.orchestrator.turns, [])

    def test_thread_creation_failure_is_a_job_error(self):
        gateway = ConversationGateway(
            orchestrator=self.orchestrator,
            store=self.store,
            threads=_FakeThreads(error=RemoteEngineError("down", status_code=502)),
        )

        with self.assertRaises(RemoteJobError):
            gateway.handle(ChatCommand(caller_id="user-1", agent_id="agent-1", text="hi"))
        self.assertEqual(self.store.list_conversations("user-1", "agent-1"), [])

    def test_without_accounts_repository_credentials_are_empty(self):
        gateway = ConversationGateway(
            orchestrator=self.orchestrator, store=self.store, threads=self.threads
        )

        gateway.handle(ChatCommand(caller_id="user-1", agent_id="agent-1", text="hi"))

        _, credentials = self.orchestrator.turns[0]
        self.assertEqual(credentials, {})

    def test_full_turn_records_history(self):
        engine = _EchoEngine()
        orchestrator = RunOrchestrator(
            engine=engine, registry=CapabilityRegistry(), store=self.store, sleep=lambda _: None
        )
        gateway = ConversationGateway(orchestrator=orchestrator, store=self.store, threads=self.threads)

        first = gateway.handle(ChatCommand(caller_id="user-1", agent_id="agent-1", text="one"))
        second = gateway.handle(
            ChatCommand(
                caller_id="user-1",
                agent_id="agent-1",
                text="two",
                conversation_id=first.conversation_id,
            )
        )

        self.assertEqual(first.conversation_id, second.conversation_id)
        rows = self.store.list_messages(first.conversation_id)
        self.assertEqual(
            [(row.sender, row.content) for row in rows],
            [("user", "one"), ("agent", "reply #1"), ("user", "two"), ("agent", "reply #2")],
        )


if __name__ == "__main__":
    unittest.main()
