import json
import threading
import unittest
from concurrent.futures import ThreadPoolExecutor

from agentrelay.errors import CapabilityProviderError, PersistenceError, RemoteEngineError, RemoteJobError
from agentrelay.services.orchestrator import FALLBACK_REPLY, RunOrchestrator, Turn
from agentrelay.services.remote_job import CapabilityInvocation, RemoteJob, RunStatus
from agentrelay.tools.base import Capability
from agentrelay.tools.registry import CapabilityRegistry


class _FakeEngine:
    """Scripted engine: each poll pops the next status snapshot for the thread."""

    def __init__(self, polls, replies=None):
        self._lock = threading.Lock()
        self.polls = {thread: list(rows) for thread, rows in polls.items()}
        self.replies = replies or {}
        self.submitted_turns = []
        self.submitted_results = []
        self.poll_count = 0

    def submit_turn(self, *, thread_id, assistant_id, text, tools=None):
        with self._lock:
            self.submitted_turns.append(
                {"thread_id": thread_id, "assistant_id": assistant_id, "text": text, "tools": tools}
            )
        return RemoteJob(job_id=f"run-{thread_id}", thread_id=thread_id, status=RunStatus.POLLING)

    def poll_job(self, job):
        with self._lock:
            self.poll_count += 1
            rows = self.polls[job.thread_id]
            step = rows.pop(0) if len(rows) > 1 else rows[0]
        if isinstance(step, Exception):
            raise step
        status, invocations = step if isinstance(step, tuple) else (step, ())
        return RemoteJob(
            job_id=job.job_id,
            thread_id=job.thread_id,
            status=status,
            pending_invocations=tuple(invocations),
            last_error="boom" if status is RunStatus.FAILED else None,
        )

    def submit_results(self, job, outputs):
        with self._lock:
            self.submitted_results.append((job.job_id, list(outputs)))

    def get_latest_reply(self, thread_id):
        return self.replies.get(thread_id)


class _FakeStore:
    def __init__(self, fail=False):
        self.fail = fail
        self.events = []

    def record_user_message(self, conversation_id, text):
        self.events.append(("user", conversation_id, text))
        if self.fail:
            raise PersistenceError("Failed to store user message: HTTP 503")

    def record_assistant_message(self, conversation_id, text):
        self.events.append(("assistant", conversation_id, text))
        if self.fail:
            raise PersistenceError("Failed to store agent message: HTTP 503")


class _RecordingCapability(Capability):
    def __init__(self, name, payload=None, error=None):
        self.name = name
        self.payload = payload if payload is not None else {"ok": True}
        self.error = error
        self.calls = []

    def run(self, args, context):
        self.calls.append((args, context))
        if self.error is not None:
            raise self.error
        return self.payload


def _registry(*capabilities):
    registry = CapabilityRegistry()
    for capability in capabilities:
        registry.register(
            capability=capability,
            label=capability.name,
            description=f"{capability.name} capability",
            schema={
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "start": {"type": "string"},
                    "end": {"type": "string"},
                    "query": {"type": "string"},
                },
            },
        )
    return registry


def _turn(text="What is the capital of France?", thread_id="thread-1", conversation_id="conv-1"):
    return Turn(
        conversation_id=conversation_id,
        caller_id="user-1",
        agent_id="agent-1",
        assistant_id="asst-1",
        user_text=text,
        thread_id=thread_id,
    )


def _orchestrator(engine, registry=None, store=None, sleeps=None, **kwargs):
    recorded = sleeps if sleeps is not None else []
    return RunOrchestrator(
        engine=engine,
        registry=registry or _registry(),
        store=store or _FakeStore(),
        sleep=recorded.append,
        **kwargs,
    )


def _needs(*invocations):
    return (RunStatus.NEEDS_CAPABILITY, invocations)


def _raise(error):
    def fail(*args, **kwargs):
        raise error

    return fail


class RunOrchestratorTests(unittest.TestCase):
    def test_simple_question_completes_without_capabilities(self):
        engine = _FakeEngine(
            {"thread-1": [RunStatus.POLLING, RunStatus.COMPLETED]},
            replies={"thread-1": "Paris."},
        )
        store = _FakeStore()
        sleeps = []

        result = _orchestrator(engine, store=store, sleeps=sleeps).run_turn(_turn())

        self.assertEqual(result.reply_text, "Paris.")
        self.assertEqual(result.tools_invoked, [])
        self.assertIs(result.status, RunStatus.COMPLETED)
        self.assertTrue(result.history_saved)
        self.assertEqual(engine.submitted_results, [])
        self.assertEqual(sleeps, [0.9])
        self.assertEqual(
            store.events,
            [
                ("user", "conv-1", "What is the capital of France?"),
                ("assistant", "conv-1", "Paris."),
            ],
        )

    def test_submitted_text_carries_language_directive_and_tool_specs(self):
        engine = _FakeEngine({"thread-1": [RunStatus.COMPLETED]}, replies={"thread-1": "Merhaba!"})
        registry = _registry(_RecordingCapability("web_search"))

        result = _orchestrator(engine, registry=registry).run_turn(
            _turn(text="Merhaba, yarın için randevu alabilir miyim?")
        )

        self.assertEqual(result.language, "tr")
        submitted = engine.submitted_turns[0]
        self.assertTrue(submitted["text"].endswith("\n\n[Sistem: Bu soruyu Türkçe yanıtla.]"))
        self.assertEqual(submitted["tools"][0]["function"]["name"], "web_search")

    def test_create_event_round_trip(self):
        create_event = _RecordingCapability(
            "create_event", payload={"event_id": "evt-1", "message": "Event created."}
        )
        engine = _FakeEngine(
            {
                "thread-1": [
                    RunStatus.POLLING,
                    _needs(
                        CapabilityInvocation(
                            call_id="call-1",
                            name="create_event",
                            args={"title": "Dentist", "start": "2026-11-02T15:00:00", "end": "2026-11-02T15:30:00"},
                        )
                    ),
                    RunStatus.POLLING,
                    RunStatus.COMPLETED,
                ]
            },
            replies={"thread-1": "Booked."},
        )
        sleeps = []

        result = _orchestrator(
            engine, registry=_registry(create_event), sleeps=sleeps
        ).run_turn(_turn(text="Book me a dentist appointment"), credentials={"google": "tok"})

        self.assertEqual(result.tools_invoked, ["create_event"])
        self.assertEqual(len(engine.submitted_results), 1)
        job_id, outputs = engine.submitted_results[0]
        self.assertEqual(job_id, "run-thread-1")
        self.assertEqual(outputs[0][0], "call-1")
        self.assertEqual(json.loads(outputs[0][1])["event_id"], "evt-1")
        args, context = create_event.calls[0]
        self.assertEqual(args["title"], "Dentist")
        self.assertEqual(context.credential("google"), "tok")
        self.assertEqual(context.conversation_id, "conv-1")
        self.assertEqual(sleeps, [0.9, 0.6, 0.9])

    def test_unknown_capability_is_reported_back_and_turn_continues(self):
        engine = _FakeEngine(
            {
                "thread-1": [
                    _needs(CapabilityInvocation(call_id="call-1", name="teleport", args={})),
                    RunStatus.COMPLETED,
                ]
            },
            replies={"thread-1": "I can't do that."},
        )

        result = _orchestrator(engine).run_turn(_turn())

        self.assertEqual(result.reply_text, "I can't do that.")
        _, outputs = engine.submitted_results[0]
        self.assertEqual(
            json.loads(outputs[0][1]),
            {"success": False, "error": "Unknown capability 'teleport'."},
        )

    def test_provider_outage_becomes_failed_result(self):
        search = _RecordingCapability(
            "web_search",
            error=CapabilityProviderError("timeout", user_message="Web search is unavailable."),
        )
        engine = _FakeEngine(
            {
                "thread-1": [
                    _needs(CapabilityInvocation(call_id="call-1", name="web_search", args={"query": "x"})),
                    RunStatus.COMPLETED,
                ]
            },
            replies={"thread-1": "Search is down, sorry."},
        )

        result = _orchestrator(engine, registry=_registry(search)).run_turn(_turn())

        self.assertEqual(result.reply_text, "Search is down, sorry.")
        _, outputs = engine.submitted_results[0]
        self.assertEqual(
            json.loads(outputs[0][1]), {"success": False, "error": "Web search is unavailable."}
        )

    def test_whole_batch_is_submitted_in_one_call_in_request_order(self):
        capabilities = [_RecordingCapability(name) for name in ("a_cap", "b_cap", "c_cap")]
        batch = [
            CapabilityInvocation(call_id=f"call-{index}", name=capability.name, args={})
            for index, capability in enumerate(capabilities, start=1)
        ]
        engine = _FakeEngine(
            {"thread-1": [_needs(*batch), RunStatus.COMPLETED]}, replies={"thread-1": "Done."}
        )

        result = _orchestrator(
            engine, registry=_registry(*capabilities), max_parallel_invocations=3
        ).run_turn(_turn())

        self.assertEqual(len(engine.submitted_results), 1)
        _, outputs = engine.submitted_results[0]
        self.assertEqual([call_id for call_id, _ in outputs], ["call-1", "call-2", "call-3"])
        self.assertEqual(result.tools_invoked, ["a_cap", "b_cap", "c_cap"])
        for capability in capabilities:
            self.assertEqual(len(capability.calls), 1)

    def test_timeout_after_attempt_cap(self):
        engine = _FakeEngine({"thread-1": [RunStatus.POLLING]})
        store = _FakeStore()
        sleeps = []

        with self.assertRaises(RemoteJobError) as ctx:
            _orchestrator(engine, store=store, sleeps=sleeps).run_turn(_turn())

        self.assertTrue(ctx.exception.timed_out)
        self.assertEqual(ctx.exception.attempts, 40)
        self.assertEqual(engine.poll_count, 40)
        self.assertEqual(len(sleeps), 39)
        self.assertEqual(ctx.exception.user_message, "The assistant took too long to reply. Please try again.")
        self.assertEqual([event[0] for event in store.events], ["user"])

    def test_failure_status_raises_and_skips_reply(self):
        engine = _FakeEngine({"thread-1": [RunStatus.POLLING, RunStatus.FAILED]})
        store = _FakeStore()

        with self.assertRaises(RemoteJobError) as ctx:
            _orchestrator(engine, store=store).run_turn(_turn())

        self.assertIs(ctx.exception.status, RunStatus.FAILED)
        self.assertFalse(ctx.exception.timed_out)
        self.assertIn("boom", str(ctx.exception))
        self.assertEqual([event[0] for event in store.events], ["user"])

    def test_submit_results_failure_raises_and_skips_reply(self):
        engine = _FakeEngine(
            {
                "thread-1": [
                    _needs(CapabilityInvocation(call_id="call-1", name="web_search", args={"query": "x"})),
                    RunStatus.COMPLETED,
                ]
            },
            replies={"thread-1": "never"},
        )
        engine.submit_results = _raise(RemoteEngineError("submit rejected", status_code=400))
        store = _FakeStore()
        search = _RecordingCapability("web_search", payload={"hits": []})

        with self.assertRaises(RemoteJobError) as ctx:
            _orchestrator(engine, registry=_registry(search), store=store).run_turn(_turn())

        self.assertIs(ctx.exception.status, RunStatus.FAILED)
        self.assertEqual(ctx.exception.job_id, "run-thread-1")
        self.assertEqual(len(search.calls), 1)
        self.assertEqual(engine.poll_count, 1)
        self.assertEqual([event[0] for event in store.events], ["user"])

    def test_latest_reply_failure_raises_and_skips_reply(self):
        engine = _FakeEngine({"thread-1": [RunStatus.COMPLETED]})
        engine.get_latest_reply = _raise(RemoteEngineError("messages unavailable", status_code=502))
        store = _FakeStore()

        with self.assertRaises(RemoteJobError) as ctx:
            _orchestrator(engine, store=store).run_turn(_turn())

        self.assertIs(ctx.exception.status, RunStatus.FAILED)
        self.assertFalse(ctx.exception.timed_out)
        self.assertEqual(
            ctx.exception.user_message,
            "The assistant could not finish this reply. Please try again.",
        )
        self.assertEqual([event[0] for event in store.events], ["user"])

    def test_expired_and_cancelled_are_failures(self):
        for status in (RunStatus.EXPIRED, RunStatus.CANCELLED):
            with self.subTest(status=status):
                engine = _FakeEngine({"thread-1": [status]})
                with self.assertRaises(RemoteJobError) as ctx:
                    _orchestrator(engine).run_turn(_turn())
                self.assertIs(ctx.exception.status, status)

    def test_poll_transport_error_consumes_an_attempt(self):
        engine = _FakeEngine(
            {"thread-1": [RemoteEngineError("reset"), RunStatus.COMPLETED]},
            replies={"thread-1": "Hi."},
        )

        result = _orchestrator(engine, max_attempts=2).run_turn(_turn())

        self.assertEqual(result.reply_text, "Hi.")
        self.assertEqual(engine.poll_count, 2)

    def test_empty_reply_uses_fallback_text(self):
        engine = _FakeEngine({"thread-1": [RunStatus.COMPLETED]}, replies={"thread-1": "   "})
        store = _FakeStore()

        result = _orchestrator(engine, store=store).run_turn(_turn())

        self.assertEqual(result.reply_text, FALLBACK_REPLY)
        self.assertEqual(store.events[-1], ("assistant", "conv-1", FALLBACK_REPLY))

    def test_persistence_failure_does_not_change_the_reply(self):
        engine = _FakeEngine({"thread-1": [RunStatus.COMPLETED]}, replies={"thread-1": "Paris."})
        store = _FakeStore(fail=True)

        result = _orchestrator(engine, store=store).run_turn(_turn())

        self.assertEqual(result.reply_text, "Paris.")
        self.assertFalse(result.history_saved)
        self.assertEqual([event[0] for event in store.events], ["user", "assistant"])

    def test_user_message_is_recorded_before_submission(self):
        store = _FakeStore()
        engine = _FakeEngine({"thread-1": [RunStatus.COMPLETED]}, replies={"thread-1": "ok"})
        original_submit = engine.submit_turn
        seen = []

        def submit_turn(**kwargs):
            seen.append(list(store.events))
            return original_submit(**kwargs)

        engine.submit_turn = submit_turn
        _orchestrator(engine, store=store).run_turn(_turn(text="hello there"))

        self.assertEqual(seen, [[("user", "conv-1", "hello there")]])

    def test_turn_cannot_be_run_twice(self):
        engine = _FakeEngine({"thread-1": [RunStatus.COMPLETED]}, replies={"thread-1": "ok"})
        orchestrator = _orchestrator(engine)
        turn = _turn()
        orchestrator.run_turn(turn)

        with self.assertRaises(ValueError):
            orchestrator.run_turn(turn)

    def test_concurrent_turns_do_not_mix_results(self):
        search = _RecordingCapability("web_search", payload={"hits": 1})
        engine = _FakeEngine(
            {
                "thread-a": [
                    _needs(CapabilityInvocation(call_id="a-1", name="web_search", args={"query": "a"})),
                    RunStatus.COMPLETED,
                ],
                "thread-b": [RunStatus.POLLING, RunStatus.COMPLETED],
            },
            replies={"thread-a": "reply a", "thread-b": "reply b"},
        )
        orchestrator = _orchestrator(engine, registry=_registry(search))

        with ThreadPoolExecutor(max_workers=2) as pool:
            future_a = pool.submit(
                orchestrator.run_turn, _turn(thread_id="thread-a", conversation_id="conv-a")
            )
            future_b = pool.submit(
                orchestrator.run_turn, _turn(thread_id="thread-b", conversation_id="conv-b")
            )
            result_a = future_a.result()
            result_b = future_b.result()

        self.assertEqual((result_a.reply_text, result_a.tools_invoked), ("reply a", ["web_search"]))
        self.assertEqual((result_b.reply_text, result_b.tools_invoked), ("reply b", []))
        self.assertEqual([job for job, _ in engine.submitted_results], ["run-thread-a"])


if __name__ == "__main__":
    unittest.main()
