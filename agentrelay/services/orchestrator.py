from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Protocol

from agentrelay.errors import RemoteEngineError, RemoteJobError
from agentrelay.tools.base import CapabilityContext, CapabilityResult
from agentrelay.tools.registry import CapabilityRegistry

from .conversation_store import TurnStore
from .language import detect_language, with_language_directive
from .remote_job import CapabilityInvocation, RemoteJob, RunStatus
from .token_security import redact_sensitive_text

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 40
DEFAULT_POLL_INTERVAL_SECONDS = 0.9
DEFAULT_TOOL_INTERVAL_SECONDS = 0.6
FALLBACK_REPLY = "No response from assistant"


class ReasoningEngine(Protocol):
    def submit_turn(
        self,
        *,
        thread_id: str | None,
        assistant_id: str,
        text: str,
        tools: list[dict[str, object]] | None = None,
    ) -> RemoteJob: ...

    def poll_job(self, job: RemoteJob) -> RemoteJob: ...

    def submit_results(self, job: RemoteJob, outputs: list[tuple[str, str]]) -> None: ...

    def get_latest_reply(self, thread_id: str) -> str | None: ...


@dataclass
class Turn:
    conversation_id: str
    caller_id: str
    agent_id: str
    assistant_id: str
    user_text: str
    thread_id: str | None = None
    language: str | None = None
    status: RunStatus = RunStatus.SUBMITTED
    job_id: str | None = None
    invocations: list[CapabilityInvocation] = field(default_factory=list)
    results: list[CapabilityResult] = field(default_factory=list)
    reply_text: str | None = None
    user_message_saved: bool = False
    reply_saved: bool = False
    closed: bool = False


@dataclass(frozen=True)
class TurnResult:
    reply_text: str
    conversation_id: str
    thread_id: str
    tools_invoked: list[str]
    language: str
    status: RunStatus
    history_saved: bool


class RunOrchestrator:
    """Drives one user turn through the reasoning engine's run protocol.

    Submitted -> Polling -> NeedsCapability (-> Polling) ... -> Completed,
    or a failure-terminal status / the attempt cap, which raise
    RemoteJobError. Every invocation in a poll batch is resolved through the
    registry and the whole batch is submitted in one call.
    """

    def __init__(
        self,
        *,
        engine: ReasoningEngine,
        registry: CapabilityRegistry,
        store: TurnStore,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        tool_interval_seconds: float = DEFAULT_TOOL_INTERVAL_SECONDS,
        max_parallel_invocations: int = 4,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._engine = engine
        self._registry = registry
        self._store = store
        self._max_attempts = max(1, int(max_attempts))
        self._poll_interval_seconds = max(0.0, float(poll_interval_seconds))
        self._tool_interval_seconds = max(0.0, float(tool_interval_seconds))
        self._max_parallel_invocations = max(1, int(max_parallel_invocations))
        self._sleep = sleep

    def run_turn(self, turn: Turn, credentials: dict[str, str] | None = None) -> TurnResult:
        if turn.status is not RunStatus.SUBMITTED or turn.closed:
            raise ValueError(f"Turn for conversation {turn.conversation_id} was already run.")
        turn.language = turn.language or detect_language(turn.user_text)
        logger.info(
            "Turn started: conversation=%s agent=%s language=%s",
            turn.conversation_id,
            turn.agent_id,
            turn.language,
        )

        turn.user_message_saved = self._persist(
            self._store.record_user_message, turn.conversation_id, turn.user_text, "user"
        )

        try:
            job = self._engine.submit_turn(
                thread_id=turn.thread_id,
                assistant_id=turn.assistant_id,
                text=with_language_directive(turn.user_text, turn.language),
                tools=self._registry.tool_specs() or None,
            )
        except RemoteEngineError as exc:
            turn.status = RunStatus.FAILED
            turn.closed = True
            raise RemoteJobError(f"Could not submit turn: {exc}") from exc

        turn.thread_id = job.thread_id
        turn.job_id = job.job_id
        turn.status = RunStatus.POLLING
        context = CapabilityContext(
            caller_id=turn.caller_id,
            agent_id=turn.agent_id,
            conversation_id=turn.conversation_id,
            language=turn.language,
            credentials=dict(credentials or {}),
        )

        try:
            job = self._drive(turn, job, context)
            reply = self._engine.get_latest_reply(job.thread_id)
        except RemoteEngineError as exc:
            turn.status = RunStatus.FAILED
            raise RemoteJobError(
                f"Reasoning engine error for job {turn.job_id}: {exc}",
                status=RunStatus.FAILED,
                job_id=turn.job_id,
            ) from exc
        finally:
            if turn.status is not RunStatus.COMPLETED:
                turn.closed = True

        turn.reply_text = reply if reply and reply.strip() else FALLBACK_REPLY
        turn.reply_saved = self._persist(
            self._store.record_assistant_message,
            turn.conversation_id,
            turn.reply_text,
            "assistant",
        )
        turn.closed = True
        logger.info(
            "Turn completed: conversation=%s job=%s tools=%s",
            turn.conversation_id,
            turn.job_id,
            [inv.name for inv in turn.invocations],
        )
        return TurnResult(
            reply_text=turn.reply_text,
            conversation_id=turn.conversation_id,
            thread_id=job.thread_id,
            tools_invoked=[inv.name for inv in turn.invocations],
            language=turn.language,
            status=turn.status,
            history_saved=turn.user_message_saved and turn.reply_saved,
        )

    def _drive(self, turn: Turn, job: RemoteJob, context: CapabilityContext) -> RemoteJob:
        for attempt in range(1, self._max_attempts + 1):
            try:
                job = self._engine.poll_job(job)
            except RemoteEngineError as exc:
                logger.warning(
                    "Poll %d/%d for job %s failed: %s",
                    attempt,
                    self._max_attempts,
                    turn.job_id,
                    exc,
                )
                self._pause(self._poll_interval_seconds, attempt)
                continue

            logger.debug("Job %s status (attempt %d): %s", job.job_id, attempt, job.status.value)

            if job.status is RunStatus.NEEDS_CAPABILITY:
                turn.status = RunStatus.NEEDS_CAPABILITY
                if not job.pending_invocations:
                    logger.warning("Job %s needs capabilities but listed none", job.job_id)
                    self._pause(self._poll_interval_seconds, attempt)
                    continue
                self._resolve_batch(turn, job, context)
                turn.status = RunStatus.POLLING
                self._pause(self._tool_interval_seconds, attempt)
                continue

            if job.status is RunStatus.COMPLETED:
                turn.status = RunStatus.COMPLETED
                return job

            if job.status.is_failure:
                turn.status = job.status
                raise RemoteJobError(
                    f"Run {job.status.value}"
                    + (f": {job.last_error}" if job.last_error else ""),
                    status=job.status,
                    job_id=job.job_id,
                    attempts=attempt,
                )

            turn.status = RunStatus.POLLING
            self._pause(self._poll_interval_seconds, attempt)

        raise RemoteJobError(
            f"Response timeout: job {job.job_id} still {job.status.value} "
            f"after {self._max_attempts} attempts",
            status=job.status,
            timed_out=True,
            job_id=job.job_id,
            attempts=self._max_attempts,
        )

    def _resolve_batch(self, turn: Turn, job: RemoteJob, context: CapabilityContext) -> None:
        invocations = list(job.pending_invocations)
        logger.info(
            "Job %s requested %d capability call(s): %s",
            job.job_id,
            len(invocations),
            [inv.name for inv in invocations],
        )
        workers = min(self._max_parallel_invocations, len(invocations))
        if workers <= 1:
            results = [self._invoke(inv, context) for inv in invocations]
        else:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                results = list(pool.map(lambda inv: self._invoke(inv, context), invocations))

        expected_ids = [inv.call_id for inv in invocations]
        if [result.call_id for result in results] != expected_ids:
            raise RemoteJobError(
                f"Result batch for job {job.job_id} does not match its invocations.",
                status=RunStatus.NEEDS_CAPABILITY,
                job_id=job.job_id,
            )

        turn.invocations.extend(invocations)
        turn.results.extend(results)
        outputs = [(result.call_id, result.to_output()) for result in results]
        self._engine.submit_results(job, outputs)

    def _invoke(self, invocation: CapabilityInvocation, context: CapabilityContext) -> CapabilityResult:
        try:
            return self._registry.invoke(
                invocation.name, invocation.args, context, call_id=invocation.call_id
            )
        except Exception as exc:
            logger.exception("Capability registry raised for %s", invocation.name)
            return CapabilityResult(
                call_id=invocation.call_id,
                name=invocation.name,
                ok=False,
                error_message="That action could not be completed.",
                raw_error=redact_sensitive_text(str(exc)),
            )

    def _pause(self, seconds: float, attempt: int) -> None:
        if attempt < self._max_attempts and seconds > 0:
            self._sleep(seconds)

    @staticmethod
    def _persist(
        record: Callable[[str, str], None], conversation_id: str, text: str, role: str
    ) -> bool:
        try:
            record(conversation_id, text)
        except Exception as exc:
            logger.warning(
                "Failed to record %s message for conversation %s: %s",
                role,
                conversation_id,
                redact_sensitive_text(str(exc)),
            )
            return False
        return True
