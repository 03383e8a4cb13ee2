"""
SiteVoice Command Pipeline

Main orchestrator for processing voice commands.
Coordinates all stages: Listen -> Transcribe -> [gate] -> Parse -> [gate]
-> Execute -> Synthesize -> Confirm

Principles:
- Deterministic stage order through the RunStateMachine
- Each run is its own asyncio task with a bounded event stream
- Confidence gates are never bypassed
- Every run ends with exactly one outcome, reported to the quality monitor
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

from sitevoice.adapters.voice.routing import (
    AdapterResult,
    IntentAdapter,
    StageAdapter,
    SynthesisAdapter,
    TranscriptionAdapter,
)
from sitevoice.app.monitor import QualityMonitor
from sitevoice.app.offline import FlushResult, OfflineSync
from sitevoice.core.config import PipelineConfig
from sitevoice.core.entities import (
    CommandContext,
    CommandInput,
    CommandRun,
    OfflineQueueEntry,
    RunOutcome,
    RunStage,
    SynthesizedAudio,
    Transcript,
)
from sitevoice.core.errors import (
    ErrorKind,
    IdentityError,
    NetworkUnavailable,
    NoProviderAvailable,
    ProviderAuthFailed,
    ProviderError,
    ProviderQuotaExceeded,
    ProviderTimeout,
    RateLimited,
    StorageExecutionFailed,
)
from sitevoice.core.events import (
    ClarificationRequested,
    CommandRunEvent,
    Completed,
    StageChanged,
    TranscriptAvailable,
)
from sitevoice.core.policy import (
    RETRIES_EXHAUSTED_MESSAGE,
    classify_provider_error,
    gate_intent,
    gate_transcript,
    user_message,
)
from sitevoice.core.ports import ConnectivityPort, IdentityPort, StoragePort
from sitevoice.core.quality import AggregateReport
from sitevoice.core.rate_limiter import RateLimiter
from sitevoice.core.state_machine import RunStateMachine, StageTransition

# Configure logging
logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

# Stage a retried run resumes from, by the outcome of its parent
_RETRY_STAGE = {
    RunOutcome.LOW_CONFIDENCE: RunStage.TRANSCRIPT_LOW_CONFIDENCE,
    RunOutcome.CLARIFICATION_NEEDED: RunStage.CLARIFICATION_NEEDED,
}


class CommandRunStream:
    """
    Ordered, bounded stream of events for one run.

    Iterate with `async for event in stream`; the last event is always
    Completed. When the consumer falls behind, the oldest progress events are
    dropped so the run itself never waits for the consumer.

    Example:
        stream = pipeline.run(CommandInput.from_text("add a note gate is open"), context)
        async for event in stream:
            print(event)
        run = await stream.result()
    """

    def __init__(self, run: CommandRun, maxsize: int = 32) -> None:
        self.run = run
        self._queue: asyncio.Queue[Optional[CommandRunEvent]] = asyncio.Queue(maxsize=max(2, maxsize))
        self._cancel_requested = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.dropped_events = 0

    @property
    def run_id(self) -> str:
        return self.run.run_id

    def _attach(self, task: asyncio.Task) -> None:
        self._task = task

    def publish(self, event: Optional[CommandRunEvent]) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()
                self.dropped_events += 1

    def cancel(self) -> None:
        """Requests cancellation; the run ends as cancelled unless it already finished."""
        self._cancel_requested.set()

    @property
    def cancel_requested(self) -> asyncio.Event:
        return self._cancel_requested

    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def result(self) -> CommandRun:
        """Waits for the terminal CommandRun."""
        if self._task is None:
            raise RuntimeError("Stream is not attached to a running pipeline task")
        return await asyncio.shield(self._task)

    def __aiter__(self) -> "CommandRunStream":
        return self

    async def __anext__(self) -> CommandRunEvent:
        event = await self._queue.get()
        if event is None:
            # Keep the sentinel for other consumers
            self.publish(None)
            raise StopAsyncIteration
        return event


@dataclass
class _PendingOutcome:
    """Outcome already decided while its message is still being synthesized."""
    outcome: RunOutcome
    message: str
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    durable: bool = False


class CommandPipeline:
    """
    Orchestrates one CommandRun per utterance.

    Example:
    ```python
    pipeline = build_pipeline(load_pipeline_config())
    context = CommandContext(tenant_id="acme", principal_id="maria")

    stream = pipeline.run(CommandInput.from_audio(wav_bytes), context)
    async for event in stream:
        if isinstance(event, ClarificationRequested):
            show(event.text)
    run = await stream.result()

    if run.outcome.is_retryable_by_user:
        retry = pipeline.retry(run, CommandInput.from_audio(new_wav), context)
    ```
    """

    def __init__(
        self,
        intent: IntentAdapter,
        storage: StoragePort,
        identity: IdentityPort,
        transcription: Optional[TranscriptionAdapter] = None,
        synthesis: Optional[SynthesisAdapter] = None,
        connectivity: Optional[ConnectivityPort] = None,
        rate_limiter: Optional[RateLimiter] = None,
        monitor: Optional[QualityMonitor] = None,
        offline: Optional[OfflineSync] = None,
        config: Optional[PipelineConfig] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config or PipelineConfig()
        self.transcription = transcription
        self.intent = intent
        self.synthesis = synthesis
        self.storage = storage
        self.identity = identity
        self.connectivity = connectivity
        self.rate_limiter = rate_limiter
        self.monitor = monitor
        self.offline = offline
        self._sleep = sleep

    # ============================================
    # Public API
    # ============================================

    def run(
        self,
        command_input: CommandInput,
        context: CommandContext,
        previous_run: Optional[CommandRun] = None,
    ) -> CommandRunStream:
        """
        Starts a run in its own task and returns its event stream.

        Must be called from a running event loop.
        """
        run = self._new_run(command_input, context, previous_run)
        stream = CommandRunStream(run, maxsize=self.config.event_queue_size)
        task = asyncio.get_running_loop().create_task(
            self._drive(stream, command_input, context),
            name=f"sitevoice-{run.run_id}",
        )
        stream._attach(task)
        return stream

    def retry(
        self,
        previous_run: CommandRun,
        command_input: CommandInput,
        context: CommandContext,
    ) -> CommandRunStream:
        """User retry after low_confidence or clarification_needed."""
        return self.run(command_input, context, previous_run=previous_run)

    async def execute(
        self,
        command_input: CommandInput,
        context: CommandContext,
        previous_run: Optional[CommandRun] = None,
    ) -> CommandRun:
        """Runs to completion, ignoring progress events."""
        return await self.run(command_input, context, previous_run).result()

    async def get_pending_offline_count(self, tenant_id: str) -> int:
        if self.offline is None:
            return 0
        return await self.offline.pending_count(tenant_id)

    async def flush_offline(self, tenant_id: str) -> FlushResult:
        if self.offline is None:
            return FlushResult(tenant_id=tenant_id)
        return await self.offline.flush(tenant_id)

    async def flush_all_offline(self) -> dict:
        if self.offline is None:
            return {}
        return await self.offline.flush_all()

    def get_quality_report(
        self,
        window: timedelta = timedelta(days=1),
        tenant_id: Optional[str] = None,
    ) -> AggregateReport:
        if self.monitor is None:
            raise RuntimeError("No quality monitor configured")
        return self.monitor.evaluate(window, tenant_id=tenant_id)

    def record_correction(self, run_id: str, transcript: Optional[str] = None, intent: Any = None) -> bool:
        """Forwards a user edit of a run's transcript or intent as ground truth."""
        if self.monitor is None:
            return False
        return self.monitor.record_correction(run_id, transcript=transcript, intent=intent)

    async def close(self) -> None:
        for adapter in (self.transcription, self.intent, self.synthesis):
            if adapter is not None:
                await adapter.close()

    # ============================================
    # Run driver
    # ============================================

    def _new_run(
        self,
        command_input: CommandInput,
        context: CommandContext,
        previous_run: Optional[CommandRun],
    ) -> CommandRun:
        stage = RunStage.IDLE
        attempt = 0
        parent_run_id = None
        if previous_run is not None:
            attempt = previous_run.attempt + 1
            parent_run_id = previous_run.run_id
            stage = _RETRY_STAGE.get(previous_run.outcome, RunStage.IDLE)

        return CommandRun(
            tenant_id=context.tenant_id,
            principal_id=context.principal_id,
            language=context.language,
            modality=command_input.modality,
            stage=stage,
            attempt=attempt,
            parent_run_id=parent_run_id,
        )

    async def _drive(
        self,
        stream: CommandRunStream,
        command_input: CommandInput,
        context: CommandContext,
    ) -> CommandRun:
        run = stream.run
        sm = RunStateMachine(run)
        sm.on_stage_change(
            lambda old, new, r: stream.publish(StageChanged(run_id=r.run_id, from_stage=old, to_stage=new))
        )
        pending: list[_PendingOutcome] = []

        logger.info(f"Run {run.run_id} started (tenant={run.tenant_id}, modality={run.modality.value}, attempt={run.attempt})")

        inner = asyncio.get_running_loop().create_task(
            self._execute(stream, sm, command_input, context, pending)
        )
        cancel_waiter = asyncio.ensure_future(stream.cancel_requested.wait())
        try:
            done, _ = await asyncio.wait(
                {inner, cancel_waiter},
                timeout=self.config.run_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if inner in done:
                error = inner.exception()
                if error is not None:
                    logger.error(f"Run {run.run_id} crashed: {error}", exc_info=error)
                    self._terminate(sm, RunOutcome.FAILED, error_kind=ErrorKind.INTERNAL, error=str(error))
            elif cancel_waiter in done:
                await self._abandon(inner)
                self._finish_after_cancel(sm, pending)
            else:
                await self._abandon(inner)
                self._finish_after_deadline(sm, pending)
        except asyncio.CancelledError:
            await self._abandon(inner)
            self._finish_after_cancel(sm, pending)
        finally:
            cancel_waiter.cancel()
            if not run.is_terminal:
                self._terminate(sm, RunOutcome.FAILED, error_kind=ErrorKind.INTERNAL, error="run ended without outcome")
            if self.monitor is not None:
                self.monitor.record_run(run)
            stream.publish(Completed(
                run_id=run.run_id,
                outcome=run.outcome,
                message=run.message,
                confirmation_audio_ref=run.confirmation_audio,
                retry_after=run.retry_after,
                run=run,
            ))
            stream.publish(None)

        logger.info(
            f"Run {run.run_id} finished: {run.outcome.value} in {run.end_to_end_ms:.0f}ms"
            + (f" ({run.error})" if run.error else "")
        )
        return run

    @staticmethod
    async def _abandon(task: asyncio.Task) -> None:
        if not task.done():
            task.cancel()
        await asyncio.wait({task})

    def _finish_after_cancel(self, sm: RunStateMachine, pending: list) -> None:
        run = sm.run
        if run.is_terminal:
            return
        durable = [p for p in pending if p.durable]
        if durable:
            # The write is already in the offline queue; it will be replayed
            decided = durable[-1]
            logger.info(f"Run {run.run_id} cancelled after its write was queued, keeping {decided.outcome.value}")
            self._terminate(sm, decided.outcome, decided.message, decided.error_kind, decided.error)
            return
        logger.info(f"Run {run.run_id} cancelled at {run.stage.name}")
        self._terminate(sm, RunOutcome.CANCELLED, error_kind=ErrorKind.CANCELLED)

    def _finish_after_deadline(self, sm: RunStateMachine, pending: list) -> None:
        run = sm.run
        if run.is_terminal:
            return
        if pending:
            # The outcome was already decided; only its audio missed the deadline
            decided = pending[-1]
            self._terminate(sm, decided.outcome, decided.message, decided.error_kind, decided.error)
            return
        logger.warning(f"Run {run.run_id} exceeded {self.config.run_timeout_seconds}s at {run.stage.name}")
        self._terminate(
            sm,
            RunOutcome.TIMED_OUT,
            error_kind=ErrorKind.PROVIDER_TIMEOUT,
            error=f"run deadline of {self.config.run_timeout_seconds}s exceeded",
        )

    def _terminate(
        self,
        sm: RunStateMachine,
        outcome: RunOutcome,
        message: Optional[str] = None,
        error_kind: Optional[ErrorKind] = None,
        error: Optional[str] = None,
        retry_after: Optional[float] = None,
        audio: Optional[SynthesizedAudio] = None,
    ) -> None:
        if sm.run.is_terminal:
            return
        sm.terminate(
            outcome,
            message=message if message is not None else user_message(outcome, retry_after),
            error_kind=error_kind,
            error=error,
            retry_after=retry_after,
            audio=audio,
        )

    # ============================================
    # Stage flow
    # ============================================

    async def _execute(
        self,
        stream: CommandRunStream,
        sm: RunStateMachine,
        command_input: CommandInput,
        context: CommandContext,
        pending: list,
    ) -> None:
        run = sm.run

        # User retry budget
        if run.attempt > self.config.max_user_retries:
            self._terminate(sm, RunOutcome.FAILED, RETRIES_EXHAUSTED_MESSAGE, error_kind=run_error_kind(run))
            return

        # Identity and tenant scope, captured once for the whole run
        try:
            principal = await self.identity.current_principal(context)
            if principal.tenant_id != context.tenant_id:
                raise IdentityError(f"Principal {principal.principal_id} is not a member of {context.tenant_id}")
        except IdentityError as e:
            self._terminate(sm, RunOutcome.FAILED, error_kind=ErrorKind.IDENTITY_FAILED, error=str(e))
            return
        context = replace(context, principal_id=principal.principal_id)
        run.principal_id = principal.principal_id

        # Tenant daily ceiling: hard stop
        if self.rate_limiter is not None:
            admission = self.rate_limiter.try_admit(context.tenant_id)
            if not admission.allowed:
                self._terminate(
                    sm,
                    RunOutcome.RATE_LIMITED,
                    error_kind=ErrorKind.RATE_LIMITED,
                    error="tenant daily command ceiling reached",
                    retry_after=admission.retry_after,
                )
                return

        if run.stage == RunStage.IDLE:
            sm.transition(StageTransition.START)
        else:
            sm.transition(StageTransition.RETRY)

        # Transcript
        if command_input.audio is not None:
            sm.transition(StageTransition.AUDIO_RECEIVED)
            transcript = await self._transcribe(stream, sm, command_input.audio, context)
            if transcript is None:
                return
        else:
            text = command_input.text.strip()
            run.set_transcript(text)
            sm.transition(StageTransition.TEXT_RECEIVED)
            transcript = Transcript(text=text, confidence=1.0, language=context.language, provider="text")

        # Intent
        result = await self._run_stage(self.intent, transcript.text, "intent", self.config.intent_timeout_seconds, sm, context)
        if result is None:
            return
        run.record_confidence("intent", result.confidence)
        decision, intent = gate_intent(result.value, self.config.thresholds_for(context.tenant_id))
        run.set_intent(intent)

        if not decision.passed:
            logger.info(f"Run {run.run_id}: intent gate rejected ({decision.reason})")
            sm.transition(StageTransition.INTENT_UNCLEAR)
            pending.append(_PendingOutcome(
                RunOutcome.CLARIFICATION_NEEDED, intent.clarification, ErrorKind.CLARIFICATION_NEEDED
            ))
            audio = await self._synthesize(intent.clarification, sm, context)
            stream.publish(ClarificationRequested(run_id=run.run_id, text=intent.clarification, audio_ref=audio))
            self._terminate(
                sm,
                RunOutcome.CLARIFICATION_NEEDED,
                intent.clarification,
                error_kind=ErrorKind.CLARIFICATION_NEEDED,
                audio=audio,
            )
            return

        sm.transition(StageTransition.INTENT_ACCEPTED)
        await self._execute_intent(sm, context, pending)

    async def _transcribe(
        self,
        stream: CommandRunStream,
        sm: RunStateMachine,
        audio: bytes,
        context: CommandContext,
    ) -> Optional[Transcript]:
        run = sm.run
        if self.transcription is None:
            self._terminate(sm, RunOutcome.FAILED, error_kind=ErrorKind.PROVIDER_ERROR, error="no transcription provider configured")
            return None

        result = await self._run_stage(
            self.transcription, audio, "transcription", self.config.transcription_timeout_seconds, sm, context
        )
        if result is None:
            return None

        transcript: Transcript = result.value
        run.record_confidence("transcription", result.confidence)
        run.set_transcript(transcript.text)
        stream.publish(TranscriptAvailable(
            run_id=run.run_id,
            text=transcript.text,
            confidence=transcript.confidence,
            final=transcript.is_final,
        ))

        decision = gate_transcript(transcript, self.config.thresholds_for(context.tenant_id))
        if decision.passed:
            sm.transition(StageTransition.TRANSCRIPT_ACCEPTED)
            return transcript

        logger.info(f"Run {run.run_id}: transcript gate rejected ({decision.reason})")
        sm.transition(StageTransition.TRANSCRIPT_REJECTED)
        message = user_message(RunOutcome.LOW_CONFIDENCE)
        audio_out = await self._synthesize(message, sm, context)
        self._terminate(sm, RunOutcome.LOW_CONFIDENCE, message, error_kind=ErrorKind.LOW_CONFIDENCE, audio=audio_out)
        return None

    async def _execute_intent(self, sm: RunStateMachine, context: CommandContext, pending: list) -> None:
        run = sm.run
        intent = run.intent
        started = time.perf_counter()

        queued = False
        failure: Optional[StorageExecutionFailed] = None
        receipt = None

        if self.connectivity is not None and not self.connectivity.is_network_available():
            queued = await self._enqueue_offline(sm, context, pending)
        else:
            try:
                receipt = await self.storage.execute(intent, context, run.run_id)
            except NetworkUnavailable:
                queued = await self._enqueue_offline(sm, context, pending)
            except StorageExecutionFailed as e:
                failure = e
        run.record_latency("execution", (time.perf_counter() - started) * 1000)

        if run.is_terminal:
            return

        sm.transition(StageTransition.EXECUTED)

        if failure is not None:
            message = str(failure)
            pending.append(_PendingOutcome(RunOutcome.FAILED, message, ErrorKind.STORAGE_EXECUTION_FAILED, message))
            audio = await self._synthesize(message, sm, context)
            self._terminate(
                sm, RunOutcome.FAILED, message,
                error_kind=ErrorKind.STORAGE_EXECUTION_FAILED, error=message, audio=audio,
            )
            return

        if queued:
            message = user_message(RunOutcome.QUEUED_OFFLINE)
            audio = await self._synthesize(message, sm, context)
            sm.transition(StageTransition.CONFIRM)
            self._terminate(sm, RunOutcome.QUEUED_OFFLINE, message, error_kind=ErrorKind.NETWORK_UNAVAILABLE, audio=audio)
            return

        run.set_receipt(receipt)
        message = receipt.confirmation or user_message(RunOutcome.SUCCESS)
        pending.append(_PendingOutcome(RunOutcome.SUCCESS, message))
        audio = await self._synthesize(message, sm, context)
        if receipt.requires_confirmation:
            sm.transition(StageTransition.AWAIT_CONFIRMATION)
        else:
            sm.transition(StageTransition.CONFIRM)
        self._terminate(sm, RunOutcome.SUCCESS, message, audio=audio)

    async def _enqueue_offline(self, sm: RunStateMachine, context: CommandContext, pending: list) -> bool:
        """
        Persists the run's intent for later replay.

        Once the insert has started it is allowed to finish even if the run is
        cancelled or times out; the run then settles as queued_offline.
        """
        run = sm.run
        if self.offline is None:
            self._terminate(
                sm, RunOutcome.FAILED,
                error_kind=ErrorKind.NETWORK_UNAVAILABLE,
                error="storage unreachable and no offline queue configured",
            )
            return False
        entry = OfflineQueueEntry(
            tenant_id=context.tenant_id,
            run_id=run.run_id,
            intent=run.intent,
            operation=run.intent.action,
            principal_id=context.principal_id,
            language=context.language,
        )
        persisting = asyncio.ensure_future(self.offline.enqueue(entry))
        try:
            stored = await asyncio.shield(persisting)
        except asyncio.CancelledError:
            await asyncio.wait({persisting})
            if not persisting.cancelled() and persisting.exception() is None:
                pending.append(self._queued_outcome())
            raise
        pending.append(self._queued_outcome())
        logger.info(f"Run {run.run_id}: storage unreachable, queued offline (seq={stored.sequence})")
        return True

    @staticmethod
    def _queued_outcome() -> _PendingOutcome:
        return _PendingOutcome(
            RunOutcome.QUEUED_OFFLINE,
            user_message(RunOutcome.QUEUED_OFFLINE),
            ErrorKind.NETWORK_UNAVAILABLE,
            durable=True,
        )

    # ============================================
    # Stage calls with retry and deadlines
    # ============================================

    async def _call_with_retry(
        self,
        adapter: StageAdapter,
        payload: Any,
        step: str,
        timeout: float,
        run: CommandRun,
        context: CommandContext,
    ) -> AdapterResult:
        """
        Invokes a stage, retrying retryable provider errors.

        Raises:
            ProviderError: The last error once retries are exhausted (or a non-retryable one)
            RateLimited: Remote budget denied without a local fallback
        """
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(adapter.call(payload, run.language, context), timeout)
            except asyncio.TimeoutError:
                error: ProviderError = ProviderTimeout(f"{step} exceeded {timeout}s")
            except ProviderError as e:
                error = e

            if not error.retryable or attempt >= self.config.max_stage_retries:
                raise error

            delay = self.config.retry_delay(attempt)
            attempt += 1
            logger.warning(
                f"Run {run.run_id}: {step} failed ({error}); retry {attempt}/{self.config.max_stage_retries} in {delay}s"
            )
            await self._sleep(delay)

    async def _run_stage(
        self,
        adapter: StageAdapter,
        payload: Any,
        step: str,
        timeout: float,
        sm: RunStateMachine,
        context: CommandContext,
    ) -> Optional[AdapterResult]:
        """Runs a gated stage; on failure terminates the run and returns None."""
        run = sm.run
        started = time.perf_counter()
        try:
            result = await self._call_with_retry(adapter, payload, step, timeout, run, context)
        except RateLimited as e:
            run.record_latency(step, (time.perf_counter() - started) * 1000)
            self._terminate(
                sm, RunOutcome.RATE_LIMITED,
                error_kind=ErrorKind.RATE_LIMITED, error=str(e), retry_after=e.retry_after,
            )
            return None
        except ProviderError as e:
            run.record_latency(step, (time.perf_counter() - started) * 1000)
            self._fail_stage(sm, step, e)
            return None

        run.record_latency(step, (time.perf_counter() - started) * 1000)
        run.record_provider(step, result.provider)
        return result

    def _fail_stage(self, sm: RunStateMachine, step: str, error: ProviderError) -> None:
        outcome, kind = classify_provider_error(error)
        retry_after = error.retry_after if isinstance(error, ProviderQuotaExceeded) else None
        if isinstance(error, ProviderAuthFailed) and self.monitor is not None:
            self.monitor.escalate("provider_auth_failed", f"{error.provider or step}: {error}")
        if isinstance(error, NoProviderAvailable):
            logger.error(f"Run {sm.run.run_id}: no provider for {step}")
        self._terminate(sm, outcome, error_kind=kind, error=f"{step}: {error}", retry_after=retry_after)

    async def _synthesize(
        self,
        text: str,
        sm: RunStateMachine,
        context: CommandContext,
    ) -> Optional[SynthesizedAudio]:
        """Best effort: a synthesis failure leaves the message as text only."""
        if self.synthesis is None or not text:
            return None
        run = sm.run
        started = time.perf_counter()
        try:
            result = await self._call_with_retry(
                self.synthesis, text, "synthesis", self.config.synthesis_timeout_seconds, run, context
            )
        except (ProviderError, RateLimited) as e:
            logger.warning(f"Run {run.run_id}: synthesis unavailable ({e}), replying with text")
            return None
        finally:
            run.record_latency("synthesis", (time.perf_counter() - started) * 1000)
        run.record_provider("synthesis", result.provider)
        return None if result.value.is_silent else result.value


def run_error_kind(run: CommandRun) -> ErrorKind:
    """Error kind of a run that ran out of user retries, from the stage it resumed at."""
    if run.stage == RunStage.TRANSCRIPT_LOW_CONFIDENCE:
        return ErrorKind.LOW_CONFIDENCE
    if run.stage == RunStage.CLARIFICATION_NEEDED:
        return ErrorKind.CLARIFICATION_NEEDED
    return ErrorKind.INTERNAL


# ============================================
# Factory
# ============================================

def build_pipeline(
    config: Optional[PipelineConfig] = None,
    storage: Optional[StoragePort] = None,
    identity: Optional[IdentityPort] = None,
    connectivity: Optional[ConnectivityPort] = None,
    alert_sink: Any = None,
    offline_db_path: Optional[str] = None,
    load_local_models: bool = True,
) -> CommandPipeline:
    """
    Wires the default adapters from configuration.

    Remote providers are used when their URL is configured; local fallbacks
    (Faster-Whisper, the deterministic parser, Piper/pyttsx3) are added when
    installed.
    """
    from sitevoice.adapters.collaborators import (
        DryRunStorage,
        LoggingAlertSink,
        SocketConnectivity,
        StaticIdentity,
    )
    from sitevoice.adapters.persistence.idempotency import IdempotentStorage
    from sitevoice.adapters.persistence.offline_queue import SQLiteOfflineQueue
    from sitevoice.adapters.voice import asr, nlu, tts
    from sitevoice.core.config import get_offline_db_path
    from sitevoice.core.rate_limiter import RateLimitPolicy

    config = config or PipelineConfig()
    connectivity = connectivity or SocketConnectivity()
    db_path = offline_db_path or str(get_offline_db_path())

    limiter = RateLimiter(RateLimitPolicy.from_config(config))
    monitor = QualityMonitor(
        targets=config.quality,
        alert_sink=alert_sink or LoggingAlertSink(),
        retention_days=config.sample_retention_days,
    )

    # Transcription
    remote_asr = None
    if config.transcription_url:
        remote_asr = asr.RemoteTranscriptionProvider(
            config.transcription_url,
            api_key=config.provider_api_key,
            timeout=config.transcription_timeout_seconds,
        )
    local_asr = None
    if load_local_models and asr.WHISPER_AVAILABLE:
        try:
            local_asr = asr.WhisperTranscriptionProvider(model_size=config.whisper_model_size)
        except Exception as e:
            logger.warning(f"Whisper fallback unavailable: {e}")
    transcription = None
    if remote_asr is not None or local_asr is not None:
        transcription = TranscriptionAdapter(remote_asr, local_asr, limiter, connectivity, monitor)

    # Intent
    remote_nlu = None
    if config.intent_url:
        remote_nlu = nlu.RemoteIntentProvider(
            config.intent_url,
            api_key=config.provider_api_key,
            timeout=config.intent_timeout_seconds,
        )
    local_nlu = nlu.DeterministicIntentParser(confidence=config.fallback_intent_confidence)
    intent = IntentAdapter(remote_nlu, local_nlu, limiter, connectivity, monitor)

    # Synthesis
    remote_tts = None
    if config.synthesis_url:
        remote_tts = tts.RemoteSynthesisProvider(
            config.synthesis_url,
            api_key=config.provider_api_key,
            timeout=config.synthesis_timeout_seconds,
        )
    if load_local_models:
        local_tts = tts.create_local_synthesizer(config.piper_voice)
    else:
        local_tts = tts.SilentSynthesisProvider()
    synthesis = SynthesisAdapter(remote_tts, local_tts, limiter, connectivity, monitor)

    storage = IdempotentStorage(storage or DryRunStorage(), db_path=db_path)
    offline = OfflineSync(
        SQLiteOfflineQueue(db_path),
        storage,
        connectivity=connectivity,
        max_retries=config.offline_max_retries,
    )

    return CommandPipeline(
        intent=intent,
        storage=storage,
        identity=identity or StaticIdentity(),
        transcription=transcription,
        synthesis=synthesis,
        connectivity=connectivity,
        rate_limiter=limiter,
        monitor=monitor,
        offline=offline,
        config=config,
    )
