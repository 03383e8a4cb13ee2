"""
Unit Tests for the Command Pipeline

Stage order, confidence gates, retries, deadlines, cancellation, offline
queueing and rate limiting of CommandPipeline.
"""

import asyncio
import threading
import time

import pytest

from sitevoice.adapters.collaborators import DryRunStorage, StaticConnectivity
from sitevoice.adapters.persistence.offline_queue import SQLiteOfflineQueue
from sitevoice.adapters.voice.asr import MockTranscriptionProvider
from sitevoice.adapters.voice.nlu import MockIntentProvider
from sitevoice.app.offline import OfflineSync
from sitevoice.core.config import ConfidenceThresholds, PipelineConfig
from sitevoice.core.entities import CommandContext, CommandInput, Intent, RunOutcome, RunStage
from sitevoice.core.errors import (
    ErrorKind,
    ProviderAuthFailed,
    ProviderQuotaExceeded,
    StorageExecutionFailed,
    TransientNetworkError,
)
from sitevoice.core.events import ClarificationRequested, Completed, StageChanged, TranscriptAvailable
from sitevoice.core.policy import DEFAULT_CLARIFICATION, QUEUED_OFFLINE_MESSAGE, RETRIES_EXHAUSTED_MESSAGE

from tests.conftest import HangingTranscriber, ScriptedTranscriber

AUDIO = b"\x00\x01" * 800


async def collect(stream):
    return [event async for event in stream]


class RejectingStorage:
    """Storage collaborator that refuses every write."""

    def __init__(self, message: str):
        self.message = message
        self.calls = 0

    async def execute(self, intent, context, idempotency_key):
        self.calls += 1
        raise StorageExecutionFailed(self.message, code="validation")


class SlowQueue(SQLiteOfflineQueue):
    """Offline queue whose inserts hold the worker thread for a while."""

    def __init__(self, db_path: str, delay: float):
        super().__init__(db_path)
        self.delay = delay
        self.started = threading.Event()

    def enqueue(self, entry):
        self.started.set()
        time.sleep(self.delay)
        return super().enqueue(entry)


class TestSuccessfulRuns:
    """Runs that reach the storage collaborator."""

    async def test_text_command_succeeds(self, make_pipeline, context, accepted_intent, storage):
        pipeline = make_pipeline(parser=MockIntentProvider(accepted_intent))

        stream = pipeline.run(CommandInput.from_text("add a note gate is open"), context)
        events = await collect(stream)
        run = await stream.result()

        assert run.outcome == RunOutcome.SUCCESS
        assert run.stage == RunStage.TERMINAL
        assert len(storage.executed) == 1
        executed_intent, executed_context, key = storage.executed[0]
        assert executed_intent.action == "add_note"
        assert key == run.run_id
        assert executed_context.principal_id == "maria"
        assert isinstance(events[-1], Completed)
        assert events[-1].outcome == RunOutcome.SUCCESS

    async def test_storage_called_once_with_run_id(self, make_pipeline, context, accepted_intent, mock_storage):
        pipeline = make_pipeline(parser=MockIntentProvider(accepted_intent), storage_override=mock_storage)

        run = await pipeline.execute(CommandInput.from_text("add a note gate is open"), context)

        assert run.outcome == RunOutcome.SUCCESS
        mock_storage.execute.assert_awaited_once()
        intent, _, key = mock_storage.execute.await_args.args
        assert intent.action == "add_note"
        assert key == run.run_id

    async def test_spoken_cost_entry(self, make_pipeline, context, mock_storage):
        spoken = "add cost one thousand five hundred for cement"
        parser = MockIntentProvider(
            Intent(action="create_cost", entities={"amount": 1500, "description": "cement"}, confidence=0.93)
        )
        pipeline = make_pipeline(
            transcriber=MockTranscriptionProvider(text=spoken, confidence=0.92),
            parser=parser,
            storage_override=mock_storage,
        )

        run = await pipeline.execute(CommandInput.from_audio(AUDIO), context)

        assert run.outcome == RunOutcome.SUCCESS
        assert run.confidences == {"transcription": 0.92, "intent": 0.93}
        assert parser.calls == [spoken]
        mock_storage.execute.assert_awaited_once()
        intent, executed_context, key = mock_storage.execute.await_args.args
        assert intent.action == "create_cost"
        assert intent.entities == {"amount": 1500, "description": "cement"}
        assert executed_context.tenant_id == "acme"
        assert key == run.run_id

    async def test_text_command_skips_transcription(self, make_pipeline, context, accepted_intent):
        transcriber = MockTranscriptionProvider(text="unused")
        pipeline = make_pipeline(transcriber=transcriber, parser=MockIntentProvider(accepted_intent))

        run = await pipeline.execute(CommandInput.from_text("add a note gate is open"), context)

        assert run.outcome == RunOutcome.SUCCESS
        assert transcriber.call_count == 0
        assert "transcription" not in run.confidences

    async def test_stage_order(self, make_pipeline, context, accepted_intent):
        pipeline = make_pipeline(parser=MockIntentProvider(accepted_intent))

        stream = pipeline.run(CommandInput.from_audio(AUDIO), context)
        events = await collect(stream)

        stages = [e.to_stage for e in events if isinstance(e, StageChanged)]
        assert stages == [
            RunStage.LISTENING,
            RunStage.TRANSCRIBING,
            RunStage.INTENT_PARSING,
            RunStage.EXECUTING,
            RunStage.SYNTHESIZING,
            RunStage.CONFIRMED,
            RunStage.TERMINAL,
        ]

    async def test_audio_command_reports_transcript(self, make_pipeline, context, accepted_intent):
        pipeline = make_pipeline(parser=MockIntentProvider(accepted_intent))

        stream = pipeline.run(CommandInput.from_audio(AUDIO), context)
        events = await collect(stream)
        run = await stream.result()

        transcripts = [e for e in events if isinstance(e, TranscriptAvailable)]
        assert len(transcripts) == 1
        assert transcripts[0].text == "add a note gate is open"
        assert run.confidences == {"transcription": 0.95, "intent": 0.95}
        assert run.transcript == "add a note gate is open"

    async def test_latencies_recorded(self, make_pipeline, context, accepted_intent):
        pipeline = make_pipeline(parser=MockIntentProvider(accepted_intent))

        run = await pipeline.execute(CommandInput.from_audio(AUDIO), context)

        for step in ("transcription", "intent", "execution", "synthesis", "end_to_end"):
            assert step in run.stage_latency_ms
            assert run.stage_latency_ms[step] >= 0.0

    async def test_stage_timestamps_monotonic(self, make_pipeline, context, accepted_intent):
        pipeline = make_pipeline(parser=MockIntentProvider(accepted_intent))

        run = await pipeline.execute(CommandInput.from_audio(AUDIO), context)

        ordered = [
            RunStage.IDLE, RunStage.LISTENING, RunStage.TRANSCRIBING, RunStage.INTENT_PARSING,
            RunStage.EXECUTING, RunStage.SYNTHESIZING, RunStage.CONFIRMED, RunStage.TERMINAL,
        ]
        stamps = [run.stage_timestamps[stage] for stage in ordered]
        assert stamps == sorted(stamps)

    async def test_receipt_requiring_confirmation(self, make_pipeline, context, accepted_intent):
        storage = DryRunStorage(confirm_actions={"add_note"})
        pipeline = make_pipeline(parser=MockIntentProvider(accepted_intent), storage_override=storage)

        run = await pipeline.execute(CommandInput.from_text("add a note gate is open"), context)

        assert run.outcome == RunOutcome.SUCCESS
        assert RunStage.AWAITING_USER_CONFIRMATION in run.stage_timestamps
        assert run.receipt.requires_confirmation

    async def test_active_entities_merged(self, make_pipeline, accepted_intent, storage):
        context = CommandContext(tenant_id="acme", principal_id="maria", active_entities={"job_id": "J-42"})
        pipeline = make_pipeline(parser=MockIntentProvider(accepted_intent))

        run = await pipeline.execute(CommandInput.from_text("add a note gate is open"), context)

        assert run.intent.entities["job_id"] == "J-42"
        assert storage.executed[0][0].entities["job_id"] == "J-42"

    async def test_synthesis_failure_keeps_text_confirmation(self, make_pipeline, context, accepted_intent):
        class BrokenSynthesizer:
            name = "broken-tts"
            is_remote = True

            async def synthesize(self, text, language):
                raise ProviderAuthFailed("bad key", "broken-tts")

        pipeline = make_pipeline(parser=MockIntentProvider(accepted_intent), synthesizer=BrokenSynthesizer())

        run = await pipeline.execute(CommandInput.from_text("add a note gate is open"), context)

        assert run.outcome == RunOutcome.SUCCESS
        assert run.confirmation_audio is None
        assert run.message.startswith("Saved add note")

    async def test_concurrent_runs_are_independent(self, make_pipeline, context, accepted_intent, storage):
        pipeline = make_pipeline(parser=MockIntentProvider(accepted_intent, delay=0.01))

        runs = await asyncio.gather(*(
            pipeline.execute(CommandInput.from_text("add a note gate is open"), context)
            for _ in range(5)
        ))

        assert all(run.outcome == RunOutcome.SUCCESS for run in runs)
        assert len({run.run_id for run in runs}) == 5
        assert sorted(key for _, _, key in storage.executed) == sorted(run.run_id for run in runs)


class TestConfidenceGates:
    """Low-confidence transcripts and intents never reach storage."""

    async def test_low_transcript_confidence(self, make_pipeline, context, storage):
        parser = MockIntentProvider(Intent(action="add_note", confidence=0.99))
        pipeline = make_pipeline(
            transcriber=MockTranscriptionProvider(text="add a note gate is open", confidence=0.5),
            parser=parser,
        )

        run = await pipeline.execute(CommandInput.from_audio(AUDIO), context)

        assert run.outcome == RunOutcome.LOW_CONFIDENCE
        assert run.error_kind == ErrorKind.LOW_CONFIDENCE
        assert RunStage.TRANSCRIPT_LOW_CONFIDENCE in run.stage_timestamps
        assert parser.call_count == 0
        assert storage.executed == []
        assert run.message

    @pytest.mark.parametrize("confidence", [0.0, 0.2, 0.45, 0.6, 0.69, 0.699])
    async def test_parser_never_called_below_transcript_threshold(self, make_pipeline, context, storage, confidence):
        parser = MockIntentProvider(Intent(action="add_note", confidence=0.99))
        pipeline = make_pipeline(
            transcriber=MockTranscriptionProvider(text="add a note gate is open", confidence=confidence),
            parser=parser,
        )

        run = await pipeline.execute(CommandInput.from_audio(AUDIO), context)

        assert run.outcome == RunOutcome.LOW_CONFIDENCE
        assert parser.call_count == 0
        assert storage.executed == []

    @pytest.mark.parametrize("confidence", [0.70, 0.71, 0.8, 0.95, 1.0])
    async def test_parser_called_at_or_above_transcript_threshold(
        self, make_pipeline, context, accepted_intent, confidence
    ):
        parser = MockIntentProvider(accepted_intent)
        pipeline = make_pipeline(
            transcriber=MockTranscriptionProvider(text="add a note gate is open", confidence=confidence),
            parser=parser,
        )

        run = await pipeline.execute(CommandInput.from_audio(AUDIO), context)

        assert parser.call_count == 1
        assert run.outcome == RunOutcome.SUCCESS

    @pytest.mark.parametrize("confidence", [0.0, 0.3, 0.6, 0.75, 0.84, 0.849])
    async def test_storage_never_called_below_intent_threshold(self, make_pipeline, context, storage, confidence):
        pipeline = make_pipeline(parser=MockIntentProvider(Intent(action="add_note", confidence=confidence)))

        run = await pipeline.execute(CommandInput.from_text("add a note gate is open"), context)

        assert run.outcome == RunOutcome.CLARIFICATION_NEEDED
        assert run.message
        assert storage.executed == []

    @pytest.mark.parametrize("confidence", [0.85, 0.86, 0.9, 0.99, 1.0])
    async def test_storage_called_at_or_above_intent_threshold(self, make_pipeline, context, storage, confidence):
        intent = Intent(action="add_note", entities={"text": "gate is open"}, confidence=confidence)
        pipeline = make_pipeline(parser=MockIntentProvider(intent))

        run = await pipeline.execute(CommandInput.from_text("add a note gate is open"), context)

        assert run.outcome == RunOutcome.SUCCESS
        assert len(storage.executed) == 1

    async def test_empty_transcript_rejected(self, make_pipeline, context):
        parser = MockIntentProvider(Intent(action="add_note", confidence=0.99))
        pipeline = make_pipeline(
            transcriber=MockTranscriptionProvider(text="", confidence=0.99),
            parser=parser,
        )

        run = await pipeline.execute(CommandInput.from_audio(AUDIO), context)

        assert run.outcome == RunOutcome.LOW_CONFIDENCE
        assert parser.call_count == 0

    async def test_transcript_at_threshold_passes(self, make_pipeline, context, accepted_intent):
        pipeline = make_pipeline(
            transcriber=MockTranscriptionProvider(text="add a note gate is open", confidence=0.70),
            parser=MockIntentProvider(accepted_intent),
        )

        run = await pipeline.execute(CommandInput.from_audio(AUDIO), context)

        assert run.outcome == RunOutcome.SUCCESS

    async def test_low_intent_confidence_asks_clarification(self, make_pipeline, context, storage):
        pipeline = make_pipeline(parser=MockIntentProvider(Intent(action="add_note", confidence=0.6)))

        stream = pipeline.run(CommandInput.from_text("add a note gate is open"), context)
        events = await collect(stream)
        run = await stream.result()

        assert run.outcome == RunOutcome.CLARIFICATION_NEEDED
        assert run.message == DEFAULT_CLARIFICATION
        assert run.intent.clarification == DEFAULT_CLARIFICATION
        assert storage.executed == []
        clarifications = [e for e in events if isinstance(e, ClarificationRequested)]
        assert [c.text for c in clarifications] == [DEFAULT_CLARIFICATION]

    async def test_provider_clarification_is_kept(self, make_pipeline, context):
        intent = Intent(action="create_cost", confidence=0.5, clarification="How much was the cement?")
        pipeline = make_pipeline(parser=MockIntentProvider(intent))

        run = await pipeline.execute(CommandInput.from_text("add cost for cement"), context)

        assert run.outcome == RunOutcome.CLARIFICATION_NEEDED
        assert run.message == "How much was the cement?"

    async def test_accepted_intent_drops_clarification(self, make_pipeline, context, storage):
        intent = Intent(action="add_note", entities={"text": "x"}, confidence=0.9, clarification="Really?")
        pipeline = make_pipeline(parser=MockIntentProvider(intent))

        run = await pipeline.execute(CommandInput.from_text("add a note x"), context)

        assert run.outcome == RunOutcome.SUCCESS
        assert run.intent.clarification is None

    async def test_unknown_action_never_executes(self, make_pipeline, context, storage):
        pipeline = make_pipeline(parser=MockIntentProvider(Intent(action="unknown", confidence=1.0)))

        run = await pipeline.execute(CommandInput.from_text("sing a song"), context)

        assert run.outcome == RunOutcome.CLARIFICATION_NEEDED
        assert storage.executed == []

    async def test_tenant_threshold_override(self, make_pipeline, context, accepted_intent):
        config = PipelineConfig(tenant_thresholds={"acme": ConfidenceThresholds(transcription=0.4, intent=0.85)})
        pipeline = make_pipeline(
            transcriber=MockTranscriptionProvider(text="add a note gate is open", confidence=0.5),
            parser=MockIntentProvider(accepted_intent),
            config=config,
        )

        run = await pipeline.execute(CommandInput.from_audio(AUDIO), context)

        assert run.outcome == RunOutcome.SUCCESS


class TestRetriesAndDeadlines:
    """Transient failures, stage deadlines and the run deadline."""

    async def test_transient_failures_retried_with_backoff(
        self, make_pipeline, context, accepted_intent, recording_sleep
    ):
        transcriber = ScriptedTranscriber([
            TransientNetworkError("reset", "scripted-asr"),
            TransientNetworkError("reset", "scripted-asr"),
        ])
        pipeline = make_pipeline(transcriber=transcriber, parser=MockIntentProvider(accepted_intent))

        run = await pipeline.execute(CommandInput.from_audio(AUDIO), context)

        assert run.outcome == RunOutcome.SUCCESS
        assert transcriber.call_count == 3
        assert recording_sleep.delays == [1.0, 2.0]

    async def test_retries_exhausted_fails(self, make_pipeline, context, accepted_intent, storage):
        transcriber = ScriptedTranscriber([TransientNetworkError("reset", "scripted-asr")] * 3)
        pipeline = make_pipeline(transcriber=transcriber, parser=MockIntentProvider(accepted_intent))

        run = await pipeline.execute(CommandInput.from_audio(AUDIO), context)

        assert run.outcome == RunOutcome.FAILED
        assert transcriber.call_count == 3
        assert storage.executed == []

    async def test_hanging_provider_times_out_after_all_attempts(self, make_pipeline, context):
        config = PipelineConfig(transcription_timeout_seconds=0.05, run_timeout_seconds=5.0)
        transcriber = HangingTranscriber()
        pipeline = make_pipeline(transcriber=transcriber, config=config)

        started = time.perf_counter()
        run = await pipeline.execute(CommandInput.from_audio(AUDIO), context)
        elapsed = time.perf_counter() - started

        assert run.outcome == RunOutcome.TIMED_OUT
        assert run.error_kind == ErrorKind.PROVIDER_TIMEOUT
        assert transcriber.call_count == 3
        assert elapsed >= 3 * 0.05

    async def test_hanging_provider_with_real_backoff(self, make_pipeline, context):
        config = PipelineConfig(
            transcription_timeout_seconds=0.05,
            retry_delays_seconds=(0.02, 0.04),
            run_timeout_seconds=5.0,
        )
        pipeline = make_pipeline(transcriber=HangingTranscriber(), config=config, sleep=asyncio.sleep)

        started = time.perf_counter()
        run = await pipeline.execute(CommandInput.from_audio(AUDIO), context)
        elapsed = time.perf_counter() - started

        assert run.outcome == RunOutcome.TIMED_OUT
        assert elapsed >= 3 * 0.05 + 0.02 + 0.04

    async def test_run_deadline(self, make_pipeline, context):
        config = PipelineConfig(transcription_timeout_seconds=5.0, run_timeout_seconds=0.1)
        pipeline = make_pipeline(transcriber=HangingTranscriber(), config=config)

        started = time.perf_counter()
        run = await pipeline.execute(CommandInput.from_audio(AUDIO), context)

        assert run.outcome == RunOutcome.TIMED_OUT
        assert time.perf_counter() - started < 2.0

    async def test_auth_failure_escalated_without_retry(self, make_pipeline, context, alert_sink):
        transcriber = ScriptedTranscriber([ProviderAuthFailed("key revoked", "scripted-asr")])
        pipeline = make_pipeline(transcriber=transcriber)

        run = await pipeline.execute(CommandInput.from_audio(AUDIO), context)

        assert run.outcome == RunOutcome.FAILED
        assert run.error_kind == ErrorKind.PROVIDER_AUTH_FAILED
        assert transcriber.call_count == 1
        assert [v.metric for v in alert_sink.violations] == ["provider_auth_failed"]

    async def test_provider_quota_without_fallback_is_rate_limited(self, make_pipeline, context):
        transcriber = ScriptedTranscriber([ProviderQuotaExceeded("quota", "scripted-asr", retry_after=30.0)])
        pipeline = make_pipeline(transcriber=transcriber)

        run = await pipeline.execute(CommandInput.from_audio(AUDIO), context)

        assert run.outcome == RunOutcome.RATE_LIMITED
        assert run.retry_after == 30.0
        assert transcriber.call_count == 1

    async def test_provider_quota_falls_back_to_local_transcriber(self, make_pipeline, context, accepted_intent, storage):
        transcriber = ScriptedTranscriber([ProviderQuotaExceeded("quota", "scripted-asr", retry_after=30.0)])
        local = MockTranscriptionProvider(text="add a note gate is open", confidence=0.9, name="local-asr", is_remote=False)
        pipeline = make_pipeline(
            transcriber=transcriber,
            local_transcriber=local,
            parser=MockIntentProvider(accepted_intent),
        )

        run = await pipeline.execute(CommandInput.from_audio(AUDIO), context)

        assert run.outcome == RunOutcome.SUCCESS
        assert run.providers["transcription"] == "local-asr"
        assert local.call_count == 1
        assert len(storage.executed) == 1

    async def test_provider_quota_falls_back_to_local_parser(self, make_pipeline, context, accepted_intent, storage):
        remote = MockIntentProvider(error=ProviderQuotaExceeded("quota", "mock-nlu", retry_after=30.0))
        local = MockIntentProvider(accepted_intent, name="local-nlu", is_remote=False)
        pipeline = make_pipeline(parser=remote, local_parser=local)

        run = await pipeline.execute(CommandInput.from_text("add a note gate is open"), context)

        assert run.outcome == RunOutcome.SUCCESS
        assert run.providers["intent"] == "local-nlu"
        assert remote.call_count == 1
        assert local.call_count == 1
        assert len(storage.executed) == 1


class TestCancellation:
    async def test_cancel_while_parsing(self, make_pipeline, context, accepted_intent, storage):
        parser = MockIntentProvider(accepted_intent, delay=10.0)
        pipeline = make_pipeline(parser=parser)

        stream = pipeline.run(CommandInput.from_text("add a note gate is open"), context)
        await asyncio.wait_for(parser.started.wait(), 1.0)
        stream.cancel()
        run = await asyncio.wait_for(stream.result(), 2.0)

        assert run.outcome == RunOutcome.CANCELLED
        assert storage.executed == []

    async def test_cancel_before_start(self, make_pipeline, context, accepted_intent, storage):
        pipeline = make_pipeline(parser=MockIntentProvider(accepted_intent))

        stream = pipeline.run(CommandInput.from_text("add a note gate is open"), context)
        stream.cancel()
        run = await stream.result()

        assert run.outcome in (RunOutcome.CANCELLED, RunOutcome.SUCCESS)
        if run.outcome == RunOutcome.CANCELLED:
            assert storage.executed == []

    async def test_cancel_during_offline_enqueue_settles_as_queued(
        self, make_pipeline, context, accepted_intent, tmp_path
    ):
        queue = SlowQueue(str(tmp_path / "slow.db"), delay=0.3)
        pipeline = make_pipeline(
            parser=MockIntentProvider(accepted_intent),
            storage_override=DryRunStorage(offline=True),
            queue_override=queue,
        )

        stream = pipeline.run(CommandInput.from_text("add a note gate is open"), context)
        assert await asyncio.wait_for(asyncio.to_thread(queue.started.wait, 2.0), 3.0)
        stream.cancel()
        run = await asyncio.wait_for(stream.result(), 3.0)

        assert run.outcome == RunOutcome.QUEUED_OFFLINE
        assert run.message == QUEUED_OFFLINE_MESSAGE
        assert queue.pending_count("acme") == 1

    async def test_cancel_before_enqueue_leaves_queue_empty(
        self, make_pipeline, context, accepted_intent, offline_queue
    ):
        parser = MockIntentProvider(accepted_intent, delay=10.0)
        pipeline = make_pipeline(parser=parser, storage_override=DryRunStorage(offline=True))

        stream = pipeline.run(CommandInput.from_text("add a note gate is open"), context)
        await asyncio.wait_for(parser.started.wait(), 1.0)
        stream.cancel()
        run = await asyncio.wait_for(stream.result(), 2.0)

        assert run.outcome == RunOutcome.CANCELLED
        assert offline_queue.pending_count("acme") == 0

    async def test_cancelled_stream_ends_with_completed(self, make_pipeline, context, accepted_intent):
        parser = MockIntentProvider(accepted_intent, delay=10.0)
        pipeline = make_pipeline(parser=parser)

        stream = pipeline.run(CommandInput.from_text("add a note gate is open"), context)
        await asyncio.wait_for(parser.started.wait(), 1.0)
        stream.cancel()
        events = await collect(stream)

        assert isinstance(events[-1], Completed)
        assert events[-1].outcome == RunOutcome.CANCELLED


class TestOfflineQueueing:
    async def test_storage_unreachable_queues_command(self, make_pipeline, context, accepted_intent):
        storage = DryRunStorage(offline=True)
        pipeline = make_pipeline(parser=MockIntentProvider(accepted_intent), storage_override=storage)

        run = await pipeline.execute(CommandInput.from_text("add a note gate is open"), context)

        assert run.outcome == RunOutcome.QUEUED_OFFLINE
        assert run.outcome.is_provisional_success
        assert run.message == QUEUED_OFFLINE_MESSAGE
        assert await pipeline.get_pending_offline_count("acme") == 1

    async def test_flush_replays_with_run_id(self, make_pipeline, context, accepted_intent):
        storage = DryRunStorage(offline=True)
        pipeline = make_pipeline(parser=MockIntentProvider(accepted_intent), storage_override=storage)
        run = await pipeline.execute(CommandInput.from_text("add a note gate is open"), context)

        storage.offline = False
        result = await pipeline.flush_offline("acme")

        assert result.applied == 1
        assert result.remaining == 0
        assert storage.executed[0][2] == run.run_id
        assert storage.executed[0][1].principal_id == "maria"

    async def test_interleaved_enqueue_and_flush_keep_order(
        self, make_pipeline, context, accepted_intent, offline_queue, monkeypatch
    ):
        pipeline = make_pipeline(
            parser=MockIntentProvider(accepted_intent),
            storage_override=DryRunStorage(offline=True),
        )
        replay_storage = DryRunStorage()
        sync = OfflineSync(offline_queue, replay_storage)

        sequences = {}
        enqueue = offline_queue.enqueue

        def recording_enqueue(entry):
            stored = enqueue(entry)
            sequences[stored.run_id] = stored.sequence
            return stored

        monkeypatch.setattr(offline_queue, "enqueue", recording_enqueue)

        calls = []
        for i in range(6):
            calls.append(pipeline.execute(CommandInput.from_text(f"add a note entry {i}"), context))
            calls.append(sync.flush("acme"))
        results = await asyncio.gather(*calls)
        await sync.flush("acme")

        runs = results[0::2]
        assert all(run.outcome == RunOutcome.QUEUED_OFFLINE for run in runs)
        replayed = [key for _, _, key in replay_storage.executed]
        assert len(replayed) == len(set(replayed)) == 6
        assert replayed == sorted(sequences, key=sequences.get)
        assert sorted(replayed) == sorted(run.run_id for run in runs)
        assert offline_queue.pending_count("acme") == 0

    async def test_no_connectivity_queues_without_calling_storage(self, make_pipeline, context, accepted_intent, storage):
        local_parser = MockIntentProvider(accepted_intent, name="local-nlu", is_remote=False)
        pipeline = make_pipeline(
            parser=MockIntentProvider(accepted_intent),
            local_parser=local_parser,
            connectivity=StaticConnectivity(False),
        )

        run = await pipeline.execute(CommandInput.from_text("add a note gate is open"), context)

        assert run.outcome == RunOutcome.QUEUED_OFFLINE
        assert run.providers["intent"] == "local-nlu"
        assert storage.executed == []

    async def test_business_rejection_is_spoken_verbatim(self, make_pipeline, context, accepted_intent):
        storage = RejectingStorage("Job J-42 is closed")
        pipeline = make_pipeline(parser=MockIntentProvider(accepted_intent), storage_override=storage)

        run = await pipeline.execute(CommandInput.from_text("add a note gate is open"), context)

        assert run.outcome == RunOutcome.FAILED
        assert run.error_kind == ErrorKind.STORAGE_EXECUTION_FAILED
        assert run.message == "Job J-42 is closed"
        assert await pipeline.get_pending_offline_count("acme") == 0


class TestRateLimits:
    async def test_tenant_ceiling_is_hard_stop(self, make_pipeline, context, accepted_intent):
        config = PipelineConfig(tenant_daily_commands=1)
        parser = MockIntentProvider(accepted_intent)
        pipeline = make_pipeline(parser=parser, config=config)

        first = await pipeline.execute(CommandInput.from_text("add a note gate is open"), context)
        second = await pipeline.execute(CommandInput.from_text("add a note gate is open"), context)

        assert first.outcome == RunOutcome.SUCCESS
        assert second.outcome == RunOutcome.RATE_LIMITED
        assert second.retry_after > 0
        assert parser.call_count == 1

    async def test_provider_budget_without_fallback(self, make_pipeline, context, accepted_intent):
        config = PipelineConfig(requests_per_minute=1)
        parser = MockIntentProvider(accepted_intent)
        pipeline = make_pipeline(parser=parser, config=config)

        await pipeline.execute(CommandInput.from_text("add a note gate is open"), context)
        run = await pipeline.execute(CommandInput.from_text("add a note gate is open"), context)

        assert run.outcome == RunOutcome.RATE_LIMITED
        assert 0 < run.retry_after <= 60
        assert parser.call_count == 1

    async def test_provider_budget_falls_back_to_local(self, make_pipeline, context, accepted_intent):
        config = PipelineConfig(requests_per_minute=1)
        local_parser = MockIntentProvider(accepted_intent, name="local-nlu", is_remote=False)
        pipeline = make_pipeline(parser=MockIntentProvider(accepted_intent), local_parser=local_parser, config=config)

        await pipeline.execute(CommandInput.from_text("add a note gate is open"), context)
        run = await pipeline.execute(CommandInput.from_text("add a note gate is open"), context)

        assert run.outcome == RunOutcome.SUCCESS
        assert run.providers["intent"] == "local-nlu"

    async def test_budgets_are_per_tenant(self, make_pipeline, accepted_intent):
        config = PipelineConfig(tenant_daily_commands=1)
        pipeline = make_pipeline(parser=MockIntentProvider(accepted_intent), config=config)

        a = await pipeline.execute(CommandInput.from_text("add a note x"), CommandContext(tenant_id="a"))
        b = await pipeline.execute(CommandInput.from_text("add a note x"), CommandContext(tenant_id="b"))

        assert a.outcome == RunOutcome.SUCCESS
        assert b.outcome == RunOutcome.SUCCESS


class TestUserRetry:
    async def test_retry_after_clarification(self, make_pipeline, context, accepted_intent):
        answers = [Intent(action="add_note", confidence=0.5), accepted_intent]
        parser = MockIntentProvider(lambda text, ctx: answers.pop(0))
        pipeline = make_pipeline(parser=parser)

        first = await pipeline.execute(CommandInput.from_text("add note"), context)
        stream = pipeline.retry(first, CommandInput.from_text("add a note gate is open"), context)
        events = await collect(stream)
        second = await stream.result()

        assert first.outcome == RunOutcome.CLARIFICATION_NEEDED
        assert second.outcome == RunOutcome.SUCCESS
        assert second.attempt == 1
        assert second.parent_run_id == first.run_id
        first_change = next(e for e in events if isinstance(e, StageChanged))
        assert first_change.from_stage == RunStage.CLARIFICATION_NEEDED
        assert first_change.to_stage == RunStage.LISTENING

    async def test_retry_budget_exhausted(self, make_pipeline, context, storage):
        parser = MockIntentProvider(Intent(action="add_note", confidence=0.5))
        pipeline = make_pipeline(parser=parser)

        run = await pipeline.execute(CommandInput.from_text("add note"), context)
        for _ in range(2):
            run = await pipeline.execute(CommandInput.from_text("add note"), context, previous_run=run)
            assert run.outcome == RunOutcome.CLARIFICATION_NEEDED
        final = await pipeline.execute(CommandInput.from_text("add note"), context, previous_run=run)

        assert final.outcome == RunOutcome.FAILED
        assert final.message == RETRIES_EXHAUSTED_MESSAGE
        assert final.attempt == 3
        assert parser.call_count == 3
        assert storage.executed == []


class TestEventStream:
    async def test_single_completed_event_last(self, make_pipeline, context, accepted_intent):
        pipeline = make_pipeline(parser=MockIntentProvider(accepted_intent))

        events = await collect(pipeline.run(CommandInput.from_audio(AUDIO), context))

        completed = [e for e in events if isinstance(e, Completed)]
        assert len(completed) == 1
        assert events[-1] is completed[0]
        assert all(e.run_id == completed[0].run_id for e in events)

    async def test_slow_consumer_never_blocks_run(self, make_pipeline, context, accepted_intent):
        config = PipelineConfig(event_queue_size=2)
        pipeline = make_pipeline(parser=MockIntentProvider(accepted_intent), config=config)

        stream = pipeline.run(CommandInput.from_audio(AUDIO), context)
        run = await asyncio.wait_for(stream.result(), 2.0)
        events = await collect(stream)

        assert run.outcome == RunOutcome.SUCCESS
        assert isinstance(events[-1], Completed)
        assert stream.dropped_events > 0

    async def test_identity_failure(self, make_pipeline, accepted_intent, storage):
        pipeline = make_pipeline(parser=MockIntentProvider(accepted_intent))

        run = await pipeline.execute(CommandInput.from_text("add a note x"), CommandContext(tenant_id=""))

        assert run.outcome == RunOutcome.FAILED
        assert run.error_kind == ErrorKind.IDENTITY_FAILED
        assert storage.executed == []


class TestQualityReporting:
    async def test_every_run_recorded(self, make_pipeline, context, accepted_intent, monitor):
        pipeline = make_pipeline(parser=MockIntentProvider(accepted_intent))

        await pipeline.execute(CommandInput.from_text("add a note x"), context)
        await pipeline.execute(CommandInput.from_text("add a note y"), CommandContext(tenant_id=""))

        report = pipeline.get_quality_report()
        assert report.sample_count == 2
        assert report.outcomes == {"success": 1, "failed": 1}

    async def test_correction_becomes_ground_truth(self, make_pipeline, context, accepted_intent):
        pipeline = make_pipeline(parser=MockIntentProvider(accepted_intent))
        run = await pipeline.execute(CommandInput.from_audio(AUDIO), context)

        assert pipeline.record_correction(run.run_id, transcript="add a note the gate is open")

        report = pipeline.get_quality_report()
        assert report.ground_truth_count == 1
        assert report.median_wer == pytest.approx(1 / 7)
