"""
Pytest Configuration

Configuration and fixtures for tests.
"""

import asyncio
import os
import sys
from typing import List, Optional

import pytest

# Adds the root directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sitevoice.adapters.collaborators import DryRunStorage, LoggingAlertSink, StaticConnectivity, StaticIdentity
from sitevoice.adapters.voice.asr import MockTranscriptionProvider
from sitevoice.adapters.voice.nlu import MockIntentProvider
from sitevoice.adapters.voice.routing import IntentAdapter, SynthesisAdapter, TranscriptionAdapter
from sitevoice.adapters.voice.tts import SilentSynthesisProvider
from sitevoice.app.monitor import QualityMonitor
from sitevoice.app.offline import OfflineSync
from sitevoice.app.pipeline import CommandPipeline
from sitevoice.adapters.persistence.offline_queue import SQLiteOfflineQueue
from sitevoice.core.config import PipelineConfig
from sitevoice.core.entities import CommandContext, ExecutionReceipt, Intent, Transcript
from sitevoice.core.rate_limiter import RateLimiter, RateLimitPolicy


class ScriptedTranscriber:
    """Transcriber that raises the scripted errors in order, then succeeds."""

    def __init__(self, errors: List[BaseException], text: str = "add a note gate is open",
                 confidence: float = 0.95, name: str = "scripted-asr", is_remote: bool = True):
        self.errors = list(errors)
        self.text = text
        self.confidence = confidence
        self.name = name
        self.is_remote = is_remote
        self.call_count = 0

    async def transcribe(self, audio: bytes, language: str) -> Transcript:
        self.call_count += 1
        if self.errors:
            raise self.errors.pop(0)
        return Transcript(text=self.text, confidence=self.confidence, language=language, provider=self.name)


class HangingTranscriber:
    """Transcriber that never answers."""

    name = "hanging-asr"
    is_remote = True

    def __init__(self):
        self.call_count = 0

    async def transcribe(self, audio: bytes, language: str) -> Transcript:
        self.call_count += 1
        await asyncio.Event().wait()


class RecordingSleep:
    """Injectable sleep that records requested delays without waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def context():
    """Default tenant context."""
    return CommandContext(tenant_id="acme", principal_id="maria", language="en-US")


@pytest.fixture
def accepted_intent():
    """High-confidence intent that passes the execution gate."""
    return Intent(action="add_note", entities={"text": "gate is open"}, confidence=0.95, source="mock-nlu")


@pytest.fixture
def storage():
    return DryRunStorage()


@pytest.fixture
def mock_storage(mocker):
    """Storage collaborator whose execute() is an AsyncMock."""
    storage = mocker.MagicMock()
    storage.execute = mocker.AsyncMock(
        return_value=ExecutionReceipt(record_id="rec-1", confirmation="Saved.")
    )
    return storage


@pytest.fixture
def alert_sink():
    return LoggingAlertSink()


@pytest.fixture
def monitor(alert_sink):
    return QualityMonitor(alert_sink=alert_sink)


@pytest.fixture
def offline_queue(tmp_path):
    return SQLiteOfflineQueue(str(tmp_path / "offline.db"))


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def make_pipeline(storage, monitor, offline_queue, recording_sleep):
    """
    Factory for a pipeline wired to mock providers.

    Keyword arguments replace the defaults (transcriber, parser, synthesizer,
    connectivity, config, rate_limiter, sleep, storage, offline queue).
    """

    def _make(
        transcriber=None,
        local_transcriber=None,
        parser=None,
        synthesizer=None,
        local_parser=None,
        connectivity=None,
        config: Optional[PipelineConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
        sleep=None,
        storage_override=None,
        queue_override=None,
        with_synthesis: bool = True,
    ) -> CommandPipeline:
        config = config or PipelineConfig()
        connectivity = connectivity or StaticConnectivity(True)
        limiter = rate_limiter or RateLimiter(RateLimitPolicy.from_config(config))
        used_storage = storage_override or storage

        transcription = TranscriptionAdapter(
            transcriber or MockTranscriptionProvider(text="add a note gate is open", confidence=0.95),
            local_transcriber,
            limiter,
            connectivity,
            monitor,
        )
        intent = IntentAdapter(parser or MockIntentProvider(), local_parser, limiter, connectivity, monitor)
        synthesis = None
        if with_synthesis:
            synthesis = SynthesisAdapter(
                synthesizer or SilentSynthesisProvider(), None, limiter, connectivity, monitor
            )

        return CommandPipeline(
            intent=intent,
            storage=used_storage,
            identity=StaticIdentity(),
            transcription=transcription,
            synthesis=synthesis,
            connectivity=connectivity,
            rate_limiter=limiter,
            monitor=monitor,
            offline=OfflineSync(queue_override or offline_queue, used_storage, connectivity=connectivity),
            config=config,
            sleep=sleep or recording_sleep,
        )

    return _make
