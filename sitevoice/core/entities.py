"""
SiteVoice Core Domain Entities

This module contains the domain entities (Data Classes) shared by the
pipeline, the adapters and the quality monitor.

Hierarchy:
    CommandInput + CommandContext -> CommandRun -> Transcript -> Intent
        -> ExecutionReceipt | OfflineQueueEntry -> QualitySample
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from sitevoice.core.errors import ErrorKind

UNKNOWN_ACTION = "unknown"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Modality(Enum):
    """How the utterance reached the pipeline."""
    AUDIO = "audio"
    TEXT = "text"


class RunStage(Enum):
    """Stages of one CommandRun."""
    IDLE = "idle"
    LISTENING = "listening"
    TRANSCRIBING = "transcribing"
    TRANSCRIPT_LOW_CONFIDENCE = "transcript_low_confidence"
    INTENT_PARSING = "intent_parsing"
    CLARIFICATION_NEEDED = "clarification_needed"
    EXECUTING = "executing"
    SYNTHESIZING = "synthesizing"
    CONFIRMED = "confirmed"
    AWAITING_USER_CONFIRMATION = "awaiting_user_confirmation"
    TERMINAL = "terminal"


class RunOutcome(Enum):
    """Terminal outcome of a CommandRun."""
    SUCCESS = "success"
    LOW_CONFIDENCE = "low_confidence"
    CLARIFICATION_NEEDED = "clarification_needed"
    RATE_LIMITED = "rate_limited"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    CANCELLED = "cancelled"
    QUEUED_OFFLINE = "queued_offline"

    @property
    def is_success(self) -> bool:
        return self == RunOutcome.SUCCESS

    @property
    def is_provisional_success(self) -> bool:
        """queued_offline is reported to the user as success pending sync."""
        return self in (RunOutcome.SUCCESS, RunOutcome.QUEUED_OFFLINE)

    @property
    def is_retryable_by_user(self) -> bool:
        return self in (RunOutcome.LOW_CONFIDENCE, RunOutcome.CLARIFICATION_NEEDED)


# ============================================
# Intent
# ============================================

@dataclass(frozen=True)
class Token:
    """Enumerated entity value (e.g. a job status)."""
    value: str

    def __str__(self) -> str:
        return self.value


EntityValue = Union[int, Decimal, str, Token]


def encode_entity(value: EntityValue) -> Dict[str, str]:
    """Serializes an entity value with its type tag."""
    if isinstance(value, bool):
        raise TypeError("Boolean entity values are not supported")
    if isinstance(value, int):
        return {"type": "int", "value": str(value)}
    if isinstance(value, Decimal):
        return {"type": "decimal", "value": str(value)}
    if isinstance(value, Token):
        return {"type": "token", "value": value.value}
    if isinstance(value, str):
        return {"type": "str", "value": value}
    raise TypeError(f"Unsupported entity value: {value!r}")


def decode_entity(data: Any) -> EntityValue:
    """
    Deserializes an entity value.

    Accepts the tagged form produced by encode_entity as well as plain JSON
    scalars (int -> int, float -> Decimal, str -> str).
    """
    if isinstance(data, dict):
        kind = data.get("type")
        raw = data.get("value")
        if kind == "int":
            return int(raw)
        if kind == "decimal":
            try:
                return Decimal(str(raw))
            except InvalidOperation as e:
                raise ValueError(f"Invalid decimal entity value: {raw!r}") from e
        if kind == "token":
            return Token(str(raw))
        if kind == "str":
            return str(raw)
        if "token" in data:
            return Token(str(data["token"]))
        raise ValueError(f"Unknown entity type: {kind!r}")
    if isinstance(data, bool):
        raise ValueError("Boolean entity values are not supported")
    if isinstance(data, int):
        return data
    if isinstance(data, float):
        return Decimal(str(data))
    if isinstance(data, str):
        return data
    raise ValueError(f"Unsupported entity payload: {data!r}")


@dataclass(frozen=True)
class Intent:
    """
    Structured output of the intent parser.

    Attributes:
        action: Action identifier defined by the calling domain (opaque here)
        entities: Entity name -> typed value
        confidence: Confidence in recognition (0.0-1.0)
        clarification: Prompt for the user, only when below the threshold
        source: Name of the provider that produced the intent
    """
    action: str
    entities: Dict[str, EntityValue] = field(default_factory=dict)
    confidence: float = 1.0
    clarification: Optional[str] = None
    source: str = ""

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be between 0.0 and 1.0, got {self.confidence}")

    @property
    def is_unknown(self) -> bool:
        return self.action == UNKNOWN_ACTION

    def get_entity(self, key: str, default: Any = None) -> Any:
        """Safely retrieve an entity."""
        return self.entities.get(key, default)

    def with_clarification(self, text: Optional[str]) -> "Intent":
        return replace(self, clarification=text)

    def with_entities(self, extra: Mapping[str, EntityValue]) -> "Intent":
        merged = dict(self.entities)
        merged.update(extra)
        return replace(self, entities=merged)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "entities": {name: encode_entity(value) for name, value in self.entities.items()},
            "confidence": self.confidence,
            "clarification": self.clarification,
            "source": self.source,
        }

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "Intent":
        entities = {
            name: decode_entity(value)
            for name, value in (data.get("entities") or {}).items()
        }
        return cls(
            action=str(data["action"]),
            entities=entities,
            confidence=float(data.get("confidence", 1.0)),
            clarification=data.get("clarification") or None,
            source=data.get("source", ""),
        )


# ============================================
# Inputs and collaborator values
# ============================================

@dataclass(frozen=True)
class CommandInput:
    """
    Raw utterance: either audio bytes or pre-transcribed text.

    Exactly one of `audio` and `text` is set.
    """
    audio: Optional[bytes] = None
    text: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.audio is None) == (self.text is None):
            raise ValueError("CommandInput needs exactly one of audio or text")
        if self.text is not None and not self.text.strip():
            raise ValueError("Text input cannot be empty")
        if self.audio is not None and len(self.audio) == 0:
            raise ValueError("Audio input cannot be empty")

    @classmethod
    def from_audio(cls, audio: bytes) -> "CommandInput":
        return cls(audio=audio)

    @classmethod
    def from_text(cls, text: str) -> "CommandInput":
        return cls(text=text)

    @property
    def modality(self) -> Modality:
        return Modality.AUDIO if self.audio is not None else Modality.TEXT


@dataclass(frozen=True)
class CommandContext:
    """
    Context captured once at run start and held constant for its retries.

    Attributes:
        tenant_id: Tenant scope of the command
        principal_id: Authenticated user (may be resolved by the identity port)
        language: BCP-47 language tag of the utterance
        active_entities: Hints such as the currently selected job
        session_id: Caller's session (UI, device)
    """
    tenant_id: str
    principal_id: str = ""
    language: str = "en-US"
    active_entities: Mapping[str, str] = field(default_factory=dict)
    session_id: Optional[str] = None


@dataclass(frozen=True)
class Principal:
    principal_id: str
    tenant_id: str
    roles: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Transcript:
    """Text produced by a transcription provider."""
    text: str
    confidence: float
    language: str = ""
    provider: str = ""
    is_final: bool = True


@dataclass(frozen=True)
class SynthesizedAudio:
    """Audio produced by a synthesis provider."""
    audio: bytes
    text: str
    content_type: str = "audio/wav"
    provider: str = ""

    @property
    def is_silent(self) -> bool:
        return len(self.audio) == 0


@dataclass(frozen=True)
class ExecutionReceipt:
    """
    Acknowledgement from the storage collaborator.

    Attributes:
        record_id: Identifier of the written record
        confirmation: Text to read back to the user
        requires_confirmation: The write is provisional until the user confirms
        replayed: The idempotency key had already been applied
    """
    record_id: Optional[str] = None
    confirmation: str = ""
    requires_confirmation: bool = False
    replayed: bool = False
    data: Dict[str, Any] = field(default_factory=dict)


# ============================================
# CommandRun
# ============================================

class RunFinalizedError(Exception):
    """Raised when a terminal CommandRun is mutated."""


@dataclass
class CommandRun:
    """
    One execution of the pipeline for a single utterance.

    Mutated only by the orchestrator through the methods below; immutable once
    an outcome is set. Stage timestamps never go backwards and confidence
    scores, once recorded, cannot be replaced.
    """
    run_id: str = field(default_factory=lambda: f"run-{uuid.uuid4().hex}")
    tenant_id: str = ""
    principal_id: str = ""
    language: str = "en-US"
    modality: Modality = Modality.TEXT
    stage: RunStage = RunStage.IDLE
    attempt: int = 0
    parent_run_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    stage_timestamps: Dict[RunStage, datetime] = field(default_factory=dict)
    stage_latency_ms: Dict[str, float] = field(default_factory=dict)
    confidences: Dict[str, float] = field(default_factory=dict)
    providers: Dict[str, str] = field(default_factory=dict)
    transcript: Optional[str] = None
    intent: Optional[Intent] = None
    receipt: Optional[ExecutionReceipt] = None
    outcome: Optional[RunOutcome] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    message: str = ""
    retry_after: Optional[float] = None
    confirmation_audio: Optional[SynthesizedAudio] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.stage_timestamps.setdefault(self.stage, self.created_at)

    @property
    def is_terminal(self) -> bool:
        return self.outcome is not None

    @property
    def end_to_end_ms(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.created_at).total_seconds() * 1000

    def _check_open(self) -> None:
        if self.is_terminal:
            raise RunFinalizedError(f"Run {self.run_id} is already {self.outcome.value}")

    def _next_timestamp(self, at: Optional[datetime]) -> datetime:
        ts = at or utcnow()
        if self.stage_timestamps:
            last = max(self.stage_timestamps.values())
            if ts < last:
                ts = last
        return ts

    def enter_stage(self, stage: RunStage, at: Optional[datetime] = None) -> None:
        """Moves the run to a new stage and stamps it."""
        self._check_open()
        self.stage = stage
        self.stage_timestamps[stage] = self._next_timestamp(at)

    def record_confidence(self, step: str, value: float) -> None:
        self._check_open()
        if step in self.confidences:
            raise ValueError(f"Confidence for '{step}' already recorded on {self.run_id}")
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"Confidence must be between 0.0 and 1.0, got {value}")
        self.confidences[step] = value

    def record_latency(self, step: str, latency_ms: float) -> None:
        self._check_open()
        self.stage_latency_ms[step] = self.stage_latency_ms.get(step, 0.0) + latency_ms

    def record_provider(self, step: str, provider: str) -> None:
        self._check_open()
        self.providers[step] = provider

    def set_transcript(self, text: str) -> None:
        self._check_open()
        self.transcript = text

    def set_intent(self, intent: Intent) -> None:
        self._check_open()
        self.intent = intent

    def set_receipt(self, receipt: ExecutionReceipt) -> None:
        self._check_open()
        self.receipt = receipt

    def finish(
        self,
        outcome: RunOutcome,
        message: str = "",
        error_kind: Optional[ErrorKind] = None,
        error: Optional[str] = None,
        retry_after: Optional[float] = None,
        audio: Optional[SynthesizedAudio] = None,
        at: Optional[datetime] = None,
    ) -> None:
        """Sets the single terminal outcome of the run."""
        self._check_open()
        ts = self._next_timestamp(at)
        self.stage = RunStage.TERMINAL
        self.stage_timestamps[RunStage.TERMINAL] = ts
        self.message = message
        self.error_kind = error_kind
        self.error = error
        self.retry_after = retry_after
        self.confirmation_audio = audio
        self.completed_at = ts
        self.stage_latency_ms["end_to_end"] = (ts - self.created_at).total_seconds() * 1000
        self.outcome = outcome


# ============================================
# Offline queue
# ============================================

@dataclass(frozen=True)
class OfflineQueueEntry:
    """
    A write deferred because the storage collaborator was unreachable.

    Attributes:
        run_id: Originating run; used as the idempotency key on replay
        operation: Target operation name (the intent action by default)
        sequence: Position in the tenant FIFO, assigned by the queue
    """
    tenant_id: str
    run_id: str
    intent: Intent
    operation: str = ""
    principal_id: str = ""
    language: str = "en-US"
    entry_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    enqueued_at: datetime = field(default_factory=utcnow)
    retry_count: int = 0
    last_error: Optional[str] = None
    sequence: Optional[int] = None

    @property
    def idempotency_key(self) -> str:
        return self.run_id

    def context(self) -> CommandContext:
        """Rebuilds the command context needed to replay the write."""
        return CommandContext(
            tenant_id=self.tenant_id,
            principal_id=self.principal_id,
            language=self.language,
        )


# ============================================
# Quality samples
# ============================================

class SampleSource(Enum):
    PRODUCTION = "production"
    SYNTHETIC_TEST_SET = "synthetic_test_set"


@dataclass
class QualitySample:
    """
    One measurement used by the quality monitor.

    A production sample without a user correction has no ground truth: it is
    weighted down and used for trend detection only.
    """
    source: SampleSource
    run_id: Optional[str] = None
    tenant_id: str = ""
    transcript: str = ""
    reference_transcript: Optional[str] = None
    word_error_distance: Optional[int] = None
    word_error_rate: Optional[float] = None
    numeric_match: Optional[bool] = None
    numeric_accuracy: Optional[float] = None
    predicted_intent: Optional[Intent] = None
    expected_intent: Optional[Intent] = None
    intent_match: Optional[bool] = None
    latency_ms: Dict[str, float] = field(default_factory=dict)
    confidences: Dict[str, float] = field(default_factory=dict)
    outcome: Optional[RunOutcome] = None
    corrected: bool = False
    weight: float = 1.0
    recorded_at: datetime = field(default_factory=utcnow)

    @property
    def has_ground_truth(self) -> bool:
        return self.source == SampleSource.SYNTHETIC_TEST_SET or self.corrected


@dataclass(frozen=True)
class ReferenceCase:
    """
    One phrase of the offline reference test set.

    Attributes:
        case_id: Stable identifier
        reference_transcript: What was actually said
        expected_intent: Labelled intent (None when only WER is measured)
        audio: Recording of the phrase; when absent the reference text is parsed
    """
    case_id: str
    reference_transcript: str
    expected_intent: Optional[Intent] = None
    audio: Optional[bytes] = None
    language: str = "en-US"
