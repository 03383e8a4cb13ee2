"""
SiteVoice Pipeline Policy

Decisions the orchestrator takes between stages:

1. Confidence gates: a transcript below the transcription threshold never
   reaches the intent parser, an intent below the execution threshold is
   never executed.
2. An intent below the threshold always carries a non-empty clarification;
   an intent at or above it never does.
3. Provider errors are classified into retry / terminal outcomes.
4. Every non-success outcome has a message for the user.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from sitevoice.core.config import ConfidenceThresholds
from sitevoice.core.entities import Intent, RunOutcome, Transcript
from sitevoice.core.errors import (
    ErrorKind,
    InvalidProviderResponse,
    NoProviderAvailable,
    ProviderAuthFailed,
    ProviderError,
    ProviderQuotaExceeded,
    ProviderTimeout,
)

DEFAULT_CLARIFICATION = "Sorry, I didn't understand. Could you say that again?"

LOW_CONFIDENCE_MESSAGE = "I didn't catch that clearly. Please repeat the command."
QUEUED_OFFLINE_MESSAGE = "Saved locally, will sync."
RATE_LIMITED_MESSAGE = "Too many requests right now. Please wait {seconds} seconds and try again."
TIMED_OUT_MESSAGE = "That took too long. Please try again."
FAILED_MESSAGE = "Something went wrong. Please try again."
CANCELLED_MESSAGE = "Cancelled."
RETRIES_EXHAUSTED_MESSAGE = "I still couldn't understand. Please type the command instead."


@dataclass(frozen=True)
class GateDecision:
    """
    Confidence gate result.

    Attributes:
        passed: Whether the next stage may run
        confidence: Score that was checked
        threshold: Threshold applied
        reason: Human-readable explanation (logged, not spoken)
    """
    passed: bool
    confidence: float
    threshold: float
    reason: str

    @staticmethod
    def accept(confidence: float, threshold: float) -> "GateDecision":
        return GateDecision(
            passed=True,
            confidence=confidence,
            threshold=threshold,
            reason=f"confidence {confidence:.2f} >= {threshold:.2f}",
        )

    @staticmethod
    def reject(confidence: float, threshold: float) -> "GateDecision":
        return GateDecision(
            passed=False,
            confidence=confidence,
            threshold=threshold,
            reason=f"confidence {confidence:.2f} < {threshold:.2f}",
        )


def gate_transcript(transcript: Transcript, thresholds: ConfidenceThresholds) -> GateDecision:
    """Gate before intent parsing. Empty transcripts never pass."""
    if not transcript.text.strip():
        return GateDecision(
            passed=False,
            confidence=transcript.confidence,
            threshold=thresholds.transcription,
            reason="empty transcript",
        )
    if transcript.confidence < thresholds.transcription:
        return GateDecision.reject(transcript.confidence, thresholds.transcription)
    return GateDecision.accept(transcript.confidence, thresholds.transcription)


def gate_intent(intent: Intent, thresholds: ConfidenceThresholds) -> Tuple[GateDecision, Intent]:
    """
    Gate before execution.

    Returns the decision and the intent normalized to the clarification rule:
    below the threshold a missing clarification is filled with the default
    prompt, at or above it any clarification is dropped. Unknown actions never
    pass regardless of confidence.
    """
    if intent.confidence >= thresholds.intent and not intent.is_unknown:
        if intent.clarification:
            intent = intent.with_clarification(None)
        return GateDecision.accept(intent.confidence, thresholds.intent), intent

    if not (intent.clarification and intent.clarification.strip()):
        intent = intent.with_clarification(DEFAULT_CLARIFICATION)
    decision = GateDecision.reject(intent.confidence, thresholds.intent)
    if intent.is_unknown:
        decision = GateDecision(
            passed=False,
            confidence=intent.confidence,
            threshold=thresholds.intent,
            reason="unknown action",
        )
    return decision, intent


# ============================================
# Error classification
# ============================================

def is_retryable(error: BaseException) -> bool:
    """Whether the orchestrator may invoke the same stage again."""
    return isinstance(error, ProviderError) and error.retryable


def classify_provider_error(error: ProviderError) -> Tuple[RunOutcome, ErrorKind]:
    """
    Terminal outcome for a provider error that will not be retried (any more).

    - timeout -> timed_out
    - provider-side quota -> rate_limited
    - everything else (auth, invalid response, exhausted transient) -> failed
    """
    if isinstance(error, ProviderTimeout):
        return RunOutcome.TIMED_OUT, ErrorKind.PROVIDER_TIMEOUT
    if isinstance(error, ProviderQuotaExceeded):
        return RunOutcome.RATE_LIMITED, ErrorKind.RATE_LIMITED
    if isinstance(error, ProviderAuthFailed):
        return RunOutcome.FAILED, ErrorKind.PROVIDER_AUTH_FAILED
    if isinstance(error, InvalidProviderResponse):
        return RunOutcome.FAILED, ErrorKind.INVALID_RESPONSE
    if isinstance(error, NoProviderAvailable):
        return RunOutcome.FAILED, ErrorKind.PROVIDER_ERROR
    return RunOutcome.FAILED, error.kind


def user_message(outcome: RunOutcome, retry_after: Optional[float] = None) -> str:
    """Default message for a non-success outcome."""
    if outcome == RunOutcome.LOW_CONFIDENCE:
        return LOW_CONFIDENCE_MESSAGE
    if outcome == RunOutcome.CLARIFICATION_NEEDED:
        return DEFAULT_CLARIFICATION
    if outcome == RunOutcome.QUEUED_OFFLINE:
        return QUEUED_OFFLINE_MESSAGE
    if outcome == RunOutcome.RATE_LIMITED:
        seconds = int(retry_after + 0.999) if retry_after else 1
        return RATE_LIMITED_MESSAGE.format(seconds=seconds)
    if outcome == RunOutcome.TIMED_OUT:
        return TIMED_OUT_MESSAGE
    if outcome == RunOutcome.CANCELLED:
        return CANCELLED_MESSAGE
    if outcome == RunOutcome.SUCCESS:
        return "Done."
    return FAILED_MESSAGE
