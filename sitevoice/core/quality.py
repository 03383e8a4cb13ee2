"""
SiteVoice Quality Metrics

Pure functions behind the quality monitor: word error rate, numeric-entity
accuracy, intent precision/recall/F1 and the aggregate report with its
threshold checks. Nothing here does I/O; the monitor in
sitevoice.app.monitor owns storage, windows and alert delivery.
"""

from __future__ import annotations

import re
import string
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np

from sitevoice.core.config import QualityTargets
from sitevoice.core.entities import (
    EntityValue,
    Intent,
    QualitySample,
    RunOutcome,
    SampleSource,
    Token,
    utcnow,
)
from sitevoice.core.numbers import extract_numbers

# Production samples nobody corrected are only a weak signal
UNVERIFIED_SAMPLE_WEIGHT = 0.5

# Latency keys recorded on CommandRun.stage_latency_ms
LATENCY_STAGES = ("transcription", "intent", "execution", "synthesis", "end_to_end")

_PUNCTUATION = string.punctuation + "“”‘’…–—"
_WHITESPACE = re.compile(r"\s+")


# ============================================
# Word error rate
# ============================================

def normalize_words(text: str) -> List[str]:
    """Case-folds, splits on whitespace and strips edge punctuation."""
    words = []
    for raw in text.casefold().split():
        word = raw.strip(_PUNCTUATION)
        if word:
            words.append(word)
    return words


def word_edit_distance(reference: Sequence[str], hypothesis: Sequence[str]) -> int:
    """Levenshtein distance over word sequences (substitution = insertion = deletion = 1)."""
    if not reference:
        return len(hypothesis)
    if not hypothesis:
        return len(reference)

    previous = list(range(len(hypothesis) + 1))
    for i, ref_word in enumerate(reference, start=1):
        current = [i] + [0] * len(hypothesis)
        for j, hyp_word in enumerate(hypothesis, start=1):
            cost = 0 if ref_word == hyp_word else 1
            current[j] = min(
                previous[j] + 1,         # deletion
                current[j - 1] + 1,      # insertion
                previous[j - 1] + cost,  # substitution
            )
        previous = current
    return previous[-1]


def word_error_rate(reference: str, hypothesis: str) -> float:
    """
    WER = word edits / reference length.

    Examples:
        word_error_rate("the cat sat", "the cat sat") -> 0.0
        word_error_rate("the cat sat", "the dog sat") -> 0.333...

    An empty reference yields 0.0 for an empty hypothesis and 1.0 otherwise.
    """
    ref_words = normalize_words(reference)
    hyp_words = normalize_words(hypothesis)
    if not ref_words:
        return 0.0 if not hyp_words else 1.0
    return word_edit_distance(ref_words, hyp_words) / len(ref_words)


# ============================================
# Numeric entities
# ============================================

def numeric_accuracy(reference: str, hypothesis: str) -> Optional[float]:
    """
    Exact-match rate of numeric values between two texts.

    Digits and spoken number words are both recognised, so "fifteen hundred"
    and "1,500" match. Returns None when neither text mentions a number.
    """
    expected = Counter(extract_numbers(reference))
    actual = Counter(extract_numbers(hypothesis))
    total = max(sum(expected.values()), sum(actual.values()))
    if total == 0:
        return None
    matched = sum((expected & actual).values())
    return matched / total


def numeric_match(reference: str, hypothesis: str) -> Optional[bool]:
    """True when both texts mention exactly the same numbers."""
    accuracy = numeric_accuracy(reference, hypothesis)
    if accuracy is None:
        return None
    return accuracy == 1.0


# ============================================
# Intent matching
# ============================================

def _normalize_text(value: str) -> str:
    return _WHITESPACE.sub(" ", value.casefold().strip(_PUNCTUATION + " ")).strip()


def _as_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, Decimal)):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.replace(",", "").lstrip("$€£").strip())
        except InvalidOperation:
            return None
    return None


def entity_values_match(expected: EntityValue, actual: EntityValue) -> bool:
    """Exact numeric match for numbers, normalized match for strings and tokens."""
    if isinstance(expected, (int, Decimal)) and not isinstance(expected, bool):
        actual_number = _as_decimal(actual)
        return actual_number is not None and actual_number == Decimal(expected)
    # Token("in_progress") matches "In progress"
    if isinstance(expected, Token) or isinstance(actual, Token):
        return _normalize_text(str(expected).replace("_", " ")) == _normalize_text(str(actual).replace("_", " "))
    return _normalize_text(str(expected)) == _normalize_text(str(actual))


def intent_matches(predicted: Optional[Intent], expected: Intent) -> bool:
    """
    A prediction is correct when the action matches and every expected
    entity is present with a matching value. Extra entities are ignored.
    """
    if predicted is None or predicted.action != expected.action:
        return False
    for name, value in expected.entities.items():
        if name not in predicted.entities:
            return False
        if not entity_values_match(value, predicted.entities[name]):
            return False
    return True


@dataclass(frozen=True)
class IntentScore:
    """Precision/recall/F1 counts over labelled samples."""
    true_positives: int = 0
    false_positives: int = 0
    false_negatives: int = 0

    @property
    def total(self) -> int:
        return self.true_positives + self.false_positives + self.false_negatives

    @property
    def precision(self) -> float:
        predicted = self.true_positives + self.false_positives
        return self.true_positives / predicted if predicted else 0.0

    @property
    def recall(self) -> float:
        relevant = self.true_positives + self.false_negatives
        return self.true_positives / relevant if relevant else 0.0

    @property
    def f1(self) -> float:
        p, r = self.precision, self.recall
        return 2 * p * r / (p + r) if (p + r) else 0.0


def score_intents(pairs: Iterable[tuple[Optional[Intent], Intent]]) -> IntentScore:
    """
    Scores (predicted, expected) pairs.

    - correct prediction -> true positive
    - wrong action or entities -> false positive and false negative
    - no prediction (None or unknown) for a real command -> false negative
    - a prediction for a phrase labelled unknown -> false positive
    """
    tp = fp = fn = 0
    for predicted, expected in pairs:
        has_prediction = predicted is not None and not predicted.is_unknown
        if expected.is_unknown:
            if has_prediction:
                fp += 1
            continue
        if not has_prediction:
            fn += 1
        elif intent_matches(predicted, expected):
            tp += 1
        else:
            fp += 1
            fn += 1
    return IntentScore(true_positives=tp, false_positives=fp, false_negatives=fn)


# ============================================
# Samples
# ============================================

def build_sample(
    source: SampleSource,
    transcript: str = "",
    reference_transcript: Optional[str] = None,
    predicted_intent: Optional[Intent] = None,
    expected_intent: Optional[Intent] = None,
    latency_ms: Optional[Mapping[str, float]] = None,
    confidences: Optional[Mapping[str, float]] = None,
    outcome: Optional[RunOutcome] = None,
    corrected: bool = False,
    run_id: Optional[str] = None,
    tenant_id: str = "",
    recorded_at: Optional[datetime] = None,
) -> QualitySample:
    """Creates a QualitySample and computes every metric its inputs allow."""
    sample = QualitySample(
        source=source,
        run_id=run_id,
        tenant_id=tenant_id,
        transcript=transcript,
        reference_transcript=reference_transcript,
        predicted_intent=predicted_intent,
        expected_intent=expected_intent,
        latency_ms=dict(latency_ms or {}),
        confidences=dict(confidences or {}),
        outcome=outcome,
        corrected=corrected,
        recorded_at=recorded_at or utcnow(),
    )
    return score_sample(sample)


def score_sample(sample: QualitySample) -> QualitySample:
    """Fills WER, numeric and intent fields in place; sets the sample weight."""
    if sample.reference_transcript is not None:
        ref_words = normalize_words(sample.reference_transcript)
        hyp_words = normalize_words(sample.transcript)
        sample.word_error_distance = word_edit_distance(ref_words, hyp_words)
        sample.word_error_rate = word_error_rate(sample.reference_transcript, sample.transcript)
        sample.numeric_accuracy = numeric_accuracy(sample.reference_transcript, sample.transcript)
        sample.numeric_match = (
            None if sample.numeric_accuracy is None else sample.numeric_accuracy == 1.0
        )
    if sample.expected_intent is not None:
        sample.intent_match = intent_matches(sample.predicted_intent, sample.expected_intent)
    sample.weight = 1.0 if sample.has_ground_truth else UNVERIFIED_SAMPLE_WEIGHT
    return sample


# ============================================
# Aggregation
# ============================================

def percentile(values: Sequence[float], q: float) -> Optional[float]:
    """q-th percentile (0-100) or None for an empty sequence."""
    if not values:
        return None
    return float(np.percentile(np.asarray(values, dtype=float), q))


def median(values: Sequence[float]) -> Optional[float]:
    return percentile(values, 50)


@dataclass(frozen=True)
class LatencyStats:
    count: int
    median_ms: Optional[float]
    p95_ms: Optional[float]


@dataclass(frozen=True)
class QualityViolation:
    """A quality target crossed in an evaluation window."""
    metric: str
    value: float
    threshold: float
    message: str
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    detected_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric": self.metric,
            "value": self.value,
            "threshold": self.threshold,
            "message": self.message,
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "window_end": self.window_end.isoformat() if self.window_end else None,
            "detected_at": self.detected_at.isoformat(),
        }


@dataclass
class AggregateReport:
    """
    Quality report over a window of samples.

    Hard metrics (WER, numeric accuracy, intent F1) use ground-truth samples
    only. The trend section uses every sample, weighted.
    """
    window_start: Optional[datetime]
    window_end: Optional[datetime]
    sample_count: int = 0
    ground_truth_count: int = 0
    median_wer: Optional[float] = None
    mean_wer: Optional[float] = None
    numeric_accuracy: Optional[float] = None
    intent_score: IntentScore = field(default_factory=IntentScore)
    latency: Dict[str, LatencyStats] = field(default_factory=dict)
    outcomes: Dict[str, int] = field(default_factory=dict)
    failure_rate: Optional[float] = None
    trend_mean_confidence: Dict[str, float] = field(default_factory=dict)
    trend_success_rate: Optional[float] = None
    targets_met: Dict[str, bool] = field(default_factory=dict)
    violations: List[QualityViolation] = field(default_factory=list)

    @property
    def intent_f1(self) -> Optional[float]:
        return self.intent_score.f1 if self.intent_score.total else None

    @property
    def p95_end_to_end_seconds(self) -> Optional[float]:
        stats = self.latency.get("end_to_end")
        if stats is None or stats.p95_ms is None:
            return None
        return stats.p95_ms / 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "window_end": self.window_end.isoformat() if self.window_end else None,
            "sample_count": self.sample_count,
            "ground_truth_count": self.ground_truth_count,
            "median_wer": self.median_wer,
            "mean_wer": self.mean_wer,
            "numeric_accuracy": self.numeric_accuracy,
            "intent": {
                "precision": self.intent_score.precision,
                "recall": self.intent_score.recall,
                "f1": self.intent_f1,
                "labelled": self.intent_score.total,
            },
            "latency_ms": {
                stage: {"count": s.count, "median": s.median_ms, "p95": s.p95_ms}
                for stage, s in self.latency.items()
            },
            "outcomes": dict(self.outcomes),
            "failure_rate": self.failure_rate,
            "trend": {
                "mean_confidence": dict(self.trend_mean_confidence),
                "success_rate": self.trend_success_rate,
            },
            "targets_met": dict(self.targets_met),
            "violations": [v.to_dict() for v in self.violations],
        }


def _weighted_mean(pairs: List[tuple[float, float]]) -> Optional[float]:
    if not pairs:
        return None
    values = np.asarray([v for v, _ in pairs], dtype=float)
    weights = np.asarray([w for _, w in pairs], dtype=float)
    if weights.sum() <= 0:
        return None
    return float(np.average(values, weights=weights))


def aggregate(
    samples: Sequence[QualitySample],
    targets: Optional[QualityTargets] = None,
    window_start: Optional[datetime] = None,
    window_end: Optional[datetime] = None,
) -> AggregateReport:
    """Builds an AggregateReport and attaches the violated thresholds."""
    targets = targets or QualityTargets()
    report = AggregateReport(
        window_start=window_start,
        window_end=window_end,
        sample_count=len(samples),
    )
    ground_truth = [s for s in samples if s.has_ground_truth]
    report.ground_truth_count = len(ground_truth)

    wers = [s.word_error_rate for s in ground_truth if s.word_error_rate is not None]
    if wers:
        report.median_wer = median(wers)
        report.mean_wer = float(np.mean(wers))

    numeric = [s.numeric_accuracy for s in ground_truth if s.numeric_accuracy is not None]
    if numeric:
        report.numeric_accuracy = float(np.mean(numeric))

    report.intent_score = score_intents(
        (s.predicted_intent, s.expected_intent)
        for s in ground_truth
        if s.expected_intent is not None
    )

    for stage in LATENCY_STAGES:
        values = [s.latency_ms[stage] for s in samples if stage in s.latency_ms]
        if values:
            report.latency[stage] = LatencyStats(
                count=len(values),
                median_ms=median(values),
                p95_ms=percentile(values, 95),
            )

    finished = [s for s in samples if s.outcome is not None]
    for s in finished:
        report.outcomes[s.outcome.value] = report.outcomes.get(s.outcome.value, 0) + 1
    if finished:
        failures = sum(1 for s in finished if s.outcome in (RunOutcome.FAILED, RunOutcome.TIMED_OUT))
        report.failure_rate = failures / len(finished)
        report.trend_success_rate = _weighted_mean(
            [(1.0 if s.outcome.is_provisional_success else 0.0, s.weight) for s in finished]
        )

    steps = sorted({step for s in samples for step in s.confidences})
    for step in steps:
        mean = _weighted_mean([(s.confidences[step], s.weight) for s in samples if step in s.confidences])
        if mean is not None:
            report.trend_mean_confidence[step] = mean

    transcription = report.latency.get("transcription")
    if transcription is not None and transcription.median_ms is not None:
        report.targets_met["median_transcription"] = (
            transcription.median_ms <= targets.target_median_transcription_seconds * 1000
        )
    end_to_end = report.latency.get("end_to_end")
    if end_to_end is not None and end_to_end.median_ms is not None:
        report.targets_met["median_end_to_end"] = (
            end_to_end.median_ms <= targets.target_median_end_to_end_seconds * 1000
        )

    report.violations = check_thresholds(report, targets)
    return report


def check_thresholds(report: AggregateReport, targets: QualityTargets) -> List[QualityViolation]:
    """Returns one violation per crossed alerting threshold."""
    violations: List[QualityViolation] = []

    if report.median_wer is not None and report.median_wer > targets.max_median_wer:
        violations.append(QualityViolation(
            metric="median_wer",
            value=report.median_wer,
            threshold=targets.max_median_wer,
            message=f"Median WER {report.median_wer:.3f} above {targets.max_median_wer:.3f}",
            window_start=report.window_start,
            window_end=report.window_end,
        ))

    p95 = report.p95_end_to_end_seconds
    if p95 is not None and p95 > targets.max_p95_end_to_end_seconds:
        violations.append(QualityViolation(
            metric="p95_end_to_end_seconds",
            value=p95,
            threshold=targets.max_p95_end_to_end_seconds,
            message=f"P95 end-to-end latency {p95:.1f}s above {targets.max_p95_end_to_end_seconds:.1f}s",
            window_start=report.window_start,
            window_end=report.window_end,
        ))

    f1 = report.intent_f1
    if f1 is not None and f1 < targets.min_intent_f1:
        violations.append(QualityViolation(
            metric="intent_f1",
            value=f1,
            threshold=targets.min_intent_f1,
            message=f"Intent F1 {f1:.3f} below {targets.min_intent_f1:.3f}",
            window_start=report.window_start,
            window_end=report.window_end,
        ))

    return violations
