"""
SiteVoice Quality & Latency Monitor

Observes every run and provider call, keeps raw samples for a retention
window, rolls them up into daily reports and raises alerts when a quality
target is crossed.

The monitor is never on the critical path: record_* methods only append
under a short lock and never raise.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import date, datetime, time as dtime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from sitevoice.core.config import QualityTargets
from sitevoice.core.entities import (
    CommandContext,
    CommandRun,
    Intent,
    QualitySample,
    ReferenceCase,
    SampleSource,
    utcnow,
)
from sitevoice.core.ports import AlertPort
from sitevoice.core.quality import (
    AggregateReport,
    QualityViolation,
    aggregate,
    build_sample,
    score_sample,
)

logger = logging.getLogger(__name__)


@dataclass
class ProviderStats:
    calls: int = 0
    failures: int = 0
    remote_calls: int = 0
    total_latency_ms: float = 0.0
    max_latency_ms: float = 0.0

    @property
    def mean_latency_ms(self) -> float:
        return self.total_latency_ms / self.calls if self.calls else 0.0

    @property
    def failure_rate(self) -> float:
        return self.failures / self.calls if self.calls else 0.0


class QualityMonitor:
    """
    Collects QualitySamples and evaluates them against QualityTargets.

    Example usage:
        monitor = QualityMonitor(alert_sink=LoggingAlertSink())
        monitor.record_run(run)
        report = monitor.evaluate(timedelta(hours=1))
        print(report.median_wer, report.intent_f1)
    """

    def __init__(
        self,
        targets: Optional[QualityTargets] = None,
        alert_sink: Optional[AlertPort] = None,
        retention_days: int = 7,
        clock: Callable[[], datetime] = utcnow,
        max_samples: int = 100_000,
    ) -> None:
        self.targets = targets or QualityTargets()
        self.alert_sink = alert_sink
        self.retention = timedelta(days=retention_days)
        self._clock = clock
        self._lock = threading.Lock()
        self._samples: Deque[QualitySample] = deque(maxlen=max_samples)
        self._by_run: Dict[str, QualitySample] = {}
        self._provider_stats: Dict[Tuple[str, str], ProviderStats] = {}
        self._daily_reports: Dict[date, AggregateReport] = {}

    # ============================================
    # Recording (never raises)
    # ============================================

    def record_sample(self, sample: QualitySample) -> None:
        """Stores a sample. Errors are logged, never propagated."""
        try:
            with self._lock:
                if len(self._samples) == self._samples.maxlen:
                    dropped = self._samples[0]
                    if dropped.run_id:
                        self._by_run.pop(dropped.run_id, None)
                self._samples.append(sample)
                if sample.run_id:
                    self._by_run[sample.run_id] = sample
        except Exception:
            logger.exception("Failed to record quality sample")

    def record_run(self, run: CommandRun) -> None:
        """Builds a production sample from a terminal run."""
        try:
            sample = build_sample(
                SampleSource.PRODUCTION,
                transcript=run.transcript or "",
                predicted_intent=run.intent,
                latency_ms=run.stage_latency_ms,
                confidences=run.confidences,
                outcome=run.outcome,
                run_id=run.run_id,
                tenant_id=run.tenant_id,
                recorded_at=run.completed_at or self._clock(),
            )
        except Exception:
            logger.exception(f"Failed to build quality sample for run {run.run_id}")
            return
        self.record_sample(sample)

    def record_correction(
        self,
        run_id: str,
        transcript: Optional[str] = None,
        intent: Optional[Intent] = None,
    ) -> bool:
        """
        Applies a user correction as ground truth for a recorded run.

        Args:
            run_id: Run the user corrected
            transcript: What the user actually said (None keeps the transcript as correct)
            intent: The intent the user meant (None keeps the prediction as correct)

        Returns:
            False when the run is unknown (already pruned or never recorded)
        """
        try:
            with self._lock:
                sample = self._by_run.get(run_id)
                if sample is None:
                    return False
                sample.reference_transcript = transcript if transcript is not None else sample.transcript
                sample.expected_intent = intent if intent is not None else sample.predicted_intent
                sample.corrected = True
                score_sample(sample)
            logger.info(f"Correction recorded for run {run_id} (WER={sample.word_error_rate})")
            return True
        except Exception:
            logger.exception(f"Failed to record correction for run {run_id}")
            return False

    def record_provider_call(
        self,
        provider: str,
        service: str,
        latency_ms: float,
        success: bool,
        remote: bool = True,
    ) -> None:
        try:
            with self._lock:
                stats = self._provider_stats.setdefault((provider, service), ProviderStats())
                stats.calls += 1
                if remote:
                    stats.remote_calls += 1
                if not success:
                    stats.failures += 1
                stats.total_latency_ms += latency_ms
                stats.max_latency_ms = max(stats.max_latency_ms, latency_ms)
        except Exception:
            logger.exception("Failed to record provider call")

    def escalate(self, metric: str, message: str) -> None:
        """Sends an immediate alert (e.g. rejected provider credentials)."""
        self._emit(QualityViolation(metric=metric, value=1.0, threshold=0.0, message=message))

    # ============================================
    # Evaluation
    # ============================================

    def samples(
        self,
        window: Optional[timedelta] = None,
        tenant_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[QualitySample]:
        now = now or self._clock()
        start = now - window if window is not None else None
        with self._lock:
            return [
                s for s in self._samples
                if (start is None or s.recorded_at >= start)
                and s.recorded_at <= now
                and (tenant_id is None or s.tenant_id == tenant_id)
            ]

    def evaluate(
        self,
        window: timedelta = timedelta(days=1),
        tenant_id: Optional[str] = None,
        emit_alerts: bool = True,
    ) -> AggregateReport:
        """Aggregates the samples recorded in the last `window` and emits violations."""
        now = self._clock()
        report = aggregate(
            self.samples(window, tenant_id, now=now),
            self.targets,
            window_start=now - window,
            window_end=now,
        )
        if emit_alerts:
            for violation in report.violations:
                self._emit(violation)
        return report

    def provider_stats(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                f"{provider}/{service}": {
                    "calls": stats.calls,
                    "remote_calls": stats.remote_calls,
                    "failures": stats.failures,
                    "failure_rate": stats.failure_rate,
                    "mean_latency_ms": stats.mean_latency_ms,
                    "max_latency_ms": stats.max_latency_ms,
                }
                for (provider, service), stats in self._provider_stats.items()
            }

    async def evaluate_reference_set(
        self,
        cases: Iterable[ReferenceCase],
        intent_parser: Any,
        transcriber: Any = None,
        tenant_id: str = "reference",
        emit_alerts: bool = True,
    ) -> AggregateReport:
        """
        Runs the offline reference set through the providers.

        Cases with audio go through `transcriber` (when given); the others
        feed their reference text straight to `intent_parser`. Both take the
        provider port signatures (transcribe / parse).
        """
        started = self._clock()
        samples: List[QualitySample] = []
        for case in cases:
            latency: Dict[str, float] = {}
            context = CommandContext(tenant_id=tenant_id, language=case.language)
            begin = time.perf_counter()

            transcript = case.reference_transcript
            if case.audio is not None and transcriber is not None:
                result = await transcriber.transcribe(case.audio, case.language)
                transcript = result.text
                latency["transcription"] = (time.perf_counter() - begin) * 1000

            intent_start = time.perf_counter()
            predicted = await intent_parser.parse(transcript, context)
            latency["intent"] = (time.perf_counter() - intent_start) * 1000
            latency["end_to_end"] = (time.perf_counter() - begin) * 1000

            sample = build_sample(
                SampleSource.SYNTHETIC_TEST_SET,
                transcript=transcript,
                reference_transcript=case.reference_transcript,
                predicted_intent=predicted,
                expected_intent=case.expected_intent,
                latency_ms=latency,
                tenant_id=tenant_id,
                run_id=f"ref-{case.case_id}",
            )
            samples.append(sample)
            self.record_sample(sample)

        report = aggregate(samples, self.targets, window_start=started, window_end=self._clock())
        logger.info(
            f"Reference set: {len(samples)} cases, median WER={report.median_wer}, "
            f"intent F1={report.intent_f1}"
        )
        if emit_alerts:
            for violation in report.violations:
                self._emit(violation)
        return report

    # ============================================
    # Daily roll-up and retention
    # ============================================

    def roll_up_daily(self, day: Optional[date] = None) -> AggregateReport:
        """
        Aggregates one UTC day (yesterday by default) into the report history
        and prunes raw samples past the retention window.
        """
        now = self._clock()
        day = day or (now - timedelta(days=1)).date()
        start = datetime.combine(day, dtime.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1)
        with self._lock:
            day_samples = [s for s in self._samples if start <= s.recorded_at < end]
        report = aggregate(day_samples, self.targets, window_start=start, window_end=end)
        with self._lock:
            self._daily_reports[day] = report
        self.prune(now)
        return report

    def daily_reports(self) -> Dict[date, AggregateReport]:
        with self._lock:
            return dict(sorted(self._daily_reports.items()))

    def prune(self, now: Optional[datetime] = None) -> int:
        """Drops raw samples older than the retention window. Returns the count removed."""
        cutoff = (now or self._clock()) - self.retention
        with self._lock:
            kept = [s for s in self._samples if s.recorded_at >= cutoff]
            removed = len(self._samples) - len(kept)
            if removed:
                self._samples = deque(kept, maxlen=self._samples.maxlen)
                self._by_run = {s.run_id: s for s in kept if s.run_id}
        if removed:
            logger.debug(f"Pruned {removed} quality samples older than {cutoff.isoformat()}")
        return removed

    def _emit(self, violation: QualityViolation) -> None:
        logger.warning(f"Quality target missed: {violation.message}")
        if self.alert_sink is None:
            return
        try:
            self.alert_sink.emit(violation)
        except Exception:
            logger.exception("Alert sink failed")


def load_reference_set(path: str) -> List[ReferenceCase]:
    """
    Load a reference test set from JSON.

    Format:
        [
          {"id": "cost-1",
           "transcript": "add cost fifteen hundred for cement",
           "intent": {"action": "create_cost", "entities": {"amount": 1500, "description": "cement"}},
           "audio": "audio/cost-1.wav",
           "language": "en-US"},
          ...
        ]

    Audio paths are relative to the JSON file.
    """
    source = Path(path)
    with open(source, "r", encoding="utf-8") as f:
        raw_cases = json.load(f)

    cases: List[ReferenceCase] = []
    for index, raw in enumerate(raw_cases):
        audio = None
        if raw.get("audio"):
            audio = (source.parent / raw["audio"]).read_bytes()
        expected = None
        if raw.get("intent"):
            payload = dict(raw["intent"])
            payload.setdefault("confidence", 1.0)
            expected = Intent.from_payload(payload)
        cases.append(ReferenceCase(
            case_id=str(raw.get("id", index)),
            reference_transcript=raw["transcript"],
            expected_intent=expected,
            audio=audio,
            language=raw.get("language", "en-US"),
        ))
    return cases
