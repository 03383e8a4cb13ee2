"""
Unit Tests for Quality Metrics

Tests for WER, numeric accuracy, intent scoring and aggregation.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from sitevoice.core.config import QualityTargets
from sitevoice.core.entities import Intent, RunOutcome, SampleSource, Token, utcnow
from sitevoice.core.quality import (
    UNVERIFIED_SAMPLE_WEIGHT,
    aggregate,
    build_sample,
    entity_values_match,
    intent_matches,
    normalize_words,
    numeric_accuracy,
    numeric_match,
    percentile,
    score_intents,
    word_edit_distance,
    word_error_rate,
)


class TestWordErrorRate:
    def test_identical(self):
        assert word_error_rate("the cat sat", "the cat sat") == 0.0

    def test_one_substitution(self):
        assert word_error_rate("the cat sat", "the dog sat") == pytest.approx(1 / 3)

    def test_case_and_punctuation_ignored(self):
        assert word_error_rate("Log eight hours.", "log eight hours") == 0.0

    def test_insertions_can_exceed_one(self):
        assert word_error_rate("stop", "please do stop now") == 3.0

    def test_empty_reference(self):
        assert word_error_rate("", "") == 0.0
        assert word_error_rate("", "noise") == 1.0

    def test_edit_distance(self):
        assert word_edit_distance(["a", "b", "c"], ["a", "c"]) == 1
        assert word_edit_distance([], ["a", "b"]) == 2

    def test_normalize_words(self):
        assert normalize_words("  “Gate,”  is OPEN… ") == ["gate", "is", "open"]


class TestNumericAccuracy:
    def test_spoken_matches_digits(self):
        assert numeric_accuracy("add cost fifteen hundred for cement", "add cost 1,500 for cement") == 1.0

    def test_one_thousand_five_hundred(self):
        assert numeric_match("one thousand five hundred", "1500")

    def test_wrong_number(self):
        assert numeric_accuracy("log 8 hours", "log 80 hours") == 0.0

    def test_partial(self):
        assert numeric_accuracy("pay 200 for 3 bags", "pay 200 for 4 bags") == 0.5

    def test_no_numbers(self):
        assert numeric_accuracy("gate is open", "gate is open") is None
        assert numeric_match("gate is open", "gate is open") is None


class TestIntentScoring:
    def test_entity_values(self):
        assert entity_values_match(1500, "1,500")
        assert entity_values_match(Decimal("12.50"), Decimal("12.5"))
        assert not entity_values_match(1500, 1600)
        assert entity_values_match(Token("in_progress"), "In progress")
        assert entity_values_match("Cement", "cement.")

    def test_extra_entities_ignored(self):
        expected = Intent(action="create_cost", entities={"amount": 1500})
        predicted = Intent(action="create_cost", entities={"amount": 1500, "description": "cement"})

        assert intent_matches(predicted, expected)

    def test_missing_entity_fails(self):
        expected = Intent(action="create_cost", entities={"amount": 1500, "description": "cement"})
        predicted = Intent(action="create_cost", entities={"amount": 1500})

        assert not intent_matches(predicted, expected)

    def test_score(self):
        cost = Intent(action="create_cost", entities={"amount": 1500})
        note = Intent(action="add_note", entities={"text": "gate open"})
        unknown = Intent(action="unknown", confidence=0.0)

        score = score_intents([
            (cost, cost),                                    # tp
            (Intent(action="add_note"), cost),               # fp + fn
            (unknown, note),                                 # fn
            (note, unknown),                                 # fp
            (unknown, unknown),                              # nothing
        ])

        assert (score.true_positives, score.false_positives, score.false_negatives) == (1, 2, 2)
        assert score.precision == pytest.approx(1 / 3)
        assert score.recall == pytest.approx(1 / 3)
        assert score.f1 == pytest.approx(1 / 3)

    def test_empty_score(self):
        score = score_intents([])

        assert score.total == 0
        assert score.f1 == 0.0


class TestSamples:
    def test_build_sample_with_reference(self):
        sample = build_sample(
            SampleSource.SYNTHETIC_TEST_SET,
            transcript="log 8 hours for maria",
            reference_transcript="log eight hours for maria",
        )

        assert sample.word_error_distance == 1
        assert sample.word_error_rate == pytest.approx(0.2)
        assert sample.numeric_match is True
        assert sample.weight == 1.0

    def test_unverified_production_sample(self):
        sample = build_sample(SampleSource.PRODUCTION, transcript="log 8 hours")

        assert sample.word_error_rate is None
        assert sample.weight == UNVERIFIED_SAMPLE_WEIGHT

    def test_percentile(self):
        assert percentile([], 95) is None
        assert percentile([1.0, 2.0, 3.0], 50) == 2.0


class TestAggregate:
    def test_hard_metrics_use_ground_truth_only(self):
        samples = [
            build_sample(SampleSource.SYNTHETIC_TEST_SET, transcript="the cat sat", reference_transcript="the cat sat"),
            build_sample(SampleSource.PRODUCTION, transcript="x", reference_transcript="completely different words"),
        ]

        report = aggregate(samples)

        assert report.sample_count == 2
        assert report.ground_truth_count == 1
        assert report.median_wer == 0.0

    def test_outcomes_and_failure_rate(self):
        samples = [
            build_sample(SampleSource.PRODUCTION, outcome=RunOutcome.SUCCESS),
            build_sample(SampleSource.PRODUCTION, outcome=RunOutcome.QUEUED_OFFLINE),
            build_sample(SampleSource.PRODUCTION, outcome=RunOutcome.TIMED_OUT),
            build_sample(SampleSource.PRODUCTION, outcome=RunOutcome.FAILED),
        ]

        report = aggregate(samples)

        assert report.outcomes == {"success": 1, "queued_offline": 1, "timed_out": 1, "failed": 1}
        assert report.failure_rate == 0.5
        assert report.trend_success_rate == 0.5

    def test_latency_targets(self):
        samples = [
            build_sample(SampleSource.PRODUCTION, latency_ms={"transcription": 1000.0, "end_to_end": 9000.0}),
            build_sample(SampleSource.PRODUCTION, latency_ms={"transcription": 2000.0, "end_to_end": 9000.0}),
        ]

        report = aggregate(samples)

        assert report.targets_met == {"median_transcription": True, "median_end_to_end": False}
        assert report.p95_end_to_end_seconds == 9.0

    def test_violations(self):
        wrong = Intent(action="add_note")
        expected = Intent(action="create_cost", entities={"amount": 1500})
        samples = [
            build_sample(
                SampleSource.SYNTHETIC_TEST_SET,
                transcript="add a note",
                reference_transcript="add cost 1500",
                predicted_intent=wrong,
                expected_intent=expected,
                latency_ms={"end_to_end": 15000.0},
            ),
        ]

        report = aggregate(samples, QualityTargets())

        metrics = {v.metric for v in report.violations}
        assert metrics == {"median_wer", "p95_end_to_end_seconds", "intent_f1"}

    def test_no_violations_without_data(self):
        report = aggregate([])

        assert report.violations == []
        assert report.intent_f1 is None

    def test_trend_confidence_weighted(self):
        samples = [
            build_sample(SampleSource.PRODUCTION, confidences={"transcription": 0.6}),
            build_sample(SampleSource.PRODUCTION, confidences={"transcription": 0.9}, corrected=True),
        ]

        report = aggregate(samples)

        # weights 0.5 and 1.0
        assert report.trend_mean_confidence["transcription"] == pytest.approx((0.6 * 0.5 + 0.9) / 1.5)

    def test_to_dict(self):
        report = aggregate([], window_start=None, window_end=None)

        data = report.to_dict()

        assert data["sample_count"] == 0
        assert data["intent"]["labelled"] == 0
        assert data["violations"] == []

    def test_window_bounds_in_violation(self):
        end = utcnow()
        start = end - timedelta(hours=1)
        samples = [
            build_sample(SampleSource.SYNTHETIC_TEST_SET, transcript="a b", reference_transcript="c d"),
        ]

        report = aggregate(samples, window_start=start, window_end=end)

        assert report.violations[0].window_start == start
        assert report.violations[0].window_end == end
