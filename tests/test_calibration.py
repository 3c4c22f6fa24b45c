"""Tests for bugtriage.calibration -- confidence vs accuracy."""

from conftest import make_decision

from bugtriage.calibration import (
    build_calibration_report,
    calibration_stats,
    check_calibration,
    run,
)
from bugtriage.feedback import HISTORY_FILE, FeedbackStore, TriageLog
from bugtriage.models import Confidence


def _logs(confidence, correct, incorrect, pending=0, action="defer"):
    logs = []
    for was_correct, count in ((True, correct), (False, incorrect), (None, pending)):
        for i in range(count):
            logs.append(TriageLog(
                message_ts=f"{confidence}-{was_correct}-{i}",
                message_text="x",
                decision=make_decision(action, confidence),
                was_correct=was_correct,
            ))
    return logs


class TestCalibrationStats:
    def test_buckets(self):
        stats = calibration_stats(_logs("high", 9, 1, 2) + _logs("low", 1, 1))
        high = stats[Confidence.HIGH]
        assert (high.total, high.correct, high.incorrect, high.pending) == (12, 9, 1, 2)
        assert high.accuracy == 0.9
        assert stats[Confidence.MEDIUM].total == 0
        assert stats[Confidence.MEDIUM].accuracy == 0.0

    def test_check_against_targets(self):
        stats = calibration_stats(
            _logs("high", 9, 1) + _logs("medium", 6, 4) + _logs("low", 1, 1)
        )
        assert check_calibration(stats) == {
            Confidence.HIGH: True,
            Confidence.MEDIUM: False,
            Confidence.LOW: True,
        }


class TestBuildCalibrationReport:
    def test_empty(self):
        assert build_calibration_report([]).startswith("No decision history found")

    def test_well_calibrated(self):
        report = build_calibration_report(
            _logs("high", 19, 1) + _logs("medium", 8, 2) + _logs("low", 3, 2)
        )
        assert "**Well calibrated:**" in report
        assert "Insufficient data" not in report

    def test_under_calibrated_high(self):
        report = build_calibration_report(_logs("high", 5, 5) + _logs("medium", 1, 0))
        assert "High confidence under-calibrated" in report
        assert "Reduce high confidence usage" in report
        assert "Insufficient data" in report

    def test_action_distribution(self):
        report = build_calibration_report(
            _logs("high", 1, 0, action="not_a_bug") + _logs("low", 3, 0)
        )
        assert "| defer | 3 | 75.0% |" in report
        assert "| not_a_bug | 1 | 25.0% |" in report


class TestRun:
    def test_writes_output(self, tmp_path):
        store = FeedbackStore(tmp_path)
        store.log_decision("1", "x", make_decision("defer"), "Ana")
        out = tmp_path / "calibration.md"
        assert run(tmp_path, output=str(out)) == 0
        assert out.read_text().startswith("# Confidence Calibration Report")

    def test_corrupt_history(self, tmp_path):
        (tmp_path / HISTORY_FILE).write_text("{not json")
        assert run(tmp_path) == 1
