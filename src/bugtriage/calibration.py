"""Does stated confidence track observed accuracy?

Buckets the decision history by confidence and compares each bucket's
accuracy (over reviewed decisions) to a target. Targets are reported, not
enforced.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from pathlib import Path

from bugtriage.feedback import FeedbackStore, TriageLog
from bugtriage.jsonio import StateFileError, write_text_atomic
from bugtriage.models import Confidence, utc_now_iso

logger = logging.getLogger(__name__)

CALIBRATION_TARGETS = {
    Confidence.HIGH: 0.90,
    Confidence.MEDIUM: 0.70,
    Confidence.LOW: 0.50,
}

# Below this many reviewed decisions in total, calibration is not reliable.
MIN_REVIEWED = 30
# Buckets with this many decisions or fewer are not called out.
MIN_BUCKET = 5


@dataclass
class BucketStats:
    total: int = 0
    correct: int = 0
    incorrect: int = 0
    pending: int = 0

    @property
    def reviewed(self) -> int:
        return self.correct + self.incorrect

    @property
    def accuracy(self) -> float:
        return self.correct / self.reviewed if self.reviewed else 0.0


def calibration_stats(logs: list[TriageLog]) -> dict[Confidence, BucketStats]:
    stats = {level: BucketStats() for level in Confidence}
    for log in logs:
        bucket = stats[log.decision.confidence]
        bucket.total += 1
        if log.was_correct is True:
            bucket.correct += 1
        elif log.was_correct is False:
            bucket.incorrect += 1
        else:
            bucket.pending += 1
    return stats


def check_calibration(stats: dict[Confidence, BucketStats]) -> dict[Confidence, bool]:
    """Pass/fail per bucket against CALIBRATION_TARGETS."""
    return {
        level: stats[level].accuracy >= target
        for level, target in CALIBRATION_TARGETS.items()
    }


def build_calibration_report(logs: list[TriageLog]) -> str:
    if not logs:
        return "No decision history found. Run the triage bot to generate history.\n"

    stats = calibration_stats(logs)
    passed = check_calibration(stats)
    reviewed = sum(b.reviewed for b in stats.values())

    lines = [
        "# Confidence Calibration Report",
        "",
        f"**Generated:** {utc_now_iso()}",
        f"**Total decisions:** {len(logs)}",
        f"**Evaluated:** {reviewed}",
        "",
        "## Calibration by Confidence Level",
        "",
        "| Confidence | Total | Correct | Incorrect | Pending | Accuracy | Target |",
        "|------------|-------|---------|-----------|---------|----------|--------|",
    ]
    for level, target in CALIBRATION_TARGETS.items():
        b = stats[level]
        mark = "ok" if passed[level] else "below target"
        lines.append(
            f"| {level} | {b.total} | {b.correct} | {b.incorrect} | {b.pending} "
            f"| {b.accuracy * 100:.1f}% ({mark}) | {target * 100:.0f}%+ |"
        )

    lines += ["", "## Assessment", ""]
    if passed[Confidence.HIGH] and passed[Confidence.MEDIUM]:
        lines.append("**Well calibrated:** confidence levels track accuracy.")
    else:
        advice = {
            Confidence.HIGH: "tighten the criteria for high confidence, or run "
                             "with --min-confidence medium",
            Confidence.MEDIUM: "defer more conservatively",
            Confidence.LOW: "low-confidence decisions should default to defer",
        }
        for level, target in CALIBRATION_TARGETS.items():
            b = stats[level]
            if not passed[level] and b.total > MIN_BUCKET:
                lines.append(
                    f"- **{level.capitalize()} confidence under-calibrated:** "
                    f"{b.accuracy * 100:.1f}% accuracy (target {target * 100:.0f}%+); "
                    f"{advice[level]}."
                )

    lines += ["", "## Recommendations", ""]
    high = stats[Confidence.HIGH]
    high_ratio = high.total / len(logs)
    if high_ratio > 0.5 and not passed[Confidence.HIGH]:
        lines.append(
            f"- **Reduce high confidence usage:** {high_ratio * 100:.0f}% of "
            f"decisions are high confidence, but accuracy is {high.accuracy * 100:.0f}%."
        )
    if reviewed < MIN_REVIEWED:
        lines.append(
            f"- **Insufficient data:** only {reviewed} decisions have been "
            f"reviewed. Need {MIN_REVIEWED}+ for reliable calibration."
        )

    lines += ["", "## Action Distribution", "", "| Action | Count | % |", "|--------|-------|---|"]
    for action, count in Counter(log.decision.action for log in logs).most_common():
        lines.append(f"| {action} | {count} | {count / len(logs) * 100:.1f}% |")

    return "\n".join(lines) + "\n"


def run(data_dir: str | Path, output: str | None = None) -> int:
    try:
        logs = FeedbackStore(data_dir).logs
    except StateFileError as e:
        logger.error("%s", e)
        return 1
    report = build_calibration_report(logs)
    if output:
        write_text_atomic(output, report)
        logger.info("Wrote %s", output)
    else:
        print(report)
    return 0
