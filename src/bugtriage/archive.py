"""Keep past evaluation reports and show what changed between two of them."""

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from bugtriage.evaluate import EvaluationReport
from bugtriage.jsonio import StateFileError, write_json, write_text_atomic

logger = logging.getLogger(__name__)

_NOTE_RE = re.compile(r"[^a-z0-9]+")


def archive_name(note: str | None = None, now: datetime | None = None) -> str:
    """``2025-01-31T12-00-00`` plus an optional slug of ``note``."""
    stamp = (now or datetime.now(UTC)).strftime("%Y-%m-%dT%H-%M-%S")
    slug = _NOTE_RE.sub("-", (note or "").lower()).strip("-")
    return f"{stamp}-{slug}" if slug else stamp


def archive_report(
    report_json: str | Path, archive_dir: str | Path, note: str | None = None,
) -> Path:
    """Copy an evaluation report (JSON and Markdown) into ``archive_dir``."""
    report = EvaluationReport.load(report_json)
    archive_dir = Path(archive_dir)
    base = archive_dir / archive_name(note)
    target = base.with_suffix(".json")
    write_json(target, report.to_json_dict())
    write_text_atomic(base.with_suffix(".md"), report.to_markdown())
    return target


def latest_archived(archive_dir: str | Path, count: int = 2) -> list[Path]:
    """Newest ``count`` archived JSON reports, newest first."""
    archive_dir = Path(archive_dir)
    if not archive_dir.is_dir():
        return []
    return sorted(archive_dir.glob("*.json"), reverse=True)[:count]


@dataclass
class ReportDiff:
    improved: list[str] = field(default_factory=list)
    regressed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    new_cases: list[str] = field(default_factory=list)
    old_correct: int = 0
    new_correct: int = 0

    @property
    def net_delta(self) -> int:
        return self.new_correct - self.old_correct


def diff_reports(old: EvaluationReport, new: EvaluationReport) -> ReportDiff:
    diff = ReportDiff(old_correct=old.correct, new_correct=new.correct)
    old_results = old.by_id()
    for result in new.results:
        previous = old_results.get(result.id)
        if previous is None:
            diff.new_cases.append(result.id)
        elif (previous.action_match is True) == (result.action_match is True):
            diff.unchanged.append(result.id)
        elif result.action_match is True:
            diff.improved.append(result.id)
        else:
            diff.regressed.append(result.id)
    return diff


def run_archive(report_json: str | Path, archive_dir: str | Path, note: str | None) -> int:
    if not Path(report_json).exists():
        logger.error("No report at %s to archive. Run evaluate first.", report_json)
        return 1
    try:
        report = EvaluationReport.load(report_json)
    except StateFileError as e:
        logger.error("%s", e)
        return 1
    target = archive_report(report_json, archive_dir, note)
    logger.info("Archived to %s", target)
    logger.info("  Accuracy: %d/%d", report.correct, report.labeled)
    logger.info("  Model: %s (%s)", report.model, report.prompt_version)
    if note:
        logger.info("  Note: %s", note)
    return 0


def run_diff(
    old_path: str | Path | None, new_path: str | Path | None, archive_dir: str | Path,
) -> int:
    if not old_path and not new_path:
        latest = latest_archived(archive_dir)
        if len(latest) < 2:
            logger.error(
                "Need two report paths, or at least two archived reports in %s",
                archive_dir,
            )
            return 1
        new_path, old_path = latest
        logger.info("Comparing archived reports: %s -> %s", old_path.name, new_path.name)
    elif not old_path or not new_path:
        logger.error("Give both an old and a new report")
        return 1

    for path in (old_path, new_path):
        if not Path(path).exists():
            logger.error("Report not found: %s", path)
            return 1

    try:
        old = EvaluationReport.load(old_path)
        new = EvaluationReport.load(new_path)
    except StateFileError as e:
        logger.error("%s", e)
        return 1
    diff = diff_reports(old, new)
    old_by_id = old.by_id()
    new_by_id = new.by_id()

    logger.info("")
    logger.info("=== Evaluation Diff ===")
    logger.info("Old accuracy: %d/%d (%.0f%%)", old.correct, old.labeled, old.accuracy * 100)
    logger.info("New accuracy: %d/%d (%.0f%%)", new.correct, new.labeled, new.accuracy * 100)

    for title, ids in (("Improved", diff.improved), ("Regressed", diff.regressed)):
        if not ids:
            continue
        logger.info("")
        logger.info("%s (%d):", title, len(ids))
        for case_id in ids:
            before, after = old_by_id[case_id], new_by_id[case_id]
            logger.info("  %s: expected %s, was %s, now %s", case_id,
                        after.expected.action, before.actual.action, after.actual.action)

    if diff.new_cases:
        logger.info("")
        logger.info("New cases (%d):", len(diff.new_cases))
        for case_id in diff.new_cases:
            r = new_by_id[case_id]
            logger.info("  %s: expected %s, got %s", case_id, r.expected.action, r.actual.action)

    logger.info("")
    if diff.net_delta > 0:
        logger.info("Net improvement: +%d cases", diff.net_delta)
    elif diff.net_delta < 0:
        logger.info("Net regression: %d cases", diff.net_delta)
    else:
        logger.info("No change in accuracy")
    return 0
