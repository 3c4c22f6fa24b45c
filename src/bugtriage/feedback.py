"""Decision history and human corrections.

Two files under the data directory:

  triage-history.json  every decision the live bot made (newest 1000 kept),
                       with ``wasCorrect`` null until a human weighs in
  corrections.json     human corrections to those decisions

Both are rewritten whole (atomically) on every change.
"""

import logging
from collections import Counter, defaultdict
from datetime import datetime
from pathlib import Path

from pydantic import AliasChoices, Field, ValidationError

from bugtriage.jsonio import StateFileError, read_state, write_json, write_text_atomic
from bugtriage.models import Action, JsonModel, TriageDecision, utc_now_iso
from bugtriage.profiles import ReporterProfileStore

logger = logging.getLogger(__name__)

HISTORY_FILE = "triage-history.json"
CORRECTIONS_FILE = "corrections.json"
MAX_LOGS = 1000


class TriageLog(JsonModel):
    message_ts: str = Field(
        validation_alias=AliasChoices("messageTs", "message_ts"),
        serialization_alias="messageTs",
    )
    message_text: str = Field(
        validation_alias=AliasChoices("messageText", "message_text"),
        serialization_alias="messageText",
    )
    decision: TriageDecision
    timestamp: str = Field(default_factory=utc_now_iso)
    reporter: str = "unknown"
    reporter_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("reporterId", "reporter_id"),
        serialization_alias="reporterId",
    )
    was_correct: bool | None = Field(
        default=None,
        validation_alias=AliasChoices("wasCorrect", "was_correct"),
        serialization_alias="wasCorrect",
    )


class HumanCorrection(JsonModel):
    action: str
    team: str | None = None
    reason: str = ""


class Correction(JsonModel):
    message_ts: str = Field(
        validation_alias=AliasChoices("messageTs", "message_ts"),
        serialization_alias="messageTs",
    )
    message_text: str = Field(
        validation_alias=AliasChoices("messageText", "message_text"),
        serialization_alias="messageText",
    )
    bot_decision: TriageDecision = Field(
        validation_alias=AliasChoices("botDecision", "bot_decision"),
        serialization_alias="botDecision",
    )
    human_correction: HumanCorrection = Field(
        validation_alias=AliasChoices("humanCorrection", "human_correction"),
        serialization_alias="humanCorrection",
    )
    timestamp: str = Field(default_factory=utc_now_iso)
    reporter: str | None = None

    @property
    def pattern_key(self) -> tuple[str, str]:
        return (str(self.bot_decision.action), self.human_correction.action)


def _parse_time(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class FeedbackStore:
    def __init__(self, data_dir: str | Path):
        self.data_dir = Path(data_dir)
        self.history_path = self.data_dir / HISTORY_FILE
        self.corrections_path = self.data_dir / CORRECTIONS_FILE
        self.logs: list[TriageLog] = self._load(self.history_path, "logs", TriageLog)
        self.corrections: list[Correction] = self._load(
            self.corrections_path, "corrections", Correction,
        )

    @staticmethod
    def _load(path: Path, key: str, model):
        data = read_state(path, default={})
        try:
            return [model.model_validate(item) for item in data.get(key, [])]
        except (ValidationError, AttributeError) as e:
            raise StateFileError(f"Malformed state file {path}: {e}") from e

    def _save_history(self) -> None:
        write_json(self.history_path, {
            "logs": [log.to_json_dict() for log in self.logs],
            "lastUpdated": utc_now_iso(),
        })

    def _save_corrections(self) -> None:
        write_json(self.corrections_path, {
            "corrections": [c.to_json_dict() for c in self.corrections],
            "lastUpdated": utc_now_iso(),
        })

    def get_decision(self, message_ts: str) -> TriageLog | None:
        for log in self.logs:
            if log.message_ts == message_ts:
                return log
        return None

    def log_decision(
        self,
        message_ts: str,
        message_text: str,
        decision: TriageDecision,
        reporter: str,
        reporter_id: str | None = None,
    ) -> TriageLog:
        log = TriageLog(
            message_ts=message_ts,
            message_text=message_text,
            decision=decision,
            reporter=reporter,
            reporter_id=reporter_id,
        )
        self.logs.append(log)
        if len(self.logs) > MAX_LOGS:
            self.logs = self.logs[-MAX_LOGS:]
        self._save_history()
        return log

    def log_correction(
        self,
        message_ts: str,
        message_text: str,
        bot_decision: TriageDecision,
        action: str,
        team: str | None = None,
        reason: str = "",
        reporter: str | None = None,
    ) -> Correction:
        """Record a human correction and mark the matching log incorrect."""
        correction = Correction(
            message_ts=message_ts,
            message_text=message_text,
            bot_decision=bot_decision,
            human_correction=HumanCorrection(action=action, team=team, reason=reason),
            reporter=reporter,
        )
        self.corrections.append(correction)
        self._save_corrections()
        logger.info("Recorded correction for %s: %s→%s", message_ts,
                    *correction.pattern_key)

        log = self.get_decision(message_ts)
        if log is not None:
            log.was_correct = False
            self._save_history()
        return correction

    def mark_correct(self, message_ts: str) -> bool:
        """Mark a logged decision correct. Returns False if it is not logged."""
        log = self.get_decision(message_ts)
        if log is None:
            return False
        log.was_correct = True
        self._save_history()
        return True

    def get_corrections(self, since: str | None = None) -> list[Correction]:
        if not since:
            return list(self.corrections)
        cutoff = _parse_time(since)
        if cutoff.tzinfo is None:
            cutoff = cutoff.astimezone()
        return [c for c in self.corrections if _parse_time(c.timestamp) >= cutoff]

    def get_pattern_analysis(self) -> dict[tuple[str, str], list[Correction]]:
        """Group corrections by (bot action, human action)."""
        patterns: dict[tuple[str, str], list[Correction]] = defaultdict(list)
        for correction in self.corrections:
            patterns[correction.pattern_key].append(correction)
        return dict(patterns)

    def get_accuracy_stats(self) -> dict:
        correct = sum(1 for log in self.logs if log.was_correct is True)
        incorrect = sum(1 for log in self.logs if log.was_correct is False)
        pending = sum(1 for log in self.logs if log.was_correct is None)
        reviewed = correct + incorrect
        return {
            "total": len(self.logs),
            "correct": correct,
            "incorrect": incorrect,
            "pending": pending,
            "accuracy": correct / reviewed if reviewed else 0.0,
        }


def analyze_patterns(corrections: list[Correction]) -> str:
    """Render a Markdown report of where the bot gets corrected."""
    if not corrections:
        return "No corrections to analyze."

    error_types: Counter = Counter()
    team_errors: Counter = Counter()
    reasons: dict[str, list[str]] = defaultdict(list)

    for c in corrections:
        key = "{}→{}".format(*c.pattern_key)
        error_types[key] += 1
        bot_team = c.bot_decision.team
        if bot_team and c.human_correction.team:
            team_errors[f"{bot_team}→{c.human_correction.team}"] += 1
        if c.human_correction.reason and c.human_correction.reason not in reasons[key]:
            reasons[key].append(c.human_correction.reason)

    total = len(corrections)
    lines = [
        "# Feedback Analysis Report",
        "",
        f"**Period:** {corrections[0].timestamp} to {corrections[-1].timestamp}",
        f"**Total corrections:** {total}",
        "",
        "## Action Confusion Matrix",
        "",
        "| Error Type | Count | % of Errors |",
        "|------------|-------|-------------|",
    ]
    ranked = error_types.most_common()
    for key, count in ranked:
        lines.append(f"| {key} | {count} | {count / total * 100:.1f}% |")

    if team_errors:
        lines += [
            "",
            "## Team Routing Errors",
            "",
            "| Routing Error | Count |",
            "|---------------|-------|",
        ]
        for key, count in team_errors.most_common():
            lines.append(f"| {key} | {count} |")

    lines += ["", "## Common Reasons by Error Type", ""]
    for key, reason_list in reasons.items():
        if not reason_list:
            continue
        lines.append(f"### {key}")
        lines.append("")
        lines += [f"- {reason}" for reason in reason_list[:5]]
        lines.append("")

    lines += ["## Recommendations", ""]
    top = ranked[0][0]
    if top == "defer→new_bug":
        lines.append(
            "- **Too cautious:** the bot defers reports that should become "
            "tickets. Add more new_bug signals to the prompt."
        )
    elif top == "new_bug→defer":
        lines.append(
            "- **Too aggressive:** the bot files tickets for reports it should "
            "defer. Add more defer signals to the prompt."
        )
    else:
        lines.append(f"- Most common correction is {top}; review those cases first.")

    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# CLI steps
# ---------------------------------------------------------------------------

def run_report(data_dir: str | Path, since: str | None = None, output: str | None = None) -> int:
    try:
        if since:
            _parse_time(since)
        store = FeedbackStore(data_dir)
    except StateFileError as e:
        logger.error("%s", e)
        return 1
    except ValueError:
        logger.error("Invalid --since %r: expected an ISO date such as 2025-01-31", since)
        return 1

    stats = store.get_accuracy_stats()
    logger.info("Total decisions: %d", stats["total"])
    logger.info("Correct: %d, incorrect: %d, pending: %d",
                stats["correct"], stats["incorrect"], stats["pending"])
    logger.info("Accuracy: %.1f%%", stats["accuracy"] * 100)

    corrections = store.get_corrections(since)
    if not corrections:
        logger.info("No corrections found%s.", f" since {since}" if since else "")
        return 0

    report = analyze_patterns(corrections)
    if output:
        write_text_atomic(output, report)
        logger.info("Wrote %s", output)
    else:
        print(report)

    ranked = sorted(store.get_pattern_analysis().items(), key=lambda kv: -len(kv[1]))
    for (bot_action, human_action), items in ranked[:5]:
        example = items[0]
        logger.info("%s→%s: %d cases (e.g. %r, reason: %s)", bot_action, human_action,
                    len(items), example.message_text[:60],
                    example.human_correction.reason or "not provided")
    return 0


def _record_confirmed_bug(data_dir: str | Path, log: TriageLog) -> None:
    if log.reporter_id is None:
        logger.warning("No reporter id on %s, not updating a profile", log.message_ts)
        return
    ReporterProfileStore(data_dir).record_confirmed_bug(log.reporter_id)


def run_correct(
    data_dir: str | Path,
    message_ts: str,
    action: str,
    team: str | None = None,
    reason: str = "",
) -> int:
    try:
        store = FeedbackStore(data_dir)
        log = store.get_decision(message_ts)
        if log is None:
            logger.error("No logged decision for message %s", message_ts)
            return 1
        store.log_correction(
            message_ts, log.message_text, log.decision, action,
            team=team, reason=reason, reporter=log.reporter,
        )
        if action == Action.NEW_BUG:
            _record_confirmed_bug(data_dir, log)
    except StateFileError as e:
        logger.error("%s", e)
        return 1
    return 0


def run_confirm(data_dir: str | Path, message_ts: str) -> int:
    try:
        store = FeedbackStore(data_dir)
        log = store.get_decision(message_ts)
        if log is None:
            logger.error("No logged decision for message %s", message_ts)
            return 1
        # Confirming twice must not count the bug twice.
        first_confirmation = log.was_correct is not True
        store.mark_correct(message_ts)
        if first_confirmation and log.decision.action == Action.NEW_BUG:
            _record_confirmed_bug(data_dir, log)
    except StateFileError as e:
        logger.error("%s", e)
        return 1
    logger.info("Marked %s correct", message_ts)
    return 0
