"""The labeled case corpus (``test-cases.json``) and the steps that build it.

Cases come from two places: observed channel messages (``hist-<ts>`` ids,
exported from Slack and later enriched with their thread replies) and
hand-written synthetic cases merged in from a separate file. Labels are set
by hand or accepted from suggestions, made either by the thread-outcome
heuristic or by the model reading the thread.
"""

import logging
from pathlib import Path

from pydantic import ValidationError

from bugtriage.config import Config, require_credential
from bugtriage.jsonio import StateFileError, read_json, write_json
from bugtriage.models import (
    Action,
    CaseCorpus,
    Confidence,
    ExpectedOutcome,
    SourceKind,
    Team,
    TriageCase,
    utc_now_iso,
)
from bugtriage.oracle import ClaudeOracle, Oracle, OracleError
from bugtriage.patterns import LabelSuggestion, suggest_label
from bugtriage.prompts.labeling import build_label_prompt
from bugtriage.response import MalformedResponse, parse_label_response
from bugtriage.slack import (
    SlackClient,
    SlackError,
    SlackMessage,
    message_date,
    sleep_between_requests,
)

logger = logging.getLogger(__name__)

OBSERVED_ID_PREFIX = "hist-"
LABEL_MAX_TOKENS = 512


class CorpusNotFound(FileNotFoundError):
    pass


def load_corpus(path: str | Path) -> CaseCorpus:
    path = Path(path)
    if not path.exists():
        raise CorpusNotFound(f"Corpus not found: {path}")
    try:
        return CaseCorpus.model_validate(read_json(path))
    except (ValueError, ValidationError) as e:
        raise StateFileError(f"Malformed corpus {path}: {e}") from e


def load_or_create_corpus(path: str | Path) -> CaseCorpus:
    try:
        return load_corpus(path)
    except CorpusNotFound:
        return CaseCorpus()


def save_corpus(path: str | Path, corpus: CaseCorpus) -> None:
    corpus.generated = utc_now_iso()
    write_json(path, corpus.to_json_dict())


def case_id_for(ts: str) -> str:
    return f"{OBSERVED_ID_PREFIX}{ts}"


def message_ts_for(case: TriageCase) -> str:
    return case.id.removeprefix(OBSERVED_ID_PREFIX)


def cases_from_messages(messages: list[SlackMessage]) -> list[TriageCase]:
    """Turn exported channel posts into unlabeled observed cases."""
    return [
        TriageCase(
            id=case_id_for(m.ts),
            source_kind=SourceKind.OBSERVED,
            message_text=m.text,
            reporter_id=m.user,
            date=message_date(m.ts),
        )
        for m in messages
        if m.is_user_post
    ]


def add_new_cases(corpus: CaseCorpus, cases: list[TriageCase]) -> int:
    """Append cases whose id is not in the corpus yet; existing ones are kept."""
    known = {c.id for c in corpus.cases}
    new = [c for c in cases if c.id not in known]
    corpus.cases.extend(new)
    return len(new)


def enrich_with_threads(
    corpus: CaseCorpus,
    slack: SlackClient,
    channel: str,
    limit: int = 50,
    force: bool = False,
    delay: float = 0.1,
) -> tuple[int, int]:
    """Fetch thread replies for observed cases.

    Cases that already have replies are skipped unless ``force``. A failed
    fetch is logged and the case left as is. Returns (enriched, with_replies).
    """
    todo = [
        c for c in corpus.cases
        if c.source_kind == SourceKind.OBSERVED
        and c.id.startswith(OBSERVED_ID_PREFIX)
        and (force or c.thread_replies is None)
    ]
    if limit > 0:
        todo = todo[:limit]

    enriched = with_replies = 0
    for i, case in enumerate(todo, 1):
        try:
            replies = slack.get_thread_replies(channel, message_ts_for(case))
        except SlackError as e:
            logger.warning("[%d/%d] %s: %s", i, len(todo), case.id, e)
            continue
        finally:
            sleep_between_requests(delay)
        case.thread_replies = replies
        enriched += 1
        if replies:
            with_replies += 1
        logger.info("[%d/%d] %s: %d replies", i, len(todo), case.id, len(replies))
    return enriched, with_replies


def suggest_labels(corpus: CaseCorpus) -> list[tuple[TriageCase, LabelSuggestion]]:
    """Thread-outcome suggestions for every unlabeled case that has one."""
    suggestions = []
    for case in corpus.cases:
        if case.expected_outcome.is_labeled:
            continue
        suggestion = suggest_label(case)
        if suggestion is not None:
            suggestions.append((case, suggestion))
    return suggestions


def llm_suggest_labels(
    corpus: CaseCorpus,
    oracle: Oracle,
    limit: int = 10,
    min_replies: int = 1,
    max_tokens: int = LABEL_MAX_TOKENS,
) -> list[tuple[TriageCase, LabelSuggestion]]:
    """Ask the model to read each unlabeled case's thread and suggest a label.

    Only cases with at least ``min_replies`` thread replies are sent. A case
    whose call fails or whose answer does not parse is logged and skipped.
    """
    todo = [
        c for c in corpus.cases
        if not c.expected_outcome.is_labeled
        and len(c.thread_replies or []) >= min_replies
    ]
    if limit > 0:
        todo = todo[:limit]

    suggestions = []
    for i, case in enumerate(todo, 1):
        try:
            raw = oracle.complete(build_label_prompt(case), max_tokens)
            suggestion = parse_label_response(raw)
        except (OracleError, MalformedResponse) as e:
            logger.warning("[%d/%d] %s: %s", i, len(todo), case.id, e)
            continue
        logger.info("[%d/%d] %s: %s (%s)", i, len(todo), case.id,
                    suggestion.action, suggestion.confidence)
        suggestions.append((case, suggestion))
    return suggestions


def apply_suggestions(
    suggestions: list[tuple[TriageCase, LabelSuggestion]],
    include_medium: bool = False,
    source: str = "Auto-labeled",
) -> int:
    """Label cases from high (and optionally medium) confidence suggestions."""
    accepted = {Confidence.HIGH}
    if include_medium:
        accepted.add(Confidence.MEDIUM)
    applied = 0
    for case, suggestion in suggestions:
        if suggestion.confidence not in accepted or case.expected_outcome.is_labeled:
            continue
        notes = f"{source} ({suggestion.confidence}): {suggestion.reason}"
        if suggestion.ticket_ref and suggestion.ticket_ref not in suggestion.reason:
            notes += f" [{suggestion.ticket_ref}]"
        case.expected_outcome = ExpectedOutcome(
            action=suggestion.action,
            team=suggestion.team,
            confidence=suggestion.confidence,
            notes=notes,
        )
        applied += 1
    return applied


def label_case(
    corpus: CaseCorpus,
    case_id: str,
    action: Action | None,
    team: Team | None = None,
    confidence: Confidence | None = None,
    notes: str = "",
) -> TriageCase:
    """Set (or with ``action=None`` clear) one case's expected outcome."""
    case = corpus.get(case_id)
    if case is None:
        raise KeyError(case_id)
    if team is not None and action != Action.NEW_BUG:
        raise ValueError("team only applies to new_bug labels")
    case.expected_outcome = ExpectedOutcome(
        action=action, team=team, confidence=confidence, notes=notes,
    )
    return case


def load_synthetic_cases(path: str | Path) -> list[TriageCase]:
    path = Path(path)
    if not path.exists():
        raise CorpusNotFound(f"Synthetic cases not found: {path}")
    try:
        data = read_json(path)
        return [TriageCase.model_validate(raw) for raw in data.get("cases", [])]
    except (ValueError, AttributeError) as e:
        raise StateFileError(f"Malformed synthetic cases {path}: {e}") from e


# ---------------------------------------------------------------------------
# CLI steps
# ---------------------------------------------------------------------------

def run_export(corpus_path: str | Path, channel: str, limit: int = 100) -> int:
    try:
        corpus = load_or_create_corpus(corpus_path)
        slack = SlackClient(require_credential("SLACK_TOKEN"))
        messages = slack.get_history(channel, limit=limit)
    except (StateFileError, RuntimeError, SlackError) as e:
        logger.error("%s", e)
        return 1

    added = add_new_cases(corpus, cases_from_messages(messages))
    save_corpus(corpus_path, corpus)
    logger.info("Exported %d messages, %d new cases (%d total) to %s",
                len(messages), added, len(corpus.cases), corpus_path)
    return 0


def run_enrich(
    corpus_path: str | Path,
    channel: str,
    limit: int = 50,
    force: bool = False,
    delay: float = 0.1,
) -> int:
    try:
        corpus = load_corpus(corpus_path)
        slack = SlackClient(require_credential("SLACK_TOKEN"))
    except (CorpusNotFound, StateFileError, RuntimeError) as e:
        logger.error("%s", e)
        return 1

    enriched, with_replies = enrich_with_threads(
        corpus, slack, channel, limit=limit, force=force, delay=delay,
    )
    save_corpus(corpus_path, corpus)
    logger.info("Enriched %d cases, %d with replies", enriched, with_replies)
    return 0


def run_suggest_labels(
    corpus_path: str | Path,
    apply: bool = False,
    include_medium: bool = False,
    llm: bool = False,
    config: Config | None = None,
    limit: int = 10,
    min_replies: int = 1,
) -> int:
    """Preview (or with ``apply`` write) label suggestions.

    With ``llm`` the model reads up to ``limit`` threads that have at least
    ``min_replies`` replies; otherwise the thread-outcome heuristic runs over
    every unlabeled case.
    """
    try:
        corpus = load_corpus(corpus_path)
    except (CorpusNotFound, StateFileError) as e:
        logger.error("%s", e)
        return 1

    if llm:
        config = config or Config()
        logger.info("Labeling with %s (limit %d, min replies %d)",
                    config.model, limit, min_replies)
        oracle = ClaudeOracle(
            model=config.model, timeout=config.oracle_timeout,
            max_tokens=LABEL_MAX_TOKENS, verbose=config.verbose,
        )
        suggestions = llm_suggest_labels(corpus, oracle, limit=limit, min_replies=min_replies)
        source = "Model-labeled"
    else:
        suggestions = suggest_labels(corpus)
        source = "Auto-labeled"

    counts = {level: 0 for level in Confidence}
    for case, suggestion in suggestions:
        counts[suggestion.confidence] += 1
        team = f" [{suggestion.team}]" if suggestion.team else ""
        logger.info("%s: %s%s (%s) %s", case.id, suggestion.action, team,
                    suggestion.confidence, suggestion.reason)
    logger.info("%d suggestions: %d high, %d medium, %d low", len(suggestions),
                counts[Confidence.HIGH], counts[Confidence.MEDIUM], counts[Confidence.LOW])

    if not apply:
        logger.info("Run with --apply to label high-confidence suggestions "
                    "(add --medium to include medium).")
        return 0
    applied = apply_suggestions(suggestions, include_medium=include_medium, source=source)
    save_corpus(corpus_path, corpus)
    logger.info("Applied %d labels", applied)
    return 0


def run_label(
    corpus_path: str | Path,
    case_id: str,
    action: Action | None,
    team: Team | None = None,
    confidence: Confidence | None = None,
    notes: str = "",
) -> int:
    try:
        corpus = load_corpus(corpus_path)
        case = label_case(corpus, case_id, action, team, confidence, notes)
    except KeyError:
        logger.error("Case not found: %s", case_id)
        return 1
    except (CorpusNotFound, StateFileError, ValueError) as e:
        logger.error("%s", e)
        return 1
    save_corpus(corpus_path, corpus)
    logger.info("Labeled %s as %s", case.id, case.expected_outcome.action or "unlabeled")
    return 0


def run_merge(corpus_path: str | Path, synthetic_path: str | Path) -> int:
    try:
        incoming = load_synthetic_cases(synthetic_path)
        corpus = load_or_create_corpus(corpus_path)
    except (CorpusNotFound, StateFileError) as e:
        logger.error("%s", e)
        return 1
    added, updated = corpus.merge(incoming)
    save_corpus(corpus_path, corpus)
    logger.info("Merged synthetic cases: %d added, %d updated (%d total)",
                added, updated, len(corpus.cases))
    return 0
