#!/usr/bin/env python3
"""Score a triage policy against the labeled corpus.

Each case is decided independently; a failure on one case is recorded as a
wrong answer and the run continues. The JSON report is the machine-readable
record read back by ``compare`` and ``diff``; the Markdown report is for
people.
"""

import logging
from collections.abc import Callable
from pathlib import Path

from pydantic import AliasChoices, Field

from bugtriage.config import Config, get_credential
from bugtriage.corpus import CorpusNotFound, load_corpus
from bugtriage.jsonio import StateFileError, read_json, write_json, write_text_atomic
from bugtriage.keywords import build_search_query
from bugtriage.models import (
    Action,
    CandidateIssue,
    Confidence,
    ExpectedOutcome,
    JsonModel,
    PromptVersion,
    TriageCase,
    TriageDecision,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 5

DecideFn = Callable[[TriageCase, list[CandidateIssue]], TriageDecision]
SearchFn = Callable[[str], list[CandidateIssue]]


class ScoredResult(JsonModel):
    id: str
    expected: ExpectedOutcome
    actual: TriageDecision
    # None: not applicable (unlabeled, or team not scored for this case)
    action_match: bool | None = Field(
        validation_alias=AliasChoices("actionMatch", "action_match"),
        serialization_alias="actionMatch",
    )
    team_match: bool | None = Field(
        default=None,
        validation_alias=AliasChoices("teamMatch", "team_match"),
        serialization_alias="teamMatch",
    )
    notes: str = ""
    error: str | None = None


class EvaluationReport(JsonModel):
    generated: str = Field(default_factory=utc_now_iso)
    model: str = "unknown"
    prompt_version: PromptVersion = Field(
        default=PromptVersion.V2,
        validation_alias=AliasChoices("promptVersion", "prompt_version"),
        serialization_alias="promptVersion",
    )
    results: list[ScoredResult] = Field(default_factory=list)

    @property
    def labeled(self) -> int:
        return sum(1 for r in self.results if r.action_match is not None)

    @property
    def correct(self) -> int:
        return sum(1 for r in self.results if r.action_match is True)

    @property
    def accuracy(self) -> float:
        return self.correct / self.labeled if self.labeled else 0.0

    def by_id(self) -> dict[str, ScoredResult]:
        return {r.id: r for r in self.results}

    def to_json_dict(self) -> dict:
        data = super().to_json_dict()
        data["summary"] = {
            "total": len(self.results),
            "labeled": self.labeled,
            "correct": self.correct,
            "accuracy": self.accuracy,
        }
        return data

    def to_markdown(self) -> str:
        lines = [
            "# Evaluation Results",
            "",
            f"**Generated:** {self.generated}",
            f"**Model:** {self.model}",
            f"**Prompt Version:** {self.prompt_version}",
            f"**Cases:** {len(self.results)} total, {self.labeled} labeled",
            f"**Accuracy:** {self.correct}/{self.labeled} ({round(self.accuracy * 100)}%)",
            "",
            "## Results",
            "",
            "| Case ID | Expected | Got | Action | Team | Notes |",
            "|---------|----------|-----|--------|------|-------|",
        ]
        for r in self.results:
            expected_team = r.expected.team or ""
            got_team = r.actual.team or ""
            team = ""
            if expected_team or got_team:
                team = f"{expected_team}→{got_team} {_mark(r.team_match)}".rstrip()
            notes = r.notes.replace("|", "\\|").replace("\n", " ")
            lines.append(
                f"| {r.id} | {r.expected.action or 'unlabeled'} | {r.actual.action} "
                f"| {_mark(r.action_match) or '-'} | {team} | {notes} |"
            )

        failures = [r for r in self.results if r.action_match is False]
        if failures:
            lines += ["", f"## Failures ({len(failures)})", ""]
            for f in failures:
                expected = str(f.expected.action)
                if f.expected.team:
                    expected += f" ({f.expected.team})"
                got = str(f.actual.action)
                if f.actual.team:
                    got += f" ({f.actual.team})"
                lines += [
                    f"### {f.id}",
                    "",
                    f"**Expected:** {expected}",
                    "",
                    f"**Got:** {got}",
                    "",
                    f"**Explanation:** {f.actual.explanation}",
                    "",
                ]
                if f.actual.ticket_link:
                    lines += [f"**Linked:** {f.actual.ticket_link}", ""]
                lines += ["---", ""]
        return "\n".join(lines) + "\n"

    def save(self, json_path: str | Path, md_path: str | Path | None = None) -> None:
        write_json(json_path, self.to_json_dict())
        logger.info("Wrote %s", json_path)
        if md_path:
            write_text_atomic(md_path, self.to_markdown())
            logger.info("Wrote %s", md_path)

    @classmethod
    def load(cls, path: str | Path) -> "EvaluationReport":
        """Raises StateFileError if ``path`` is not a valid report."""
        try:
            return cls.model_validate(read_json(path))
        except ValueError as e:
            raise StateFileError(f"Malformed report {path}: {e}") from e


def _mark(match: bool | None) -> str:
    if match is None:
        return ""
    return "ok" if match else "FAIL"


def score(case: TriageCase, decision: TriageDecision) -> ScoredResult:
    expected = case.expected_outcome
    action_match = None if expected.action is None else decision.action == expected.action
    team_match = None
    if expected.action == Action.NEW_BUG and expected.team is not None:
        team_match = decision.team == expected.team
    return ScoredResult(
        id=case.id,
        expected=expected,
        actual=decision,
        action_match=action_match,
        team_match=team_match,
        notes=expected.notes,
    )


def _candidates_for(case: TriageCase, search_fn: SearchFn | None) -> list[CandidateIssue]:
    if case.candidate_issues is not None:
        return case.candidate_issues
    query = build_search_query(case.message_text)
    if not query or search_fn is None:
        return []
    return search_fn(query)


def evaluate(
    cases: list[TriageCase],
    decide_fn: DecideFn,
    search_fn: SearchFn | None = None,
    skip_unlabeled: bool = False,
    model: str = "unknown",
    prompt_version: PromptVersion = PromptVersion.V2,
) -> EvaluationReport:
    """Run ``decide_fn`` over ``cases`` and score each decision."""
    if skip_unlabeled:
        cases = [c for c in cases if c.expected_outcome.is_labeled]

    report = EvaluationReport(model=model, prompt_version=prompt_version)
    total = len(cases)
    for i, case in enumerate(cases, 1):
        logger.info("[%d/%d] %s: %s", i, total, case.id, case.message_text[:60])
        try:
            candidates = _candidates_for(case, search_fn)
            decision = decide_fn(case, candidates)
            result = score(case, decision)
        except Exception as e:
            logger.error("  Error on %s: %s", case.id, e)
            result = ScoredResult(
                id=case.id,
                expected=case.expected_outcome,
                actual=TriageDecision(
                    action=Action.NEEDS_INFO,
                    explanation=f"Error: {e}",
                    confidence=Confidence.LOW,
                ),
                action_match=False,
                team_match=None,
                notes=f"Error: {e}",
                error=str(e),
            )
        else:
            mark = {None: "?", True: "ok", False: "wrong"}[result.action_match]
            logger.info("  -> %s (%s) %s", decision.action, decision.confidence, mark)
        report.results.append(result)
    return report


def run(
    corpus_path: str | Path,
    output_json: str | Path,
    output_md: str | Path,
    config: Config,
    prompt_version: PromptVersion = PromptVersion.V2,
    case_id: str | None = None,
    skip_unlabeled: bool = False,
    limit: int | None = None,
) -> int:
    from bugtriage.linear import LinearClient
    from bugtriage.oracle import ClaudeOracle
    from bugtriage.triage import TriageContext, decide

    try:
        corpus = load_corpus(corpus_path)
    except CorpusNotFound as e:
        logger.error("%s (run export and merge first)", e)
        return 1
    except StateFileError as e:
        logger.error("%s", e)
        return 1

    cases = corpus.cases
    if case_id:
        cases = [c for c in cases if c.id == case_id]
        if not cases:
            logger.error("Case not found: %s", case_id)
            return 1
    if skip_unlabeled:
        cases = [c for c in cases if c.expected_outcome.is_labeled]
    if limit:
        cases = cases[:limit]

    logger.info("Model: %s, prompt version: %s", config.model, prompt_version)
    logger.info("Evaluating %d cases", len(cases))

    oracle = ClaudeOracle(
        model=config.model, timeout=config.oracle_timeout,
        max_tokens=config.max_tokens, verbose=config.verbose,
    )

    search_fn = None
    api_key = get_credential("LINEAR_API_KEY")
    if api_key:
        linear = LinearClient(api_key)

        def search_linear(query):
            return linear.search_issues(query, SEARCH_LIMIT)

        search_fn = search_linear
    else:
        logger.warning("LINEAR_API_KEY not set; cases without candidates get none")

    def decide_fn(case, candidates):
        context = TriageContext(
            message=case.message_text,
            reporter=case.reporter_id,
            candidate_issues=candidates,
        )
        return decide(context, oracle, version=prompt_version, max_tokens=config.max_tokens)

    report = evaluate(
        cases, decide_fn, search_fn=search_fn,
        model=config.model, prompt_version=prompt_version,
    )
    report.save(output_json, output_md)
    logger.info(
        "Summary: %d/%d correct (%.0f%%)",
        report.correct, report.labeled, report.accuracy * 100,
    )
    return 0
