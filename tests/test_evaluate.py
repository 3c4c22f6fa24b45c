"""Tests for bugtriage.evaluate -- scoring and reports."""

import json
from unittest.mock import patch

import pytest

from conftest import FakeOracle, make_candidate, make_case, make_decision, make_report, make_response

from bugtriage.config import Config
from bugtriage.corpus import save_corpus
from bugtriage.evaluate import EvaluationReport, evaluate, run, score
from bugtriage.jsonio import StateFileError
from bugtriage.models import Action, CaseCorpus, Confidence, PromptVersion
from bugtriage.triage import TriageContext, decide


def _decide_with(oracle):
    def decide_fn(case, candidates):
        return decide(
            TriageContext(message=case.message_text, reporter=case.reporter_id,
                          candidate_issues=candidates),
            oracle,
        )
    return decide_fn


def _fixed(action="defer", **kwargs):
    return lambda case, candidates: make_decision(action, **kwargs)


# ---------------------------------------------------------------------------
# score
# ---------------------------------------------------------------------------

class TestScore:
    def test_action_and_team_match(self):
        r = score(make_case(action="new_bug", team="data"),
                  make_decision("new_bug", "high", team="data"))
        assert r.action_match is True
        assert r.team_match is True

    def test_team_mismatch(self):
        r = score(make_case(action="new_bug", team="data"),
                  make_decision("new_bug", "high", team="ai"))
        assert r.action_match is True
        assert r.team_match is False

    def test_team_not_scored_for_other_actions(self):
        r = score(make_case(action="defer"), make_decision("new_bug", "high"))
        assert r.action_match is False
        assert r.team_match is None

    def test_team_not_scored_when_expected_action_is_not_new_bug(self):
        r = score(make_case(action="defer", team="platform"),
                  make_decision("new_bug", "high", team="platform"))
        assert r.action_match is False
        assert r.team_match is None

    def test_unlabeled(self):
        r = score(make_case(), make_decision("defer"))
        assert r.action_match is None
        assert r.team_match is None

    def test_carries_notes(self):
        r = score(make_case(action="defer", notes="config issue"), make_decision("defer"))
        assert r.notes == "config issue"


# ---------------------------------------------------------------------------
# evaluate
# ---------------------------------------------------------------------------

class TestEvaluate:
    def test_end_to_end_new_bug(self):
        case = make_case("synth-1", "403 error on /events page", action="new_bug",
                         team="platform", candidates=[])
        oracle = FakeOracle(make_response("new_bug", "high", team="platform"))
        report = evaluate([case], _decide_with(oracle))
        r = report.results[0]
        assert r.actual.action == Action.NEW_BUG
        assert r.action_match is True
        assert r.team_match is True
        assert report.accuracy == 1.0

    def test_unlabeled_excluded_from_denominator(self):
        cases = [make_case(f"c{i}", action="defer") for i in range(7)]
        cases += [make_case(f"u{i}") for i in range(3)]
        report = evaluate(cases, _fixed("defer"))
        assert len(report.results) == 10
        assert report.labeled == 7
        assert report.correct == 7
        assert report.accuracy == 1.0

    def test_skip_unlabeled(self):
        cases = [make_case("a", action="defer"), make_case("b")]
        report = evaluate(cases, _fixed("defer"), skip_unlabeled=True)
        assert [r.id for r in report.results] == ["a"]

    def test_error_counts_as_wrong_and_continues(self):
        oracle = FakeOracle("not json", make_response("defer"))
        cases = [make_case("bad", action="defer"), make_case("good", action="defer")]
        report = evaluate(cases, _decide_with(oracle))
        bad, good = report.results
        assert bad.action_match is False
        assert bad.team_match is None
        assert bad.actual.action == Action.NEEDS_INFO
        assert bad.actual.confidence == Confidence.LOW
        assert bad.actual.explanation.startswith("Error:")
        assert bad.error
        assert good.action_match is True
        assert report.labeled == 2
        assert report.correct == 1

    def test_stored_candidates_skip_search(self):
        searched = []
        seen = []

        def decide_fn(case, candidates):
            seen.append(candidates)
            return make_decision("defer")

        case = make_case(action="defer", candidates=[make_candidate()])
        evaluate([case], decide_fn, search_fn=lambda q: searched.append(q) or [])
        assert searched == []
        assert seen[0][0].identifier == "PLA-1"

    def test_missing_candidates_are_searched(self):
        searched = []

        def search_fn(query):
            searched.append(query)
            return [make_candidate("ENT-2")]

        seen = []

        def decide_fn(case, candidates):
            seen.append(candidates)
            return make_decision("defer")

        evaluate([make_case(message="Cohort enrollment broken")], decide_fn, search_fn=search_fn)
        assert searched == ["cohort enrollment broken"]
        assert seen[0][0].identifier == "ENT-2"

    def test_records_model_and_version(self):
        report = evaluate([], _fixed(), model="haiku", prompt_version=PromptVersion.V1)
        assert report.model == "haiku"
        assert report.prompt_version == PromptVersion.V1
        assert report.accuracy == 0.0


# ---------------------------------------------------------------------------
# EvaluationReport
# ---------------------------------------------------------------------------

class TestEvaluationReport:
    def test_save_and_load(self, tmp_path):
        report = make_report({"a": True, "b": False, "c": None})
        json_path = tmp_path / "out" / "eval.json"
        md_path = tmp_path / "out" / "eval.md"
        report.save(json_path, md_path)

        data = json.loads(json_path.read_text())
        assert data["promptVersion"] == "v2"
        assert data["results"][0]["actionMatch"] is True
        assert data["summary"] == {"total": 3, "labeled": 2, "correct": 1, "accuracy": 0.5}

        loaded = EvaluationReport.load(json_path)
        assert [r.action_match for r in loaded.results] == [True, False, None]
        assert md_path.exists()

    def test_markdown(self):
        md = make_report({"a": True, "b": False}).to_markdown()
        assert "**Accuracy:** 1/2 (50%)" in md
        assert "| a | defer | defer | ok |" in md
        assert "## Failures (1)" in md
        assert "### b" in md
        assert "**Got:** not_a_bug" in md

    def test_load_malformed(self, tmp_path):
        path = tmp_path / "eval.json"
        path.write_text('{"results": [{"id": "a"}]}')
        with pytest.raises(StateFileError):
            EvaluationReport.load(path)

    def test_markdown_no_failures_section(self):
        assert "Failures" not in make_report({"a": True}).to_markdown()


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------

class TestRun:
    def _corpus(self, tmp_path):
        path = tmp_path / "test-cases.json"
        save_corpus(path, CaseCorpus(cases=[
            make_case("a", "Search down for everyone", action="defer", candidates=[]),
            make_case("b", "Cohort page blank", action="not_a_bug", candidates=[]),
            make_case("c", "Unlabeled thing", candidates=[]),
        ]))
        return path

    def test_writes_reports(self, tmp_path):
        corpus = self._corpus(tmp_path)
        out_json, out_md = tmp_path / "r" / "eval.json", tmp_path / "r" / "eval.md"
        with patch("bugtriage.oracle.ClaudeOracle", return_value=FakeOracle(make_response("defer"))), \
             patch("bugtriage.evaluate.get_credential", return_value=None):
            assert run(corpus, out_json, out_md, Config(model="haiku"),
                       skip_unlabeled=True) == 0
        report = EvaluationReport.load(out_json)
        assert [r.id for r in report.results] == ["a", "b"]
        assert report.correct == 1
        assert report.model == "haiku"
        assert out_md.exists()

    def test_single_case(self, tmp_path):
        corpus = self._corpus(tmp_path)
        out_json = tmp_path / "eval.json"
        with patch("bugtriage.oracle.ClaudeOracle", return_value=FakeOracle(make_response("defer"))), \
             patch("bugtriage.evaluate.get_credential", return_value=None):
            assert run(corpus, out_json, tmp_path / "eval.md", Config(), case_id="b") == 0
        assert [r.id for r in EvaluationReport.load(out_json).results] == ["b"]

    def test_unknown_case(self, tmp_path):
        corpus = self._corpus(tmp_path)
        assert run(corpus, tmp_path / "x.json", tmp_path / "x.md", Config(), case_id="zz") == 1

    def test_missing_corpus(self, tmp_path):
        assert run(tmp_path / "none.json", tmp_path / "x.json", tmp_path / "x.md", Config()) == 1

    def test_corrupt_corpus(self, tmp_path):
        corpus = tmp_path / "test-cases.json"
        corpus.write_text("{not json")
        assert run(corpus, tmp_path / "x.json", tmp_path / "x.md", Config()) == 1
