"""Tests for bugtriage.corpus -- building and labeling the case corpus."""

import json
from unittest.mock import patch

import pytest
from conftest import FakeOracle, make_case

from bugtriage.config import Config
from bugtriage.corpus import (
    CorpusNotFound,
    add_new_cases,
    apply_suggestions,
    cases_from_messages,
    enrich_with_threads,
    label_case,
    llm_suggest_labels,
    load_corpus,
    load_or_create_corpus,
    run_enrich,
    run_export,
    run_label,
    run_merge,
    run_suggest_labels,
    save_corpus,
    suggest_labels,
)
from bugtriage.jsonio import StateFileError, write_json
from bugtriage.models import Action, CaseCorpus, Confidence, SourceKind, Team, ThreadReply
from bugtriage.oracle import OracleError
from bugtriage.slack import SlackError, SlackMessage


class FakeSlack:
    def __init__(self, replies):
        self.replies = replies
        self.requested = []

    def get_thread_replies(self, channel, ts):
        self.requested.append(ts)
        outcome = self.replies.get(ts, [])
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _reply(text):
    return ThreadReply(ts="9.9", user="U2", text=text)


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------

class TestLoadSave:
    def test_missing(self, tmp_path):
        with pytest.raises(CorpusNotFound):
            load_corpus(tmp_path / "test-cases.json")
        assert load_or_create_corpus(tmp_path / "test-cases.json").cases == []

    def test_round_trip(self, tmp_path):
        path = tmp_path / "test-cases.json"
        save_corpus(path, CaseCorpus(cases=[make_case("a", action="defer")]))
        corpus = load_corpus(path)
        assert corpus.get("a").expected_outcome.action == Action.DEFER
        assert "expectedOutcome" in json.loads(path.read_text())["cases"][0]

    def test_malformed(self, tmp_path):
        path = tmp_path / "test-cases.json"
        path.write_text('{"cases": [{"id": 1}]}')
        with pytest.raises(StateFileError):
            load_corpus(path)


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

class TestExport:
    def test_cases_from_messages(self):
        messages = [
            SlackMessage(ts="1700000000.500000", text="broken", user="U1"),
            SlackMessage(ts="1700000001.000000", text="joined", subtype="channel_join"),
        ]
        [case] = cases_from_messages(messages)
        assert case.id == "hist-1700000000.500000"
        assert case.source_kind == SourceKind.OBSERVED
        assert case.reporter_id == "U1"
        assert case.date == "2023-11-14T22:13:20.500000Z"
        assert not case.expected_outcome.is_labeled

    def test_add_new_cases_keeps_existing(self):
        corpus = CaseCorpus(cases=[make_case("hist-1", action="defer")])
        added = add_new_cases(corpus, [make_case("hist-1"), make_case("hist-2")])
        assert added == 1
        assert corpus.get("hist-1").expected_outcome.is_labeled


# ---------------------------------------------------------------------------
# Enrich
# ---------------------------------------------------------------------------

class TestEnrich:
    def test_fetches_missing_replies(self):
        corpus = CaseCorpus(cases=[
            make_case("hist-1.0"),
            make_case("hist-2.0", replies=["already here"]),
            make_case("synth-1").model_copy(update={"source_kind": SourceKind.SYNTHETIC}),
        ])
        slack = FakeSlack({"1.0": [_reply("dupe of PLA-1")]})
        assert enrich_with_threads(corpus, slack, "C1", delay=0) == (1, 1)
        assert slack.requested == ["1.0"]
        assert corpus.get("hist-1.0").thread_replies[0].text == "dupe of PLA-1"

    def test_force_refetches(self):
        corpus = CaseCorpus(cases=[make_case("hist-2.0", replies=["old"])])
        slack = FakeSlack({"2.0": []})
        assert enrich_with_threads(corpus, slack, "C1", force=True, delay=0) == (1, 0)
        assert corpus.get("hist-2.0").thread_replies == []

    def test_failure_leaves_case(self):
        corpus = CaseCorpus(cases=[make_case("hist-1.0"), make_case("hist-2.0")])
        slack = FakeSlack({"1.0": SlackError("ratelimited"), "2.0": []})
        assert enrich_with_threads(corpus, slack, "C1", delay=0) == (1, 0)
        assert corpus.get("hist-1.0").thread_replies is None

    def test_limit(self):
        corpus = CaseCorpus(cases=[make_case(f"hist-{i}.0") for i in range(5)])
        slack = FakeSlack({})
        enrich_with_threads(corpus, slack, "C1", limit=2, delay=0)
        assert len(slack.requested) == 2

    def test_pauses_after_failed_fetches(self):
        corpus = CaseCorpus(cases=[make_case(f"hist-{i}.0") for i in range(3)])
        slack = FakeSlack({f"{i}.0": SlackError("ratelimited") for i in range(3)})
        with patch("bugtriage.corpus.sleep_between_requests") as sleep:
            assert enrich_with_threads(corpus, slack, "C1", delay=0.5) == (0, 0)
        assert sleep.call_count == 3
        sleep.assert_called_with(0.5)


# ---------------------------------------------------------------------------
# Labeling
# ---------------------------------------------------------------------------

class TestSuggestAndApply:
    def _corpus(self):
        return CaseCorpus(cases=[
            make_case("high", replies=["PLA-5 created"]),
            make_case("medium", replies=["That's a feature request"]),
            make_case("labeled", action="defer", replies=["PLA-6 created"]),
            make_case("none", replies=["thanks"]),
        ])

    def test_suggest_skips_labeled_and_inconclusive(self):
        ids = [case.id for case, _ in suggest_labels(self._corpus())]
        assert ids == ["high", "medium"]

    def test_apply_high_only(self):
        corpus = self._corpus()
        assert apply_suggestions(suggest_labels(corpus)) == 1
        outcome = corpus.get("high").expected_outcome
        assert outcome.action == Action.NEW_BUG
        assert outcome.team == Team.PLATFORM
        assert outcome.confidence == Confidence.HIGH
        assert outcome.notes.startswith("Auto-labeled (high): ")
        assert not corpus.get("medium").expected_outcome.is_labeled

    def test_apply_with_medium(self):
        corpus = self._corpus()
        assert apply_suggestions(suggest_labels(corpus), include_medium=True) == 2
        assert corpus.get("medium").expected_outcome.action == Action.NOT_A_BUG


def _label_json(action="not_a_bug", confidence="high", team=None, ticket=None):
    return json.dumps({
        "action": action,
        "team": team,
        "confidence": confidence,
        "reasoning": "Thread says it works as designed.",
        "ticketRef": ticket,
    })


class TestLlmSuggestLabels:
    def _corpus(self):
        return CaseCorpus(cases=[
            make_case("one-reply", replies=["expected behavior"]),
            make_case("no-replies", replies=[]),
            make_case("never-enriched"),
            make_case("labeled", action="defer", replies=["fixed"]),
            make_case("two-replies", replies=["looking", "PLA-9 created"]),
        ])

    def test_only_unlabeled_with_enough_replies(self):
        oracle = FakeOracle(_label_json())
        suggestions = llm_suggest_labels(self._corpus(), oracle)
        assert [case.id for case, _ in suggestions] == ["one-reply", "two-replies"]
        assert len(oracle.prompts) == 2
        assert "expected behavior" in oracle.prompts[0]

    def test_min_replies_and_limit(self):
        oracle = FakeOracle(_label_json())
        suggestions = llm_suggest_labels(self._corpus(), oracle, min_replies=2)
        assert [case.id for case, _ in suggestions] == ["two-replies"]
        suggestions = llm_suggest_labels(self._corpus(), FakeOracle(_label_json()), limit=1)
        assert [case.id for case, _ in suggestions] == ["one-reply"]

    def test_failures_are_skipped(self):
        oracle = FakeOracle(OracleError("down"), "not json", _label_json("new_bug", team="ai"))
        corpus = CaseCorpus(cases=[
            make_case(f"c{i}", replies=["x"]) for i in range(3)
        ])
        [(case, suggestion)] = llm_suggest_labels(corpus, oracle)
        assert case.id == "c2"
        assert suggestion.action == Action.NEW_BUG
        assert suggestion.team == Team.AI

    def test_apply_records_source_and_ticket(self):
        corpus = CaseCorpus(cases=[make_case("a", replies=["dupe"])])
        oracle = FakeOracle(_label_json("existing_ticket", ticket="PLA-9"))
        applied = apply_suggestions(llm_suggest_labels(corpus, oracle), source="Model-labeled")
        assert applied == 1
        outcome = corpus.get("a").expected_outcome
        assert outcome.action == Action.EXISTING_TICKET
        assert outcome.notes == (
            "Model-labeled (high): Thread says it works as designed. [PLA-9]"
        )


class TestLabelCase:
    def test_sets_label(self):
        corpus = CaseCorpus(cases=[make_case("a")])
        label_case(corpus, "a", Action.NEW_BUG, Team.AI, notes="clear outage")
        assert corpus.get("a").expected_outcome.team == Team.AI

    def test_clear_label(self):
        corpus = CaseCorpus(cases=[make_case("a", action="defer")])
        label_case(corpus, "a", None)
        assert not corpus.get("a").expected_outcome.is_labeled

    def test_unknown_case(self):
        with pytest.raises(KeyError):
            label_case(CaseCorpus(), "nope", Action.DEFER)

    def test_team_requires_new_bug(self):
        corpus = CaseCorpus(cases=[make_case("a")])
        with pytest.raises(ValueError):
            label_case(corpus, "a", Action.DEFER, Team.DATA)


# ---------------------------------------------------------------------------
# CLI steps
# ---------------------------------------------------------------------------

class TestRunSteps:
    def test_label(self, tmp_path):
        path = tmp_path / "test-cases.json"
        save_corpus(path, CaseCorpus(cases=[make_case("a")]))
        assert run_label(path, "a", Action.NOT_A_BUG) == 0
        assert load_corpus(path).get("a").expected_outcome.action == Action.NOT_A_BUG
        assert run_label(path, "missing", Action.DEFER) == 1
        assert run_label(path, "a", Action.DEFER, team=Team.AI) == 1

    def test_label_without_corpus(self, tmp_path):
        assert run_label(tmp_path / "none.json", "a", Action.DEFER) == 1

    def test_merge(self, tmp_path):
        path = tmp_path / "test-cases.json"
        save_corpus(path, CaseCorpus(cases=[make_case("synth-1", message="old")]))
        write_json(tmp_path / "synthetic.json", {"cases": [
            {"id": "synth-1", "message": "new", "source": "synthetic",
             "expected": {"action": "defer"}},
            {"id": "synth-2", "messageText": "other", "sourceKind": "synthetic"},
        ]})
        assert run_merge(path, tmp_path / "synthetic.json") == 0
        corpus = load_corpus(path)
        assert [c.id for c in corpus.cases] == ["synth-1", "synth-2"]
        assert corpus.get("synth-1").message_text == "new"
        assert corpus.get("synth-1").source_kind == SourceKind.SYNTHETIC

    def test_merge_missing_synthetic(self, tmp_path):
        assert run_merge(tmp_path / "test-cases.json", tmp_path / "nope.json") == 1

    def test_suggest_labels_apply(self, tmp_path):
        path = tmp_path / "test-cases.json"
        save_corpus(path, CaseCorpus(cases=[make_case("a", replies=["DAT-3 created"])]))
        assert run_suggest_labels(path) == 0
        assert not load_corpus(path).get("a").expected_outcome.is_labeled
        assert run_suggest_labels(path, apply=True) == 0
        assert load_corpus(path).get("a").expected_outcome.team == Team.DATA

    def test_suggest_labels_llm_apply(self, tmp_path):
        path = tmp_path / "test-cases.json"
        save_corpus(path, CaseCorpus(cases=[make_case("a", replies=["works as designed"])]))
        with patch("bugtriage.corpus.ClaudeOracle", return_value=FakeOracle(_label_json())) as cls:
            assert run_suggest_labels(path, apply=True, llm=True,
                                      config=Config(model="haiku")) == 0
        assert cls.call_args.kwargs["model"] == "haiku"
        outcome = load_corpus(path).get("a").expected_outcome
        assert outcome.action == Action.NOT_A_BUG
        assert outcome.notes.startswith("Model-labeled (high): ")

    @pytest.mark.parametrize("step", [
        lambda p: run_enrich(p, "C1"),
        lambda p: run_suggest_labels(p),
        lambda p: run_label(p, "a", Action.DEFER),
        lambda p: run_export(p, "C1"),
    ])
    def test_corrupt_corpus_exits_non_zero(self, tmp_path, step):
        path = tmp_path / "test-cases.json"
        path.write_text("{not json")
        assert step(path) == 1

    def test_merge_corrupt_synthetic(self, tmp_path):
        (tmp_path / "synthetic.json").write_text("[1, 2]")
        assert run_merge(tmp_path / "test-cases.json", tmp_path / "synthetic.json") == 1
