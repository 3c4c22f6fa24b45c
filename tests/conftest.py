"""Shared fixtures and helpers for bugtriage tests."""

import json

import requests

from bugtriage.evaluate import EvaluationReport, ScoredResult
from bugtriage.models import (
    Action,
    CandidateIssue,
    Confidence,
    ExpectedOutcome,
    NewTicket,
    Priority,
    Team,
    ThreadReply,
    TriageCase,
    TriageDecision,
)


def make_case(
    case_id="case-1",
    message="Something is broken",
    action=None,
    team=None,
    candidates=None,
    replies=None,
    reporter="U123",
    notes="",
):
    """Build a TriageCase. ``replies`` is a list of texts or (text, is_bot) pairs."""
    thread = None
    if replies is not None:
        thread = []
        for i, reply in enumerate(replies):
            text, is_bot = reply if isinstance(reply, tuple) else (reply, False)
            thread.append(ThreadReply(ts=f"1700000000.{i:06d}", user=f"U{i}",
                                      text=text, is_bot=is_bot))
    return TriageCase(
        id=case_id,
        message_text=message,
        reporter_id=reporter,
        candidate_issues=candidates,
        thread_replies=thread,
        expected_outcome=ExpectedOutcome(
            action=Action(action) if action else None,
            team=Team(team) if team else None,
            notes=notes,
        ),
    )


def make_candidate(identifier="PLA-1", title="Login broken", status="Todo",
                   team="Platform"):
    return CandidateIssue(
        identifier=identifier, title=title, status=status, owning_team=team,
        url=f"https://linear.app/acme/issue/{identifier}",
    )


def make_decision(action="defer", confidence="medium", team="platform",
                  explanation="Looks like something to check."):
    """Build a valid TriageDecision with whatever payload ``action`` needs."""
    action = Action(action)
    kwargs = {}
    if action == Action.EXISTING_TICKET:
        kwargs["ticket_link"] = "https://linear.app/acme/issue/PLA-1"
    if action == Action.NEW_BUG:
        kwargs["new_ticket"] = NewTicket(
            team=Team(team), title="Events page returns 403",
            description="## What?\n403 on /events", priority=Priority.HIGH,
        )
    return TriageDecision(
        action=action, explanation=explanation,
        confidence=Confidence(confidence), **kwargs,
    )


def make_response(action="defer", confidence="medium", team="platform", **extra):
    """Raw oracle JSON text for a decision."""
    data = {
        "action": action,
        "explanation": "Thanks for the report.",
        "confidence": confidence,
    }
    if action == "existing_ticket":
        data["ticketLink"] = "https://linear.app/acme/issue/PLA-1"
    if action == "new_bug":
        data["newTicket"] = {
            "team": team,
            "title": "Events page returns 403",
            "description": "## What?\n403 on /events",
            "priority": "high",
        }
    data.update(extra)
    return json.dumps(data)


def make_report(matches, model="sonnet", prompt_version="v2"):
    """Build an EvaluationReport from {case_id: action_match} (True/False/None)."""
    results = []
    for case_id, match in matches.items():
        expected = ExpectedOutcome(action=None if match is None else Action.DEFER)
        actual = make_decision("defer" if match else "not_a_bug")
        results.append(ScoredResult(
            id=case_id, expected=expected, actual=actual, action_match=match,
        ))
    return EvaluationReport(model=model, prompt_version=prompt_version, results=results)


class FakeResponse:
    def __init__(self, body, status=200):
        self.body = body
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")

    def json(self):
        return self.body


class FakeSession:
    """Stands in for requests.Session.

    ``routes`` maps a URL suffix (Slack method name, or "" for any URL) to a
    body, a FakeResponse, an exception, or a list of those consumed in order.
    """

    def __init__(self, routes):
        self.routes = routes
        self.headers = {}
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append((method, url, kwargs))
        for suffix, outcome in self.routes.items():
            if url.endswith(suffix):
                if isinstance(outcome, list):
                    outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
                if isinstance(outcome, Exception):
                    raise outcome
                if isinstance(outcome, FakeResponse):
                    return outcome
                return FakeResponse(outcome)
        raise AssertionError(f"unexpected request {method} {url}")


class FakeOracle:
    """Oracle returning canned responses in order, recording prompts."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts = []

    def complete(self, prompt, max_tokens=1024):
        self.prompts.append(prompt)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response
