"""Tests for bugtriage.response -- oracle output parsing."""

import json

import pytest
from conftest import make_response

from bugtriage.models import Action, Confidence, Priority, Team
from bugtriage.response import (
    MalformedResponse,
    parse_label_response,
    parse_response,
    strip_code_fence,
)


# ---------------------------------------------------------------------------
# strip_code_fence
# ---------------------------------------------------------------------------

class TestStripCodeFence:
    def test_json_fence(self):
        assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_bare_fence(self):
        assert strip_code_fence('```\n{"a": 1}\n```') == '{"a": 1}'

    def test_unfenced(self):
        assert strip_code_fence('  {"a": 1}  ') == '{"a": 1}'

    def test_unclosed_fence(self):
        assert strip_code_fence('```json\n{"a": 1}') == '{"a": 1}'

    def test_fence_on_one_line(self):
        assert strip_code_fence('```{"a": 1}```') == '{"a": 1}'


# ---------------------------------------------------------------------------
# parse_response
# ---------------------------------------------------------------------------

class TestParseResponse:
    def test_new_bug(self):
        d = parse_response(make_response("new_bug", "high", team="data"))
        assert d.action == Action.NEW_BUG
        assert d.confidence == Confidence.HIGH
        assert d.new_ticket.team == Team.DATA
        assert d.new_ticket.priority == Priority.HIGH
        assert d.ticket_link is None

    def test_existing_ticket(self):
        d = parse_response(make_response("existing_ticket", "high"))
        assert d.ticket_link == "https://linear.app/acme/issue/PLA-1"
        assert d.new_ticket is None

    def test_fenced_equals_unfenced(self):
        raw = make_response("defer")
        assert parse_response(f"```json\n{raw}\n```") == parse_response(raw)

    def test_accepts_new_ticket_payload_key(self):
        data = json.loads(make_response("new_bug", "high"))
        data["newTicketPayload"] = data.pop("newTicket")
        assert parse_response(json.dumps(data)).new_ticket is not None

    def test_invalid_json(self):
        with pytest.raises(MalformedResponse) as exc:
            parse_response("I think this is a bug")
        assert exc.value.raw == "I think this is a bug"

    def test_not_an_object(self):
        with pytest.raises(MalformedResponse, match="JSON object"):
            parse_response("[1, 2]")

    def test_missing_fields(self):
        with pytest.raises(MalformedResponse, match="Missing required fields"):
            parse_response('{"action": "defer"}')

    @pytest.mark.parametrize("field", ["action", "explanation", "confidence"])
    def test_each_required_field(self, field):
        data = json.loads(make_response("defer"))
        del data[field]
        with pytest.raises(MalformedResponse, match=f"Missing required fields in response: {field}$"):
            parse_response(json.dumps(data))

    def test_truncated_fence(self):
        assert parse_response(f"```json\n{make_response('defer')}").action == Action.DEFER

    def test_invalid_action(self):
        with pytest.raises(MalformedResponse, match="Invalid action"):
            parse_response(make_response("escalate"))

    def test_invalid_confidence(self):
        with pytest.raises(MalformedResponse):
            parse_response(make_response("defer", "certain"))

    def test_new_bug_without_payload(self):
        with pytest.raises(MalformedResponse):
            parse_response('{"action": "new_bug", "explanation": "x", "confidence": "high"}')

    def test_existing_ticket_without_link(self):
        with pytest.raises(MalformedResponse):
            parse_response('{"action": "existing_ticket", "explanation": "x", "confidence": "high"}')

    def test_link_on_wrong_action(self):
        with pytest.raises(MalformedResponse):
            parse_response(make_response("defer", ticketLink="https://linear.app/x"))

    def test_payload_on_wrong_action(self):
        data = json.loads(make_response("new_bug", "high"))
        data["action"] = "not_a_bug"
        with pytest.raises(MalformedResponse):
            parse_response(json.dumps(data))

    def test_unknown_team(self):
        data = json.loads(make_response("new_bug", "high"))
        data["newTicket"]["team"] = "marketing"
        with pytest.raises(MalformedResponse):
            parse_response(json.dumps(data))

    def test_empty(self):
        with pytest.raises(MalformedResponse):
            parse_response("")


# ---------------------------------------------------------------------------
# parse_label_response
# ---------------------------------------------------------------------------

def _label(**fields):
    data = {"action": "new_bug", "team": "data", "confidence": "high",
            "reasoning": "Ticket created in thread.", "ticketRef": "DAT-12"}
    data.update(fields)
    return json.dumps(data)


class TestParseLabelResponse:
    def test_valid(self):
        s = parse_label_response(_label())
        assert s.action == Action.NEW_BUG
        assert s.team == Team.DATA
        assert s.confidence == Confidence.HIGH
        assert s.reason == "Ticket created in thread."
        assert s.ticket_ref == "DAT-12"

    def test_team_dropped_for_other_actions(self):
        s = parse_label_response(_label(action="existing_ticket", team="platform"))
        assert s.action == Action.EXISTING_TICKET
        assert s.team is None

    def test_confidence_defaults_to_medium(self):
        data = json.loads(_label())
        del data["confidence"]
        assert parse_label_response(json.dumps(data)).confidence == Confidence.MEDIUM

    @pytest.mark.parametrize("ref", [None, "null", ""])
    def test_missing_ticket_ref(self, ref):
        assert parse_label_response(_label(ticketRef=ref)).ticket_ref is None

    def test_fenced(self):
        s = parse_label_response(f"```json\n{_label(action='not_a_bug')}\n```")
        assert s.action == Action.NOT_A_BUG

    def test_defer_is_not_an_outcome(self):
        with pytest.raises(MalformedResponse, match="Invalid label action"):
            parse_label_response(_label(action="defer"))

    @pytest.mark.parametrize("action", [None, ["new_bug"], "maybe"])
    def test_invalid_action(self, action):
        with pytest.raises(MalformedResponse, match="Invalid label action"):
            parse_label_response(_label(action=action))

    def test_invalid_team(self):
        with pytest.raises(MalformedResponse):
            parse_label_response(_label(team="frontend"))

    def test_invalid_confidence(self):
        with pytest.raises(MalformedResponse):
            parse_label_response(_label(confidence="certain"))

    def test_not_json(self):
        with pytest.raises(MalformedResponse):
            parse_label_response("It was a duplicate.")
