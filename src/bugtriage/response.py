"""Turn the oracle's raw text into a validated TriageDecision or LabelSuggestion.

This is the only place that deals with best-effort JSON-from-text parsing.
"""

import json
import logging
import re

from pydantic import ValidationError

from bugtriage.models import Action, Confidence, Team, TriageDecision
from bugtriage.patterns import LabelSuggestion

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("action", "explanation", "confidence")

_OPEN_FENCE_RE = re.compile(r"^```[\w-]*[ \t]*\n?")
_CLOSE_FENCE_RE = re.compile(r"\n?```$")


class MalformedResponse(ValueError):
    """The oracle's output could not be turned into a valid decision."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


def strip_code_fence(text: str) -> str:
    """Remove a leading ```/```json fence and its closing fence, if any.

    A response cut off before its closing fence still loses the opening one.
    """
    text = text.strip()
    if not text.startswith("```"):
        return text
    text = _OPEN_FENCE_RE.sub("", text, count=1)
    return _CLOSE_FENCE_RE.sub("", text, count=1).strip()


def parse_response(raw: str) -> TriageDecision:
    """Parse and validate an oracle response. Raises MalformedResponse."""
    text = strip_code_fence(raw or "")

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.debug("Unparseable oracle response: %r", raw)
        raise MalformedResponse(f"Response is not valid JSON: {e}", raw) from e

    if not isinstance(data, dict):
        raise MalformedResponse(
            f"Expected a JSON object, got {type(data).__name__}", raw,
        )

    missing = [name for name in REQUIRED_FIELDS if not data.get(name)]
    if missing:
        raise MalformedResponse(
            f"Missing required fields in response: {', '.join(missing)}", raw,
        )

    valid_actions = {a.value for a in Action}
    if not isinstance(data["action"], str) or data["action"] not in valid_actions:
        raise MalformedResponse(f"Invalid action: {data['action']!r}", raw)

    try:
        return TriageDecision.model_validate(data)
    except ValidationError as e:
        raise MalformedResponse(f"Invalid decision: {e}", raw) from e


# Thread outcomes a case can be labeled with; defer is a bot policy, not an outcome.
LABEL_ACTIONS = frozenset(
    {Action.EXISTING_TICKET, Action.NEW_BUG, Action.NOT_A_BUG, Action.NEEDS_INFO}
)


def _optional_str(value) -> str | None:
    if not isinstance(value, str) or value.strip().lower() in ("", "null", "none"):
        return None
    return value.strip()


def parse_label_response(raw: str) -> LabelSuggestion:
    """Parse a labeling response into a suggestion. Raises MalformedResponse.

    Missing confidence defaults to medium. A team is kept only for new_bug.
    """
    text = strip_code_fence(raw or "")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedResponse(f"Response is not valid JSON: {e}", raw) from e
    if not isinstance(data, dict):
        raise MalformedResponse(
            f"Expected a JSON object, got {type(data).__name__}", raw,
        )

    action = data.get("action")
    if not isinstance(action, str) or action not in {a.value for a in LABEL_ACTIONS}:
        raise MalformedResponse(f"Invalid label action: {action!r}", raw)
    try:
        confidence = Confidence(data.get("confidence") or Confidence.MEDIUM)
        team = _optional_str(data.get("team"))
        team = Team(team) if team and action == Action.NEW_BUG else None
    except ValueError as e:
        raise MalformedResponse(f"Invalid label: {e}", raw) from e

    return LabelSuggestion(
        action=Action(action),
        confidence=confidence,
        reason=_optional_str(data.get("reasoning")) or "",
        team=team,
        ticket_ref=_optional_str(data.get("ticketRef")),
    )
