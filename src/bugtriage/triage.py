"""The triage policy: message + candidates in, one TriageDecision out."""

import logging
from dataclasses import dataclass, field

from bugtriage.models import (
    Action,
    CandidateIssue,
    Confidence,
    PromptVersion,
    ReporterProfile,
    TriageDecision,
)
from bugtriage.oracle import DEFAULT_MAX_TOKENS, Oracle
from bugtriage.prompts.triage import build_prompt
from bugtriage.response import parse_response

logger = logging.getLogger(__name__)


@dataclass
class TriageContext:
    message: str
    reporter: str
    permalink: str | None = None
    candidate_issues: list[CandidateIssue] = field(default_factory=list)
    reporter_profile: ReporterProfile | None = None


def _apply_guard(decision: TriageDecision) -> TriageDecision:
    """Downgrade a new_bug decision that is not high confidence to defer."""
    if decision.action == Action.NEW_BUG and decision.confidence != Confidence.HIGH:
        logger.info(
            "Downgrading new_bug (%s confidence) to defer", decision.confidence,
        )
        return TriageDecision(
            action=Action.DEFER,
            explanation=decision.explanation,
            confidence=decision.confidence,
        )
    return decision


def decide(
    context: TriageContext,
    oracle: Oracle,
    version: PromptVersion = PromptVersion.V2,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> TriageDecision:
    """Ask the oracle to triage ``context`` and return the validated decision.

    Raises OracleError if the oracle fails and MalformedResponse if its
    output is not a valid decision.
    """
    raw = oracle.complete(build_prompt(context, version), max_tokens)
    return _apply_guard(parse_response(raw))


# ---------------------------------------------------------------------------
# Slack reply formatting
# ---------------------------------------------------------------------------

LOW_CONFIDENCE_NOTE = (
    "\n\n_I'm not very confident about this one. A human should double-check._"
)


def format_reply(decision: TriageDecision, ticket_url: str | None = None) -> str:
    """Render the threaded Slack reply for ``decision``.

    ``ticket_url`` is the URL of the issue created for a new_bug decision.
    """
    action = decision.action
    if action == Action.EXISTING_TICKET:
        reply = (
            f"This looks like it's already being tracked: {decision.ticket_link}\n\n"
            f"{decision.explanation}"
        )
    elif action == Action.NEW_BUG:
        team = decision.team.value if decision.team else "the team"
        if ticket_url:
            reply = (
                f"I've created a ticket for this: {ticket_url}\n\n"
                f"{decision.explanation}\n\nAssigned to: *{team}*"
            )
        else:
            reply = (
                "This looks like a new bug that should be tracked.\n\n"
                f"{decision.explanation}\n\nSuggested team: *{team}*"
            )
    elif action == Action.NOT_A_BUG:
        reply = (
            "This doesn't appear to be a bug.\n\n"
            f"{decision.explanation}\n\n"
            "If you think this is a bug, please add more details and tag "
            "someone from the relevant team."
        )
    elif action == Action.NEEDS_INFO:
        reply = (
            f"Thanks for reporting! {decision.explanation}\n\n"
            "Could you provide more details? Helpful info includes:\n"
            "- Steps to reproduce\n"
            "- Expected vs actual behavior\n"
            "- Browser/device info\n"
            "- Screenshots or error messages"
        )
    else:
        reply = (
            f"{decision.explanation}\n\n"
            "I'll leave this one for a human to triage."
        )

    if decision.confidence == Confidence.LOW and action != Action.DEFER:
        reply += LOW_CONFIDENCE_NOTE
    return reply
