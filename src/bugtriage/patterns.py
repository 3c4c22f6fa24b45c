"""Regex heuristics over free text: outcome signals, prior-context references
and ticket identifiers.

Outcome categories are exclusive and checked in priority order; the first
match is the single-label suggestion. Context references are advisory, so
every matching one is reported.
"""

import re
from dataclasses import dataclass

from bugtriage.models import Action, Confidence, Team, TriageCase

EXISTING_TICKET = "existing_ticket"
NEW_TICKET = "new_ticket"
NOT_A_BUG = "not_a_bug"
NEEDS_INFO = "needs_info"
RESOLVED = "resolved"
CONTEXT_REFERENCE = "context_reference"

# Checked in this order; the first hit wins the single-label suggestion.
PRIORITY_ORDER = (EXISTING_TICKET, NEW_TICKET, NOT_A_BUG, NEEDS_INFO)

_TICKET_PREFIXES = r"(?:APO|PLA|ENT|DAT|AI)"

OUTCOME_PATTERNS: dict[str, tuple[re.Pattern, ...]] = {
    EXISTING_TICKET: (
        re.compile(r"(?:duplicate|dupe|already (?:tracked|exists|reported|filed))", re.I),
        re.compile(rf"(?:same as|related to|see)\s+{_TICKET_PREFIXES}-\d+", re.I),
        re.compile(rf"linear\.app/[\w-]+/issue/{_TICKET_PREFIXES}-\d+", re.I),
        re.compile(r"this is (?:tracked|covered) (?:in|by)", re.I),
    ),
    NEW_TICKET: (
        re.compile(r"(?:created|filed|opened|raised)\s+(?:a\s+)?(?:ticket|issue|bug)", re.I),
        re.compile(rf"{_TICKET_PREFIXES}-\d+\s+(?:created|opened)", re.I),
        re.compile(r"I(?:'ve|'ll| have| will)\s+(?:create|file|open|raise)", re.I),
        re.compile(r"ticket\s+(?:created|raised|filed)", re.I),
    ),
    NOT_A_BUG: (
        re.compile(r"(?:not a bug|isn't a bug|this is expected|by design|working as intended)", re.I),
        re.compile(r"(?:feature request|enhancement|improvement)", re.I),
        re.compile(r"(?:user error|user mistake|PEBKAC)", re.I),
        re.compile(r"(?:support question|how do I|documentation)", re.I),
        re.compile(r"(?:won't fix|wontfix|not going to fix)", re.I),
        re.compile(r"(?:this is normal|expected behavior)", re.I),
    ),
    NEEDS_INFO: (
        re.compile(r"(?:can you (?:provide|share|send)|need more (?:info|details|context))", re.I),
        re.compile(r"(?:what (?:browser|device|version)|which (?:page|screen|user))", re.I),
        re.compile(r"(?:steps to reproduce|how to reproduce|repro steps)", re.I),
        re.compile(r"(?:screenshot|screen recording|video)", re.I),
        re.compile(r"(?:can you clarify|could you explain)", re.I),
    ),
    RESOLVED: (
        re.compile(r"(?:fixed|resolved|deployed|released|shipped)", re.I),
        re.compile(r"(?:this (?:is|should be) (?:fixed|resolved|working) now)", re.I),
        re.compile(r"(?:pushed a fix|merged|PR merged)", re.I),
    ),
}

CONTEXT_REFERENCE_PATTERNS: tuple[tuple[re.Pattern, str], ...] = (
    (re.compile(r"same (?:issue|problem|bug|thing)", re.I), "same issue reference"),
    (re.compile(r"repeat of", re.I), "repeat reference"),
    (re.compile(r"happening again", re.I), "recurrence"),
    (re.compile(r"still (?:happening|broken|not working|an issue)", re.I), "ongoing issue"),
    (re.compile(r"as (?:mentioned|reported|discussed|noted)(?: above| earlier| before)?", re.I),
     "prior mention"),
    (re.compile(r"(?:above|earlier|before|previous) (?:issue|bug|problem|report)", re.I),
     "prior issue reference"),
    (re.compile(r"(?:following up|follow-up|followup) on", re.I), "follow-up"),
    (re.compile(r"related to (?:the|that|this|my) (?:earlier|previous|other)", re.I),
     "related reference"),
    (re.compile(r"see (?:above|thread|conversation)", re.I), "thread reference"),
)

TICKET_ID_RE = re.compile(r"\b([A-Za-z]+-\d+)\b")

TEAM_BY_TICKET_PREFIX = {
    "PLA": Team.PLATFORM,
    "ENT": Team.ENTERPRISE,
    "AI": Team.AI,
    "DAT": Team.DATA,
}


@dataclass(frozen=True)
class PatternMatches:
    categories: frozenset[str] = frozenset()
    suggestion: str | None = None
    context_references: tuple[str, ...] = ()
    ticket_ids: tuple[str, ...] = ()

    @property
    def has_context_reference(self) -> bool:
        return bool(self.context_references)


@dataclass
class LabelSuggestion:
    action: Action
    confidence: Confidence
    reason: str
    team: Team | None = None
    ticket_ref: str | None = None


def extract_ticket_ids(text: str) -> list[str]:
    """Return ticket identifiers (PREFIX-123), upper-cased, first-seen order."""
    seen: list[str] = []
    for match in TICKET_ID_RE.finditer(text or ""):
        ticket = match.group(1).upper()
        if ticket not in seen:
            seen.append(ticket)
    return seen


def detect_context_references(message: str) -> tuple[bool, list[str]]:
    """Return (has_reference, names of every matching reference pattern)."""
    names = [
        name for regex, name in CONTEXT_REFERENCE_PATTERNS
        if regex.search(message or "")
    ]
    return bool(names), names


def match_patterns(text: str) -> PatternMatches:
    """Classify ``text`` against every pattern category."""
    if not text or not text.strip():
        return PatternMatches()

    categories = {
        category for category, regexes in OUTCOME_PATTERNS.items()
        if any(regex.search(text) for regex in regexes)
    }
    suggestion = next((cat for cat in PRIORITY_ORDER if cat in categories), None)
    _, references = detect_context_references(text)
    if references:
        categories.add(CONTEXT_REFERENCE)

    return PatternMatches(
        categories=frozenset(categories),
        suggestion=suggestion,
        context_references=tuple(references),
        ticket_ids=tuple(extract_ticket_ids(text)),
    )


def suggest_label(case: TriageCase) -> LabelSuggestion | None:
    """Guess a case's outcome from the human replies in its thread.

    Returns None when the case has no replies or nothing in them is
    conclusive.
    """
    replies = case.thread_replies or []
    if not replies:
        return None

    all_text = "\n".join(r.text for r in replies)
    human_replies = [r for r in replies if not r.is_bot]
    matches = match_patterns(all_text)
    tickets = list(matches.ticket_ids)
    first_ticket = tickets[0] if tickets else None
    ticket_suffix = f": {first_ticket}" if first_ticket else ""
    ticket_confidence = Confidence.HIGH if first_ticket else Confidence.MEDIUM

    if matches.suggestion == EXISTING_TICKET:
        return LabelSuggestion(
            action=Action.EXISTING_TICKET,
            confidence=ticket_confidence,
            reason=f"Thread indicates duplicate/existing issue{ticket_suffix}",
            ticket_ref=first_ticket,
        )

    if matches.suggestion == NEW_TICKET:
        team = None
        if first_ticket:
            team = TEAM_BY_TICKET_PREFIX.get(first_ticket.split("-")[0])
        return LabelSuggestion(
            action=Action.NEW_BUG,
            confidence=ticket_confidence,
            reason=f"Thread indicates ticket was created{ticket_suffix}",
            team=team,
            ticket_ref=first_ticket,
        )

    if matches.suggestion == NOT_A_BUG:
        return LabelSuggestion(
            action=Action.NOT_A_BUG,
            confidence=Confidence.MEDIUM,
            reason="Thread indicates this is not a bug "
                   "(feature request, expected behavior, or user error)",
        )

    if (
        matches.suggestion == NEEDS_INFO
        and RESOLVED not in matches.categories
        and len(human_replies) <= 2
    ):
        return LabelSuggestion(
            action=Action.NEEDS_INFO,
            confidence=Confidence.LOW,
            reason="Thread shows request for more information "
                   "without clear resolution",
        )

    if tickets:
        return LabelSuggestion(
            action=Action.EXISTING_TICKET,
            confidence=Confidence.LOW,
            reason=f"Thread references ticket(s): {', '.join(tickets)}",
            ticket_ref=first_ticket,
        )

    return None
