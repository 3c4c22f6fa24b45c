"""Triage data model: closed enums and the JSON schemas shared by every step.

Field names on disk are camelCase. Older corpus files used different names
(``message``, ``reporter``, ``mockLinearResults``, ``expected``, ...); those
are accepted on input and never written back.
"""

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    model_validator,
)


class Action(StrEnum):
    EXISTING_TICKET = "existing_ticket"
    NEW_BUG = "new_bug"
    NOT_A_BUG = "not_a_bug"
    NEEDS_INFO = "needs_info"
    DEFER = "defer"


class Confidence(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Team(StrEnum):
    PLATFORM = "platform"
    ENTERPRISE = "enterprise"
    AI = "ai"
    DATA = "data"


class Priority(StrEnum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class PromptVersion(StrEnum):
    V1 = "v1"
    V2 = "v2"


class SourceKind(StrEnum):
    OBSERVED = "observed"
    SYNTHETIC = "synthetic"


DEFAULT_PROMPT_VERSION = PromptVersion.V2

_CONFIDENCE_RANK = {Confidence.HIGH: 3, Confidence.MEDIUM: 2, Confidence.LOW: 1}

# Linear priority numbers: 0 = none, 1 = urgent ... 4 = low
_PRIORITY_NUMBERS = {
    Priority.URGENT: 1,
    Priority.HIGH: 2,
    Priority.MEDIUM: 3,
    Priority.LOW: 4,
}


def meets_confidence_threshold(actual: Confidence, minimum: Confidence) -> bool:
    """Return True if ``actual`` is at or above ``minimum``."""
    return _CONFIDENCE_RANK[Confidence(actual)] >= _CONFIDENCE_RANK[Confidence(minimum)]


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class JsonModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------

class CandidateIssue(JsonModel):
    """An issue-tracker search hit offered to the policy as a possible duplicate."""

    identifier: str
    title: str
    status: str = Field(
        default="unknown",
        validation_alias=AliasChoices("status", "state"),
        serialization_alias="status",
    )
    owning_team: str = Field(
        default="unknown",
        validation_alias=AliasChoices("owningTeam", "owning_team", "team"),
        serialization_alias="owningTeam",
    )
    url: str = ""


class NewTicket(JsonModel):
    team: Team
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    priority: Priority

    @property
    def priority_number(self) -> int:
        return _PRIORITY_NUMBERS[self.priority]


class TriageDecision(JsonModel):
    """The policy output for one message.

    ``ticket_link`` is present iff action is existing_ticket and
    ``new_ticket`` is present iff action is new_bug.
    """

    action: Action
    explanation: str = Field(min_length=1)
    confidence: Confidence
    ticket_link: str | None = Field(
        default=None,
        validation_alias=AliasChoices("ticketLink", "ticket_link"),
        serialization_alias="ticketLink",
    )
    new_ticket: NewTicket | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "newTicketPayload", "newTicket", "new_ticket",
        ),
        serialization_alias="newTicketPayload",
    )

    @model_validator(mode="after")
    def _check_payload_presence(self):
        if (self.action == Action.EXISTING_TICKET) != bool(self.ticket_link):
            raise ValueError(
                "ticketLink must be present exactly when action is "
                f"existing_ticket (action={self.action})"
            )
        if (self.action == Action.NEW_BUG) != (self.new_ticket is not None):
            raise ValueError(
                "newTicketPayload must be present exactly when action is "
                f"new_bug (action={self.action})"
            )
        return self

    @property
    def team(self) -> Team | None:
        return self.new_ticket.team if self.new_ticket else None


# ---------------------------------------------------------------------------
# Corpus
# ---------------------------------------------------------------------------

class ExpectedOutcome(JsonModel):
    """Human label for a case. ``action=None`` means the case is unlabeled."""

    action: Action | None = None
    team: Team | None = None
    confidence: Confidence | None = None
    notes: str = ""

    @property
    def is_labeled(self) -> bool:
        return self.action is not None


class ThreadReply(JsonModel):
    ts: str
    user: str = "unknown"
    text: str = ""
    is_bot: bool = Field(
        default=False,
        validation_alias=AliasChoices("isBot", "is_bot"),
        serialization_alias="isBot",
    )


class TriageCase(JsonModel):
    id: str
    source_kind: SourceKind = Field(
        default=SourceKind.OBSERVED,
        validation_alias=AliasChoices("sourceKind", "source_kind", "source"),
        serialization_alias="sourceKind",
    )
    message_text: str = Field(
        validation_alias=AliasChoices("messageText", "message_text", "message"),
        serialization_alias="messageText",
    )
    reporter_id: str = Field(
        default="unknown",
        validation_alias=AliasChoices("reporterId", "reporter_id", "reporter"),
        serialization_alias="reporterId",
    )
    date: str | None = None
    # None: search the tracker at evaluation time; []: no candidates.
    candidate_issues: list[CandidateIssue] | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "candidateIssues", "candidate_issues", "mockLinearResults",
        ),
        serialization_alias="candidateIssues",
    )
    thread_replies: list[ThreadReply] | None = Field(
        default=None,
        validation_alias=AliasChoices("threadReplies", "thread_replies"),
        serialization_alias="threadReplies",
    )
    expected_outcome: ExpectedOutcome = Field(
        default_factory=ExpectedOutcome,
        validation_alias=AliasChoices(
            "expectedOutcome", "expected_outcome", "expected",
        ),
        serialization_alias="expectedOutcome",
    )

    @model_validator(mode="before")
    @classmethod
    def _map_legacy_source(cls, data):
        # Older files used "historical" for cases exported from the channel.
        if isinstance(data, dict) and data.get("source") == "historical":
            data = {**data, "source": SourceKind.OBSERVED.value}
        return data


class CaseCorpus(JsonModel):
    generated: str = Field(default_factory=utc_now_iso)
    cases: list[TriageCase] = Field(default_factory=list)

    def get(self, case_id: str) -> TriageCase | None:
        for case in self.cases:
            if case.id == case_id:
                return case
        return None

    def merge(self, incoming: list[TriageCase]) -> tuple[int, int]:
        """Replace cases with matching ids in place, append the rest.

        Returns (added, updated).
        """
        index = {case.id: i for i, case in enumerate(self.cases)}
        added = updated = 0
        for case in incoming:
            if case.id in index:
                self.cases[index[case.id]] = case
                updated += 1
            else:
                index[case.id] = len(self.cases)
                self.cases.append(case)
                added += 1
        return added, updated


class ReporterProfile(JsonModel):
    user_id: str = Field(
        validation_alias=AliasChoices("userId", "user_id"),
        serialization_alias="userId",
    )
    name: str
    report_count: int = Field(
        default=0,
        validation_alias=AliasChoices("reportCount", "report_count"),
        serialization_alias="reportCount",
    )
    confirmed_bugs: int = Field(
        default=0,
        validation_alias=AliasChoices("confirmedBugs", "confirmed_bugs"),
        serialization_alias="confirmedBugs",
    )
    is_engineer: bool = Field(
        default=False,
        validation_alias=AliasChoices("isEngineer", "is_engineer"),
        serialization_alias="isEngineer",
    )

    @property
    def confirmed_ratio(self) -> float:
        if self.report_count <= 0:
            return 0.0
        return self.confirmed_bugs / self.report_count
