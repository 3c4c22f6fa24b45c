#!/usr/bin/env python3
"""Live triage of new channel messages.

Fetches posts since the last run, skips threads the bot already answered,
searches Linear for duplicates, asks the policy for a decision, logs it for
feedback, then (unless dry-run) files the issue and replies in the thread.
A message that fails is logged and skipped; the rest are still processed.
"""

import logging
import time
from datetime import UTC, datetime

from bugtriage.config import Config, require_credential
from bugtriage.feedback import FeedbackStore
from bugtriage.jsonio import StateFileError, write_text_atomic
from bugtriage.keywords import build_search_query
from bugtriage.linear import LinearClient
from bugtriage.models import (
    Action,
    PromptVersion,
    TriageDecision,
    meets_confidence_threshold,
)
from bugtriage.oracle import ClaudeOracle, Oracle
from bugtriage.profiles import ReporterProfileStore
from bugtriage.slack import SlackClient, SlackError, SlackMessage, sleep_between_requests
from bugtriage.triage import TriageContext, decide, format_reply

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 5
DEFAULT_LOOKBACK_SECONDS = 3600
BELOW_THRESHOLD_EXPLANATION = (
    "I'm not confident enough to act on this automatically. "
    "A human will review and follow up."
)


def load_last_run(config: Config, now: float | None = None) -> float:
    """Unix time of the last run, or an hour ago if there is none."""
    path = config.state_path
    if not path.exists():
        return (now or time.time()) - DEFAULT_LOOKBACK_SECONDS
    text = path.read_text(encoding="utf-8").strip()
    try:
        return float(text)
    except ValueError as e:
        raise ValueError(f"Malformed last-run state in {path}: {text!r}") from e


def save_last_run(config: Config, timestamp: float) -> None:
    if config.dry_run:
        logger.info("[dry run] Would save last-run timestamp %s", timestamp)
        return
    write_text_atomic(config.state_path, f"{timestamp}\n")


def apply_threshold(decision: TriageDecision, config: Config) -> TriageDecision:
    """Replace a decision below ``config.min_confidence`` with a defer."""
    if meets_confidence_threshold(decision.confidence, config.min_confidence):
        return decision
    logger.info(
        "Confidence %s below threshold %s, deferring to a human",
        decision.confidence, config.min_confidence,
    )
    return TriageDecision(
        action=Action.DEFER,
        explanation=BELOW_THRESHOLD_EXPLANATION,
        confidence=decision.confidence,
    )


class TriageBot:
    def __init__(
        self,
        config: Config,
        slack: SlackClient,
        linear: LinearClient,
        oracle: Oracle,
        feedback: FeedbackStore,
        profiles: ReporterProfileStore,
        prompt_version: PromptVersion = PromptVersion.V2,
    ):
        self.config = config
        self.slack = slack
        self.linear = linear
        self.oracle = oracle
        self.feedback = feedback
        self.profiles = profiles
        self.prompt_version = prompt_version

    def _create_issue(self, decision: TriageDecision) -> str | None:
        ticket = decision.new_ticket
        team_id = self.config.linear_teams.get(ticket.team)
        if not team_id:
            logger.error("No Linear team id configured for %s", ticket.team)
            return None
        if self.config.dry_run:
            logger.info("[dry run] Would create Linear issue for %s (%s): %s [%s]",
                        ticket.team, team_id, ticket.title, ticket.priority)
            return None
        label_ids = [self.config.linear_bug_label_id] if self.config.linear_bug_label_id else None
        issue = self.linear.create_issue(
            team_id, ticket.title, ticket.description,
            priority=ticket.priority_number, label_ids=label_ids,
        )
        return issue.url

    def process(self, message: SlackMessage) -> TriageDecision | None:
        """Triage one message. Returns None if it was already handled."""
        channel = self.config.slack_channel_id
        logger.info("Processing %s: %s", message.ts, message.text[:100])

        if self.slack.has_triage_reply(channel, message.ts):
            logger.info("  Already triaged, skipping")
            return None

        reporter = self.slack.get_user_name(message.user)
        profile = self.profiles.get(message.user)
        if profile is None:
            try:
                is_engineer = self.slack.get_user_profile(message.user).is_engineer
            except SlackError as e:
                logger.debug("  No Slack profile for %s: %s", message.user, e)
                is_engineer = None
            profile = self.profiles.update(message.user, reporter, is_engineer=is_engineer)
        logger.info("  Reporter: %s (%d previous reports)", reporter, profile.report_count)

        query = build_search_query(message.text)
        candidates = self.linear.search_issues(query, SEARCH_LIMIT) if query else []
        logger.info("  Search %r: %d candidates", query, len(candidates))

        decision = decide(
            TriageContext(
                message=message.text,
                reporter=reporter,
                permalink=message.permalink,
                candidate_issues=candidates,
                reporter_profile=profile,
            ),
            self.oracle,
            version=self.prompt_version,
            max_tokens=self.config.max_tokens,
        )
        logger.info("  Decision: %s (%s): %s",
                    decision.action, decision.confidence, decision.explanation)
        self.feedback.log_decision(
            message.ts, message.text, decision, reporter, reporter_id=message.user,
        )
        self.profiles.record_report(message.user, reporter)

        decision = apply_threshold(decision, self.config)

        ticket_url = None
        if decision.action == Action.NEW_BUG:
            ticket_url = self._create_issue(decision)

        reply = format_reply(decision, ticket_url)
        if self.config.dry_run:
            logger.info("[dry run] Would reply:\n%s", reply)
        else:
            self.slack.post_thread_reply(channel, message.ts, reply)
            logger.info("  Reply posted")
        return decision

    def run(self, since: float, limit: int = 10) -> int:
        """Process up to ``limit`` messages newer than ``since``.

        Returns the number of messages that failed.
        """
        logger.info(
            "Fetching messages in %s since %s", self.config.slack_channel_id,
            datetime.fromtimestamp(since, UTC).isoformat(),
        )
        messages = self.slack.get_messages_since(self.config.slack_channel_id, since)
        todo = messages[:limit]
        logger.info("Found %d messages, processing %d", len(messages), len(todo))

        failures = 0
        for message in todo:
            try:
                self.process(message)
            except Exception as e:
                failures += 1
                logger.error("Error processing message %s: %s", message.ts, e)
            sleep_between_requests(self.config.request_delay)
        return failures


def run(
    config: Config,
    since: float | None = None,
    limit: int = 10,
    prompt_version: PromptVersion = PromptVersion.V2,
) -> int:
    if config.dry_run:
        logger.info("DRY RUN: no issues will be created and no replies posted")

    try:
        slack = SlackClient(require_credential("SLACK_TOKEN"))
        linear = LinearClient(require_credential("LINEAR_API_KEY"))
        feedback = FeedbackStore(config.data_dir)
        profiles = ReporterProfileStore(config.data_dir)
    except (RuntimeError, StateFileError) as e:
        logger.error("%s", e)
        return 1

    bot = TriageBot(
        config=config,
        slack=slack,
        linear=linear,
        oracle=ClaudeOracle(
            model=config.model, timeout=config.oracle_timeout,
            max_tokens=config.max_tokens, verbose=config.verbose,
        ),
        feedback=feedback,
        profiles=profiles,
        prompt_version=prompt_version,
    )

    started = time.time()
    if since is None:
        since = load_last_run(config, now=started)
    try:
        bot.run(since, limit=limit)
    except SlackError as e:
        logger.error("Could not fetch messages: %s", e)
        return 1
    save_last_run(config, started)
    logger.info("Done. Processed up to %s", datetime.fromtimestamp(started, UTC).isoformat())
    return 0
