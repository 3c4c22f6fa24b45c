"""Slack Web API client.

Only the handful of methods the triage loop needs. Responses are validated
with pydantic; a body with ``ok: false`` raises SlackError.
"""

import logging
import re
import time
from datetime import UTC, datetime

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from bugtriage.models import ThreadReply
from bugtriage.webapi import DEFAULT_TIMEOUT, request_json

logger = logging.getLogger(__name__)

SLACK_API = "https://slack.com/api/"

_ENGINEER_TITLE_RE = re.compile(r"engineer|developer|sre|devops|cto", re.I)


class SlackError(RuntimeError):
    """A Slack API call failed or returned ``ok: false``."""


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class SlackMessage(_Payload):
    ts: str = ""
    text: str = ""
    user: str = "unknown"
    subtype: str | None = None
    bot_id: str | None = None
    thread_ts: str | None = None
    permalink: str | None = None

    @property
    def is_bot(self) -> bool:
        return bool(self.bot_id) or self.subtype == "bot_message"

    @property
    def is_user_post(self) -> bool:
        """A plain human message (no join/leave/bot subtypes) with text."""
        return not self.subtype and bool(self.text) and bool(self.ts)

    def to_reply(self) -> ThreadReply:
        return ThreadReply(ts=self.ts, user=self.user, text=self.text, is_bot=self.is_bot)


class SlackUserProfile(_Payload):
    real_name: str | None = None
    display_name: str | None = None
    title: str = ""


class SlackUser(_Payload):
    id: str
    name: str = ""
    real_name: str | None = None
    is_bot: bool = False
    profile: SlackUserProfile = Field(default_factory=SlackUserProfile)

    @property
    def display(self) -> str:
        return self.real_name or self.profile.real_name or self.name or self.id

    @property
    def is_engineer(self) -> bool:
        return bool(_ENGINEER_TITLE_RE.search(self.profile.title or ""))


class _MessagesResponse(_Payload):
    messages: list[SlackMessage] = Field(default_factory=list)


class SlackClient:
    def __init__(
        self,
        token: str,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ):
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {token}"})

    def _call(self, method: str, *, http_method: str = "GET", **params) -> dict:
        url = SLACK_API + method
        kwargs = {"json": params} if http_method == "POST" else {"params": params}
        try:
            data = request_json(
                http_method, url, session=self.session, timeout=self.timeout, **kwargs,
            )
        except requests.RequestException as e:
            raise SlackError(f"Slack {method} failed: {e}") from e
        if not data.get("ok"):
            raise SlackError(f"Slack {method} returned error: {data.get('error', 'unknown')}")
        return data

    def _messages(self, method: str, **params) -> list[SlackMessage]:
        data = self._call(method, **params)
        try:
            return _MessagesResponse.model_validate(data).messages
        except ValidationError as e:
            raise SlackError(f"Unexpected Slack {method} payload: {e}") from e

    def get_history(self, channel: str, limit: int = 100) -> list[SlackMessage]:
        """Return the newest human posts in ``channel``, newest first."""
        messages = self._messages("conversations.history", channel=channel, limit=limit)
        return [m for m in messages if m.is_user_post]

    def get_messages_since(self, channel: str, oldest: float) -> list[SlackMessage]:
        """Return human posts newer than ``oldest`` (unix seconds) with permalinks."""
        messages = self._messages(
            "conversations.history", channel=channel, oldest=str(oldest), limit=100,
        )
        result = []
        for message in messages:
            if not message.is_user_post:
                continue
            message.permalink = self.get_permalink(channel, message.ts)
            result.append(message)
        return result

    def get_permalink(self, channel: str, ts: str) -> str | None:
        """Return the message permalink, or None if Slack will not give one."""
        try:
            data = self._call("chat.getPermalink", channel=channel, message_ts=ts)
        except SlackError as e:
            logger.debug("No permalink for %s: %s", ts, e)
            return None
        return data.get("permalink")

    def get_thread_replies(self, channel: str, ts: str, limit: int = 50) -> list[ThreadReply]:
        """Return the replies in a thread, excluding the parent message."""
        messages = self._messages("conversations.replies", channel=channel, ts=ts, limit=limit)
        return [m.to_reply() for m in messages[1:] if m.text and m.ts]

    def has_triage_reply(self, channel: str, ts: str) -> bool:
        """Check whether a bot already replied in the thread of ``ts``."""
        messages = self._messages("conversations.replies", channel=channel, ts=ts, limit=10)
        return any(m.is_bot for m in messages)

    def get_user_profile(self, user_id: str) -> SlackUser:
        data = self._call("users.info", user=user_id)
        try:
            return SlackUser.model_validate(data.get("user") or {})
        except ValidationError as e:
            raise SlackError(f"Unexpected Slack users.info payload: {e}") from e

    def get_user_name(self, user_id: str) -> str:
        """Return the user's display name, falling back to the raw id."""
        try:
            return self.get_user_profile(user_id).display
        except SlackError as e:
            logger.debug("Could not resolve user %s: %s", user_id, e)
            return user_id

    def post_thread_reply(self, channel: str, thread_ts: str, text: str) -> None:
        self._call(
            "chat.postMessage", http_method="POST",
            channel=channel, thread_ts=thread_ts, text=text,
        )


def message_date(ts: str) -> str:
    """ISO-8601 UTC date for a Slack timestamp like ``1700000000.000100``."""
    return datetime.fromtimestamp(float(ts), UTC).isoformat().replace("+00:00", "Z")


def sleep_between_requests(delay: float) -> None:
    if delay > 0:
        time.sleep(delay)
