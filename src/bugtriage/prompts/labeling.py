"""Prompt for labeling an exported case from how its thread played out."""

from bugtriage.models import TriageCase

LABEL_PROMPT = """\
You are analyzing a bug report from a Slack channel to determine how it was
resolved.

## Original Bug Report

**Reporter:** {reporter}
**Date:** {date}

**Message:**
{message}

## Thread Replies ({reply_count} total)

{thread}

## Your Task

Based on the original message AND the thread discussion, determine the
outcome of this bug report.

Possible outcomes:
1. **existing_ticket** - identified as a duplicate of, or related to, an
   existing Linear ticket
2. **new_bug** - a new Linear ticket was created for this issue
3. **not_a_bug** - determined not to be a bug (feature request, user error,
   expected behavior, support question)
4. **needs_info** - more information was requested and the issue remains
   unresolved

If the outcome is "new_bug", also determine which team should own it:
- **platform**: infrastructure, auth, performance, databases, deployments
- **enterprise**: academies, cohorts, admin, B2B, SSO
- **ai**: AI features, Futura, learning tracks, AI feedback
- **data**: dbt, BigQuery, ThoughtSpot, analytics

Respond with ONLY a JSON object (no markdown code blocks):

{{
  "action": "existing_ticket" | "new_bug" | "not_a_bug" | "needs_info",
  "team": "platform" | "enterprise" | "ai" | "data" | null,
  "confidence": "high" | "medium" | "low",
  "reasoning": "Why you chose this outcome (1-2 sentences)",
  "ticketRef": "PLA-123, or null if no ticket is mentioned"
}}

Important:
- Look for ticket references (PLA-123, ENT-45, ...) in the thread
- Look for phrases like "created ticket", "this is tracked in", "duplicate of"
- Look for resolutions like "fixed", "deployed", "not a bug", "expected behavior"
- If the thread shows the issue was resolved but no ticket was explicitly
  created, use your judgment
- If you're unsure, use "medium" or "low" confidence
"""


def format_thread(case: TriageCase) -> str:
    replies = case.thread_replies or []
    if not replies:
        return "No replies"
    blocks = []
    for i, reply in enumerate(replies, 1):
        who = "[BOT]" if reply.is_bot else f"[User {reply.user}]"
        blocks.append(f"Reply {i} {who}:\n{reply.text}")
    return "\n\n".join(blocks)


def build_label_prompt(case: TriageCase) -> str:
    return LABEL_PROMPT.format(
        reporter=case.reporter_id,
        date=case.date or "Unknown",
        message=case.message_text,
        reply_count=len(case.thread_replies or []),
        thread=format_thread(case),
    )
