"""Bug triage assistant for a Slack bug-report channel."""

__version__ = "0.3.0"
