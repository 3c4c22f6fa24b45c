#!/usr/bin/env python3
"""Single-shot text completion through the Claude Agent SDK.

The triage policy only needs prompt in, text out. ClaudeOracle runs one
tool-less turn, gathers the assistant's text blocks and returns them joined.
"""

import asyncio
import logging
from typing import Protocol

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    CLIConnectionError,
    ProcessError,
    ResultMessage,
    TextBlock,
    query,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "sonnet"
DEFAULT_TIMEOUT = 120.0
DEFAULT_MAX_TOKENS = 1024

_TRANSIENT_ERRORS = (CLIConnectionError, ProcessError, TimeoutError)


class OracleError(RuntimeError):
    """The language model could not be reached or returned an error."""


class Oracle(Protocol):
    def complete(self, prompt: str, max_tokens: int) -> str: ...


class ClaudeOracle:
    """Oracle backed by ``claude_agent_sdk.query``.

    Each call is bounded by ``timeout`` seconds and retried once on
    connection/process failures or timeouts.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        timeout: float = DEFAULT_TIMEOUT,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        verbose: bool = False,
    ):
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.verbose = verbose

    def _options(self, max_tokens: int) -> ClaudeAgentOptions:
        return ClaudeAgentOptions(
            model=self.model,
            allowed_tools=[],
            max_turns=1,
            env={"CLAUDE_CODE_MAX_OUTPUT_TOKENS": str(max_tokens)},
        )

    async def _collect(self, prompt: str, max_tokens: int) -> str:
        parts: list[str] = []
        async for message in query(prompt=prompt, options=self._options(max_tokens)):
            if isinstance(message, AssistantMessage):
                for block in message.content:
                    if isinstance(block, TextBlock):
                        parts.append(block.text)
            elif isinstance(message, ResultMessage) and message.is_error:
                raise OracleError(
                    f"Model returned an error result: {message.result or message.subtype}"
                )
        return "".join(parts)

    def complete(self, prompt: str, max_tokens: int | None = None) -> str:
        max_tokens = max_tokens or self.max_tokens
        if self.verbose:
            logger.info("Prompt (%d chars):\n%s", len(prompt), prompt)

        last_error: Exception | None = None
        for attempt in (1, 2):
            try:
                text = asyncio.run(asyncio.wait_for(
                    self._collect(prompt, max_tokens), timeout=self.timeout,
                ))
            except _TRANSIENT_ERRORS as e:
                last_error = e
                logger.warning(
                    "Oracle call failed (attempt %d/2): %s", attempt, e or type(e).__name__,
                )
                continue
            except OracleError:
                raise
            except Exception as e:
                raise OracleError(f"Oracle call failed: {e}") from e

            if not text.strip():
                raise OracleError("Model returned an empty response")
            if self.verbose:
                logger.info("Raw response:\n%s", text)
            return text

        raise OracleError(
            f"Oracle call failed after retry: {last_error or 'timeout'}"
        ) from last_error
