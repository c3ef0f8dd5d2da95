"""
Retry policy for agent execution.

Classifies failures as retryable or not and computes backoff delays. The
functions here are pure apart from jitter and logging; they know nothing
about git, audit logs or sessions, which lets the agent runner compose them
with checkpointing instead of embedding backoff logic in the loop.
"""

from __future__ import annotations

import random
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog

from ember.config.settings import ErrorRecoveryConfig
from ember.core.errors import ErrorKind, PentestError

logger = structlog.get_logger(__name__)

# Substrings that mark an error as permanent. Checked before the retryable ones
# so "authentication failed: connection closed" is not retried.
NON_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "authentication",
    "unauthorized",
    "forbidden",
    "permission",
    "invalid api key",
    "invalid_api_key",
    "invalid credentials",
)

RETRYABLE_PATTERNS: tuple[str, ...] = (
    "network",
    "connection",
    "timeout",
    "timed out",
    "rate limit",
    "429",
    "too many requests",
    "internal server error",
    "500",
    "502",
    "503",
    "504",
    "bad gateway",
    "service unavailable",
    "overloaded",
    "max turns",
    "maximum turns",
)

RATE_LIMIT_PATTERNS: tuple[str, ...] = ("rate limit", "429", "too many requests")

RETRYABLE_TOOL_CODES: frozenset[str] = frozenset({"ECONNRESET", "ETIMEDOUT", "ENOTFOUND"})


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of asking the policy whether to try again."""

    retry: bool
    delay: float
    reason: str


def _message_of(error: BaseException | str) -> str:
    if isinstance(error, PentestError):
        return error.message.lower()
    return str(error).lower()


def is_rate_limit_error(error: BaseException | str) -> bool:
    """Check whether an error was caused by API rate limiting."""
    message = _message_of(error)
    return any(pattern in message for pattern in RATE_LIMIT_PATTERNS)


def is_retryable_error(error: BaseException | str) -> bool:
    """
    Decide whether an agent execution error is transient.

    A PentestError's own ``retryable`` flag is authoritative. Other errors
    are classified by message; unknown errors are not retried.

    Args:
        error: Exception (or message) raised by an agent attempt.

    Returns:
        True if another attempt may succeed.
    """
    if isinstance(error, PentestError):
        return error.retryable

    message = _message_of(error)
    if any(pattern in message for pattern in NON_RETRYABLE_PATTERNS):
        return False
    return any(pattern in message for pattern in RETRYABLE_PATTERNS)


def get_retry_delay(
    error: BaseException | str,
    attempt: int,
    config: ErrorRecoveryConfig | None = None,
) -> float:
    """
    Compute the backoff delay before the next attempt.

    Rate-limit errors back off from ``rate_limit_base_seconds`` up to
    ``rate_limit_max_seconds``; everything else doubles from
    ``base_delay_seconds`` up to ``max_delay_seconds``. Random jitter of up
    to ``jitter_ratio`` of the delay is added, never exceeding the cap.

    Args:
        error: The error that ended the attempt.
        attempt: 1-based number of the attempt that just failed.
        config: Backoff settings (defaults when omitted).

    Returns:
        Delay in seconds.
    """
    config = config or ErrorRecoveryConfig()
    exponent = max(attempt, 1) - 1

    if is_rate_limit_error(error):
        base, cap = config.rate_limit_base_seconds, config.rate_limit_max_seconds
    else:
        base, cap = config.base_delay_seconds, config.max_delay_seconds

    delay = min(base * (2 ** exponent), cap)
    jitter = random.uniform(0, delay * config.jitter_ratio)
    return min(delay + jitter, cap)


def decide_retry(
    error: BaseException,
    attempt: int,
    max_attempts: int,
    config: ErrorRecoveryConfig | None = None,
) -> RetryDecision:
    """
    Combine classification and attempt budget into a single decision.

    Args:
        error: The error that ended the attempt.
        attempt: 1-based number of the attempt that just failed.
        max_attempts: Attempt ceiling for the agent.
        config: Backoff settings.

    Returns:
        RetryDecision with the delay to wait when ``retry`` is True.
    """
    if not is_retryable_error(error):
        return RetryDecision(retry=False, delay=0.0, reason="non-retryable")
    if attempt >= max_attempts:
        return RetryDecision(retry=False, delay=0.0, reason="attempts exhausted")
    return RetryDecision(
        retry=True,
        delay=get_retry_delay(error, attempt, config),
        reason="rate limited" if is_rate_limit_error(error) else "transient",
    )


def handle_tool_error(tool_name: str, error: BaseException) -> dict[str, Any]:
    """
    Convert an external tool failure into a structured result.

    Connection resets, timeouts and DNS failures are retryable, anything
    else is not.
    """
    code = getattr(error, "code", None)
    retryable = code in RETRYABLE_TOOL_CODES or isinstance(
        error, (ConnectionError, TimeoutError, socket.gaierror)
    )
    pentest_error = PentestError(
        f"Tool {tool_name} failed: {error}",
        ErrorKind.TOOL,
        retryable=retryable,
        context={"tool": tool_name, "code": code},
    )
    log_error(pentest_error, f"Tool execution: {tool_name}")
    return {
        "tool": tool_name,
        "output": f"Error: {error}",
        "status": "error",
        "duration": 0,
        "success": False,
        "error": pentest_error,
    }


def handle_prompt_error(prompt_name: str, error: BaseException) -> dict[str, Any]:
    """Convert a prompt loading failure into a structured, non-retryable result."""
    pentest_error = PentestError(
        f"Failed to load prompt '{prompt_name}': {error}",
        ErrorKind.PROMPT,
        retryable=False,
        context={"prompt": prompt_name},
    )
    log_error(pentest_error, f"Prompt loading: {prompt_name}")
    return {"success": False, "error": pentest_error}


def log_error(error: BaseException, context: str) -> dict[str, Any]:
    """
    Log an error with structlog and return the structured entry.

    Retryable errors are logged as warnings, permanent ones as errors.
    """
    if isinstance(error, PentestError):
        error_info = {
            "name": type(error).__name__,
            "message": error.message,
            "type": error.kind.value,
            "retryable": error.retryable,
        }
    else:
        error_info = {
            "name": type(error).__name__,
            "message": str(error),
            "type": "unknown",
            "retryable": is_retryable_error(error),
        }

    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "context": context,
        "error": error_info,
    }

    log = logger.warning if error_info["retryable"] else logger.error
    log(
        "pentest_error",
        context=context,
        error_type=error_info["type"],
        message=error_info["message"][:200],
        retryable=error_info["retryable"],
    )
    return entry
