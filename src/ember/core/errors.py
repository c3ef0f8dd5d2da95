"""
Error taxonomy for Ember.

Every failure surfaced by the orchestration core is a PentestError carrying
a kind, a retryable flag and structured context, so callers can decide how
to react without parsing messages.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Category of a PentestError."""

    VALIDATION = "validation"
    FILESYSTEM = "filesystem"
    CONFIG = "config"
    GIT = "git"
    TOOL = "tool"
    PROMPT = "prompt"
    NETWORK = "network"
    EXECUTION = "execution"
    STATE = "state"


class PentestError(Exception):
    """
    Structured error raised by the orchestration core.

    Args:
        message: Human readable message.
        kind: Error category.
        retryable: Whether the retry loop may try again.
        context: Extra structured data (agent name, paths, ...).
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind | str = ErrorKind.EXECUTION,
        retryable: bool = False,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = ErrorKind(kind)
        self.retryable = retryable
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for audit records."""
        return {
            "message": self.message,
            "kind": self.kind.value,
            "retryable": self.retryable,
            "context": self.context,
            "timestamp": self.timestamp,
        }


class NotFoundError(PentestError):
    """A session, agent, phase, checkpoint or finding does not exist."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, ErrorKind.STATE, retryable=False, context=context)


class PrerequisiteError(PentestError):
    """An agent was requested before its prerequisites completed."""

    def __init__(self, agent_name: str, missing: list[str]) -> None:
        super().__init__(
            f"Cannot run {agent_name}: prerequisite agent(s) not completed: {', '.join(missing)}",
            ErrorKind.STATE,
            retryable=False,
            context={"agent": agent_name, "missing": missing},
        )
        self.missing = missing


class ValidationError(PentestError):
    """Malformed input such as a bad agent range."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, ErrorKind.VALIDATION, retryable=False, context=context)


class QueueValidationError(ValidationError):
    """A vulnerability analysis left an inconsistent queue/deliverable pair."""


class InvalidTransitionError(ValidationError):
    """A remediation status change not allowed by the status state machine."""

    def __init__(self, old_status: str, new_status: str, allowed: list[str]) -> None:
        super().__init__(
            f"Invalid status transition from '{old_status}' to '{new_status}'",
            context={"old_status": old_status, "new_status": new_status, "valid_transitions": allowed},
        )
        self.old_status = old_status
        self.new_status = new_status


class GitError(PentestError):
    """A git command failed."""

    def __init__(
        self,
        message: str,
        command: list[str] | None = None,
        stderr: str = "",
        retryable: bool = False,
    ) -> None:
        super().__init__(
            message,
            ErrorKind.GIT,
            retryable=retryable,
            context={"command": command or [], "stderr": stderr},
        )
        self.stderr = stderr
