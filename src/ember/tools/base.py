"""
Base types for agent-facing tools.

Tools are called by the external agent executor with the RunContext of the
current run. They never raise: every failure comes back as a ToolResult
with ``success=False`` so the agent can read the error and react.
"""

from __future__ import annotations

import asyncio
import functools
import json
import traceback
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

import structlog

from ember.core.errors import PentestError
from ember.core.retry_policy import handle_tool_error

logger = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


@dataclass
class ToolResult:
    """Result from a tool execution."""

    success: bool
    output: str
    error: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    artifacts: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_content(self) -> str:
        """Text handed back to the agent."""
        if self.success:
            return json.dumps({"status": "success", "message": self.output, **self.data}, default=str)
        return json.dumps(
            {"status": "error", "message": self.error, **self.metadata},
            default=str,
        )

    @classmethod
    def failure(cls, error: str, **metadata: Any) -> "ToolResult":
        return cls(success=False, output="", error=error, metadata=metadata)


def handle_tool_errors(tool_name: str, log_traceback: bool = False) -> Callable[[F], F]:
    """
    Decorator turning exceptions from an async tool into failed ToolResults.

    PentestErrors keep their kind, retryable flag and context in the
    result metadata. Anything else goes through ``handle_tool_error``, which
    logs it and decides whether it is worth retrying.

    Usage:
        @handle_tool_errors("save_deliverable")
        async def save_deliverable(context, ...):
            ...
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> ToolResult:
            try:
                result = await func(*args, **kwargs)
            except asyncio.CancelledError:
                raise
            except PentestError as e:
                logger.warning(f"{tool_name}_failed", error=e.message, kind=e.kind.value)
                return ToolResult.failure(
                    e.message,
                    kind=e.kind.value,
                    retryable=e.retryable,
                    context=e.context,
                )
            except Exception as e:
                if log_traceback:
                    logger.error(f"{tool_name}_error", error=str(e), traceback=traceback.format_exc())
                error = handle_tool_error(tool_name, e)["error"]
                return ToolResult.failure(
                    f"Tool execution failed: {e}",
                    kind=error.kind.value,
                    retryable=error.retryable,
                    exception=type(e).__name__,
                    context=error.context,
                )

            if not isinstance(result, ToolResult):
                logger.warning(f"{tool_name}_invalid_return", return_type=type(result).__name__)
                return ToolResult(success=True, output=str(result) if result else "")
            return result

        return wrapper  # type: ignore

    return decorator
