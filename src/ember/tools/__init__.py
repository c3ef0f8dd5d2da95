"""
Ember agent tools.

Tools the external agent executor can expose to agents. Each takes the
RunContext of the current run as its first argument and returns a
ToolResult; failures never raise.

Tools:
- save_deliverable: Write a deliverable, validating queues and feeding exploit memory
- verify_remediation: Move a finding through its remediation lifecycle
- save_exploit_result: Record a finding and an exploitation attempt
- query_exploit_memory: What earlier sessions learned about a hostname
"""

from typing import Any, Awaitable, Callable

from ember.tools.base import ToolResult, handle_tool_errors
from ember.tools.deliverables import (
    DELIVERABLE_FILENAMES,
    DeliverableType,
    deliverable_schema,
    save_deliverable,
)
from ember.tools.exploit_memory import (
    format_exploit_memory_context,
    query_exploit_memory,
    save_exploit_result,
)
from ember.tools.remediation import VERIFIABLE_STATUSES, verify_remediation

ToolHandler = Callable[..., Awaitable[ToolResult]]

TOOLS: dict[str, ToolHandler] = {
    "save_deliverable": save_deliverable,
    "verify_remediation": verify_remediation,
    "save_exploit_result": save_exploit_result,
    "query_exploit_memory": query_exploit_memory,
}


def get_tool(name: str) -> ToolHandler:
    """Look up a tool handler by name."""
    try:
        return TOOLS[name]
    except KeyError:
        raise KeyError(f"Tool '{name}' not found. Available: {', '.join(sorted(TOOLS))}") from None


async def call_tool(name: str, context: Any, **arguments: Any) -> ToolResult:
    """Run a tool by name with keyword arguments from the agent."""
    return await get_tool(name)(context, **arguments)


__all__ = [
    "DELIVERABLE_FILENAMES",
    "DeliverableType",
    "TOOLS",
    "ToolHandler",
    "ToolResult",
    "VERIFIABLE_STATUSES",
    "call_tool",
    "deliverable_schema",
    "format_exploit_memory_context",
    "get_tool",
    "handle_tool_errors",
    "query_exploit_memory",
    "save_deliverable",
    "save_exploit_result",
    "verify_remediation",
]
