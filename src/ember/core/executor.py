"""
Agent executor contract.

The AI agent loop itself lives outside Ember. Ember only needs something it
can await with a prompt and a RunContext and that reports back an
AgentResult; ``retryable`` on a failed result is authoritative for the
retry loop.
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from ember.config.context import RunContext
from ember.core.errors import ErrorKind, PentestError


@dataclass
class AgentResult:
    """Outcome of one executor call."""

    success: bool
    result: str | None = None
    duration: float = 0.0  # milliseconds
    cost: float = 0.0  # USD
    turns: int = 0
    api_error_detected: bool = False
    partial_cost: float = 0.0
    error: str | None = None
    error_type: str | None = None
    retryable: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def total_cost(self) -> float:
        """Cost to attribute to the attempt, including partial spend on failure."""
        return self.cost if self.cost else self.partial_cost

    def to_error(self, agent_name: str) -> PentestError:
        """Convert a failed result into the error the retry loop reacts to."""
        return PentestError(
            self.error or f"Agent {agent_name} failed without an error message",
            ErrorKind.EXECUTION,
            retryable=self.retryable,
            context={"agent": agent_name, "error_type": self.error_type},
        )


@runtime_checkable
class AgentExecutor(Protocol):
    """Anything that can run one agent attempt."""

    async def __call__(
        self,
        prompt: str,
        context: RunContext,
        *,
        agent_name: str,
        description: str,
        attempt: int,
    ) -> AgentResult: ...


def load_executor(import_path: str) -> AgentExecutor:
    """
    Resolve an executor from a ``package.module:attribute`` path.

    A class attribute is instantiated with no arguments; any other callable
    is used as is.

    Raises:
        PentestError: With kind ``config`` if the path cannot be resolved.
    """
    module_name, sep, attribute = import_path.partition(":")
    if not sep or not module_name or not attribute:
        raise PentestError(
            f"Executor path '{import_path}' must look like 'package.module:attribute'",
            ErrorKind.CONFIG,
            context={"executor": import_path},
        )

    try:
        module = importlib.import_module(module_name)
        target = getattr(module, attribute)
    except (ImportError, AttributeError) as e:
        raise PentestError(
            f"Cannot load executor '{import_path}': {e}",
            ErrorKind.CONFIG,
            context={"executor": import_path},
        ) from e

    executor = target() if isinstance(target, type) else target
    if not callable(executor):
        raise PentestError(
            f"Executor '{import_path}' is not callable",
            ErrorKind.CONFIG,
            context={"executor": import_path},
        )
    return executor
