"""
Test doubles for the external agent executor.

Lives next to conftest.py so CLI tests can point EMBER_EXECUTOR at
``ember_fakes:CompletingExecutor``.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Union

from ember.config.context import RunContext
from ember.core.agents import AGENTS, Phase
from ember.core.executor import AgentResult
from ember.core.prompts import required_deliverables

Step = Union[AgentResult, BaseException, Callable[[RunContext], AgentResult]]


def write_deliverables(deliverables_dir: Path, agent_name: str, queue: dict[str, Any] | None = None) -> list[Path]:
    """Create the files an agent's output validator expects."""
    agent = AGENTS[agent_name]
    deliverables_dir.mkdir(parents=True, exist_ok=True)

    written = []
    for name in required_deliverables(agent):
        path = deliverables_dir / name
        if name.endswith(".json"):
            path.write_text(json.dumps(queue or {"vulnerabilities": []}), encoding="utf-8")
        else:
            path.write_text(f"# {agent.display_name}\n\nDone.\n", encoding="utf-8")
        written.append(path)
    return written


def ok(cost: float = 0.01, duration: float = 1000.0, text: str = "done") -> AgentResult:
    return AgentResult(success=True, result=text, duration=duration, cost=cost, turns=3)


def failed(error: str, retryable: bool, cost: float = 0.0, duration: float = 500.0) -> AgentResult:
    return AgentResult(
        success=False,
        error=error,
        error_type="TestError",
        retryable=retryable,
        duration=duration,
        partial_cost=cost,
    )


class ScriptedExecutor:
    """
    Executor replaying a script of steps per agent.

    A step is an AgentResult (returned as is), an exception (raised) or a
    callable taking the RunContext. When an agent's script runs out, the
    agent completes normally: deliverables are written and a success
    result returned.
    """

    def __init__(self, scripts: dict[str, list[Step]] | None = None, cost: float = 0.01) -> None:
        self.scripts = {name: list(steps) for name, steps in (scripts or {}).items()}
        self.cost = cost
        self.calls: list[tuple[str, int]] = []
        self.prompts: dict[str, str] = {}

    async def __call__(
        self,
        prompt: str,
        context: RunContext,
        *,
        agent_name: str,
        description: str,
        attempt: int,
    ) -> AgentResult:
        self.calls.append((agent_name, attempt))
        self.prompts[agent_name] = prompt

        steps = self.scripts.get(agent_name)
        if steps:
            step = steps.pop(0)
            if isinstance(step, BaseException):
                raise step
            if isinstance(step, AgentResult):
                return step
            return step(context)

        write_deliverables(context.deliverables_dir, agent_name)
        return ok(cost=self.cost)

    def attempts_for(self, agent_name: str) -> list[int]:
        return [attempt for name, attempt in self.calls if name == agent_name]


class CompletingExecutor(ScriptedExecutor):
    """Executor that completes every agent on its first attempt."""

    def __init__(self) -> None:
        super().__init__()


def completes_with_queue(vulnerabilities: list[dict[str, Any]]) -> Callable[[RunContext], AgentResult]:
    """Step for a vuln agent that leaves a queue with the given findings."""

    def step(context: RunContext) -> AgentResult:
        write_deliverables(context.deliverables_dir, context.agent_name, {"vulnerabilities": vulnerabilities})
        return ok()

    return step


def exploit_agents() -> list[str]:
    return [name for name, agent in AGENTS.items() if agent.phase is Phase.EXPLOITATION]
