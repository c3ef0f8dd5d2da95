"""
Static agent and phase registry.

Agents form a fixed, ordered pipeline grouped into phases. The registry is
built once at import time and exposed through read-only mappings.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from ember.core.errors import NotFoundError, ValidationError


class Phase(str, Enum):
    """Pipeline phases in execution order."""

    PRE_RECONNAISSANCE = "pre-reconnaissance"
    RECONNAISSANCE = "reconnaissance"
    VULNERABILITY_ANALYSIS = "vulnerability-analysis"
    EXPLOITATION = "exploitation"
    REPORTING = "reporting"


VULN_TYPES: tuple[str, ...] = ("injection", "xss", "auth", "ssrf", "authz")


@dataclass(frozen=True)
class Agent:
    """A registry entry describing one unit of work in the pipeline."""

    name: str
    display_name: str
    phase: Phase
    order: int
    prerequisites: tuple[str, ...] = ()

    @property
    def metrics_phase(self) -> str:
        """Phase key used for this agent in audit metric rollups."""
        return _METRICS_PHASE[self.phase]

    @property
    def vuln_type(self) -> str | None:
        """Vulnerability category for vuln/exploit agents, None otherwise."""
        return vuln_type_for_agent(self.name)


_METRICS_PHASE: dict[Phase, str] = {
    Phase.PRE_RECONNAISSANCE: "pre-recon",
    Phase.RECONNAISSANCE: "recon",
    Phase.VULNERABILITY_ANALYSIS: "vulnerability-analysis",
    Phase.EXPLOITATION: "exploitation",
    Phase.REPORTING: "reporting",
}

_DISPLAY_NAMES: dict[str, str] = {
    "injection": "Injection",
    "xss": "XSS",
    "auth": "Auth",
    "ssrf": "SSRF",
    "authz": "Authz",
}


def _build_registry() -> dict[str, Agent]:
    agents = [
        Agent("pre-recon", "Pre-recon agent", Phase.PRE_RECONNAISSANCE, 1),
        Agent("recon", "Recon agent", Phase.RECONNAISSANCE, 2, ("pre-recon",)),
    ]
    order = 3
    for vuln_type in VULN_TYPES:
        agents.append(
            Agent(
                f"{vuln_type}-vuln",
                f"{_DISPLAY_NAMES[vuln_type]} vuln agent",
                Phase.VULNERABILITY_ANALYSIS,
                order,
                ("recon",),
            )
        )
        order += 1
    for vuln_type in VULN_TYPES:
        agents.append(
            Agent(
                f"{vuln_type}-exploit",
                f"{_DISPLAY_NAMES[vuln_type]} exploit agent",
                Phase.EXPLOITATION,
                order,
                (f"{vuln_type}-vuln",),
            )
        )
        order += 1
    agents.append(
        Agent(
            "report",
            "Report agent",
            Phase.REPORTING,
            order,
            tuple(f"{vuln_type}-exploit" for vuln_type in VULN_TYPES),
        )
    )
    return {agent.name: agent for agent in agents}


AGENTS: Mapping[str, Agent] = MappingProxyType(_build_registry())

AGENT_ORDER: tuple[str, ...] = tuple(sorted(AGENTS, key=lambda name: AGENTS[name].order))

PHASE_ORDER: tuple[str, ...] = tuple(phase.value for phase in Phase)

PHASES: Mapping[str, tuple[str, ...]] = MappingProxyType(
    {
        phase.value: tuple(name for name in AGENT_ORDER if AGENTS[name].phase is phase)
        for phase in Phase
    }
)


def vuln_type_for_agent(agent_name: str) -> str | None:
    """Return the vulnerability category of a vuln or exploit agent."""
    for suffix in ("-vuln", "-exploit"):
        if agent_name.endswith(suffix):
            vuln_type = agent_name[: -len(suffix)]
            if vuln_type in VULN_TYPES:
                return vuln_type
    return None


def validate_agent(agent_name: str) -> Agent:
    """
    Look up an agent by name.

    Raises:
        NotFoundError: If the name is not in the registry.
    """
    agent = AGENTS.get(agent_name)
    if agent is None:
        raise NotFoundError(
            f"Agent '{agent_name}' not recognized. Use --list-agents to see valid names.",
            context={"agent": agent_name},
        )
    return agent


def validate_agent_range(start_agent: str, end_agent: str) -> list[Agent]:
    """
    Return the ordered, inclusive slice of agents between two endpoints.

    Raises:
        NotFoundError: If either endpoint is unknown.
        ValidationError: If ``end_agent`` is ordered before ``start_agent``.
    """
    start = validate_agent(start_agent)
    end = validate_agent(end_agent)

    if end.order < start.order:
        raise ValidationError(
            f"End agent '{end_agent}' must come after start agent '{start_agent}' in sequence.",
            context={"start": start_agent, "end": end_agent},
        )

    return [AGENTS[name] for name in AGENT_ORDER if start.order <= AGENTS[name].order <= end.order]


def validate_phase(phase_name: str) -> list[Agent]:
    """
    Return the agents that belong to a phase.

    Raises:
        NotFoundError: If the phase is unknown.
    """
    if phase_name not in PHASES:
        raise NotFoundError(
            f"Phase '{phase_name}' not recognized. Valid phases: {', '.join(PHASE_ORDER)}",
            context={"phase": phase_name},
        )
    return [AGENTS[name] for name in PHASES[phase_name]]
