"""
Default agent prompts.

Real prompt templates belong to the executor; Ember only needs a minimal
instruction naming the agent, the target and the deliverables the output
validator will look for. Vulnerability and exploitation agents also get
what exploit memory already knows about the target.
"""

from __future__ import annotations

from typing import Awaitable, Callable

import structlog

from ember.config.context import RunContext
from ember.core.agents import Agent, Phase
from ember.core.validators import (
    analysis_deliverable_name,
    exploitation_evidence_name,
    exploitation_queue_name,
)
from ember.tools.exploit_memory import format_exploit_memory_context, query_exploit_memory

logger = structlog.get_logger(__name__)

PromptBuilder = Callable[[Agent, RunContext], Awaitable[str]]

_FIXED_DELIVERABLES: dict[str, tuple[str, ...]] = {
    "pre-recon": ("code_analysis_deliverable.md",),
    "recon": ("recon_deliverable.md",),
    "report": ("comprehensive_security_assessment_report.md",),
}


def required_deliverables(agent: Agent) -> tuple[str, ...]:
    """Files an agent must leave in the deliverables folder."""
    if agent.name in _FIXED_DELIVERABLES:
        return _FIXED_DELIVERABLES[agent.name]
    vuln_type = agent.vuln_type
    if vuln_type is None:
        return ()
    if agent.phase is Phase.VULNERABILITY_ANALYSIS:
        return analysis_deliverable_name(vuln_type), exploitation_queue_name(vuln_type)
    return (exploitation_evidence_name(vuln_type),)


def base_prompt(agent: Agent, context: RunContext) -> str:
    """Plain instruction for one agent."""
    lines = [
        f"You are the {agent.display_name} ({agent.phase.value} phase).",
        f"Target URL: {context.web_url}",
        f"Source repository: {context.target_dir}",
    ]
    if context.config_file:
        lines.append(f"Configuration: {context.config_file}")

    deliverables = required_deliverables(agent)
    if deliverables:
        lines.append("")
        lines.append("Save these deliverables with the save_deliverable tool:")
        lines.extend(f"- {context.settings.output.deliverables_dirname}/{name}" for name in deliverables)
    if agent.phase is Phase.VULNERABILITY_ANALYSIS:
        lines.append('The exploitation queue must be JSON of the form {"vulnerabilities": [...]}.')
    return "\n".join(lines) + "\n"


async def build_default_prompt(agent: Agent, context: RunContext) -> str:
    """Base prompt plus the exploit memory section where it applies."""
    prompt = base_prompt(agent, context)
    if agent.vuln_type is None or not context.settings.exploit_memory.enabled:
        return prompt

    memory = await query_exploit_memory(
        context,
        include_patterns=True,
        include_credentials=agent.phase is Phase.EXPLOITATION,
    )
    if not memory.success:
        logger.warning("exploit_memory_unavailable", agent=agent.name, error=memory.error)
        return prompt
    return prompt + format_exploit_memory_context(memory.data)
