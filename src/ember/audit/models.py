"""
Schemas for the audit record (session.json).

The audit record is the canonical, crash-safe mirror of a session and of
every agent attempt. It is validated with pydantic whenever it crosses the
disk boundary; the on-disk form stays plain, camelCase-keyed JSON for the
session block and snake_case for metrics.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class AgentStatus(str, Enum):
    """Status of an agent in the audit record."""

    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled-back"


class AttemptRecord(BaseModel):
    """One agent attempt."""

    attempt_number: int
    duration_ms: float = 0
    cost_usd: float = 0.0
    success: bool
    timestamp: str
    error: str | None = None
    is_final_attempt: bool = False


class AgentMetrics(BaseModel):
    """Attempt history and derived figures for one agent."""

    status: AgentStatus
    attempts: list[AttemptRecord] = Field(default_factory=list)
    final_duration_ms: float = 0
    total_cost_usd: float = 0.0
    checkpoint: str | None = None
    rolled_back_at: str | None = None


class PhaseMetrics(BaseModel):
    """Rollup of successful agents in one phase."""

    duration_ms: float = 0
    duration_percentage: float = 0.0
    cost_usd: float = 0.0
    agent_count: int = 0


class SessionMetrics(BaseModel):
    """Session-wide aggregates plus per-agent history."""

    total_duration_ms: float = 0
    total_cost_usd: float = 0.0
    phases: dict[str, PhaseMetrics] = Field(default_factory=dict)
    agents: dict[str, AgentMetrics] = Field(default_factory=dict)


class AuditSessionInfo(BaseModel):
    """Session block of the audit record."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    web_url: str = Field(alias="webUrl")
    repo_path: str | None = Field(default=None, alias="repoPath")
    target_repo: str | None = Field(default=None, alias="targetRepo")
    config_file: str | None = Field(default=None, alias="configFile")
    base_commit: str | None = Field(default=None, alias="baseCommit")
    status: str = "in-progress"
    created_at: str = Field(alias="createdAt")
    completed_at: str | None = Field(default=None, alias="completedAt")


class AuditRecord(BaseModel):
    """Complete session.json document."""

    session: AuditSessionInfo
    metrics: SessionMetrics = Field(default_factory=SessionMetrics)

    def to_json_dict(self) -> dict:
        """Plain dict in the on-disk layout."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


@dataclass
class AttemptResult:
    """What a caller reports when an agent attempt ends."""

    attempt_number: int
    duration_ms: float
    cost_usd: float
    success: bool
    error: str | None = None
    checkpoint: str | None = None
    is_final_attempt: bool = False
