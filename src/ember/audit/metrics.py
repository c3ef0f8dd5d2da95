"""
Metrics tracker for agent attempts.

Keeps the audit record (session.json) in memory and persists it atomically
after every mutation. Aggregates are never incremented in place; they are
recomputed from the attempt history so that failed and rolled-back agents
drop out of the totals while their attempts stay on disk.
"""

from __future__ import annotations

import json
import time
from typing import Any

import structlog
from pydantic import ValidationError as SchemaError

from ember.audit.models import (
    AgentMetrics,
    AgentStatus,
    AttemptRecord,
    AttemptResult,
    AuditRecord,
    AuditSessionInfo,
    PhaseMetrics,
    SessionMetrics,
)
from ember.audit.paths import AuditPaths
from ember.core.agents import AGENTS
from ember.core.errors import ErrorKind, PentestError
from ember.utils.files import atomic_write_json, read_json, utc_now_iso

logger = structlog.get_logger(__name__)

# Float sums of USD costs are rounded so 0.10 + 0.15 + 0.20 == 0.45.
COST_PRECISION = 10


def _round_cost(value: float) -> float:
    return round(value, COST_PRECISION)


def metrics_phase_for(agent_name: str) -> str:
    """Phase rollup key for an agent; unknown agents get their own bucket."""
    agent = AGENTS.get(agent_name)
    return agent.metrics_phase if agent else agent_name


def load_audit_record(paths: AuditPaths) -> AuditRecord | None:
    """
    Read and validate a session.json.

    Returns:
        The record, or None if it does not exist.

    Raises:
        PentestError: If the file exists but is not a valid audit record.
    """
    if not paths.session_file.exists():
        return None
    try:
        return AuditRecord.model_validate(read_json(paths.session_file))
    except (OSError, json.JSONDecodeError, SchemaError) as e:
        raise PentestError(
            f"Audit record {paths.session_file} is unreadable: {e}",
            ErrorKind.FILESYSTEM,
            context={"path": str(paths.session_file)},
        ) from e


class MetricsTracker:
    """
    Per-session aggregation of agent attempts.

    ``start_agent`` only opens an in-memory timer; nothing is persisted for
    an attempt until ``end_agent``. A crash between the two therefore leaves
    the record exactly as it was before the attempt started.
    """

    def __init__(self, session_info: AuditSessionInfo, paths: AuditPaths) -> None:
        self._session_info = session_info
        self._paths = paths
        self._record: AuditRecord | None = None
        self.active_timers: dict[str, dict[str, Any]] = {}

    @property
    def is_initialized(self) -> bool:
        return self._record is not None

    @property
    def record(self) -> AuditRecord:
        if self._record is None:
            raise PentestError("Metrics tracker not initialized", ErrorKind.STATE)
        return self._record

    async def initialize(self) -> None:
        """Load the existing session.json or create a fresh one. Idempotent."""
        if self._record is not None:
            return

        existing = load_audit_record(self._paths)
        if existing is not None:
            self._record = existing
            if existing.session.base_commit is None and self._session_info.base_commit:
                existing.session.base_commit = self._session_info.base_commit
                self._save()
            logger.debug("audit_record_loaded", session_id=self._session_info.id)
            return

        self._record = AuditRecord(session=self._session_info.model_copy())
        self._save()
        logger.info("audit_record_created", session_id=self._session_info.id, file=str(self._paths.session_file))

    async def reload(self) -> None:
        """Re-read session.json so writes from other tasks are not lost."""
        existing = load_audit_record(self._paths)
        if existing is not None:
            self._record = existing

    def start_agent(self, agent_name: str, attempt_number: int) -> None:
        """Start the wall-clock timer for an attempt."""
        self.active_timers[agent_name] = {
            "attempt_number": attempt_number,
            "started": time.monotonic(),
            "started_at": utc_now_iso(),
        }

    async def end_agent(self, agent_name: str, result: AttemptResult) -> AgentMetrics:
        """
        Record a finished attempt and recompute aggregates.

        The agent's total cost sums every attempt, successful or not; the
        final duration only reflects a successful attempt.
        """
        record = self.record
        timer = self.active_timers.pop(agent_name, None)
        duration_ms = result.duration_ms
        if not duration_ms and timer is not None:
            duration_ms = round((time.monotonic() - timer["started"]) * 1000)

        attempt = AttemptRecord(
            attempt_number=result.attempt_number,
            duration_ms=duration_ms,
            cost_usd=_round_cost(result.cost_usd or 0.0),
            success=result.success,
            timestamp=utc_now_iso(),
            error=result.error,
            is_final_attempt=result.is_final_attempt,
        )

        agent = record.metrics.agents.get(agent_name)
        if agent is None:
            agent = AgentMetrics(status=AgentStatus.SUCCESS if result.success else AgentStatus.FAILED)
            record.metrics.agents[agent_name] = agent

        agent.attempts.append(attempt)
        agent.total_cost_usd = _round_cost(sum(a.cost_usd for a in agent.attempts))

        if result.success:
            agent.status = AgentStatus.SUCCESS
            agent.final_duration_ms = duration_ms
            agent.checkpoint = result.checkpoint
            agent.rolled_back_at = None
        else:
            agent.status = AgentStatus.FAILED

        self.recalculate_aggregations()
        self._save()

        logger.info(
            "agent_attempt_recorded",
            agent=agent_name,
            attempt=result.attempt_number,
            success=result.success,
            cost_usd=attempt.cost_usd,
            duration_ms=duration_ms,
        )
        return agent.model_copy(deep=True)

    def recalculate_aggregations(self) -> None:
        """Rebuild phase and session totals from successful agents only."""
        metrics = self.record.metrics
        phases: dict[str, PhaseMetrics] = {}
        total_duration = 0.0
        total_cost = 0.0

        for agent_name, agent in metrics.agents.items():
            if agent.status is not AgentStatus.SUCCESS:
                continue
            phase = phases.setdefault(metrics_phase_for(agent_name), PhaseMetrics())
            phase.duration_ms += agent.final_duration_ms
            phase.cost_usd = _round_cost(phase.cost_usd + agent.total_cost_usd)
            phase.agent_count += 1
            total_duration += agent.final_duration_ms
            total_cost += agent.total_cost_usd

        for phase in phases.values():
            phase.duration_percentage = (
                round(phase.duration_ms / total_duration * 100, 2) if total_duration else 0.0
            )

        metrics.phases = phases
        metrics.total_duration_ms = total_duration
        metrics.total_cost_usd = _round_cost(total_cost)

    async def mark_rolled_back(self, agent_name: str) -> None:
        """Mark one agent rolled back. Unknown agents are ignored."""
        await self.mark_multiple_rolled_back([agent_name])

    async def mark_multiple_rolled_back(self, agent_names: list[str]) -> list[str]:
        """
        Mark agents rolled back and recompute aggregates.

        Already rolled-back agents keep their original ``rolled_back_at``.

        Returns:
            Names whose status actually changed.
        """
        record = self.record
        now = utc_now_iso()
        changed: list[str] = []

        for name in agent_names:
            agent = record.metrics.agents.get(name)
            if agent is None or agent.status is AgentStatus.ROLLED_BACK:
                continue
            agent.status = AgentStatus.ROLLED_BACK
            agent.rolled_back_at = now
            changed.append(name)

        if changed:
            self.recalculate_aggregations()
            self._save()
            logger.info("agents_marked_rolled_back", agents=changed)
        return changed

    async def update_session_status(self, status: str) -> None:
        """Set the session status; completed and failed also stamp completedAt."""
        info = self.record.session
        info.status = status
        if status in ("completed", "failed"):
            info.completed_at = utc_now_iso()
        else:
            info.completed_at = None
        self._save()
        logger.info("audit_session_status_updated", session_id=info.id, status=status)

    def get_metrics(self) -> dict[str, Any]:
        """Deep copy of the audit record in its on-disk layout."""
        return self.record.to_json_dict()

    def _save(self) -> None:
        try:
            atomic_write_json(self._paths.session_file, self.record.to_json_dict())
        except OSError as e:
            raise PentestError(
                f"Failed to persist audit record: {e}",
                ErrorKind.FILESYSTEM,
                context={"path": str(self._paths.session_file)},
            ) from e
