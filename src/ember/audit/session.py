"""
Audit session facade.

Composes the per-attempt AgentLogger and the MetricsTracker. Every write to
session.json happens under an asyncio lock shared by all AuditSession
instances of the same session id, and re-reads the record first, so agents
running concurrently in one phase never overwrite each other's results.
"""

from __future__ import annotations

import asyncio
import weakref
from pathlib import Path
from typing import Any

import structlog

from ember.audit.logger import AgentLogger
from ember.audit.metrics import MetricsTracker
from ember.audit.models import AgentMetrics, AttemptResult, AuditSessionInfo
from ember.audit.paths import AuditPaths
from ember.core.errors import ErrorKind, PentestError, ValidationError
from ember.core.session_store import Session

logger = structlog.get_logger(__name__)

_session_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def session_lock(session_id: str) -> asyncio.Lock:
    """Return the mutex guarding one session's audit record."""
    lock = _session_locks.get(session_id)
    if lock is None:
        lock = asyncio.Lock()
        _session_locks[session_id] = lock
    return lock


class AuditSession:
    """
    Crash-safe audit trail for one session.

    Usage:
        audit = AuditSession(session, audit_root)
        await audit.start_agent("recon", prompt, attempt_number=1)
        await audit.log_event("tool_call", {...})
        await audit.end_agent("recon", AttemptResult(...))
    """

    def __init__(self, session: Session, audit_root: Path | str) -> None:
        if not session.id:
            raise ValidationError("Session id is required for auditing")
        if not session.web_url:
            raise ValidationError("Session webUrl is required for auditing")

        self.session_id = session.id
        self.paths = AuditPaths(audit_root, session.web_url, session.id)
        self._info = AuditSessionInfo(
            id=session.id,
            web_url=session.web_url,
            repo_path=session.repo_path,
            target_repo=session.target_repo,
            config_file=session.config_file,
            base_commit=session.base_commit,
            status=session.status.value,
            created_at=session.created_at,
        )
        self.metrics_tracker = MetricsTracker(self._info, self.paths)
        self.current_logger: AgentLogger | None = None
        self.current_agent: str | None = None
        self.initialized = False
        self._lock = session_lock(session.id)

    async def initialize(self) -> None:
        """Create the audit folder and load or create session.json. Idempotent."""
        if self.initialized:
            return
        async with self._lock:
            self.paths.ensure()
            await self.metrics_tracker.initialize()
        self.initialized = True

    async def ensure_initialized(self) -> None:
        if not self.initialized:
            await self.initialize()

    async def start_agent(self, agent_name: str, prompt: str, attempt_number: int = 1) -> None:
        """
        Open the attempt's log stream and start its timer.

        The prompt snapshot is only written on the first attempt so it keeps
        the original input rather than retry-augmented context.
        """
        await self.ensure_initialized()

        if attempt_number == 1:
            await AgentLogger.save_prompt(self.paths, agent_name, prompt)

        agent_logger = AgentLogger(self.paths, agent_name, attempt_number)
        await agent_logger.initialize()
        self.current_logger = agent_logger
        self.current_agent = agent_name

        self.metrics_tracker.start_agent(agent_name, attempt_number)
        logger.debug("audit_agent_started", session_id=self.session_id, agent=agent_name, attempt=attempt_number)

    async def log_event(self, event_type: str, payload: dict[str, Any] | None = None) -> None:
        """Append an event to the current attempt's log."""
        if self.current_logger is None:
            raise PentestError(
                "No active logger. Call start_agent() before log_event().",
                ErrorKind.STATE,
                context={"session_id": self.session_id, "event": event_type},
            )
        await self.current_logger.log_event(event_type, payload)

    async def end_agent(self, agent_name: str, result: AttemptResult) -> AgentMetrics:
        """Close the attempt's log and record the attempt in session.json."""
        await self.ensure_initialized()

        if self.current_logger is not None:
            await self.current_logger.log_event(
                "agent_end",
                {
                    "agent": agent_name,
                    "attempt": result.attempt_number,
                    "success": result.success,
                    "duration_ms": result.duration_ms,
                    "cost_usd": result.cost_usd,
                    "error": result.error,
                },
            )
            await self.current_logger.close()
        self.current_logger = None
        self.current_agent = None

        async with self._lock:
            await self.metrics_tracker.reload()
            return await self.metrics_tracker.end_agent(agent_name, result)

    async def mark_multiple_rolled_back(self, agent_names: list[str]) -> list[str]:
        """Mark agents rolled back; repeated calls are no-ops."""
        await self.ensure_initialized()
        async with self._lock:
            await self.metrics_tracker.reload()
            return await self.metrics_tracker.mark_multiple_rolled_back(agent_names)

    async def update_session_status(self, status: str) -> None:
        await self.ensure_initialized()
        async with self._lock:
            await self.metrics_tracker.reload()
            await self.metrics_tracker.update_session_status(status)

    async def get_metrics(self) -> dict[str, Any]:
        """Current audit record, re-read from disk."""
        await self.ensure_initialized()
        async with self._lock:
            await self.metrics_tracker.reload()
            return self.metrics_tracker.get_metrics()
