"""
Session store reconciliation.

The audit records are the source of truth. Before any command runs, the
session store is brought in line with them: a missing or corrupted store is
rebuilt from every audit record found, and agents the audit trail shows as
rolled back or failed are removed from the completed set.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import structlog

from ember.audit.metrics import load_audit_record
from ember.audit.models import AgentStatus, AuditRecord
from ember.audit.paths import AuditPaths, find_session_files
from ember.core.agents import AGENTS
from ember.core.errors import PentestError
from ember.core.session_store import (
    Session,
    SessionStatus,
    SessionStore,
    StoreCorruptedError,
    order_agent_names,
)
from ember.utils.files import read_json, utc_now_iso

logger = structlog.get_logger(__name__)


@dataclass
class ReconcileReport:
    """What a reconciliation pass changed."""

    rebuilt: bool = False
    added: list[str] = field(default_factory=list)
    corrected: dict[str, list[str]] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.rebuilt or bool(self.added) or bool(self.corrected)


def session_from_audit(record: AuditRecord, base: Session | None = None) -> Session:
    """
    Derive the session store entry for an audit record.

    Completed agents and checkpoints come only from agents whose audit
    status is ``success``. Fields the audit record does not carry are taken
    from ``base`` when given.
    """
    info = record.session
    agents = record.metrics.agents

    completed = [name for name, a in agents.items() if a.status is AgentStatus.SUCCESS]
    failed = [name for name, a in agents.items() if a.status is AgentStatus.FAILED]
    checkpoints = {
        name: agents[name].checkpoint
        for name in completed
        if agents[name].checkpoint
    }

    if len(set(completed) & set(AGENTS)) == len(AGENTS):
        status = SessionStatus.COMPLETED
    elif info.status == SessionStatus.FAILED.value:
        status = SessionStatus.FAILED
    else:
        status = SessionStatus.IN_PROGRESS

    repo_path = info.repo_path or (base.repo_path if base else "")
    return Session(
        id=info.id,
        web_url=info.web_url,
        repo_path=repo_path,
        target_repo=info.target_repo or (base.target_repo if base else repo_path),
        config_file=info.config_file if info.config_file is not None else (base.config_file if base else None),
        status=status,
        completed_agents=order_agent_names(completed),
        failed_agents=order_agent_names(failed),
        checkpoints=checkpoints,
        created_at=info.created_at,
        last_activity=base.last_activity if base else utc_now_iso(),
        base_commit=info.base_commit or (base.base_commit if base else None),
    )


def _differences(current: Session, derived: Session) -> list[str]:
    changes = []
    if set(current.completed_agents) != set(derived.completed_agents):
        changes.append("completed_agents")
    if set(current.failed_agents) != set(derived.failed_agents):
        changes.append("failed_agents")
    if current.checkpoints != derived.checkpoints:
        changes.append("checkpoints")
    if current.status is not derived.status:
        changes.append("status")
    if current.base_commit != derived.base_commit:
        changes.append("base_commit")
    return changes


def _load_all_records(audit_root: Path) -> dict[str, AuditRecord]:
    records: dict[str, AuditRecord] = {}
    for session_file in find_session_files(audit_root):
        try:
            raw = read_json(session_file)
            session_id = raw["session"]["id"]
            web_url = raw["session"]["webUrl"]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("audit_record_skipped", file=str(session_file), error=str(e))
            continue
        try:
            record = load_audit_record(AuditPaths(audit_root, web_url, session_id))
        except PentestError as e:
            logger.warning("audit_record_skipped", file=str(session_file), error=e.message)
            continue
        if record is not None:
            records[session_id] = record
    return records


class Reconciler:
    """Repairs the session store from the audit trail."""

    def __init__(self, store: SessionStore, audit_root: Path | str) -> None:
        self._store = store
        self._audit_root = Path(audit_root)

    def _record_for(self, session: Session) -> AuditRecord | None:
        try:
            return load_audit_record(AuditPaths(self._audit_root, session.web_url, session.id))
        except PentestError as e:
            logger.warning("audit_record_unreadable", session_id=session.id, error=e.message)
            return None

    async def reconcile_session(self, session_id: str) -> Session | None:
        """
        Reconcile one session against its audit record.

        Returns:
            The reconciled session, or None if the store has no such session.
        """
        session = self._store.get_session(session_id)
        if session is None:
            return None

        record = self._record_for(session)
        if record is None:
            return session

        derived = session_from_audit(record, base=session)
        changes = _differences(session, derived)
        if not changes:
            return session

        updated = await self._store.update_session(
            session_id,
            completed_agents=derived.completed_agents,
            failed_agents=derived.failed_agents,
            checkpoints=derived.checkpoints,
            status=derived.status,
            base_commit=derived.base_commit,
        )
        logger.info("session_reconciled", session_id=session_id, changes=changes)
        return updated

    async def reconcile(self) -> ReconcileReport:
        """Reconcile every session, rebuilding the store if it is unusable."""
        report = ReconcileReport()
        store_missing = not self._store.exists()

        try:
            sessions = self._store.load()
        except StoreCorruptedError as e:
            logger.warning("session_store_corrupted", error=e.message)
            await self._store.reset()
            sessions = {}
            report.rebuilt = True

        records = _load_all_records(self._audit_root)
        if store_missing and records:
            report.rebuilt = True

        for session_id, record in records.items():
            current = sessions.get(session_id)
            if current is None:
                await self._store.put_session(session_from_audit(record))
                report.added.append(session_id)
                continue
            derived = session_from_audit(record, base=current)
            changes = _differences(current, derived)
            if changes:
                await self._store.update_session(
                    session_id,
                    completed_agents=derived.completed_agents,
                    failed_agents=derived.failed_agents,
                    checkpoints=derived.checkpoints,
                    status=derived.status,
                    base_commit=derived.base_commit,
                )
                report.corrected[session_id] = changes

        report.skipped = [session_id for session_id in sessions if session_id not in records]

        if report.changed:
            logger.info(
                "session_store_reconciled",
                rebuilt=report.rebuilt,
                added=len(report.added),
                corrected=len(report.corrected),
            )
        return report
