"""
Exploit memory store.

One SQLite database per target hostname under the configured ``db_dir``.
Findings are deduplicated by identity hash: saving a finding that is
already known merges it into the existing row instead of adding a new one.

Writers for one hostname are serialized with a per-hostname lock; stores
for different hostnames share nothing and never block each other.
"""

from __future__ import annotations

import re
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Generator, Mapping

import structlog
from sqlalchemy import create_engine, delete, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, selectinload, sessionmaker

from ember.core.errors import InvalidTransitionError, NotFoundError, ValidationError
from ember.memory.credentials import NormalizedCredential
from ember.memory.models import (
    VALID_TRANSITIONS,
    Application,
    AttackPattern,
    Base,
    Credential,
    ExploitAttempt,
    RemediationHistory,
    RemediationStatus,
    Vulnerability,
)
from ember.utils.files import utc_now_iso

logger = structlog.get_logger(__name__)

EXPLOITATION_DATA_FIELDS = ("description", "impact", "remediation")

_registry_lock = threading.RLock()
_stores: dict[Path, "ExploitMemoryStore"] = {}
_host_locks: dict[str, threading.Lock] = {}


def host_lock(hostname: str) -> threading.Lock:
    """Return the writer lock for one hostname."""
    with _registry_lock:
        lock = _host_locks.get(hostname)
        if lock is None:
            lock = threading.Lock()
            _host_locks[hostname] = lock
        return lock


def database_path(hostname: str, db_dir: Path | str) -> Path:
    """Location of a hostname's database file."""
    safe = re.sub(r"[^A-Za-z0-9.-]", "-", hostname) or "unknown"
    return Path(db_dir) / f"{safe}.db"


def merge_exploitation_data(
    existing: Mapping[str, Any] | None,
    incoming: Mapping[str, Any] | None,
) -> dict[str, Any]:
    """Overlay new non-null values on existing data; nulls never clobber."""
    merged = dict(existing or {})
    for key, value in (incoming or {}).items():
        if value is not None:
            merged[key] = value
    return merged


class ExploitMemoryStore:
    """
    Everything known about one hostname.

    Usage:
        store = get_store("app.example.com", settings.exploit_memory.db_dir)
        store.upsert_application()
        record, created = store.upsert_vulnerability({...})
    """

    def __init__(self, hostname: str, db_dir: Path | str) -> None:
        self.hostname = hostname
        self.db_path = database_path(hostname, db_dir)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._engine: Engine = create_engine(
            f"sqlite:///{self.db_path}",
            connect_args={"check_same_thread": False},
            echo=False,
        )

        @event.listens_for(self._engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        Base.metadata.create_all(self._engine)
        self._session_factory = sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False,
        )
        self._lock = host_lock(hostname)
        logger.debug("exploit_memory_opened", hostname=hostname, path=str(self.db_path))

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Serialized unit of work; commits on success, rolls back on error."""
        with self._lock:
            session = self._session_factory()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def close(self) -> None:
        self._engine.dispose()

    # Applications

    def upsert_application(self, tech_stack: list[str] | None = None) -> dict[str, Any]:
        """Ensure the application row exists, merging any new tech stack entries."""
        with self.session_scope() as session:
            app = session.scalar(select(Application).where(Application.hostname == self.hostname))
            if app is None:
                app = Application(hostname=self.hostname, tech_stack=sorted(set(tech_stack or [])))
                session.add(app)
            else:
                if tech_stack:
                    app.tech_stack = sorted(set(app.tech_stack or []) | set(tech_stack))
                app.last_seen_at = utc_now_iso()
            session.flush()
            return app.to_dict()

    def get_application(self) -> dict[str, Any] | None:
        with self.session_scope() as session:
            app = session.scalar(select(Application).where(Application.hostname == self.hostname))
            return app.to_dict() if app else None

    # Vulnerabilities

    def upsert_vulnerability(self, data: Mapping[str, Any]) -> tuple[dict[str, Any], bool]:
        """
        Insert a finding or merge it into the existing row with the same id.

        Re-discovery refreshes ``last_verified_at`` and merges
        ``exploitation_data``; it never changes ``remediation_status``.

        Args:
            data: Finding with ``id`` (its identity hash) plus vuln_type,
                source, path, sink_call, confidence and exploitation_data.

        Returns:
            (record, created)
        """
        vuln_id = data.get("id")
        if not vuln_id:
            raise ValidationError("Vulnerability id (identity hash) is required")

        now = utc_now_iso()
        with self.session_scope() as session:
            vuln = session.get(Vulnerability, vuln_id)
            created = vuln is None
            if created:
                vuln = Vulnerability(
                    id=vuln_id,
                    hostname=self.hostname,
                    vuln_type=data.get("vuln_type") or "unknown",
                    source=data.get("source") or "unknown",
                    path=data.get("path") or "unknown",
                    sink_call=data.get("sink_call"),
                    confidence=int(data.get("confidence") or 50),
                    exploitation_data=merge_exploitation_data({}, data.get("exploitation_data")),
                    remediation_status=RemediationStatus.OPEN.value,
                    session_id=data.get("session_id"),
                    first_discovered_at=now,
                    last_verified_at=now,
                )
                session.add(vuln)
            else:
                vuln.exploitation_data = merge_exploitation_data(
                    vuln.exploitation_data, data.get("exploitation_data")
                )
                if data.get("sink_call") and not vuln.sink_call:
                    vuln.sink_call = data["sink_call"]
                if data.get("confidence") is not None:
                    vuln.confidence = int(data["confidence"])
                if data.get("session_id"):
                    vuln.session_id = data["session_id"]
                vuln.last_verified_at = now
            session.flush()
            record = vuln.to_dict()

        logger.debug("vulnerability_upserted", hostname=self.hostname, id=vuln_id[:12], created=created)
        return record, created

    def get_vulnerability(self, vulnerability_id: str, include_attempts: bool = False) -> dict[str, Any] | None:
        with self.session_scope() as session:
            vuln = session.get(Vulnerability, vulnerability_id)
            return vuln.to_dict(include_attempts=include_attempts) if vuln else None

    def _require_vulnerability(self, session: Session, vulnerability_id: str) -> Vulnerability:
        vuln = session.get(Vulnerability, vulnerability_id)
        if vuln is None:
            raise NotFoundError(
                f"Vulnerability {vulnerability_id} not found",
                context={"vulnerability_id": vulnerability_id, "hostname": self.hostname},
            )
        return vuln

    def update_vulnerability_status(self, vulnerability_id: str, new_status: str) -> dict[str, Any]:
        """
        Move a finding to a new remediation status.

        The history entry is appended like any other transition.

        Raises:
            NotFoundError: If the finding does not exist.
            InvalidTransitionError: If the state machine forbids the move.
        """
        record, _ = self.transition_status(vulnerability_id, new_status)
        return record

    def transition_status(
        self,
        vulnerability_id: str,
        new_status: str,
        verification_method: str | None = None,
        notes: str | None = None,
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """
        Change status and append the history entry in one transaction.

        The old status is read in the same locked transaction that writes the
        new one.

        Returns:
            (updated record, history entry)
        """
        with self.session_scope() as session:
            vuln = self._require_vulnerability(session, vulnerability_id)
            old_status = vuln.remediation_status
            allowed = list(VALID_TRANSITIONS.get(old_status, ()))
            if new_status not in allowed:
                raise InvalidTransitionError(old_status, new_status, allowed)

            vuln.remediation_status = new_status
            vuln.last_verified_at = utc_now_iso()

            entry = RemediationHistory(
                vulnerability_id=vulnerability_id,
                old_status=old_status,
                new_status=new_status,
                verification_method=verification_method,
                notes=notes,
            )
            session.add(entry)
            session.flush()
            history = entry.to_dict()
            record = vuln.to_dict()

        logger.info(
            "vulnerability_status_changed",
            hostname=self.hostname,
            id=vulnerability_id[:12],
            old_status=old_status,
            new_status=new_status,
        )
        return record, history

    def get_remediation_history(self, vulnerability_id: str) -> list[dict[str, Any]]:
        with self.session_scope() as session:
            rows = session.scalars(
                select(RemediationHistory)
                .where(RemediationHistory.vulnerability_id == vulnerability_id)
                .order_by(RemediationHistory.id)
            )
            return [row.to_dict() for row in rows]

    def query_vulnerabilities(
        self,
        vuln_type: str | None = None,
        remediation_status: str | None = None,
        include_attempts: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Findings for this hostname, most recently verified first."""
        stmt = select(Vulnerability).where(Vulnerability.hostname == self.hostname)
        if vuln_type:
            stmt = stmt.where(Vulnerability.vuln_type == vuln_type)
        if remediation_status:
            stmt = stmt.where(Vulnerability.remediation_status == remediation_status)
        if include_attempts:
            stmt = stmt.options(selectinload(Vulnerability.attempts))
        stmt = stmt.order_by(Vulnerability.last_verified_at.desc(), Vulnerability.id)
        if limit:
            stmt = stmt.limit(limit)

        with self.session_scope() as session:
            return [vuln.to_dict(include_attempts=include_attempts) for vuln in session.scalars(stmt)]

    def count_vulnerabilities(self, vuln_type: str | None = None, remediation_status: str | None = None) -> int:
        stmt = select(func.count()).select_from(Vulnerability).where(Vulnerability.hostname == self.hostname)
        if vuln_type:
            stmt = stmt.where(Vulnerability.vuln_type == vuln_type)
        if remediation_status:
            stmt = stmt.where(Vulnerability.remediation_status == remediation_status)
        with self.session_scope() as session:
            return int(session.scalar(stmt) or 0)

    def prune_stale(self, max_age_days: int) -> int:
        """
        Delete findings not re-verified within ``max_age_days``.

        Findings with remediation history are kept so the history trail stays
        intact.

        Returns:
            Number of findings deleted.
        """
        cutoff = (datetime.now(timezone.utc) - timedelta(days=max_age_days)).isoformat()
        with self.session_scope() as session:
            triaged = select(RemediationHistory.vulnerability_id)
            stale = list(
                session.scalars(
                    select(Vulnerability)
                    .where(Vulnerability.hostname == self.hostname)
                    .where(Vulnerability.last_verified_at < cutoff)
                    .where(Vulnerability.id.not_in(triaged))
                )
            )
            for vuln in stale:
                session.delete(vuln)

        if stale:
            logger.info("stale_vulnerabilities_pruned", hostname=self.hostname, count=len(stale))
        return len(stale)

    # Exploitation attempts and patterns

    def record_exploit_attempt(
        self,
        vulnerability_id: str,
        success: bool,
        session_id: str | None = None,
        technique: str | None = None,
        payload: str | None = None,
        response_snippet: str | None = None,
    ) -> int:
        """
        Append an exploitation attempt to a finding.

        Raises:
            NotFoundError: If the finding does not exist.
        """
        with self.session_scope() as session:
            vuln = self._require_vulnerability(session, vulnerability_id)
            attempt = ExploitAttempt(
                vulnerability_id=vulnerability_id,
                session_id=session_id,
                success=success,
                technique=technique,
                payload=payload,
                response_snippet=response_snippet,
            )
            session.add(attempt)
            if success:
                vuln.last_verified_at = utc_now_iso()
            session.flush()
            return attempt.id

    def record_attack_pattern(
        self,
        pattern_type: str,
        vuln_type: str | None = None,
        description: str | None = None,
        example_payload: str | None = None,
    ) -> dict[str, Any]:
        """Record a working technique; reuse increments ``success_count``."""
        with self.session_scope() as session:
            pattern = session.scalar(select(AttackPattern).where(AttackPattern.pattern_type == pattern_type))
            if pattern is None:
                pattern = AttackPattern(
                    pattern_type=pattern_type,
                    vuln_type=vuln_type,
                    description=description,
                    example_payload=example_payload,
                    success_count=1,
                )
                session.add(pattern)
            else:
                pattern.success_count += 1
                pattern.last_used_at = utc_now_iso()
                pattern.vuln_type = vuln_type or pattern.vuln_type
                pattern.description = description or pattern.description
                pattern.example_payload = example_payload or pattern.example_payload
            session.flush()
            return pattern.to_dict()

    def get_attack_patterns(self, vuln_type: str | None = None, limit: int | None = None) -> list[dict[str, Any]]:
        """Attack patterns, most successful first."""
        stmt = select(AttackPattern)
        if vuln_type:
            stmt = stmt.where(AttackPattern.vuln_type == vuln_type)
        stmt = stmt.order_by(AttackPattern.success_count.desc(), AttackPattern.last_used_at.desc())
        if limit:
            stmt = stmt.limit(limit)
        with self.session_scope() as session:
            return [pattern.to_dict() for pattern in session.scalars(stmt)]

    # Credentials

    def record_credentials(self, credential: NormalizedCredential) -> tuple[dict[str, Any], bool]:
        """
        Insert a credential or bump the existing row with the same identity.

        Returns:
            (record, created)
        """
        with self.session_scope() as session:
            row = session.get(Credential, credential.id)
            created = row is None
            if created:
                row = Credential(
                    id=credential.id,
                    hostname=credential.hostname,
                    credential_type=credential.credential_type,
                    username=credential.username,
                    service_type=credential.service_type,
                    secret_fingerprint=credential.secret_fingerprint,
                    secret_preview=credential.secret_preview,
                    discovered_via=credential.discovered_via,
                    validated=credential.validated,
                )
                session.add(row)
            else:
                row.times_seen += 1
                row.last_seen_at = utc_now_iso()
                row.validated = row.validated or credential.validated
            session.flush()
            return row.to_dict(), created

    def get_credentials(self, credential_type: str | None = None) -> list[dict[str, Any]]:
        stmt = select(Credential).where(Credential.hostname == self.hostname)
        if credential_type:
            stmt = stmt.where(Credential.credential_type == credential_type)
        stmt = stmt.order_by(Credential.last_seen_at.desc())
        with self.session_scope() as session:
            return [row.to_dict() for row in session.scalars(stmt)]

    def clear(self) -> None:
        """Delete every row for this hostname."""
        with self.session_scope() as session:
            for model in (ExploitAttempt, RemediationHistory, Credential, AttackPattern, Vulnerability, Application):
                session.execute(delete(model))


def get_store(hostname: str, db_dir: Path | str) -> ExploitMemoryStore:
    """Return the cached store for a hostname, opening it on first use."""
    path = database_path(hostname, db_dir).resolve()
    with _registry_lock:
        store = _stores.get(path)
        if store is None:
            store = ExploitMemoryStore(hostname, db_dir)
            _stores[path] = store
        return store


def close_all_stores() -> None:
    """Dispose every open store (tests, shutdown)."""
    with _registry_lock:
        stores = list(_stores.values())
        _stores.clear()
    for store in stores:
        store.close()
