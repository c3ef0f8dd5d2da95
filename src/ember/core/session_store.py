"""
Session store for Ember.

The session store is the minimal orchestration state: which agents of a run
completed or failed and which workspace commit each completed agent left
behind. It is a cache derived from the audit records (see
``ember.core.reconciler``) and can be deleted at any time.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

import structlog

from ember.core.agents import AGENT_ORDER, AGENTS, Agent, Phase, validate_agent
from ember.core.errors import ErrorKind, NotFoundError, PentestError, PrerequisiteError
from ember.utils.files import atomic_write_json, read_json, utc_now_iso

logger = structlog.get_logger(__name__)


class SessionStatus(str, Enum):
    """Overall status of a run."""

    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


class StoreCorruptedError(PentestError):
    """The session store file exists but cannot be parsed."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(
            f"Session store {path} is corrupted: {reason}",
            ErrorKind.FILESYSTEM,
            retryable=False,
            context={"path": str(path)},
        )


def order_agent_names(agent_names: set[str] | list[str]) -> list[str]:
    """Sort agent names by registry order, unknown names last."""
    known = [name for name in AGENT_ORDER if name in agent_names]
    unknown = sorted(name for name in agent_names if name not in AGENTS)
    return known + unknown


@dataclass
class Session:
    """One run against a (web url, repository) pair."""

    id: str
    web_url: str
    repo_path: str
    target_repo: str
    config_file: str | None = None
    status: SessionStatus = SessionStatus.IN_PROGRESS
    completed_agents: list[str] = field(default_factory=list)
    failed_agents: list[str] = field(default_factory=list)
    checkpoints: dict[str, str] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now_iso)
    last_activity: str = field(default_factory=utc_now_iso)
    base_commit: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the on-disk representation."""
        return {
            "id": self.id,
            "webUrl": self.web_url,
            "repoPath": self.repo_path,
            "targetRepo": self.target_repo,
            "configFile": self.config_file,
            "status": self.status.value,
            "completedAgents": order_agent_names(self.completed_agents),
            "failedAgents": order_agent_names(self.failed_agents),
            "checkpoints": dict(self.checkpoints),
            "createdAt": self.created_at,
            "lastActivity": self.last_activity,
            "baseCommit": self.base_commit,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        """Create from the on-disk representation, rejecting malformed entries."""
        try:
            return cls(
                id=str(data["id"]),
                web_url=str(data["webUrl"]),
                repo_path=str(data["repoPath"]),
                target_repo=str(data.get("targetRepo") or data["repoPath"]),
                config_file=data.get("configFile"),
                status=SessionStatus(data.get("status", SessionStatus.IN_PROGRESS.value)),
                completed_agents=list(data.get("completedAgents", [])),
                failed_agents=list(data.get("failedAgents", [])),
                checkpoints=dict(data.get("checkpoints", {})),
                created_at=data.get("createdAt") or utc_now_iso(),
                last_activity=data.get("lastActivity") or utc_now_iso(),
                base_commit=data.get("baseCommit"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Invalid session record: {e}") from e


_UPDATABLE_FIELDS = {
    "status",
    "completed_agents",
    "failed_agents",
    "checkpoints",
    "target_repo",
    "config_file",
    "base_commit",
}


class SessionStore:
    """
    JSON-file backed store of sessions keyed by id.

    Every mutation rewrites the whole document atomically. Mutations are
    serialized with an asyncio lock so concurrent agents of one phase can
    record their results safely.
    """

    def __init__(self, store_file: Path | str) -> None:
        self._store_file = Path(store_file)
        self._lock = asyncio.Lock()

    @property
    def store_file(self) -> Path:
        return self._store_file

    def exists(self) -> bool:
        return self._store_file.exists()

    def load(self) -> dict[str, Session]:
        """
        Load all sessions.

        Returns:
            Mapping of session id to Session (empty when no store exists).

        Raises:
            StoreCorruptedError: If the file is unreadable or malformed.
        """
        if not self._store_file.exists():
            return {}

        try:
            data = read_json(self._store_file)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreCorruptedError(self._store_file, str(e)) from e

        if not isinstance(data, dict) or not isinstance(data.get("sessions", {}), dict):
            raise StoreCorruptedError(self._store_file, "expected an object with a 'sessions' map")

        sessions: dict[str, Session] = {}
        for session_id, raw in data.get("sessions", {}).items():
            try:
                sessions[session_id] = Session.from_dict(raw)
            except ValueError as e:
                raise StoreCorruptedError(self._store_file, str(e)) from e
        return sessions

    def save(self, sessions: dict[str, Session]) -> None:
        """Persist all sessions atomically."""
        atomic_write_json(
            self._store_file,
            {"sessions": {session_id: s.to_dict() for session_id, s in sessions.items()}},
        )

    def get_session(self, session_id: str) -> Session | None:
        """Return a session by id, or None if it does not exist."""
        return self.load().get(session_id)

    def list_sessions(self) -> list[Session]:
        """All sessions, most recently active first."""
        return sorted(self.load().values(), key=lambda s: s.last_activity, reverse=True)

    def find_active_session(self, web_url: str, repo_path: str) -> Session | None:
        """Return the in-progress session for a (web url, repo path) pair, if any."""
        for session in self.load().values():
            if (
                session.web_url == web_url
                and session.repo_path == repo_path
                and session.status is SessionStatus.IN_PROGRESS
            ):
                return session
        return None

    async def create_session(
        self,
        web_url: str,
        repo_path: str,
        config_file: str | None = None,
        target_repo: str | None = None,
    ) -> Session:
        """
        Create a session, or return the in-progress one for the same pair.

        Reuse is keyed on (web_url, repo_path); a completed session is never
        reused.
        """
        async with self._lock:
            sessions = self.load()
            for existing in sessions.values():
                if (
                    existing.web_url == web_url
                    and existing.repo_path == repo_path
                    and existing.status is SessionStatus.IN_PROGRESS
                ):
                    logger.info("session_reused", session_id=existing.id, web_url=web_url)
                    return existing

            session = Session(
                id=str(uuid.uuid4()),
                web_url=web_url,
                repo_path=repo_path,
                target_repo=target_repo or repo_path,
                config_file=config_file,
            )
            sessions[session.id] = session
            self.save(sessions)

        logger.info("session_created", session_id=session.id, web_url=web_url, repo_path=repo_path)
        return session

    async def put_session(self, session: Session) -> None:
        """Insert or replace a session record as-is."""
        async with self._lock:
            sessions = self._load_or_empty()
            sessions[session.id] = session
            self.save(sessions)

    async def update_session(self, session_id: str, **updates: Any) -> Session:
        """
        Apply field updates to a session and refresh its activity timestamp.

        Raises:
            NotFoundError: If the session does not exist.
        """
        unknown = set(updates) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update session fields: {', '.join(sorted(unknown))}")
        return await self._mutate(session_id, lambda session: updates)

    async def _mutate(
        self,
        session_id: str,
        compute: Callable[[Session], dict[str, Any]],
    ) -> Session:
        """Load, update and save one session while holding the store lock."""
        async with self._lock:
            sessions = self.load()
            session = sessions.get(session_id)
            if session is None:
                raise NotFoundError(f"Session {session_id} not found", context={"session_id": session_id})

            for key, value in compute(session).items():
                if key == "status":
                    value = SessionStatus(value)
                setattr(session, key, value)
            session.last_activity = utc_now_iso()

            self.save(sessions)
            return session

    async def mark_agent_completed(self, session_id: str, agent_name: str, checkpoint: str) -> Session:
        """Record a successful agent and its workspace commit."""
        validate_agent(agent_name)

        def compute(session: Session) -> dict[str, Any]:
            completed = set(session.completed_agents) | {agent_name}
            all_done = len(completed & set(AGENTS)) == len(AGENTS)
            return {
                "completed_agents": order_agent_names(completed),
                "failed_agents": order_agent_names(set(session.failed_agents) - {agent_name}),
                "checkpoints": {**session.checkpoints, agent_name: checkpoint},
                "status": SessionStatus.COMPLETED if all_done else SessionStatus.IN_PROGRESS,
            }

        updated = await self._mutate(session_id, compute)
        logger.info("agent_marked_completed", session_id=session_id, agent=agent_name, checkpoint=checkpoint)
        return updated

    async def mark_agent_failed(self, session_id: str, agent_name: str) -> Session:
        """Record a failed agent. An agent is never both completed and failed."""
        validate_agent(agent_name)

        def compute(session: Session) -> dict[str, Any]:
            return {
                "completed_agents": order_agent_names(set(session.completed_agents) - {agent_name}),
                "failed_agents": order_agent_names(set(session.failed_agents) | {agent_name}),
                "checkpoints": {k: v for k, v in session.checkpoints.items() if k != agent_name},
            }

        updated = await self._mutate(session_id, compute)
        logger.info("agent_marked_failed", session_id=session_id, agent=agent_name)
        return updated

    async def rollback_to_agent(self, session_id: str, agent_name: str) -> Session:
        """
        Forget every completed agent ordered after ``agent_name``.

        Only bookkeeping is changed; the caller resets the workspace.

        Raises:
            NotFoundError: If the session or the agent's checkpoint is missing.
        """
        target = validate_agent(agent_name)

        def keep(name: str) -> bool:
            agent = AGENTS.get(name)
            return agent is not None and agent.order <= target.order

        def compute(session: Session) -> dict[str, Any]:
            if agent_name not in session.checkpoints:
                raise NotFoundError(
                    f"No checkpoint found for agent '{agent_name}' in session {session_id}",
                    context={"session_id": session_id, "agent": agent_name},
                )
            return {
                "completed_agents": [name for name in order_agent_names(session.completed_agents) if keep(name)],
                "failed_agents": [name for name in order_agent_names(session.failed_agents) if keep(name)],
                "checkpoints": {name: commit for name, commit in session.checkpoints.items() if keep(name)},
                "status": SessionStatus.IN_PROGRESS,
            }

        updated = await self._mutate(session_id, compute)
        logger.info("session_rolled_back", session_id=session_id, agent=agent_name)
        return updated

    async def delete_session(self, session_id: str) -> Session:
        """
        Delete one session.

        Raises:
            NotFoundError: If the session does not exist.
        """
        async with self._lock:
            sessions = self.load()
            session = sessions.pop(session_id, None)
            if session is None:
                raise NotFoundError(f"Session {session_id} not found", context={"session_id": session_id})
            self.save(sessions)

        logger.info("session_deleted", session_id=session_id)
        return session

    async def delete_all_sessions(self) -> bool:
        """Delete the whole store. Returns False if there was nothing to delete."""
        async with self._lock:
            if not self._store_file.exists():
                return False
            self._store_file.unlink()

        logger.info("all_sessions_deleted", store=str(self._store_file))
        return True

    async def reset(self) -> Path | None:
        """
        Move an unreadable store aside so it can be rebuilt.

        Returns:
            Path of the backup, or None if there was no store.
        """
        async with self._lock:
            if not self._store_file.exists():
                return None
            backup = self._store_file.with_name(f"{self._store_file.name}.corrupt-{uuid.uuid4().hex[:8]}")
            self._store_file.replace(backup)

        logger.warning("session_store_reset", store=str(self._store_file), backup=str(backup))
        return backup

    def _load_or_empty(self) -> dict[str, Session]:
        try:
            return self.load()
        except StoreCorruptedError:
            return {}


def check_prerequisites(session: Session, agent_name: str) -> None:
    """
    Ensure all prerequisites of an agent have completed.

    Raises:
        PrerequisiteError: Listing the missing prerequisite names.
    """
    agent = validate_agent(agent_name)
    missing = [name for name in agent.prerequisites if name not in session.completed_agents]
    if missing:
        raise PrerequisiteError(agent_name, missing)


def get_next_agent(session: Session) -> Agent | None:
    """Return the lowest-order agent not yet completed, or None when all are done."""
    for name in AGENT_ORDER:
        if name not in session.completed_agents:
            return AGENTS[name]
    return None


def get_session_status(session: Session) -> dict[str, Any]:
    """Derive display status and completion figures for a session."""
    total = len(AGENTS)
    completed_count = len([name for name in session.completed_agents if name in AGENTS])
    failed_count = len(session.failed_agents)

    if completed_count == total:
        status = SessionStatus.COMPLETED
    elif failed_count > 0:
        status = SessionStatus.FAILED
    else:
        status = SessionStatus.IN_PROGRESS

    return {
        "status": status.value,
        "completedCount": completed_count,
        "failedCount": failed_count,
        "totalAgents": total,
        "completionPercentage": round(completed_count / total * 100, 1),
    }


def _phase_summary(session: Session, phase: Phase) -> dict[str, Any]:
    names = [name for name in AGENT_ORDER if AGENTS[name].phase is phase]
    completed = [name for name in names if name in session.completed_agents]
    failed = [name for name in names if name in session.failed_agents]
    return {
        "total": len(names),
        "completed": completed,
        "failed": failed,
        "pending": [name for name in names if name not in completed and name not in failed],
        "completedCount": len(completed),
        "isComplete": len(completed) == len(names),
    }


def calculate_vulnerability_analysis_summary(session: Session) -> dict[str, Any]:
    """Summarise the vulnerability-analysis agents of a session."""
    return _phase_summary(session, Phase.VULNERABILITY_ANALYSIS)


def calculate_exploitation_summary(session: Session) -> dict[str, Any]:
    """Summarise the exploitation agents of a session."""
    summary = _phase_summary(session, Phase.EXPLOITATION)
    # Exploit agents whose analysis agent has not completed cannot run yet.
    summary["eligible"] = [
        name for name in summary["pending"]
        if all(prereq in session.completed_agents for prereq in AGENTS[name].prerequisites)
    ]
    return summary
