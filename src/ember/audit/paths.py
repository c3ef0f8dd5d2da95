"""Deterministic locations of audit artifacts."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from ember.utils.files import hostname_from_url, sanitize_hostname


class AuditPaths:
    """
    Layout of one session's audit folder.

    audit-logs/<hostname>_<session id>/
        session.json
        agents/<timestamp>_<agent>_attempt-<n>.log
        prompts/<agent>.md
    """

    def __init__(self, audit_root: Path | str, web_url: str, session_id: str) -> None:
        self.audit_root = Path(audit_root)
        self.hostname = sanitize_hostname(hostname_from_url(web_url))
        self.session_id = session_id

    @property
    def session_dir(self) -> Path:
        return self.audit_root / f"{self.hostname}_{self.session_id}"

    @property
    def session_file(self) -> Path:
        return self.session_dir / "session.json"

    @property
    def agents_dir(self) -> Path:
        return self.session_dir / "agents"

    @property
    def prompts_dir(self) -> Path:
        return self.session_dir / "prompts"

    def agent_log_file(self, agent_name: str, attempt_number: int, started_at: datetime | None = None) -> Path:
        started_at = started_at or datetime.now(timezone.utc)
        stamp = started_at.strftime("%Y%m%dT%H%M%S%fZ")
        return self.agents_dir / f"{stamp}_{agent_name}_attempt-{attempt_number}.log"

    def prompt_file(self, agent_name: str) -> Path:
        return self.prompts_dir / f"{agent_name}.md"

    def ensure(self) -> None:
        """Create the folder structure."""
        for directory in (self.session_dir, self.agents_dir, self.prompts_dir):
            directory.mkdir(parents=True, exist_ok=True)


def find_session_files(audit_root: Path | str) -> list[Path]:
    """All session.json files under an audit root, oldest folder first."""
    root = Path(audit_root)
    if not root.exists():
        return []
    return sorted(root.glob("*/session.json"), key=lambda p: p.stat().st_mtime)
