"""
Run context passed to executors, validators and tool handlers.

Everything an agent-facing component needs to know about the current run
travels in a RunContext instead of process-wide globals, so concurrent
agents of one phase (or two runs in one process) never see each other's
state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from ember.config.settings import EmberSettings, get_settings
from ember.utils.files import hostname_from_url

if TYPE_CHECKING:
    from ember.core.session_store import Session


@dataclass
class RunContext:
    """Context for one agent run within a session."""

    session_id: str
    web_url: str
    hostname: str
    target_dir: Path
    settings: EmberSettings
    config_file: str | None = None
    agent_name: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def deliverables_dir(self) -> Path:
        return self.target_dir / self.settings.output.deliverables_dirname

    @classmethod
    def from_session(
        cls,
        session: "Session",
        settings: EmberSettings | None = None,
        agent_name: str | None = None,
    ) -> "RunContext":
        """Build the context for a session, working in its target repository."""
        return cls(
            session_id=session.id,
            web_url=session.web_url,
            hostname=hostname_from_url(session.web_url),
            target_dir=Path(session.target_repo or session.repo_path),
            settings=settings or get_settings(),
            config_file=session.config_file,
            agent_name=agent_name,
        )

    def for_agent(self, agent_name: str) -> "RunContext":
        """Copy of this context bound to one agent."""
        return RunContext(
            session_id=self.session_id,
            web_url=self.web_url,
            hostname=self.hostname,
            target_dir=self.target_dir,
            settings=self.settings,
            config_file=self.config_file,
            agent_name=agent_name,
        )
