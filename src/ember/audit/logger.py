"""
Crash-safe per-attempt agent logger.

One AgentLogger exists per (agent, attempt). Every event is appended as a
JSON line and forced to disk before ``log_event`` returns, so a process
killed mid-attempt still leaves a complete forensic trail up to its last
event.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any

import structlog

from ember.audit.paths import AuditPaths
from ember.core.errors import ErrorKind, PentestError
from ember.utils.files import atomic_write_text, utc_now_iso

logger = structlog.get_logger(__name__)


class AgentLogger:
    """Append-only JSONL event stream for one agent attempt."""

    def __init__(self, paths: AuditPaths, agent_name: str, attempt_number: int) -> None:
        self._paths = paths
        self.agent_name = agent_name
        self.attempt_number = attempt_number
        self.started_at = datetime.now(timezone.utc)
        self.log_file: Path = paths.agent_log_file(agent_name, attempt_number, self.started_at)
        self._stream: IO[str] | None = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    async def initialize(self) -> None:
        """Open the stream and write the header event."""
        if self._stream is not None:
            return
        try:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            self._stream = open(self.log_file, "a", encoding="utf-8")
        except OSError as e:
            raise PentestError(
                f"Cannot open audit log {self.log_file}: {e}",
                ErrorKind.FILESYSTEM,
                context={"agent": self.agent_name, "path": str(self.log_file)},
            ) from e

        await self.log_event(
            "agent_start",
            {
                "agent": self.agent_name,
                "attempt": self.attempt_number,
                "session_id": self._paths.session_id,
                "started_at": self.started_at.isoformat(),
            },
        )

    async def log_event(self, event_type: str, payload: dict[str, Any] | None = None) -> None:
        """
        Append one event and fsync it.

        Raises:
            PentestError: If the logger is not open or the write cannot be
                made durable.
        """
        if self._stream is None:
            raise PentestError(
                f"Audit log for {self.agent_name} attempt {self.attempt_number} is not open",
                ErrorKind.STATE,
                context={"agent": self.agent_name},
            )

        line = json.dumps(
            {"timestamp": utc_now_iso(), "type": event_type, "data": payload or {}},
            default=str,
        )
        try:
            self._stream.write(line + "\n")
            self._stream.flush()
            os.fsync(self._stream.fileno())
        except OSError as e:
            raise PentestError(
                f"Failed to persist audit event '{event_type}': {e}",
                ErrorKind.FILESYSTEM,
                context={"agent": self.agent_name, "path": str(self.log_file)},
            ) from e

    async def close(self) -> None:
        """Close the stream. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._stream is not None:
            stream, self._stream = self._stream, None
            stream.close()

    @staticmethod
    async def save_prompt(paths: AuditPaths, agent_name: str, prompt: str) -> Path:
        """Snapshot the exact prompt an agent was started with."""
        prompt_file = paths.prompt_file(agent_name)
        header = (
            f"# Prompt snapshot: {agent_name}\n\n"
            f"**Session**: {paths.session_id}\n"
            f"**Saved**: {utc_now_iso()}\n\n"
            "---\n\n"
        )
        atomic_write_text(prompt_file, header + prompt)
        logger.debug("prompt_snapshot_saved", agent=agent_name, file=str(prompt_file))
        return prompt_file


def read_agent_log(log_file: Path) -> list[dict[str, Any]]:
    """Read back the events of an agent log, skipping a torn final line."""
    events: list[dict[str, Any]] = []
    with open(log_file, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("audit_log_line_unparseable", file=str(log_file))
    return events
