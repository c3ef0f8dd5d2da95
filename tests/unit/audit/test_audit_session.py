"""
Unit tests for the crash-safe audit trail.
"""

import asyncio
import json

import pytest

from ember.audit.logger import AgentLogger, read_agent_log
from ember.audit.metrics import load_audit_record
from ember.audit.models import AgentStatus, AttemptResult
from ember.audit.paths import AuditPaths, find_session_files
from ember.audit.session import AuditSession
from ember.core.errors import PentestError, ValidationError
from ember.core.session_store import Session

WEB_URL = "https://app.example.com:8443/login"


@pytest.fixture
def session():
    return Session(id="sess-42", web_url=WEB_URL, repo_path="/srv/app", target_repo="/srv/app")


@pytest.fixture
def audit(session, settings):
    return AuditSession(session, settings.output.audit_logs_dir)


def attempt(number, success, cost=0.0, duration=1000, checkpoint=None, final=False):
    return AttemptResult(
        attempt_number=number,
        duration_ms=duration,
        cost_usd=cost,
        success=success,
        error=None if success else f"attempt {number} failed",
        checkpoint=checkpoint,
        is_final_attempt=final,
    )


class TestPaths:
    """Test the deterministic audit layout."""

    def test_session_dir_uses_sanitized_hostname(self, tmp_path):
        """Folder is <hostname>_<session id> with unsafe characters replaced."""
        paths = AuditPaths(tmp_path, WEB_URL, "sess-42")
        assert paths.session_dir == tmp_path / "app-example-com_sess-42"
        assert paths.session_file.name == "session.json"
        assert paths.prompt_file("recon") == paths.prompts_dir / "recon.md"

    def test_agent_log_file_name(self, tmp_path):
        """Attempt logs carry the agent and attempt number."""
        log_file = AuditPaths(tmp_path, WEB_URL, "s").agent_log_file("recon", 2)
        assert log_file.parent.name == "agents"
        assert log_file.name.endswith("_recon_attempt-2.log")

    def test_find_session_files(self, tmp_path):
        """Only <dir>/session.json files are found."""
        (tmp_path / "a_1").mkdir()
        (tmp_path / "a_1" / "session.json").write_text("{}")
        (tmp_path / "stray.json").write_text("{}")

        assert [p.parent.name for p in find_session_files(tmp_path)] == ["a_1"]
        assert find_session_files(tmp_path / "missing") == []


class TestInitialization:
    """Test session.json creation."""

    def test_requires_session_identity(self, settings):
        """Sessions without id or web url cannot be audited."""
        with pytest.raises(ValidationError):
            AuditSession(Session(id="", web_url=WEB_URL, repo_path="r", target_repo="r"), settings.output.audit_logs_dir)
        with pytest.raises(ValidationError):
            AuditSession(Session(id="x", web_url="", repo_path="r", target_repo="r"), settings.output.audit_logs_dir)

    @pytest.mark.asyncio
    async def test_initialize_creates_record(self, audit):
        """The folder structure and session block are written."""
        await audit.initialize()

        data = json.loads(audit.paths.session_file.read_text())
        assert data["session"]["id"] == "sess-42"
        assert data["session"]["webUrl"] == WEB_URL
        assert data["session"]["status"] == "in-progress"
        assert data["metrics"]["agents"] == {}
        assert audit.paths.agents_dir.is_dir()
        assert audit.paths.prompts_dir.is_dir()

    @pytest.mark.asyncio
    async def test_initialize_keeps_existing_record(self, session, settings, audit):
        """A second AuditSession loads instead of overwriting."""
        await audit.start_agent("pre-recon", "prompt")
        await audit.end_agent("pre-recon", attempt(1, True, 0.1, checkpoint="c1", final=True))

        other = AuditSession(session, settings.output.audit_logs_dir)
        metrics = await other.get_metrics()

        assert metrics["metrics"]["agents"]["pre-recon"]["status"] == "success"


class TestAttempts:
    """Test recording attempts and aggregate metrics."""

    @pytest.mark.asyncio
    async def test_costs_summed_across_attempts(self, audit):
        """Cost includes failed attempts; duration only the successful one."""
        for number, cost, success, duration in ((1, 0.10, False, 500), (2, 0.15, False, 700), (3, 0.20, True, 1500)):
            await audit.start_agent("recon", "prompt", number)
            await audit.end_agent("recon", attempt(number, success, cost, duration, "c3" if success else None, success))

        metrics = (await audit.get_metrics())["metrics"]
        recon = metrics["agents"]["recon"]

        assert recon["total_cost_usd"] == 0.45
        assert recon["final_duration_ms"] == 1500
        assert len(recon["attempts"]) == 3
        assert recon["checkpoint"] == "c3"
        assert metrics["total_cost_usd"] == 0.45
        assert metrics["phases"]["recon"]["agent_count"] == 1

    @pytest.mark.asyncio
    async def test_failed_agents_excluded_from_totals(self, audit):
        """Only successful agents count toward phase and session totals."""
        await audit.start_agent("pre-recon", "p")
        await audit.end_agent("pre-recon", attempt(1, True, 0.3, 2000, "c1", True))
        await audit.start_agent("recon", "p")
        await audit.end_agent("recon", attempt(1, False, 0.5, 1000, final=True))

        metrics = (await audit.get_metrics())["metrics"]

        assert metrics["agents"]["recon"]["status"] == "failed"
        assert metrics["total_cost_usd"] == 0.3
        assert metrics["total_duration_ms"] == 2000
        assert "recon" not in metrics["phases"]
        assert metrics["phases"]["pre-recon"]["duration_percentage"] == 100.0

    @pytest.mark.asyncio
    async def test_prompt_snapshot_only_on_first_attempt(self, audit):
        """Retries keep the original prompt snapshot."""
        await audit.start_agent("recon", "original prompt", 1)
        await audit.end_agent("recon", attempt(1, False))
        await audit.start_agent("recon", "retry prompt", 2)

        snapshot = audit.paths.prompt_file("recon").read_text()
        assert "original prompt" in snapshot
        assert "retry prompt" not in snapshot

    @pytest.mark.asyncio
    async def test_start_without_end_leaves_record_unchanged(self, audit):
        """A crash mid-attempt persists nothing for that attempt."""
        await audit.start_agent("pre-recon", "p")
        await audit.end_agent("pre-recon", attempt(1, True, 0.1, checkpoint="c1", final=True))
        before = audit.paths.session_file.read_text()

        await audit.start_agent("recon", "p")
        await audit.log_event("tool_call", {"tool": "nmap"})

        assert audit.paths.session_file.read_text() == before
        record = load_audit_record(audit.paths)
        assert "recon" not in record.metrics.agents

    @pytest.mark.asyncio
    async def test_log_event_requires_active_agent(self, audit):
        """Events outside an attempt are rejected."""
        with pytest.raises(PentestError, match="No active logger"):
            await audit.log_event("tool_call")

    @pytest.mark.asyncio
    async def test_concurrent_agents_do_not_clobber(self, session, settings):
        """Parallel agents with separate AuditSessions both persist."""
        names = ["injection-vuln", "xss-vuln", "auth-vuln"]
        audits = [AuditSession(session, settings.output.audit_logs_dir) for _ in names]

        async def run(audit, name):
            await audit.start_agent(name, "p")
            await asyncio.sleep(0)
            await audit.end_agent(name, attempt(1, True, 0.01, checkpoint=f"c-{name}", final=True))

        await asyncio.gather(*(run(a, n) for a, n in zip(audits, names)))

        record = load_audit_record(audits[0].paths)
        assert set(record.metrics.agents) == set(names)
        assert record.metrics.phases["vulnerability-analysis"].agent_count == 3


class TestRollbackAndStatus:
    """Test rolled-back marking and session status."""

    @pytest.mark.asyncio
    async def test_rolled_back_kept_but_excluded(self, audit):
        """Rolled-back agents keep attempts but leave the totals."""
        await audit.start_agent("pre-recon", "p")
        await audit.end_agent("pre-recon", attempt(1, True, 0.1, 1000, "c1", True))
        await audit.start_agent("recon", "p")
        await audit.end_agent("recon", attempt(1, True, 0.2, 1000, "c2", True))

        changed = await audit.mark_multiple_rolled_back(["recon", "xss-vuln"])
        metrics = (await audit.get_metrics())["metrics"]

        assert changed == ["recon"]
        assert metrics["agents"]["recon"]["status"] == AgentStatus.ROLLED_BACK.value
        assert len(metrics["agents"]["recon"]["attempts"]) == 1
        assert metrics["total_cost_usd"] == 0.1

    @pytest.mark.asyncio
    async def test_mark_rolled_back_idempotent(self, audit):
        """A second rollback keeps the first rolled_back_at."""
        await audit.start_agent("recon", "p")
        await audit.end_agent("recon", attempt(1, True, 0.2, checkpoint="c2", final=True))

        await audit.mark_multiple_rolled_back(["recon"])
        first = (await audit.get_metrics())["metrics"]["agents"]["recon"]["rolled_back_at"]
        assert await audit.mark_multiple_rolled_back(["recon"]) == []
        second = (await audit.get_metrics())["metrics"]["agents"]["recon"]["rolled_back_at"]

        assert first == second

    @pytest.mark.asyncio
    async def test_success_after_rollback_clears_marker(self, audit):
        """Re-running a rolled-back agent makes it successful again."""
        await audit.start_agent("recon", "p")
        await audit.end_agent("recon", attempt(1, True, 0.2, checkpoint="c2", final=True))
        await audit.mark_multiple_rolled_back(["recon"])
        await audit.start_agent("recon", "p")
        await audit.end_agent("recon", attempt(1, True, 0.3, checkpoint="c3", final=True))

        recon = (await audit.get_metrics())["metrics"]["agents"]["recon"]
        assert recon["status"] == "success"
        assert recon["checkpoint"] == "c3"
        assert "rolled_back_at" not in recon
        assert recon["total_cost_usd"] == 0.5

    @pytest.mark.asyncio
    async def test_status_updates_completed_at(self, audit):
        """Terminal statuses stamp completedAt; in-progress clears it."""
        await audit.update_session_status("completed")
        assert "completedAt" in (await audit.get_metrics())["session"]

        await audit.update_session_status("in-progress")
        assert "completedAt" not in (await audit.get_metrics())["session"]


class TestAgentLogger:
    """Test the per-attempt JSONL stream."""

    @pytest.mark.asyncio
    async def test_events_written_as_json_lines(self, tmp_path):
        """Header and events are readable back in order."""
        paths = AuditPaths(tmp_path, WEB_URL, "s")
        agent_logger = AgentLogger(paths, "recon", 1)
        await agent_logger.initialize()
        await agent_logger.log_event("tool_call", {"tool": "curl"})
        await agent_logger.close()

        events = read_agent_log(agent_logger.log_file)
        assert [e["type"] for e in events] == ["agent_start", "tool_call"]
        assert events[1]["data"] == {"tool": "curl"}

    @pytest.mark.asyncio
    async def test_torn_last_line_skipped(self, tmp_path):
        """A partial line from a crash does not break reading."""
        paths = AuditPaths(tmp_path, WEB_URL, "s")
        agent_logger = AgentLogger(paths, "recon", 1)
        await agent_logger.initialize()
        await agent_logger.close()
        with open(agent_logger.log_file, "a", encoding="utf-8") as f:
            f.write('{"timestamp": "2024')

        assert len(read_agent_log(agent_logger.log_file)) == 1

    @pytest.mark.asyncio
    async def test_write_after_close_rejected(self, tmp_path):
        """Closed loggers refuse events; close is idempotent."""
        agent_logger = AgentLogger(AuditPaths(tmp_path, WEB_URL, "s"), "recon", 1)
        await agent_logger.initialize()
        await agent_logger.close()
        await agent_logger.close()

        with pytest.raises(PentestError, match="is not open"):
            await agent_logger.log_event("late")
