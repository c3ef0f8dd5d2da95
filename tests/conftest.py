"""
Pytest fixtures and configuration for the Ember test suite.
"""

import os
import shutil
from pathlib import Path

import pytest

from ember.config.context import RunContext
from ember.config.settings import get_settings, reset_settings
from ember.core.session_store import SessionStore
from ember.memory.database import close_all_stores
from ember_fakes import ScriptedExecutor

# ============================================================================
# Settings Fixtures
# ============================================================================

@pytest.fixture
def settings(tmp_path, monkeypatch):
    """EmberSettings with every state path inside tmp_path and no backoff."""
    for key in list(os.environ.keys()):
        if key.startswith("EMBER_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)

    monkeypatch.setenv("EMBER_OUTPUT__AUDIT_LOGS_DIR", str(tmp_path / "audit-logs"))
    monkeypatch.setenv("EMBER_OUTPUT__SESSION_STORE_FILE", str(tmp_path / "store.json"))
    monkeypatch.setenv("EMBER_EXPLOIT_MEMORY__DB_DIR", str(tmp_path / "exploit-memory"))
    monkeypatch.setenv("EMBER_ERROR_RECOVERY__BASE_DELAY_SECONDS", "0")
    monkeypatch.setenv("EMBER_ERROR_RECOVERY__RATE_LIMIT_BASE_SECONDS", "0")
    monkeypatch.setenv("EMBER_ERROR_RECOVERY__JITTER_RATIO", "0")
    monkeypatch.setenv("EMBER_GIT__LOCK_RETRY_BASE_SECONDS", "0")

    reset_settings()
    yield get_settings()
    reset_settings()

@pytest.fixture
def session_store(settings) -> SessionStore:
    """Session store backed by a file under tmp_path."""
    return SessionStore(settings.output.session_store_file)

@pytest.fixture
def run_context(settings, tmp_path) -> RunContext:
    """RunContext for tool tests against app.example.com."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return RunContext(
        session_id="11111111-2222-3333-4444-555555555555",
        web_url="https://app.example.com",
        hostname="app.example.com",
        target_dir=workspace,
        settings=settings,
        agent_name="injection-vuln",
    )

# ============================================================================
# Workspace Fixtures
# ============================================================================

@pytest.fixture
def target_repo(tmp_path, monkeypatch) -> Path:
    """Source directory of a target app; git must be installed."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    for var, value in (
        ("GIT_AUTHOR_NAME", "Ember Tests"),
        ("GIT_AUTHOR_EMAIL", "tests@ember.local"),
        ("GIT_COMMITTER_NAME", "Ember Tests"),
        ("GIT_COMMITTER_EMAIL", "tests@ember.local"),
    ):
        monkeypatch.setenv(var, value)

    repo = tmp_path / "app-src"
    repo.mkdir()
    (repo / "app.py").write_text("def handler(request):\n    return request.args['q']\n")
    return repo

# ============================================================================
# Executor Fixtures
# ============================================================================

class SleepRecorder:
    """Stand-in for asyncio.sleep that records the requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)

@pytest.fixture
def no_sleep() -> SleepRecorder:
    return SleepRecorder()

@pytest.fixture
def executor() -> ScriptedExecutor:
    """Executor that completes every agent unless scripted otherwise."""
    return ScriptedExecutor()

# ============================================================================
# Cleanup/Reset Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def close_exploit_memory():
    """Dispose cached exploit memory engines between tests."""
    yield
    close_all_stores()

# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow running")
    config.addinivalue_line("markers", "integration: marks tests that drive git or the CLI end to end")
