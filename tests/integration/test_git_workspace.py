"""
Integration tests for GitWorkspace.

These drive a real git binary against a throwaway repository.
"""

import pytest

from ember.config.settings import GitConfig
from ember.core.errors import GitError
from ember.core.git_manager import GitWorkspace, _subcommand, is_lock_error


@pytest.fixture
def workspace(target_repo):
    return GitWorkspace(target_repo, GitConfig(lock_retry_base_seconds=0))


class TestHelpers:
    """Test the pure helpers."""

    def test_lock_errors_recognized(self):
        assert is_lock_error("fatal: Unable to create '/repo/.git/index.lock': File exists.")
        assert is_lock_error("Another git process seems to be running in this repository")
        assert not is_lock_error("fatal: not a git repository")

    def test_subcommand_skips_config_pairs(self):
        """-c pairs in front of the subcommand are ignored."""
        assert _subcommand(("-c", "user.name=ember", "-c", "user.email=e@x", "commit", "-m", "x")) == "commit"
        assert _subcommand(("status",)) == "status"
        assert _subcommand(()) == "git"


@pytest.mark.integration
class TestRepositorySetup:
    """Test repository initialisation."""

    @pytest.mark.asyncio
    async def test_ensure_repository_creates_root_commit(self, workspace):
        """A plain folder becomes a repository with a snapshot commit."""
        assert await workspace.is_repository() is False

        await workspace.ensure_repository()

        assert await workspace.is_repository() is True
        assert await workspace.has_changes() is False
        log = await workspace.run("log", "--format=%s")
        assert log.stdout.strip() == "Initial workspace snapshot"

    @pytest.mark.asyncio
    async def test_ensure_repository_is_idempotent(self, workspace):
        await workspace.ensure_repository()
        first = await workspace.get_commit_hash()
        await workspace.ensure_repository()

        assert await workspace.get_commit_hash() == first

    @pytest.mark.asyncio
    async def test_failed_command_raises(self, workspace):
        """Non-lock failures raise GitError naming the subcommand."""
        await workspace.ensure_repository()

        with pytest.raises(GitError, match="git checkout failed") as exc_info:
            await workspace.run("checkout", "no-such-branch")

        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_unchecked_failure_returns_result(self, workspace):
        await workspace.ensure_repository()
        result = await workspace.run("checkout", "no-such-branch", check=False)
        assert result.returncode != 0


@pytest.mark.integration
class TestCheckpoints:
    """Test checkpoint, commit and restore."""

    @pytest.mark.asyncio
    async def test_checkpoint_keeps_earlier_work_on_first_attempt(self, workspace, target_repo):
        """Attempt 1 commits what is already in the workspace."""
        await workspace.ensure_repository()
        (target_repo / "notes.md").write_text("from an earlier agent\n")

        commit = await workspace.create_checkpoint("Recon agent", attempt=1)

        assert commit == await workspace.get_commit_hash()
        assert (target_repo / "notes.md").exists()
        assert await workspace.has_changes() is False

    @pytest.mark.asyncio
    async def test_retry_checkpoint_discards_leftovers(self, workspace, target_repo):
        """Attempt 2 starts by rolling back the failed attempt."""
        await workspace.ensure_repository()
        await workspace.create_checkpoint("Recon agent", attempt=1)
        (target_repo / "partial.md").write_text("half written\n")
        (target_repo / "app.py").write_text("broken\n")

        await workspace.create_checkpoint("Recon agent", attempt=2)

        assert not (target_repo / "partial.md").exists()
        assert (target_repo / "app.py").read_text().startswith("def handler")

    @pytest.mark.asyncio
    async def test_rollback_removes_untracked_files(self, workspace, target_repo):
        await workspace.ensure_repository()
        (target_repo / "deliverables").mkdir()
        (target_repo / "deliverables" / "recon_deliverable.md").write_text("# Recon\n")

        await workspace.rollback("attempt failed")

        assert not (target_repo / "deliverables").exists()

    @pytest.mark.asyncio
    async def test_reset_to_commit(self, workspace, target_repo):
        """Resetting to a checkpoint drops later commits and files."""
        await workspace.ensure_repository()
        (target_repo / "recon.md").write_text("# Recon\n")
        checkpoint = await workspace.commit_success("Recon agent")

        (target_repo / "queue.json").write_text("{}")
        await workspace.commit_success("Injection analysis agent")
        (target_repo / "scratch.txt").write_text("untracked")

        diff = await workspace.diff_since(checkpoint)
        assert "queue.json" in diff

        await workspace.reset_to_commit(checkpoint)

        assert await workspace.get_commit_hash() == checkpoint
        assert (target_repo / "recon.md").exists()
        assert not (target_repo / "queue.json").exists()
        assert not (target_repo / "scratch.txt").exists()

    @pytest.mark.asyncio
    async def test_commit_success_message(self, workspace):
        await workspace.ensure_repository()
        await workspace.commit_success("Recon agent")

        log = await workspace.run("log", "-1", "--format=%s")
        assert log.stdout.strip() == "Recon agent: completed successfully"

    @pytest.mark.asyncio
    async def test_snapshot_commits_pending_work(self, workspace, target_repo):
        """Uncommitted files end up in the snapshot commit."""
        await workspace.ensure_repository()
        root = await workspace.get_commit_hash()
        (target_repo / "local.py").write_text("DEBUG = True\n")

        base = await workspace.snapshot("Workspace snapshot before first agent")

        assert base != root
        assert await workspace.has_changes() is False
        await workspace.reset_to_commit(base)
        assert (target_repo / "local.py").exists()

    @pytest.mark.asyncio
    async def test_snapshot_of_clean_workspace_is_head(self, workspace):
        """Nothing to commit means no new commit."""
        await workspace.ensure_repository()
        head = await workspace.get_commit_hash()

        assert await workspace.snapshot("Workspace snapshot before first agent") == head

    @pytest.mark.asyncio
    async def test_snapshot_of_repository_without_commits(self, workspace, target_repo):
        """An initialised repository with no history gets its first commit."""
        await workspace.run("init")

        base = await workspace.snapshot("Workspace snapshot before first agent")

        assert base == await workspace.get_commit_hash()
        assert await workspace.has_changes() is False
