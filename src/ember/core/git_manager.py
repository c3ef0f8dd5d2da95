"""
Git-backed workspace checkpoints.

The target repository is the single mutable workspace shared by every agent
of a run. Agents work in parallel, but git's index lock is one resource, so
every git command in the process goes through one semaphore. Commands that
still hit lock contention (for example from an external git process) are
retried with exponential backoff.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

import structlog

from ember.config.settings import GitConfig
from ember.core.errors import GitError

logger = structlog.get_logger(__name__)

LOCK_ERROR_MARKERS: tuple[str, ...] = (
    "index.lock",
    "unable to lock",
    "another git process",
    "fatal: unable to create",
    "fatal: index file",
)

_git_semaphore: asyncio.Semaphore | None = None
_git_semaphore_loop: asyncio.AbstractEventLoop | None = None


def _semaphore() -> asyncio.Semaphore:
    """Process-wide semaphore serializing git commands on the running loop."""
    global _git_semaphore, _git_semaphore_loop
    loop = asyncio.get_running_loop()
    if _git_semaphore is None or _git_semaphore_loop is not loop:
        _git_semaphore = asyncio.Semaphore(1)
        _git_semaphore_loop = loop
    return _git_semaphore


def is_lock_error(stderr: str) -> bool:
    """Check whether git failed because another process holds the index lock."""
    lowered = stderr.lower()
    return any(marker in lowered for marker in LOCK_ERROR_MARKERS)


def _subcommand(args: tuple[str, ...]) -> str:
    """Name of the git subcommand, skipping leading ``-c key=value`` pairs."""
    remaining = list(args)
    while remaining and remaining[0] == "-c":
        remaining = remaining[2:]
    return remaining[0] if remaining else "git"


@dataclass
class GitResult:
    """Output of a git command."""

    returncode: int
    stdout: str
    stderr: str


class GitWorkspace:
    """
    Snapshot, commit and restore operations on one repository.

    Args:
        source_dir: Path of the repository.
        config: Lock-retry settings.
    """

    def __init__(self, source_dir: Path | str, config: GitConfig | None = None) -> None:
        self.source_dir = Path(source_dir)
        self._config = config or GitConfig()
        self._identity_args: list[str] | None = None

    async def _commit(self, message: str) -> None:
        # Fall back to a local identity when the user has none configured.
        if self._identity_args is None:
            configured = await self.run("config", "user.email", check=False)
            self._identity_args = (
                [] if configured.stdout.strip()
                else ["-c", "user.name=ember", "-c", "user.email=ember@localhost"]
            )
        await self.run(*self._identity_args, "commit", "--allow-empty", "-m", message)

    async def _exec(self, *args: str) -> GitResult:
        process = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(self.source_dir),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        return GitResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def run(self, *args: str, check: bool = True) -> GitResult:
        """
        Run a git command under the shared semaphore.

        Lock-contention failures are retried up to ``max_lock_retries`` times
        with delays of ``base * 2**(attempt-1)`` seconds.

        Raises:
            GitError: If the command fails and ``check`` is True.
        """
        command = ["git", *args]
        attempt = 0
        while True:
            attempt += 1
            async with _semaphore():
                result = await self._exec(*args)

            if result.returncode == 0 or not is_lock_error(result.stderr):
                break
            if attempt > self._config.max_lock_retries:
                raise GitError(
                    f"git {_subcommand(args)} failed after {attempt - 1} lock retries",
                    command=command,
                    stderr=result.stderr,
                    retryable=True,
                )

            delay = self._config.lock_retry_base_seconds * (2 ** (attempt - 1))
            logger.warning("git_lock_contention", command=" ".join(command), attempt=attempt, delay=delay)
            await asyncio.sleep(delay)

        if check and result.returncode != 0:
            raise GitError(
                f"git {_subcommand(args)} failed: {result.stderr.strip() or result.stdout.strip()}",
                command=command,
                stderr=result.stderr,
            )
        return result

    async def is_repository(self) -> bool:
        if not self.source_dir.is_dir():
            return False
        result = await self.run("rev-parse", "--is-inside-work-tree", check=False)
        return result.returncode == 0 and result.stdout.strip() == "true"

    async def ensure_repository(self) -> None:
        """Initialise a repository with a root commit if the workspace has none."""
        if await self.is_repository():
            return
        self.source_dir.mkdir(parents=True, exist_ok=True)
        await self.run("init")
        await self.run("add", "-A")
        await self._commit("Initial workspace snapshot")
        logger.info("git_repository_initialized", path=str(self.source_dir))

    async def snapshot(self, description: str) -> str:
        """Commit pending changes, if any, and return the HEAD commit."""
        head = await self.run("rev-parse", "--verify", "HEAD", check=False)
        if head.returncode != 0 or await self.has_changes():
            await self.run("add", "-A")
            await self._commit(description)
        return await self.get_commit_hash()

    async def has_changes(self) -> bool:
        result = await self.run("status", "--porcelain")
        return bool(result.stdout.strip())

    async def get_commit_hash(self) -> str:
        result = await self.run("rev-parse", "HEAD")
        return result.stdout.strip()

    async def create_checkpoint(self, description: str, attempt: int) -> str:
        """
        Snapshot the workspace before an agent attempt.

        The first attempt keeps whatever earlier agents left in the
        workspace; retries discard the previous attempt's leftovers first.

        Returns:
            Commit hash of the checkpoint.
        """
        if attempt > 1:
            await self.rollback(f"cleanup before attempt {attempt}")

        if await self.has_changes():
            await self.run("add", "-A")
        await self._commit(f"Checkpoint: {description} (attempt {attempt})")
        commit = await self.get_commit_hash()
        logger.info("git_checkpoint_created", description=description, attempt=attempt, commit=commit[:12])
        return commit

    async def commit_success(self, description: str) -> str:
        """Commit the successful attempt's output and return the commit hash."""
        await self.run("add", "-A")
        await self._commit(f"{description}: completed successfully")
        commit = await self.get_commit_hash()
        logger.info("git_success_committed", description=description, commit=commit[:12])
        return commit

    async def rollback(self, reason: str) -> None:
        """Discard uncommitted changes and untracked files."""
        await self.run("reset", "--hard", "HEAD")
        await self.run("clean", "-fd")
        logger.info("git_workspace_rolled_back", reason=reason)

    async def reset_to_commit(self, commit: str) -> None:
        """Restore the workspace to a checkpoint commit."""
        await self.run("reset", "--hard", commit)
        await self.run("clean", "-fd")
        logger.info("git_workspace_reset", commit=commit[:12])

    async def diff_since(self, commit: str) -> str:
        """Summary of changes between a checkpoint and the working tree."""
        result = await self.run("diff", "--stat", commit)
        return result.stdout
