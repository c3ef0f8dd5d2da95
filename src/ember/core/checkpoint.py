"""
Checkpointed agent execution and rollback for Ember.

This module ties the git workspace, the audit trail and the session store
together:
- AgentRunner runs one agent with checkpoints, output validation and retries
- CheckpointManager rolls a session back to an agent's checkpoint and
  re-runs agents from a clean state

Every attempt starts from a checkpoint commit and every failed attempt is
rolled back before the next one, so the workspace never carries a partial
attempt forward.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

import structlog

from ember.audit.models import AttemptResult
from ember.audit.session import AuditSession
from ember.config.context import RunContext
from ember.config.settings import EmberSettings, get_settings
from ember.core.agents import AGENT_ORDER, AGENTS, validate_agent
from ember.core.errors import ErrorKind, NotFoundError, PentestError
from ember.core.executor import AgentExecutor, AgentResult
from ember.core.git_manager import GitWorkspace
from ember.core.retry_policy import decide_retry, is_retryable_error
from ember.core.session_store import Session, SessionStatus, SessionStore, check_prerequisites
from ember.core.validators import validate_agent_output

logger = structlog.get_logger(__name__)

Validator = Callable[[Path], bool]


@dataclass
class AgentRunOutcome:
    """Result of a successful agent run."""

    agent_name: str
    attempts: int
    checkpoint: str
    result: AgentResult
    duration_ms: float
    cost_usd: float


class AgentRunner:
    """
    Runs agents through the checkpoint, execute, validate, commit loop.

    Args:
        store: Session store to record completed and failed agents in.
        executor: External agent executor; running without one is a config error.
        settings: Ember settings (attempt ceiling, backoff, paths).
        validators: Output validators by agent name; defaults to the
            built-in deliverable checks.
        sleep: Awaitable used for backoff delays.
    """

    def __init__(
        self,
        store: SessionStore,
        executor: AgentExecutor | None,
        settings: EmberSettings | None = None,
        validators: dict[str, Validator] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.executor = executor
        self.settings = settings or get_settings()
        self.validators = validators
        self._sleep = sleep

    def _session(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found", context={"session_id": session_id})
        return session

    async def run(self, agent_name: str, prompt: str, context: RunContext) -> AgentRunOutcome:
        """
        Run one agent until its output validates or attempts run out.

        Raises:
            PentestError: Non-retryable errors immediately, validation
                failure (kind ``validation``) once attempts are exhausted,
                otherwise the last attempt's error.
        """
        agent = validate_agent(agent_name)
        if self.executor is None:
            raise PentestError(
                "No agent executor configured. Set EMBER_EXECUTOR to 'package.module:attribute'.",
                ErrorKind.CONFIG,
                context={"agent": agent_name},
            )
        session = self._session(context.session_id)
        context = context.for_agent(agent_name)
        workspace = GitWorkspace(context.target_dir, self.settings.git)
        audit = AuditSession(session, self.settings.output.audit_logs_dir)
        max_attempts = self.settings.execution.max_attempts
        description = agent.display_name

        logger.info("agent_run_started", agent=agent_name, session_id=session.id, max_attempts=max_attempts)

        for attempt in range(1, max_attempts + 1):
            is_final = attempt == max_attempts
            await workspace.create_checkpoint(description, attempt)
            await audit.start_agent(agent_name, prompt, attempt)
            started = time.monotonic()
            result: AgentResult | None = None

            try:
                result = await self.executor(
                    prompt,
                    context,
                    agent_name=agent_name,
                    description=description,
                    attempt=attempt,
                )
                if not result.success:
                    raise result.to_error(agent_name)
            except asyncio.CancelledError:
                await workspace.rollback(f"{agent_name} cancelled")
                raise
            except Exception as e:
                elapsed_ms = (time.monotonic() - started) * 1000
                decision = decide_retry(e, attempt, max_attempts, self.settings.error_recovery)
                await audit.end_agent(
                    agent_name,
                    AttemptResult(
                        attempt_number=attempt,
                        duration_ms=result.duration if result and result.duration else elapsed_ms,
                        cost_usd=result.total_cost if result else 0.0,
                        success=False,
                        error=str(e),
                        is_final_attempt=not decision.retry,
                    ),
                )
                await workspace.rollback(f"{agent_name} attempt {attempt} failed")

                if not decision.retry:
                    await self.store.mark_agent_failed(session.id, agent_name)
                    logger.error(
                        "agent_run_failed",
                        agent=agent_name,
                        attempt=attempt,
                        reason=decision.reason,
                        error=str(e),
                    )
                    if isinstance(e, PentestError):
                        raise
                    raise PentestError(
                        str(e),
                        ErrorKind.EXECUTION,
                        retryable=is_retryable_error(e),
                        context={"agent": agent_name, "attempts": attempt},
                    ) from e

                logger.warning(
                    "agent_attempt_failed",
                    agent=agent_name,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    retry_in=round(decision.delay, 1),
                    reason=decision.reason,
                    error=str(e),
                )
                await self._sleep(decision.delay)
                continue

            duration_ms = result.duration or (time.monotonic() - started) * 1000
            valid = validate_agent_output(
                result,
                agent_name,
                context.target_dir,
                self.settings.output.deliverables_dirname,
                self.validators,
            )

            if valid:
                if result.api_error_detected:
                    logger.warning("agent_api_error_ignored", agent=agent_name, reason="output validated")
                checkpoint = await workspace.commit_success(description)
                await audit.end_agent(
                    agent_name,
                    AttemptResult(
                        attempt_number=attempt,
                        duration_ms=duration_ms,
                        cost_usd=result.total_cost,
                        success=True,
                        checkpoint=checkpoint,
                        is_final_attempt=True,
                    ),
                )
                await self.store.mark_agent_completed(session.id, agent_name, checkpoint)
                logger.info(
                    "agent_run_completed",
                    agent=agent_name,
                    attempt=attempt,
                    checkpoint=checkpoint[:12],
                    cost_usd=result.total_cost,
                )
                return AgentRunOutcome(
                    agent_name=agent_name,
                    attempts=attempt,
                    checkpoint=checkpoint,
                    result=result,
                    duration_ms=duration_ms,
                    cost_usd=result.total_cost,
                )

            await audit.end_agent(
                agent_name,
                AttemptResult(
                    attempt_number=attempt,
                    duration_ms=duration_ms,
                    cost_usd=result.total_cost,
                    success=False,
                    error="Output validation failed",
                    is_final_attempt=is_final,
                ),
            )
            await workspace.rollback(f"{agent_name} output validation failed")

            if is_final:
                await self.store.mark_agent_failed(session.id, agent_name)
                raise PentestError(
                    f"Agent {description} failed output validation after {max_attempts} attempts. "
                    "Required deliverable files were not created.",
                    ErrorKind.VALIDATION,
                    retryable=False,
                    context={"agent": agent_name, "source_dir": str(context.target_dir), "attempts": max_attempts},
                )
            logger.warning(
                "agent_output_validation_failed",
                agent=agent_name,
                attempt=attempt,
                max_attempts=max_attempts,
                api_error_detected=result.api_error_detected,
            )

        # max_attempts >= 1, every iteration returns, raises or continues
        raise PentestError(f"Agent {description} did not run", ErrorKind.STATE, context={"agent": agent_name})


class CheckpointManager:
    """
    Rollback and re-run across the workspace, session store and audit trail.

    Usage:
        manager = CheckpointManager(store, settings)
        await manager.rollback_to_agent(session_id, "recon")
        await manager.rerun_agent(session_id, "injection-vuln", prompt, runner)
    """

    def __init__(self, store: SessionStore, settings: EmberSettings | None = None) -> None:
        self.store = store
        self.settings = settings or get_settings()

    def _session(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found", context={"session_id": session_id})
        return session

    def _workspace(self, session: Session) -> GitWorkspace:
        return GitWorkspace(Path(session.target_repo or session.repo_path), self.settings.git)

    def _audit(self, session: Session) -> AuditSession:
        return AuditSession(session, self.settings.output.audit_logs_dir)

    async def rollback_to_agent(self, session_id: str, agent_name: str) -> Session:
        """
        Restore the session to the state right after ``agent_name`` completed.

        Every later agent is first marked rolled back (not deleted) in the
        audit record, then the workspace is reset to the agent's checkpoint
        and the later agents are removed from the session store. An
        interrupted rollback reconciles to the rolled back state.

        Raises:
            NotFoundError: If the session or the agent's checkpoint is missing.
        """
        target = validate_agent(agent_name)
        session = self._session(session_id)
        commit = session.checkpoints.get(agent_name)
        if not commit:
            raise NotFoundError(
                f"No checkpoint found for agent '{agent_name}' in session {session_id}",
                context={"session_id": session_id, "agent": agent_name},
            )

        later = [
            name
            for name in AGENT_ORDER
            if AGENTS[name].order > target.order
            and (name in session.completed_agents or name in session.failed_agents)
        ]

        audit = self._audit(session)
        await audit.mark_multiple_rolled_back(later)
        if session.status is not SessionStatus.IN_PROGRESS:
            await audit.update_session_status(SessionStatus.IN_PROGRESS.value)

        await self._workspace(session).reset_to_commit(commit)
        updated = await self.store.rollback_to_agent(session_id, agent_name)

        logger.info(
            "session_rolled_back_to_agent",
            session_id=session_id,
            agent=agent_name,
            commit=commit[:12],
            rolled_back=later,
        )
        return updated

    async def reset_all(self, session_id: str) -> Session:
        """
        Roll back every agent of a session.

        The workspace returns to the session's base commit, so nothing an
        earlier run committed survives. Sessions recorded without a base
        commit only discard uncommitted work.
        """
        session = self._session(session_id)
        attempted = [
            name for name in AGENT_ORDER
            if name in session.completed_agents or name in session.failed_agents
        ]

        audit = self._audit(session)
        await audit.mark_multiple_rolled_back(attempted)
        await audit.update_session_status(SessionStatus.IN_PROGRESS.value)

        workspace = self._workspace(session)
        if session.base_commit:
            await workspace.reset_to_commit(session.base_commit)
        else:
            logger.warning("session_base_commit_missing", session_id=session_id)
            await workspace.rollback("reset all agents")
        updated = await self.store.update_session(
            session_id,
            completed_agents=[],
            failed_agents=[],
            checkpoints={},
            status=SessionStatus.IN_PROGRESS,
        )

        logger.info("session_reset", session_id=session_id, rolled_back=attempted)
        return updated

    async def rerun_agent(
        self,
        session_id: str,
        agent_name: str,
        prompt: str,
        runner: AgentRunner,
    ) -> AgentRunOutcome:
        """
        Run an agent again from its latest prerequisite's checkpoint.

        Everything ordered after that prerequisite is rolled back first. An
        agent without prerequisites starts over from a fully reset session.

        Raises:
            PrerequisiteError: If a prerequisite has not completed.
        """
        agent = validate_agent(agent_name)
        session = self._session(session_id)
        check_prerequisites(session, agent_name)

        if agent.prerequisites:
            anchor = max(agent.prerequisites, key=lambda name: AGENTS[name].order)
            session = await self.rollback_to_agent(session_id, anchor)
        else:
            session = await self.reset_all(session_id)

        logger.info("agent_rerun", session_id=session_id, agent=agent_name)
        context = RunContext.from_session(session, self.settings, agent_name)
        return await runner.run(agent_name, prompt, context)
