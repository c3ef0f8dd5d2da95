"""
Pipeline orchestration for Ember.

Runs the agent pipeline for a session: all phases, a single phase, a single
agent or a contiguous range of agents. Every entry point reconciles the
session store against the audit trail first, so a deleted or stale store
never drives a run.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable

import structlog

from ember.audit.session import AuditSession
from ember.config.context import RunContext
from ember.config.settings import EmberSettings, get_settings
from ember.core.agents import PHASE_ORDER, Agent, validate_agent, validate_agent_range, validate_phase
from ember.core.checkpoint import AgentRunner, AgentRunOutcome, CheckpointManager, Validator
from ember.core.errors import ErrorKind, NotFoundError, PentestError
from ember.core.executor import AgentExecutor
from ember.core.git_manager import GitWorkspace
from ember.core.prompts import PromptBuilder, build_default_prompt
from ember.core.reconciler import Reconciler, ReconcileReport
from ember.core.retry_policy import handle_prompt_error
from ember.core.session_store import (
    Session,
    SessionStatus,
    SessionStore,
    check_prerequisites,
    get_next_agent,
    get_session_status,
)
from ember.memory.database import get_store
from ember.utils.files import hostname_from_url

logger = structlog.get_logger(__name__)


class Pipeline:
    """
    Drives agents of a session through the runner.

    Args:
        executor: External agent executor; only needed by commands that run agents.
        settings: Ember settings.
        store: Session store; defaults to the configured store file.
        prompt_builder: Builds each agent's prompt; defaults to
            ``build_default_prompt``.
        validators: Output validators by agent name.
        sleep: Awaitable used for retry backoff.
    """

    def __init__(
        self,
        executor: AgentExecutor | None = None,
        settings: EmberSettings | None = None,
        store: SessionStore | None = None,
        prompt_builder: PromptBuilder | None = None,
        validators: dict[str, Validator] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store or SessionStore(self.settings.output.session_store_file)
        self.prompt_builder = prompt_builder or build_default_prompt
        self.reconciler = Reconciler(self.store, self.settings.output.audit_logs_dir)
        self.runner = AgentRunner(self.store, executor, self.settings, validators, sleep)
        self.checkpoints = CheckpointManager(self.store, self.settings)

    async def reconcile(self) -> ReconcileReport:
        return await self.reconciler.reconcile()

    def _session(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found", context={"session_id": session_id})
        return session

    async def _prepare(self, session_id: str) -> Session:
        await self.reconcile()
        return self._session(session_id)

    async def start_session(
        self,
        web_url: str,
        repo_path: str | Path,
        config_file: str | None = None,
    ) -> Session:
        """
        Create (or resume) the session for a target and prepare its workspace.

        The repository is turned into a git repository with a root commit if
        it is not one yet, and the workspace as it stands before the first
        agent is recorded as the session's base commit. Stale exploit memory
        findings for the target host are pruned.
        """
        await self.reconcile()
        repo = Path(repo_path).resolve()
        if not repo.is_dir():
            raise PentestError(
                f"Repository path does not exist: {repo}",
                ErrorKind.FILESYSTEM,
                context={"repo_path": str(repo)},
            )

        session = await self.store.create_session(web_url, str(repo), config_file)
        workspace = GitWorkspace(session.target_repo, self.settings.git)
        await workspace.ensure_repository()
        if session.base_commit is None:
            base_commit = await workspace.snapshot("Workspace snapshot before first agent")
            session = await self.store.update_session(session.id, base_commit=base_commit)
        await AuditSession(session, self.settings.output.audit_logs_dir).initialize()
        await self._prune_exploit_memory(session)
        return session

    async def _prune_exploit_memory(self, session: Session) -> int:
        """Drop untriaged findings older than ``exploit_memory.max_age_days``."""
        memory = self.settings.exploit_memory
        if not memory.enabled:
            return 0
        store = get_store(hostname_from_url(session.web_url), memory.db_dir)
        return await asyncio.to_thread(store.prune_stale, memory.max_age_days)

    async def _build_prompt(self, agent: Agent, context: RunContext) -> str:
        try:
            return await self.prompt_builder(agent, context)
        except PentestError:
            raise
        except Exception as e:
            raise handle_prompt_error(agent.name, e)["error"] from e

    async def _run_one(self, session: Session, agent: Agent) -> AgentRunOutcome:
        context = RunContext.from_session(session, self.settings, agent.name)
        try:
            prompt = await self._build_prompt(agent, context)
            return await self.runner.run(agent.name, prompt, context)
        except PentestError as e:
            e.context.setdefault("agent", agent.name)
            raise

    async def _finish(self, session_id: str, error: BaseException | None = None) -> None:
        """Mirror the outcome of a command into the session store and audit record."""
        session = self._session(session_id)
        if error is not None:
            session = await self.store.update_session(session_id, status=SessionStatus.FAILED)
        await AuditSession(session, self.settings.output.audit_logs_dir).update_session_status(
            session.status.value
        )

    async def _guarded(self, session_id: str, work: Awaitable[Any]) -> Any:
        try:
            result = await work
        except PentestError as e:
            await self._finish(session_id, e)
            raise
        await self._finish(session_id)
        return result

    async def run_agent(self, session_id: str, agent_name: str) -> AgentRunOutcome:
        """
        Run one agent after checking its prerequisites.

        Raises:
            PrerequisiteError: If a prerequisite has not completed.
        """
        agent = validate_agent(agent_name)
        session = await self._prepare(session_id)
        check_prerequisites(session, agent_name)
        return await self._guarded(session_id, self._run_one(session, agent))

    async def _run_agents(self, session_id: str, agents: list[Agent], parallel: bool) -> list[AgentRunOutcome]:
        session = self._session(session_id)
        pending = [agent for agent in agents if agent.name not in session.completed_agents]
        skipped = [agent.name for agent in agents if agent.name in session.completed_agents]
        if skipped:
            logger.info("agents_already_completed", agents=skipped)
        if not pending:
            return []

        for agent in pending:
            check_prerequisites(session, agent.name)

        if parallel and len(pending) > 1:
            logger.info("parallel_agents_started", agents=[agent.name for agent in pending])
            results = await asyncio.gather(
                *(self._run_one(session, agent) for agent in pending),
                return_exceptions=True,
            )
            # Let every agent finish and record its outcome before surfacing a failure.
            for result in results:
                if isinstance(result, BaseException):
                    raise result
            return list(results)

        outcomes = []
        for agent in pending:
            outcomes.append(await self._run_one(self._session(session_id), agent))
        return outcomes

    async def run_phase(self, session_id: str, phase_name: str) -> list[AgentRunOutcome]:
        """Run every pending agent of a phase, concurrently when enabled."""
        agents = validate_phase(phase_name)
        await self._prepare(session_id)
        logger.info("phase_started", session_id=session_id, phase=phase_name)
        outcomes = await self._guarded(
            session_id,
            self._run_agents(session_id, agents, self.settings.execution.parallel_phases),
        )
        logger.info("phase_completed", session_id=session_id, phase=phase_name, agents=len(outcomes))
        return outcomes

    async def run_range(self, session_id: str, start_agent: str, end_agent: str) -> list[AgentRunOutcome]:
        """Run a contiguous range of agents in order."""
        agents = validate_agent_range(start_agent, end_agent)
        await self._prepare(session_id)

        async def run_in_order() -> list[AgentRunOutcome]:
            outcomes = []
            for agent in agents:
                outcomes.extend(await self._run_agents(session_id, [agent], parallel=False))
            return outcomes

        return await self._guarded(session_id, run_in_order())

    async def run_all(self, session_id: str) -> list[AgentRunOutcome]:
        """Run every remaining phase in order, resuming after completed agents."""
        await self._prepare(session_id)

        async def run_phases() -> list[AgentRunOutcome]:
            outcomes = []
            for phase_name in PHASE_ORDER:
                logger.info("phase_started", session_id=session_id, phase=phase_name)
                outcomes.extend(
                    await self._run_agents(
                        session_id,
                        validate_phase(phase_name),
                        self.settings.execution.parallel_phases,
                    )
                )
            return outcomes

        outcomes = await self._guarded(session_id, run_phases())
        logger.info("pipeline_completed", session_id=session_id, agents=len(outcomes))
        return outcomes

    async def rollback_to(self, session_id: str, agent_name: str) -> Session:
        await self._prepare(session_id)
        return await self.checkpoints.rollback_to_agent(session_id, agent_name)

    async def rerun(self, session_id: str, agent_name: str) -> AgentRunOutcome:
        """Roll back to the agent's latest prerequisite and run it again."""
        agent = validate_agent(agent_name)
        session = await self._prepare(session_id)
        context = RunContext.from_session(session, self.settings, agent_name)
        prompt = await self._build_prompt(agent, context)
        return await self._guarded(
            session_id,
            self.checkpoints.rerun_agent(session_id, agent_name, prompt, self.runner),
        )

    async def status(self, session_id: str) -> dict[str, Any]:
        """Status summary of a session with the next agent to run."""
        session = await self._prepare(session_id)
        summary = get_session_status(session)
        next_agent = get_next_agent(session)
        summary.update(
            {
                "sessionId": session.id,
                "webUrl": session.web_url,
                "targetRepo": session.target_repo,
                "completedAgents": list(session.completed_agents),
                "failedAgents": list(session.failed_agents),
                "nextAgent": next_agent.name if next_agent else None,
            }
        )
        return summary
