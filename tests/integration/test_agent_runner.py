"""
Integration tests for checkpointed agent execution, rollback and re-run.

Agents run against a real git workspace with a scripted executor.
"""

import pytest
import pytest_asyncio

from ember.audit.session import AuditSession
from ember.core.errors import ErrorKind, GitError, PentestError
from ember.core.git_manager import GitWorkspace
from ember.core.pipeline import Pipeline
from ember.core.session_store import SessionStatus
from ember_fakes import ScriptedExecutor, failed, ok, write_deliverables


def completes(agent_name, cost):
    """Step writing the agent's deliverables and succeeding."""

    def step(context):
        write_deliverables(context.deliverables_dir, agent_name)
        return ok(cost=cost)

    return step


def leaves_partial_work(context):
    """Step that writes a stray file before failing."""
    context.target_dir.joinpath("half-done.txt").write_text("partial\n")
    return failed("connection reset by peer", retryable=True)


async def agent_metrics(settings, session, agent_name):
    metrics = await AuditSession(session, settings.output.audit_logs_dir).get_metrics()
    return metrics["metrics"]["agents"][agent_name]


@pytest.fixture
def make_pipeline(settings, session_store, no_sleep):
    def make(executor=None):
        return Pipeline(executor, settings=settings, store=session_store, sleep=no_sleep)

    return make


@pytest_asyncio.fixture
async def started(make_pipeline, target_repo):
    """A session started against the target repository."""
    pipeline = make_pipeline()
    return await pipeline.start_session("https://app.example.com", target_repo)


@pytest.mark.integration
class TestRetries:
    """Test the attempt loop."""

    @pytest.mark.asyncio
    async def test_retry_after_retryable_failure(self, make_pipeline, started, settings, no_sleep):
        """A retryable failure is retried and the second attempt completes."""
        executor = ScriptedExecutor({"pre-recon": [failed("rate limit exceeded", retryable=True)]})
        pipeline = make_pipeline(executor)

        outcome = await pipeline.run_agent(started.id, "pre-recon")

        assert outcome.attempts == 2
        assert executor.attempts_for("pre-recon") == [1, 2]
        assert len(no_sleep.delays) == 1
        session = pipeline.store.get_session(started.id)
        assert session.completed_agents == ["pre-recon"]
        assert session.checkpoints["pre-recon"] == outcome.checkpoint

    @pytest.mark.asyncio
    async def test_failed_attempt_output_rolled_back(self, make_pipeline, started, target_repo):
        """Leftovers of a failed attempt never reach the next attempt."""
        executor = ScriptedExecutor({"pre-recon": [leaves_partial_work]})

        await make_pipeline(executor).run_agent(started.id, "pre-recon")

        assert not (target_repo / "half-done.txt").exists()
        assert (target_repo / "deliverables" / "code_analysis_deliverable.md").exists()

    @pytest.mark.asyncio
    async def test_costs_accumulate_across_attempts(self, make_pipeline, started, settings):
        """0.10 + 0.15 + 0.20 is recorded as 0.45 for the agent."""
        executor = ScriptedExecutor(
            {
                "pre-recon": [
                    failed("timeout", retryable=True, cost=0.10),
                    failed("timeout", retryable=True, cost=0.15),
                    completes("pre-recon", cost=0.20),
                ]
            }
        )

        await make_pipeline(executor).run_agent(started.id, "pre-recon")

        metrics = await agent_metrics(settings, started, "pre-recon")
        assert metrics["status"] == "success"
        assert len(metrics["attempts"]) == 3
        assert metrics["total_cost_usd"] == 0.45

    @pytest.mark.asyncio
    async def test_non_retryable_failure_stops(self, make_pipeline, started, settings, no_sleep):
        """A non-retryable failure ends the agent after one attempt."""
        executor = ScriptedExecutor({"pre-recon": [failed("invalid api key", retryable=False)]})
        pipeline = make_pipeline(executor)

        with pytest.raises(PentestError, match="invalid api key") as exc_info:
            await pipeline.run_agent(started.id, "pre-recon")

        assert exc_info.value.kind is ErrorKind.EXECUTION
        assert executor.attempts_for("pre-recon") == [1]
        assert no_sleep.delays == []

        session = pipeline.store.get_session(started.id)
        assert session.failed_agents == ["pre-recon"]
        assert session.status is SessionStatus.FAILED
        audit = await AuditSession(session, settings.output.audit_logs_dir).get_metrics()
        assert audit["session"]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_exhausted_validation(self, make_pipeline, started, no_sleep):
        """Missing deliverables on every attempt end in a validation error."""
        executor = ScriptedExecutor({"pre-recon": [ok(), ok(), ok()]})

        with pytest.raises(PentestError, match="failed output validation after 3 attempts") as exc_info:
            await make_pipeline(executor).run_agent(started.id, "pre-recon")

        assert exc_info.value.kind is ErrorKind.VALIDATION
        assert executor.attempts_for("pre-recon") == [1, 2, 3]
        assert no_sleep.delays == []

    @pytest.mark.asyncio
    async def test_raised_exception_wrapped(self, make_pipeline, started):
        """Exceptions from the executor become execution errors."""
        executor = ScriptedExecutor({"pre-recon": [ValueError("bad prompt")]})

        with pytest.raises(PentestError, match="bad prompt") as exc_info:
            await make_pipeline(executor).run_agent(started.id, "pre-recon")

        assert exc_info.value.kind is ErrorKind.EXECUTION
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_no_executor_is_config_error(self, make_pipeline, started):
        with pytest.raises(PentestError, match="No agent executor configured") as exc_info:
            await make_pipeline().run_agent(started.id, "pre-recon")

        assert exc_info.value.kind is ErrorKind.CONFIG


@pytest.mark.integration
class TestRollbackAndRerun:
    """Test restoring checkpoints across git, the store and the audit record."""

    @pytest.mark.asyncio
    async def test_rollback_to_agent(self, make_pipeline, started, settings, target_repo):
        """Later agents' files disappear and they are marked rolled back."""
        pipeline = make_pipeline(ScriptedExecutor())
        await pipeline.run_range(started.id, "pre-recon", "injection-vuln")
        queue = target_repo / "deliverables" / "injection_exploitation_queue.json"
        assert queue.exists()

        session = await pipeline.rollback_to(started.id, "recon")

        assert session.completed_agents == ["pre-recon", "recon"]
        assert "injection-vuln" not in session.checkpoints
        assert not queue.exists()
        assert (target_repo / "deliverables" / "recon_deliverable.md").exists()

        metrics = await agent_metrics(settings, session, "injection-vuln")
        assert metrics["status"] == "rolled-back"
        assert metrics["rolled_back_at"] is not None

    @pytest.mark.asyncio
    async def test_rollback_without_checkpoint(self, make_pipeline, started):
        with pytest.raises(PentestError, match="No checkpoint found for agent 'recon'"):
            await make_pipeline().rollback_to(started.id, "recon")

    @pytest.mark.asyncio
    async def test_rerun_agent(self, make_pipeline, started):
        """Re-running recon restarts from pre-recon's checkpoint."""
        executor = ScriptedExecutor()
        pipeline = make_pipeline(executor)
        await pipeline.run_range(started.id, "pre-recon", "recon")

        outcome = await pipeline.rerun(started.id, "recon")

        assert outcome.agent_name == "recon"
        assert executor.attempts_for("recon") == [1, 1]
        session = pipeline.store.get_session(started.id)
        assert session.completed_agents == ["pre-recon", "recon"]
        assert session.checkpoints["recon"] == outcome.checkpoint

    @pytest.mark.asyncio
    async def test_rerun_first_agent_resets_session(self, make_pipeline, started):
        """An agent without prerequisites re-runs from a reset session."""
        executor = ScriptedExecutor()
        pipeline = make_pipeline(executor)
        await pipeline.run_range(started.id, "pre-recon", "recon")

        await pipeline.rerun(started.id, "pre-recon")

        session = pipeline.store.get_session(started.id)
        assert session.completed_agents == ["pre-recon"]
        assert "recon" not in session.checkpoints

    @pytest.mark.asyncio
    async def test_rerun_first_agent_needs_fresh_deliverables(self, make_pipeline, started, target_repo):
        """The previous run's deliverables do not satisfy the re-run's validation."""
        executor = ScriptedExecutor({"pre-recon": [completes("pre-recon", cost=0.01), ok(), ok(), ok()]})
        pipeline = make_pipeline(executor)
        await pipeline.run_range(started.id, "pre-recon", "recon")

        with pytest.raises(PentestError, match="failed output validation") as exc_info:
            await pipeline.rerun(started.id, "pre-recon")

        assert exc_info.value.kind is ErrorKind.VALIDATION
        assert executor.attempts_for("pre-recon") == [1, 1, 2, 3]
        assert not (target_repo / "deliverables").exists()
        assert (target_repo / "app.py").exists()

    @pytest.mark.asyncio
    async def test_rollback_then_complete_again(self, make_pipeline, started):
        """Re-running the rolled back agent restores the completed list."""
        pipeline = make_pipeline(ScriptedExecutor())
        await pipeline.run_range(started.id, "pre-recon", "injection-vuln")
        before = list(pipeline.store.get_session(started.id).completed_agents)

        await pipeline.rollback_to(started.id, "recon")
        await pipeline.run_agent(started.id, "injection-vuln")

        session = pipeline.store.get_session(started.id)
        assert session.completed_agents == before
        assert set(session.checkpoints) == set(before)

        metrics = await agent_metrics(settings=pipeline.settings, session=session, agent_name="injection-vuln")
        assert metrics["status"] == "success"


@pytest.mark.integration
class TestInterruptedRollback:
    """Test that a rollback cut short never brings rolled back agents back."""

    async def _two_agents_done(self, pipeline, started):
        await pipeline.run_range(started.id, "pre-recon", "recon")
        return pipeline.store.get_session(started.id).checkpoints["pre-recon"]

    @pytest.mark.asyncio
    async def test_store_failure_reconciles_to_rolled_back(self, make_pipeline, started, settings, monkeypatch):
        """The audit record already says rolled back when the store update fails."""
        pipeline = make_pipeline(ScriptedExecutor())
        await self._two_agents_done(pipeline, started)

        async def store_down(session_id, agent_name):
            raise PentestError("session store unavailable", ErrorKind.FILESYSTEM)

        with monkeypatch.context() as patch:
            patch.setattr(pipeline.store, "rollback_to_agent", store_down)
            with pytest.raises(PentestError, match="session store unavailable"):
                await pipeline.rollback_to(started.id, "pre-recon")

        await pipeline.reconcile()

        session = pipeline.store.get_session(started.id)
        assert session.completed_agents == ["pre-recon"]
        assert "recon" not in session.checkpoints
        assert (await agent_metrics(settings, session, "recon"))["status"] == "rolled-back"

    @pytest.mark.asyncio
    async def test_git_failure_reconciles_to_rolled_back(self, make_pipeline, started, settings, monkeypatch):
        """A failed workspace reset leaves recon to be run again, not completed."""
        pipeline = make_pipeline(ScriptedExecutor())
        await self._two_agents_done(pipeline, started)

        async def reset_fails(self, commit):
            raise GitError("git reset failed", command=["git", "reset", "--hard", commit])

        with monkeypatch.context() as patch:
            patch.setattr(GitWorkspace, "reset_to_commit", reset_fails)
            with pytest.raises(GitError):
                await pipeline.rollback_to(started.id, "pre-recon")

        status = await pipeline.status(started.id)

        assert status["completedAgents"] == ["pre-recon"]
        assert status["nextAgent"] == "recon"

    @pytest.mark.asyncio
    async def test_recon_runs_again_after_interrupted_rollback(self, make_pipeline, started, monkeypatch):
        executor = ScriptedExecutor()
        pipeline = make_pipeline(executor)
        checkpoint = await self._two_agents_done(pipeline, started)

        async def store_down(session_id, agent_name):
            raise PentestError("session store unavailable", ErrorKind.FILESYSTEM)

        with monkeypatch.context() as patch:
            patch.setattr(pipeline.store, "rollback_to_agent", store_down)
            with pytest.raises(PentestError):
                await pipeline.rollback_to(started.id, "pre-recon")

        await pipeline.run_agent(started.id, "recon")

        assert executor.attempts_for("recon") == [1, 1]
        assert pipeline.store.get_session(started.id).checkpoints["pre-recon"] == checkpoint
