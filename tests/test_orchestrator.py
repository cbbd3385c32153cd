"""Tests for the Orchestrator.

End-to-end runs against the in-memory provider on a fake clock: success,
failure with rollback, leaks, idempotent re-runs, cancellation and deadlines.
"""

import asyncio

import pytest
from structlog.testing import capture_logs

from cloudplan.core.errors import PermanentProviderError, TransientProviderError
from cloudplan.domain.models import ExecutionStatus, Run, RunOutcome
from cloudplan.orchestration import (
    CancellationToken,
    Orchestrator,
    PlanBuilder,
    ReadinessPoller,
    RollbackManager,
    StepExecutor,
)
from cloudplan.providers import InMemoryProvider


def deletes(provider):
    return [call.kind for call in provider.calls if call.operation == "delete"]


class TestSuccessfulRuns:
    """Runs where every resource becomes ready."""

    @pytest.mark.asyncio
    async def test_all_resources_ready(self, web_stack, provider, make_orchestrator):
        """Test every resource ends Ready with an external id."""
        run = await make_orchestrator().run(web_stack)

        assert run.outcome is RunOutcome.succeeded
        assert run.all_ready
        assert run.finished_at is not None
        assert run.rollback is None
        for state in run.states.values():
            assert state.external_id is not None
            assert provider.exists(state.external_id)

    @pytest.mark.asyncio
    async def test_resources_start_after_dependencies_ready(self, web_stack, provider, make_orchestrator):
        """Test creates are issued in an order consistent with dependencies."""
        provider.set_ready_after("network", 12)

        await make_orchestrator().run(web_stack)

        creates = [call.kind for call in provider.calls if call.operation == "create"]
        assert creates[0] == "network"
        assert creates[-1] == "instance"
        assert set(creates[1:3]) == {"subnet", "security_rule"}

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, web_stack, provider, make_orchestrator):
        """Test re-running a successful plan performs one lookup per resource and no creates."""
        first = await make_orchestrator().run(web_stack)
        provider.reset_calls()

        second = await make_orchestrator().run(web_stack)

        assert second.outcome is RunOutcome.succeeded
        assert provider.count("lookup") == len(web_stack)
        assert provider.count("create") == 0
        for resource_id in web_stack.order:
            assert second.state(resource_id).adopted
            assert second.state(resource_id).external_id == first.state(resource_id).external_id

    @pytest.mark.asyncio
    async def test_existing_network_is_reused(self, web_stack, provider, make_orchestrator):
        """Test a pre-existing network is adopted and never created."""
        network_id = provider.seed("network", {"name": "test-network"})

        run = await make_orchestrator().run(web_stack)

        assert run.outcome is RunOutcome.succeeded
        assert run.state("network").external_id == network_id
        assert run.state("network").adopted
        assert provider.count("create", "network") == 0
        assert provider.count("create") == 3

    @pytest.mark.asyncio
    async def test_caller_token_is_not_cancelled(self, web_stack, make_orchestrator):
        """Test the orchestrator never cancels the token it was given."""
        cancel = CancellationToken()

        await make_orchestrator().run(web_stack, cancel=cancel)

        assert not cancel.cancelled

    @pytest.mark.asyncio
    async def test_run_id_is_used(self, web_stack, make_orchestrator):
        """Test an explicit run id is kept."""
        run = await make_orchestrator().run(web_stack, run_id="run-42")
        assert run.run_id == "run-42"

    @pytest.mark.asyncio
    async def test_emits_step_events(self, web_stack, make_orchestrator):
        """Test step-start and info events carry the run id."""
        with capture_logs() as logs:
            run = await make_orchestrator().run(web_stack)

        started = [entry for entry in logs if entry["event"] == "run_started"]
        assert started[0]["event_kind"] == "step-start"
        assert started[0]["run_id"] == run.run_id
        ready = [entry for entry in logs if entry["event"] == "resource_ready" and "event_kind" in entry]
        assert {entry["resource_id"] for entry in ready} == set(web_stack.order)


class TestFailedRuns:
    """Runs that halt and roll back."""

    @pytest.mark.asyncio
    async def test_failed_create_rolls_back_dependencies(self, web_stack, provider, make_orchestrator):
        """Test a permanent create failure rolls back network and subnet, never touching instance."""
        provider.fail("create", "security_rule")

        run = await make_orchestrator().run(web_stack)

        assert run.outcome is RunOutcome.failed
        assert run.failed_resource == "security_rule"
        assert run.state("network").status is ExecutionStatus.rolled_back
        assert run.state("subnet").status is ExecutionStatus.rolled_back
        assert run.state("security_rule").status is ExecutionStatus.failed
        assert run.state("security_rule").error_type == "PermanentProviderError"
        assert run.state("instance").status is ExecutionStatus.pending
        assert run.state("instance").started_at is None
        assert provider.count("lookup", "instance") == 0
        assert provider.count("create", "instance") == 0
        assert deletes(provider) == ["subnet", "network"]
        assert provider.live_resources() == []

    @pytest.mark.asyncio
    async def test_readiness_timeout_fails_run(self, provider, make_orchestrator, make_spec, clock):
        """Test a resource ready at 45s with a 30s timeout fails the run."""
        plan = PlanBuilder().build([make_spec("database", readiness_timeout=30)])
        provider.set_ready_after("database", 45)

        run = await make_orchestrator().run(plan)

        state = run.state("database")
        assert run.outcome is RunOutcome.failed
        assert state.status is ExecutionStatus.rolled_back
        assert state.error_type == "ReadinessTimeoutError"
        assert "30s" in state.error
        assert clock.now == pytest.approx(30)
        assert not provider.exists(state.external_id)

    @pytest.mark.asyncio
    async def test_error_state_fails_resource(self, web_stack, provider, make_orchestrator):
        """Test a resource entering the provider's error state fails the run."""
        provider.fail_readiness("subnet")

        run = await make_orchestrator().run(web_stack)

        assert run.outcome is RunOutcome.failed
        assert run.failed_resource == "subnet"
        assert run.state("subnet").status is ExecutionStatus.rolled_back
        assert "error state" in run.state("subnet").error

    @pytest.mark.asyncio
    async def test_failed_delete_leaks_resource(self, provider, make_orchestrator, make_spec):
        """Test a failing delete marks the resource leaked while rollback continues."""
        plan = PlanBuilder().build(
            [
                make_spec("network"),
                make_spec("security_rule", depends_on=["network"]),
                make_spec("instance", depends_on=["security_rule"]),
            ]
        )
        provider.fail("create", "instance")
        provider.fail("delete", "security_rule", times=None)

        run = await make_orchestrator().run(plan)

        assert run.outcome is RunOutcome.failed_with_leaks
        assert run.state("security_rule").status is ExecutionStatus.leaked
        assert run.state("security_rule").error_type == "RollbackError"
        assert run.state("network").status is ExecutionStatus.rolled_back
        assert run.rollback.leaked == ["security_rule"]
        assert deletes(provider) == ["security_rule", "network"]

    @pytest.mark.asyncio
    async def test_transient_errors_exhausted(self, web_stack, provider, make_orchestrator):
        """Test transient create errors are retried up to max_attempts then fail the run."""
        from cloudplan.core.errors import TransientProviderError

        provider.fail("create", "network", TransientProviderError("throttled"), times=None)

        run = await make_orchestrator(max_attempts=3).run(web_stack)

        assert run.outcome is RunOutcome.failed
        assert run.state("network").status is ExecutionStatus.failed
        assert run.state("network").attempts == 3
        assert provider.count("create", "network") == 3
        assert run.rollback.processed == []

    @pytest.mark.asyncio
    async def test_unexpected_worker_error_is_compensated(self, web_stack, provider, make_orchestrator):
        """Test a non-provider exception in a worker fails the resource and rolls back."""

        class BrokenProvider(InMemoryProvider):
            async def lookup(self, kind, lookup_filter):
                if kind == "instance":
                    raise RuntimeError("adapter bug")
                return await super().lookup(kind, lookup_filter)

        broken = BrokenProvider()
        run = await Orchestrator(broken, poll_interval=0.01).run(web_stack)

        assert run.outcome is RunOutcome.failed
        assert run.state("instance").error_type == "RuntimeError"
        assert broken.live_resources() == []

    @pytest.mark.asyncio
    async def test_orchestrator_exception_still_rolls_back(
        self, web_stack, provider, make_orchestrator, monkeypatch
    ):
        """Test rollback runs in the finally path when the driving loop itself raises."""
        orchestrator = make_orchestrator()
        original = orchestrator._apply

        def exploding(run, message, events):
            if message.readiness is not None:
                raise RuntimeError("boom")
            original(run, message, events)

        monkeypatch.setattr(orchestrator, "_apply", exploding)

        with pytest.raises(RuntimeError, match="boom"):
            await orchestrator.run(web_stack)

        assert provider.count("create", "network") == 1
        assert provider.live_resources() == []

    @pytest.mark.asyncio
    async def test_unapplied_create_is_rolled_back(
        self, provider, make_orchestrator, make_spec, monkeypatch
    ):
        """Test a create still queued when the driving loop raises is recorded and rolled back."""
        plan = PlanBuilder().build([make_spec("network"), make_spec("bucket")], name="pair")
        orchestrator = make_orchestrator(max_workers=2)
        original = orchestrator._apply

        def exploding(run, message, events):
            if message.step is not None and message.resource_id == "network":
                raise RuntimeError("boom")
            original(run, message, events)

        monkeypatch.setattr(orchestrator, "_apply", exploding)
        run = Run.start(plan)

        with pytest.raises(RuntimeError, match="boom"):
            await orchestrator.execute(run)

        assert provider.count("create") == 2
        assert run.state("network").status is ExecutionStatus.rolled_back
        assert run.state("bucket").status is ExecutionStatus.rolled_back
        assert run.outcome is RunOutcome.failed
        assert run.failure_reason.startswith("unexpected error")
        assert provider.live_resources() == []

    @pytest.mark.asyncio
    async def test_lost_create_response_is_rolled_back(self, web_stack, clock):
        """Test a resource created by this run is deleted even if its create response was lost."""

        class LossyProvider(InMemoryProvider):
            lost_responses = 1

            async def create(self, kind, params):
                external_id = await super().create(kind, params)
                if kind == "subnet" and self.lost_responses:
                    self.lost_responses -= 1
                    raise TransientProviderError("connection reset")
                return external_id

        lossy = LossyProvider(clock=clock)
        lossy.fail("create", "instance")
        orchestrator = Orchestrator(
            lossy,
            executor=StepExecutor(lossy, backoff_factor=0),
            poller=ReadinessPoller(lossy, interval=5.0, clock=clock, sleep=clock.sleep),
            rollback=RollbackManager(lossy, backoff_factor=0),
            poll_interval=0.01,
            clock=clock,
        )

        run = await orchestrator.run(web_stack)

        assert run.outcome is RunOutcome.failed
        assert lossy.count("create", "subnet") == 1
        assert not run.state("subnet").adopted
        assert run.state("subnet").status is ExecutionStatus.rolled_back
        assert run.rollback.retained == []
        assert lossy.live_resources() == []

    @pytest.mark.asyncio
    async def test_no_create_after_halt(self, web_stack, provider, make_orchestrator):
        """Test a worker waiting out a transient retry issues no create once a sibling fails."""
        provider.fail("create", "subnet", TransientProviderError("throttled"))
        provider.fail("create", "security_rule")

        run = await make_orchestrator(backoff_factor=0.05).run(web_stack)

        assert run.outcome is RunOutcome.failed
        assert run.failed_resource == "security_rule"
        assert provider.count("create", "subnet") == 1
        assert run.state("subnet").status is ExecutionStatus.pending
        assert run.state("subnet").started_at is not None
        assert run.state("network").status is ExecutionStatus.rolled_back
        assert provider.live_resources() == []

    @pytest.mark.asyncio
    async def test_retained_resource_survives_rollback(self, provider, make_orchestrator, make_spec):
        """Test delete_action=retain leaves the resource in place."""
        plan = PlanBuilder().build(
            [
                make_spec("bucket", delete_action="retain"),
                make_spec("instance", depends_on=["bucket"]),
            ]
        )
        provider.fail("create", "instance")

        run = await make_orchestrator().run(plan)

        assert run.outcome is RunOutcome.failed
        assert run.rollback.retained == ["bucket"]
        assert run.state("bucket").status is ExecutionStatus.ready
        assert provider.exists(run.state("bucket").external_id)

    @pytest.mark.asyncio
    async def test_adopted_resource_retained_by_default(self, web_stack, provider, make_orchestrator):
        """Test resources adopted from a previous run are not deleted unless configured."""
        network_id = provider.seed("network", {"name": "test-network"})
        provider.fail("create", "subnet")

        run = await make_orchestrator().run(web_stack)

        assert run.outcome is RunOutcome.failed
        assert "network" in run.rollback.retained
        assert provider.exists(network_id)

    @pytest.mark.asyncio
    async def test_adopted_resource_deleted_when_enabled(self, web_stack, provider, make_orchestrator):
        """Test rollback_adopted deletes adopted resources too."""
        network_id = provider.seed("network", {"name": "test-network"})
        provider.fail("create", "subnet")

        run = await make_orchestrator(rollback_adopted=True).run(web_stack)

        assert run.state("network").status is ExecutionStatus.rolled_back
        assert not provider.exists(network_id)


class TestHalting:
    """Cancellation, deadlines and the worker bound."""

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, web_stack, provider, make_orchestrator):
        """Test a pre-cancelled token makes no provider calls."""
        cancel = CancellationToken()
        cancel.cancel("operator abort")

        run = await make_orchestrator().run(web_stack, cancel=cancel)

        assert run.outcome is RunOutcome.failed
        assert run.failure_reason == "operator abort"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_cancelled_during_readiness(self, web_stack, provider, clock, make_orchestrator):
        """Test cancelling mid-poll rolls back the in-flight resource."""
        provider.set_ready_after("network", 100)
        cancel = CancellationToken()

        async def cancelling_sleep(seconds):
            await clock.sleep(seconds)
            cancel.cancel("interrupted")

        run = await make_orchestrator(sleep=cancelling_sleep).run(web_stack, cancel=cancel)

        assert run.outcome is RunOutcome.failed
        assert run.failure_reason == "interrupted"
        assert run.state("network").status is ExecutionStatus.rolled_back
        assert run.state("subnet").status is ExecutionStatus.pending
        assert provider.count("create", "subnet") == 0
        assert provider.live_resources() == []

    @pytest.mark.asyncio
    async def test_expired_deadline_starts_nothing(self, web_stack, provider, make_orchestrator):
        """Test a zero deadline halts before any create."""
        run = await make_orchestrator(run_deadline=0).run(web_stack)

        assert run.outcome is RunOutcome.failed
        assert run.failure_reason == "run deadline exceeded"
        assert provider.count("create") == 0

    @pytest.mark.asyncio
    async def test_deadline_bounds_readiness_wait(self, provider, make_orchestrator, make_spec, clock):
        """Test the run deadline caps a resource's readiness timeout."""
        plan = PlanBuilder().build([make_spec("database")])
        provider.set_ready_after("database", 60)

        run = await make_orchestrator(run_deadline=20).run(plan)

        assert run.outcome is RunOutcome.failed
        assert run.failure_reason is not None
        assert run.state("database").status is ExecutionStatus.rolled_back
        assert clock.now <= 25

    @pytest.mark.asyncio
    async def test_worker_pool_is_bounded(self, make_spec):
        """Test no more than max_workers resources are in flight at once."""

        class TrackingProvider(InMemoryProvider):
            def __init__(self):
                super().__init__()
                self.in_flight = 0
                self.peak = 0

            async def create(self, kind, params):
                self.in_flight += 1
                self.peak = max(self.peak, self.in_flight)
                await asyncio.sleep(0.01)
                self.in_flight -= 1
                return await super().create(kind, params)

        tracking = TrackingProvider()
        plan = PlanBuilder().build([make_spec(f"queue-{n}", kind="queue") for n in range(5)])

        run = await Orchestrator(tracking, max_workers=2, poll_interval=0.01).run(plan)

        assert run.outcome is RunOutcome.succeeded
        assert tracking.peak == 2

    def test_rejects_invalid_worker_count(self, provider):
        """Test max_workers below one is rejected."""
        with pytest.raises(ValueError):
            Orchestrator(provider, max_workers=0)


class TestFromSettings:
    """Orchestrator construction from Settings."""

    @pytest.mark.asyncio
    async def test_from_settings(self, web_stack, provider, clock):
        """Test settings-driven construction provisions a plan."""
        from cloudplan.config import Settings

        settings = Settings(max_workers=2, poll_interval=1.0, retry_backoff_factor=0)
        orchestrator = Orchestrator.from_settings(provider, settings, clock=clock, sleep=clock.sleep)

        run = await orchestrator.run(web_stack)

        assert run.outcome is RunOutcome.succeeded
        assert orchestrator._max_workers == 2

    @pytest.mark.asyncio
    async def test_permanent_error_on_lookup(self, web_stack, provider, make_orchestrator):
        """Test a permanent lookup error is not retried."""
        provider.fail("lookup", "network", PermanentProviderError("access denied"), times=None)

        run = await make_orchestrator().run(web_stack)

        assert run.state("network").attempts == 1
        assert run.state("network").error == "access denied"
