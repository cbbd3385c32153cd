"""Tests for ReadinessPoller."""

import pytest

from cloudplan.core.errors import TransientProviderError
from cloudplan.orchestration import CancellationToken, ReadinessPoller, ReadinessResult


@pytest.fixture
def poller(provider, clock):
    return ReadinessPoller(provider, interval=5.0, clock=clock, sleep=clock.sleep)


class TestAwaitReady:
    """Polling outcomes."""

    @pytest.mark.asyncio
    async def test_ready_immediately(self, poller, provider, clock):
        """Test the first describe happens without waiting."""
        external_id = await provider.create("network", {"name": "net"})

        result = await poller.await_ready(external_id, "network", timeout=30)

        assert result is ReadinessResult.ready
        assert provider.count("describe") == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_ready_after_several_polls(self, poller, provider, clock):
        """Test polling continues at the interval until ready."""
        provider.set_ready_after("database", 12)
        external_id = await provider.create("database", {"name": "db"})

        result = await poller.await_ready(external_id, "database", timeout=60)

        assert result is ReadinessResult.ready
        assert provider.count("describe") == 4
        assert clock.now == 15

    @pytest.mark.asyncio
    async def test_times_out(self, poller, provider, clock):
        """Test a resource ready at 45s times out with a 30s timeout."""
        provider.set_ready_after("database", 45)
        external_id = await provider.create("database", {"name": "db"})

        result = await poller.await_ready(external_id, "database", timeout=30)

        assert result is ReadinessResult.timed_out
        assert clock.now == 30

    @pytest.mark.asyncio
    async def test_last_sleep_is_clamped_to_timeout(self, poller, provider, clock):
        """Test the final sleep never overshoots the timeout."""
        provider.set_ready_after("database", 45)
        external_id = await provider.create("database", {"name": "db"})

        await poller.await_ready(external_id, "database", timeout=12)

        assert clock.sleeps == [5.0, 5.0, 2.0]

    @pytest.mark.asyncio
    async def test_error_state_fails(self, poller, provider):
        """Test the provider's error status fails readiness."""
        provider.fail_readiness("database")
        external_id = await provider.create("database", {"name": "db"})

        result = await poller.await_ready(external_id, "database", timeout=30)

        assert result is ReadinessResult.failed

    @pytest.mark.asyncio
    async def test_transient_describe_error_keeps_polling(self, poller, provider, clock):
        """Test a transient describe error counts as still provisioning."""
        external_id = await provider.create("network", {"name": "net"})
        provider.fail("describe", "network", TransientProviderError("throttled"))

        result = await poller.await_ready(external_id, "network", timeout=30)

        assert result is ReadinessResult.ready
        assert provider.count("describe") == 2
        assert clock.now == 5

    @pytest.mark.asyncio
    async def test_missing_resource_fails(self, poller):
        """Test a permanent describe error fails readiness."""
        result = await poller.await_ready("network-9999", "network", timeout=30)
        assert result is ReadinessResult.failed

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_polling(self, poller, provider):
        """Test a cancelled token is observed before describing."""
        external_id = await provider.create("network", {"name": "net"})
        cancel = CancellationToken()
        cancel.cancel("halt")

        result = await poller.await_ready(external_id, "network", timeout=30, cancel=cancel)

        assert result is ReadinessResult.cancelled
        assert provider.count("describe") == 0

    def test_rejects_non_positive_interval(self, provider):
        """Test the poll interval must be positive."""
        with pytest.raises(ValueError):
            ReadinessPoller(provider, interval=0)
