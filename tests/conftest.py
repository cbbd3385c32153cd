"""Root test configuration."""

import asyncio
import logging

import pytest
import structlog

from cloudplan.domain.models import ResourceSpec
from cloudplan.orchestration import (
    Orchestrator,
    PlanBuilder,
    ReadinessPoller,
    RollbackManager,
    StepExecutor,
)
from cloudplan.providers import InMemoryProvider


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


class FakeClock:
    """Monotonic clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider(clock):
    return InMemoryProvider(clock=clock)


def _spec(resource_id, kind=None, depends_on=(), **kwargs):
    kind = kind or resource_id
    lookup = kwargs.pop("lookup_filter", {"name": f"test-{resource_id}"})
    params = {**lookup, **kwargs.pop("create_params", {})}
    return ResourceSpec(
        id=resource_id,
        kind=kind,
        lookup_filter=lookup,
        create_params=params,
        depends_on=frozenset(depends_on),
        **kwargs,
    )


@pytest.fixture
def make_spec():
    """ResourceSpec factory whose create params carry the lookup name, so re-runs adopt."""
    return _spec


@pytest.fixture
def web_stack():
    """Network, Subnet(Network), SecurityRule(Network), Instance(Subnet, SecurityRule)."""
    return PlanBuilder().build(
        [
            _spec("network"),
            _spec("subnet", depends_on=["network"]),
            _spec("security_rule", depends_on=["network"]),
            _spec("instance", depends_on=["subnet", "security_rule"]),
        ],
        name="web-stack",
    )


@pytest.fixture
def make_orchestrator(provider, clock):
    """Orchestrator on the fake clock, with zero retry backoff unless given."""

    def _make(
        poll_interval=5.0,
        sleep=None,
        rollback_adopted=False,
        max_attempts=3,
        backoff_factor=0,
        **kwargs,
    ):
        return Orchestrator(
            provider,
            executor=StepExecutor(
                provider, max_attempts=max_attempts, backoff_factor=backoff_factor
            ),
            poller=ReadinessPoller(
                provider, interval=poll_interval, clock=clock, sleep=sleep or clock.sleep
            ),
            rollback=RollbackManager(
                provider,
                rollback_adopted=rollback_adopted,
                max_attempts=max_attempts,
                backoff_factor=0,
            ),
            poll_interval=0.01,
            clock=clock,
            **kwargs,
        )

    return _make
