"""In-memory provider for local dry runs and tests.

Simulates asynchronous readiness against an injectable clock, records every
call, and lets callers inject provider errors per operation and kind.
"""

from __future__ import annotations

import itertools
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Mapping

import structlog

from cloudplan.core.errors import PermanentProviderError, ProviderError
from cloudplan.providers.base import ResourceStatus
from cloudplan.providers.registry import register_provider

logger = structlog.get_logger()

OPERATIONS = ("lookup", "create", "describe", "delete")


@dataclass
class InMemoryResource:
    external_id: str
    kind: str
    attributes: dict[str, Any]
    created_at: float
    ready_after: float = 0.0
    fails: bool = False
    deleted: bool = False


@dataclass(frozen=True)
class ProviderCall:
    operation: str
    kind: str
    target: Any = None


class InMemoryProvider:
    """Provider backed by a dict of simulated resources."""

    name = "memory"

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._resources: dict[str, InMemoryResource] = {}
        self._ids = itertools.count(1)
        self._ready_after: dict[str, float] = {}
        self._failing_kinds: set[str] = set()
        self._failures: dict[tuple[str, str], Deque[ProviderError]] = defaultdict(deque)
        self._persistent_failures: dict[tuple[str, str], ProviderError] = {}
        self.calls: list[ProviderCall] = []

    # Scenario setup

    def seed(self, kind: str, attributes: Mapping[str, Any], *, ready: bool = True) -> str:
        """Register a resource that already exists before any run."""
        resource = self._new_resource(kind, attributes)
        if not ready:
            resource.ready_after = float("inf")
        return resource.external_id

    def set_ready_after(self, kind: str, seconds: float) -> None:
        """Resources of this kind become ready this many seconds after creation."""
        self._ready_after[kind] = seconds

    def fail_readiness(self, kind: str) -> None:
        """Resources of this kind end up in the provider's error state."""
        self._failing_kinds.add(kind)

    def fail(
        self,
        operation: str,
        kind: str,
        error: ProviderError | None = None,
        *,
        times: int | None = 1,
    ) -> None:
        """Make the next ``times`` calls of an operation raise (always when None)."""
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown provider operation: {operation}")
        error = error or PermanentProviderError(f"injected {operation} failure for {kind}")
        if times is None:
            self._persistent_failures[(operation, kind)] = error
        else:
            self._failures[(operation, kind)].extend([error] * times)

    # Introspection

    def count(self, operation: str, kind: str | None = None) -> int:
        return sum(
            1
            for call in self.calls
            if call.operation == operation and (kind is None or call.kind == kind)
        )

    def exists(self, external_id: str) -> bool:
        resource = self._resources.get(external_id)
        return resource is not None and not resource.deleted

    def live_resources(self, kind: str | None = None) -> list[InMemoryResource]:
        return [
            r
            for r in self._resources.values()
            if not r.deleted and (kind is None or r.kind == kind)
        ]

    def reset_calls(self) -> None:
        self.calls.clear()

    # Provider contract

    async def lookup(self, kind: str, lookup_filter: Mapping[str, Any]) -> str | None:
        self._record("lookup", kind, dict(lookup_filter))
        for resource in self.live_resources(kind):
            if all(resource.attributes.get(key) == value for key, value in lookup_filter.items()):
                return resource.external_id
        return None

    async def create(self, kind: str, params: Mapping[str, Any]) -> str:
        self._record("create", kind, dict(params))
        resource = self._new_resource(kind, params)
        resource.ready_after = self._ready_after.get(kind, 0.0)
        resource.fails = kind in self._failing_kinds
        logger.debug("memory_resource_created", kind=kind, external_id=resource.external_id)
        return resource.external_id

    async def describe(self, kind: str, external_id: str) -> ResourceStatus:
        self._record("describe", kind, external_id)
        resource = self._resources.get(external_id)
        if resource is None or resource.deleted:
            raise PermanentProviderError(
                "Resource not found", {"kind": kind, "external_id": external_id}
            )
        if resource.fails:
            return ResourceStatus.error
        if self._clock() - resource.created_at >= resource.ready_after:
            return ResourceStatus.ready
        return ResourceStatus.provisioning

    async def delete(self, kind: str, external_id: str) -> None:
        self._record("delete", kind, external_id)
        resource = self._resources.get(external_id)
        if resource is None or resource.deleted:
            return
        resource.deleted = True
        logger.debug("memory_resource_deleted", kind=kind, external_id=external_id)

    def _record(self, operation: str, kind: str, target: Any) -> None:
        self.calls.append(ProviderCall(operation=operation, kind=kind, target=target))
        key = (operation, kind)
        if key in self._persistent_failures:
            raise self._persistent_failures[key]
        pending = self._failures.get(key)
        if pending:
            raise pending.popleft()

    def _new_resource(self, kind: str, attributes: Mapping[str, Any]) -> InMemoryResource:
        external_id = f"{kind}-{next(self._ids):04d}"
        resource = InMemoryResource(
            external_id=external_id,
            kind=kind,
            attributes=dict(attributes),
            created_at=self._clock(),
        )
        self._resources[external_id] = resource
        return resource


register_provider(
    "memory",
    InMemoryProvider,
    version="0.1.0",
    description="In-memory simulator for dry runs and tests",
)
