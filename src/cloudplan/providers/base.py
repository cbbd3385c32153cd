from __future__ import annotations

from enum import StrEnum
from typing import Any, Mapping, Protocol, runtime_checkable


class ResourceStatus(StrEnum):
    """Provider-reported lifecycle status of an external resource."""

    provisioning = "provisioning"
    ready = "ready"
    error = "error"


@runtime_checkable
class Provider(Protocol):
    """Contract every cloud/service adapter satisfies.

    Implementations raise ``TransientProviderError`` for retryable conditions
    and ``PermanentProviderError`` for everything that a retry cannot fix.
    """

    name: str

    async def lookup(self, kind: str, lookup_filter: Mapping[str, Any]) -> str | None:
        """Return the external id of an existing resource matching the filter."""
        ...

    async def create(self, kind: str, params: Mapping[str, Any]) -> str:
        """Start creating a resource and return its external id."""
        ...

    async def describe(self, kind: str, external_id: str) -> ResourceStatus:
        ...

    async def delete(self, kind: str, external_id: str) -> None:
        ...
