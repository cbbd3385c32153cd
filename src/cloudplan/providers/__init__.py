"""Provider contract and built-in registrations."""

# Import built-in providers for side effects (registration)
from cloudplan.providers import memory as _memory  # noqa: F401
from cloudplan.providers.base import Provider, ResourceStatus
from cloudplan.providers.memory import InMemoryProvider
from cloudplan.providers.registry import (
    create_provider,
    list_providers,
    register_provider,
)

__all__ = [
    "InMemoryProvider",
    "Provider",
    "ResourceStatus",
    "create_provider",
    "list_providers",
    "register_provider",
]
