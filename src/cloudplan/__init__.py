"""
cloudplan - dependency-ordered, idempotent cloud resource provisioning.

Builds a provisioning plan from declarative resource specs, creates or adopts
each resource through a provider adapter, waits for readiness and rolls back
partial work when a run fails.
"""

__version__ = "0.1.0"
