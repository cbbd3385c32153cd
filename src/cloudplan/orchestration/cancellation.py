"""Cooperative cancellation shared by the orchestrator and its workers."""

from __future__ import annotations


class CancellationToken:
    """A flag checked between orchestrator steps and on every poll tick.

    Child tokens observe their parent's cancellation, which lets the
    orchestrator halt its own workers without touching the caller's token.
    """

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._parent = parent
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if self._reason is None:
            self._reason = reason

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    @property
    def cancelled(self) -> bool:
        if self._reason is not None:
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> str | None:
        if self._reason is None and self._parent is not None:
            return self._parent.reason
        return self._reason
