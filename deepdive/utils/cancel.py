from __future__ import annotations


class CancelledError(RuntimeError):
    """Raised when a research task (or one of its ancestors) has been cancelled."""


class CancellationToken:
    """In-process cancel flag for one task execution; the first reason given sticks."""

    def __init__(self) -> None:
        self._reason: str | None = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def request_cancel(self, reason: str | None = None) -> None:
        self._cancelled = True
        if reason and self._reason is None:
            self._reason = reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancelledError(self._reason or "canceled")
