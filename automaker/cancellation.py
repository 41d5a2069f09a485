"""Cooperative cancellation handle threaded through every suspension point."""

from __future__ import annotations

import asyncio

from automaker.errors import OperationCancelled


class CancellationToken:
    """A one-shot stop signal.

    Cancelling a token also cancels every child created from it, so the
    scheduler can stop all feature executions with a single call while each
    feature still owns a token of its own.
    """

    def __init__(self, reason: str = "") -> None:
        self._event = asyncio.Event()
        self._children: list[CancellationToken] = []
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    def child(self) -> "CancellationToken":
        token = CancellationToken()
        if self.cancelled:
            token.cancel(self.reason)
        else:
            self._children.append(token)
        return token

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self.reason or "cancelled")

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait until cancelled or *timeout* seconds pass; return ``cancelled``."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self.cancelled

    async def sleep(self, seconds: float) -> None:
        """Sleep that ends early, raising ``OperationCancelled``, when cancelled."""
        if await self.wait(seconds):
            raise OperationCancelled(self.reason or "cancelled")
