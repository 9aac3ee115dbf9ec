from __future__ import annotations

import asyncio


class CancelledError(RuntimeError):
    """Raised when a cancellation request should abort the current job."""


class CancellationToken:
    def __init__(self) -> None:
        self._cancel_requested = False
        self._reason: str | None = None
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested

    @property
    def reason(self) -> str | None:
        return self._reason

    def request_cancel(self, reason: str | None = None) -> None:
        if not self._cancel_requested:
            self._reason = reason
        self._cancel_requested = True
        self._event.set()

    def raise_if_cancelled(self) -> None:
        """Safe point for handlers: abort the current unit of work if cancel was requested."""
        if self._cancel_requested:
            raise CancelledError(self._reason or "Job aborted")

    async def sleep(self, delay_s: float) -> None:
        """Sleep up to `delay_s`, waking early (and raising) when cancel is requested."""
        if delay_s > 0:
            try:
                await asyncio.wait_for(self._event.wait(), timeout=delay_s)
            except asyncio.TimeoutError:
                pass
        self.raise_if_cancelled()
