"""Cancellation tokens and the scheduler used at every wait boundary."""
import asyncio
import logging
from typing import Optional

from ..errors import OperationCancelledError

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag checked at suspension points."""

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "Operation cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError(self._reason or "Operation cancelled")

    async def wait(self) -> None:
        await self._event.wait()


def check_cancelled(token: Optional[CancellationToken]) -> None:
    if token is not None:
        token.raise_if_cancelled()


class AsyncioScheduler:
    """Implements IScheduler on top of the running event loop."""

    async def sleep(self, seconds: float, cancel_token: Optional[CancellationToken] = None) -> None:
        check_cancelled(cancel_token)
        if seconds <= 0:
            return
        if cancel_token is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(cancel_token.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        logger.debug(f"Sleep of {seconds:.1f}s interrupted by cancellation")
        cancel_token.raise_if_cancelled()
