"""Cancellation and wall-clock budgets for tool loops.

The loop never raises for vendor or tool failures, so racing it against a
timer is safe. Two modes are supported:

* ``ABANDON`` (default): the timeout outcome is returned to the caller and the
  loop keeps running in a tracked background task; its result is discarded.
* ``ABORT``: the loop's cancellation token is set and the task is cancelled.
  The loop checks the token before every vendor call and tool execution.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LoopCancelled(Exception):
    """Raised inside the loop when its cancellation token is set."""


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise LoopCancelled(self.reason)


class TimeoutMode(str, Enum):
    ABANDON = "abandon"
    ABORT = "abort"


@dataclass
class RunOutcome(Generic[T]):
    result: T | None
    timed_out: bool = False

    @property
    def completed(self) -> bool:
        return not self.timed_out


class LoopRunner:
    """Runs cancellable operations under an optional wall-clock budget.

    Construct once per process and share it; abandoned tasks are kept here so
    they are not garbage-collected while still running.
    """

    def __init__(self, mode: TimeoutMode = TimeoutMode.ABANDON) -> None:
        self.mode = mode
        self._abandoned: set[asyncio.Task] = set()

    @property
    def abandoned_count(self) -> int:
        return len(self._abandoned)

    async def run(
        self,
        operation: Callable[[CancellationToken], Awaitable[T]],
        timeout: float | None = None,
    ) -> RunOutcome[T]:
        token = CancellationToken()
        task = asyncio.ensure_future(operation(token))
        if not timeout:
            return RunOutcome(result=await task)

        done, _ = await asyncio.wait({task}, timeout=timeout)
        if task in done:
            return RunOutcome(result=task.result())

        if self.mode is TimeoutMode.ABORT:
            logger.warning("Operation exceeded %.1fs, aborting", timeout)
            token.cancel("timeout")
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            return RunOutcome(result=None, timed_out=True)

        logger.warning("Operation exceeded %.1fs, continuing in background", timeout)
        self._abandoned.add(task)
        task.add_done_callback(self._discard)
        return RunOutcome(result=None, timed_out=True)

    def _discard(self, task: asyncio.Task) -> None:
        self._abandoned.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Abandoned operation failed: %s", exc)
            return
        logger.info("Abandoned operation finished, result discarded")

    async def drain(self) -> None:
        """Wait for every abandoned operation to finish."""
        if self._abandoned:
            await asyncio.gather(*self._abandoned, return_exceptions=True)

    async def cancel_abandoned(self) -> None:
        for task in list(self._abandoned):
            task.cancel()
        await self.drain()


def timeout_response(timeout: float, extra: dict[str, Any] | None = None) -> dict[str, Any]:
    """Client-facing payload returned when a run exceeds its budget."""
    payload = {
        "success": False,
        "error": f"Operation timed out after {timeout:g}s",
        "timedOut": True,
    }
    if extra:
        payload.update(extra)
    return payload
