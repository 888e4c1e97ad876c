"""Cooperative cancellation for agent executions.

A token is created per execution and threaded into every suspension point of
the agent loop. `run()` races an awaitable against the token so an in-flight
LLM round trip or tool call is abandoned as soon as cancellation is requested.
"""

import asyncio
from collections.abc import Awaitable
import inspect
from typing import TypeVar

import structlog

from agent_orchestrator.errors import ExecutionCancelled

logger = structlog.get_logger()

T = TypeVar("T")


class CancellationToken:
    """Cancellation signal for one execution."""

    def __init__(self, execution_id: str | None = None):
        self.execution_id = execution_id
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation. Later calls keep the first reason."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.info("cancellation_requested", execution_id=self.execution_id, reason=reason)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExecutionCancelled(self._reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable` unless cancellation fires first.

        Raises:
            ExecutionCancelled: token fired before the awaitable completed.
                The awaitable's task is cancelled.
        """
        if self._event.is_set():
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise ExecutionCancelled(self._reason or "cancelled")

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            work.cancel()
            waiter.cancel()
            raise

        if work.done():
            waiter.cancel()
            return work.result()

        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug("cancelled_work_raised", execution_id=self.execution_id, error=str(e))
        raise ExecutionCancelled(self._reason or "cancelled")
