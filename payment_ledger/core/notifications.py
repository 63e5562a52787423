"""
Notification sink.

Notifications are fire-and-forget and never part of ledger correctness.
The default notifier only writes structured audit logs; deployments plug in
email or chat delivery by implementing the same interface.
"""
import asyncio
from typing import Any, Awaitable, Dict, Protocol, Set

import structlog

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    """Anything that can deliver a ledger notification."""

    async def notify(self, kind: str, payload: Dict[str, Any]) -> None:
        ...


class LogNotifier:
    """Writes notifications to the audit log."""

    async def notify(self, kind: str, payload: Dict[str, Any]) -> None:
        logger.info("ledger_notification", kind=kind, **payload)


class BackgroundTasks:
    """
    Keeps references to fire-and-forget tasks until they finish.

    The event loop only holds weak references to tasks, so a task nobody
    references can be garbage collected mid-flight.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def schedule(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("background_task_failed", error=str(task.exception()))

    async def drain(self) -> None:
        """Wait for every scheduled task (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
