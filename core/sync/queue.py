"""
Sync Operation Queue.

Serializes every operation against the target tree: strict FIFO order and
at most one operation in flight, whichever producer enqueued it.
"""

import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from .events import SyncOperation, OperationKind

logger = logging.getLogger(__name__)

OperationHandler = Callable[[SyncOperation], Awaitable[Any]]


@dataclass
class QueueMetrics:
    """Counters for monitoring queue activity"""
    total_enqueued: int = 0
    total_processed: int = 0
    total_failed: int = 0
    total_discarded: int = 0
    total_rejected: int = 0
    max_queue_size_reached: int = 0
    operations_by_kind: Dict[OperationKind, int] = field(default_factory=lambda: defaultdict(int))


class SyncQueue:
    """
    Single-flight FIFO queue feeding one handler.

    Producers (watcher callbacks marshalled onto the event loop, the initial
    scanner) only call enqueue(). A single drain task pops the head, awaits
    the handler to completion, then pops the next. A handler failure is
    logged and counted; it never stops the drain.
    """

    def __init__(self, handler: OperationHandler):
        """
        Args:
            handler: Coroutine function executing one operation
        """
        self._handler = handler
        self._pending: Deque[SyncOperation] = deque()
        self._drain_task: Optional[asyncio.Task] = None
        self._in_flight: Optional[SyncOperation] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

        self.metrics = QueueMetrics()
        self._start_time = datetime.now()

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def in_flight(self) -> Optional[SyncOperation]:
        """The operation currently executing, if any"""
        return self._in_flight

    @property
    def is_draining(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    def enqueue(self, operation: SyncOperation) -> bool:
        """
        Append an operation to the tail and make sure the drain is running.

        Must be called from the event loop thread.

        Returns:
            True if accepted, False if the queue is closed
        """
        if self._closed:
            self.metrics.total_rejected += 1
            logger.debug(f"Queue closed, rejecting {operation}")
            return False

        self._pending.append(operation)
        self._idle.clear()

        self.metrics.total_enqueued += 1
        self.metrics.operations_by_kind[operation.kind] += 1
        self.metrics.max_queue_size_reached = max(
            self.metrics.max_queue_size_reached,
            len(self._pending)
        )

        if not self.is_draining:
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

        logger.debug(f"Enqueued {operation} (queue size: {len(self._pending)})")
        return True

    async def _drain(self) -> None:
        """Run queued operations one at a time until the queue is empty."""
        try:
            while self._pending:
                operation = self._pending.popleft()
                self._in_flight = operation
                try:
                    await self._handler(operation)
                    self.metrics.total_processed += 1
                except Exception as e:
                    self.metrics.total_failed += 1
                    logger.error(f"Failed to process {operation.path}: {e}")
                finally:
                    self._in_flight = None
        finally:
            self._idle.set()

    async def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until nothing is queued or in flight.

        Returns:
            True if the queue went idle, False on timeout
        """
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def discard_pending(self) -> int:
        """
        Stop accepting operations and drop everything not yet started.

        The in-flight operation, if any, keeps running; the drain ends after it.

        Returns:
            Number of discarded operations
        """
        self._closed = True
        discarded = len(self._pending)
        self._pending.clear()
        self.metrics.total_discarded += discarded
        if discarded:
            logger.info(f"Discarded {discarded} pending operations")
        return discarded

    async def close(self) -> int:
        """
        Stop accepting operations, discard pending ones and let the in-flight
        operation finish.

        Returns:
            Number of discarded operations
        """
        discarded = self.discard_pending()

        if self._drain_task is not None:
            await asyncio.gather(self._drain_task, return_exceptions=True)
            self._drain_task = None

        self._idle.set()
        return discarded

    def reopen(self) -> None:
        """Accept operations again after close()"""
        self._closed = False

    def size(self) -> int:
        """Pending operations, excluding the one in flight"""
        return len(self._pending)

    def get_metrics(self) -> Dict[str, Any]:
        uptime = (datetime.now() - self._start_time).total_seconds()
        return {
            "current_size": len(self._pending),
            "in_flight": str(self._in_flight) if self._in_flight else None,
            "max_size_reached": self.metrics.max_queue_size_reached,
            "enqueued": self.metrics.total_enqueued,
            "processed": self.metrics.total_processed,
            "failed": self.metrics.total_failed,
            "discarded": self.metrics.total_discarded,
            "rejected": self.metrics.total_rejected,
            "operations_by_kind": {k.value: v for k, v in self.metrics.operations_by_kind.items()},
            "uptime_seconds": uptime,
        }

    def __len__(self) -> int:
        return len(self._pending)
