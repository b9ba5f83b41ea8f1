"""
Source Tree Watcher.

Cross-platform monitoring of the source tree via watchdog, with per-path
debouncing, policy filtering, and supervision of the observer thread.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from watchdog.events import (
    FileSystemEventHandler,
    FileSystemEvent as WatchdogEvent,
    FileCreatedEvent,
    FileModifiedEvent,
    FileDeletedEvent,
    FileMovedEvent,
)
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from ..errors import WatchError
from ..models.config import SyncSettings
from .events import OperationKind, SyncOperation
from .policy import PathPolicy
from .queue import SyncQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WatcherConfig:
    """Tuning for the source tree watcher."""
    debounce_ms: int = 200
    supervise_interval_s: float = 1.0
    polling_interval_s: float = 1.0
    observer_join_timeout_s: float = 5.0
    shutdown_timeout_s: float = 3.0

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> 'WatcherConfig':
        return cls(
            debounce_ms=settings.debounce_ms,
            supervise_interval_s=settings.supervise_interval_s,
        )


class SourceTreeWatcher:
    """
    Turns filesystem notifications under the source root into SyncOperations.

    Events arrive on watchdog's observer thread and are marshalled onto the
    event loop. Directory events and paths the policy ignores are dropped
    before reaching the queue. Rapid bursts on one path collapse into the
    latest kind after the debounce delay, which also lets writers finish.
    """

    def __init__(
        self,
        policy: PathPolicy,
        queue: SyncQueue,
        use_polling: bool = False,
        config: Optional[WatcherConfig] = None,
        on_error: Optional[Callable[[WatchError], None]] = None
    ):
        """
        Args:
            policy: Path policy of the current run
            queue: Queue receiving the operations
            use_polling: Use the stat-polling observer instead of native notifications
            config: Watcher tuning
            on_error: Called on the event loop when the subscription fails
        """
        self.policy = policy
        self.source_root = policy.source_root
        self.queue = queue
        self.use_polling = use_polling
        self.config = config or WatcherConfig()
        self.on_error = on_error

        # Watchdog components
        self.observer: Optional[Any] = None
        self.event_handler: Optional['SyncFileSystemEventHandler'] = None

        # Debouncing state
        self._pending_kinds: Dict[str, OperationKind] = {}
        self._debounce_tasks: Dict[str, asyncio.Task] = {}

        self._supervise_task: Optional[asyncio.Task] = None
        self._is_monitoring = False
        self._monitor_start_time: Optional[datetime] = None

        # Error tracking
        self._events_received = 0
        self._events_dropped = 0
        self._last_error: Optional[str] = None

    def _create_observer(self) -> Any:
        if self.use_polling:
            return PollingObserver(timeout=self.config.polling_interval_s)
        return Observer()

    async def start_monitoring(self) -> None:
        """
        Subscribe to the source tree.

        Returns once the observer thread is running.

        Raises:
            WatchError: if the subscription cannot be established
        """
        if self._is_monitoring:
            logger.warning("Source tree monitoring is already active")
            return

        if not self.source_root.is_dir():
            raise WatchError(f"Source path is not a directory: {self.source_root}")

        loop = asyncio.get_running_loop()
        self.event_handler = SyncFileSystemEventHandler(self)
        self.event_handler.set_event_loop(loop)

        observer = self._create_observer()
        self.observer = observer
        try:
            observer.schedule(self.event_handler, str(self.source_root), recursive=True)
            # Recursive native watches are registered here, which can take a while
            observer_started = asyncio.ensure_future(asyncio.to_thread(observer.start))
            try:
                await asyncio.shield(observer_started)
            except asyncio.CancelledError:
                # The starting thread cannot be interrupted; wait it out, then tear down
                await asyncio.gather(observer_started, return_exceptions=True)
                self.event_handler.set_event_loop(None)
                self.observer = None
                self.event_handler = None
                await self._stop_observer(observer)
                raise
        except Exception as e:
            self.event_handler.set_event_loop(None)
            self.observer = None
            self.event_handler = None
            self._last_error = str(e)
            raise WatchError(f"Failed to start watching {self.source_root}: {e}") from e

        self._is_monitoring = True
        self._monitor_start_time = datetime.now()
        self._supervise_task = asyncio.create_task(self._supervise())

        logger.info(
            f"Started monitoring {self.source_root} "
            f"({'polling' if self.use_polling else 'native'}, debounce={self.config.debounce_ms}ms)"
        )

    async def stop_monitoring(self) -> None:
        """Stop the observer and drop undelivered events."""
        if not self._is_monitoring and self.observer is None:
            return

        self._is_monitoring = False

        if self.event_handler:
            self.event_handler.set_event_loop(None)

        if self.observer:
            observer = self.observer
            self.observer = None
            await self._stop_observer(observer)

        tasks_to_cancel = [
            task for task in self._debounce_tasks.values() if not task.done()
        ]
        if self._supervise_task and not self._supervise_task.done():
            tasks_to_cancel.append(self._supervise_task)

        for task in tasks_to_cancel:
            task.cancel()
        if tasks_to_cancel:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*tasks_to_cancel, return_exceptions=True),
                    timeout=self.config.shutdown_timeout_s
                )
            except asyncio.TimeoutError:
                logger.warning("Timeout waiting for watcher tasks to stop")

        self._debounce_tasks.clear()
        self._pending_kinds.clear()
        self._supervise_task = None
        self.event_handler = None

        logger.info(f"Stopped monitoring {self.source_root} (duration: {self.monitoring_duration})")

    async def _stop_observer(self, observer: Any) -> None:
        try:
            observer.stop()
            if observer.is_alive():
                await asyncio.to_thread(observer.join, self.config.observer_join_timeout_s)
        except Exception as e:
            logger.warning(f"Error stopping observer: {e}")

    def dispatch(self, path: str, kind: OperationKind) -> None:
        """
        Accept one notification on the event loop thread.

        Args:
            path: Absolute path reported by the observer
            kind: Kind of change
        """
        if not self._is_monitoring:
            return

        self._events_received += 1
        file_path = Path(path)
        if not file_path.is_absolute() or self.policy.should_ignore(file_path):
            self._events_dropped += 1
            return

        if self.config.debounce_ms <= 0:
            self._emit(file_path, kind)
            return

        file_key = str(file_path)
        existing_task = self._debounce_tasks.get(file_key)
        if existing_task and not existing_task.done():
            existing_task.cancel()

        self._pending_kinds[file_key] = kind
        self._debounce_tasks[file_key] = asyncio.create_task(
            self._process_debounced(file_key, self.config.debounce_ms / 1000.0)
        )

    async def _process_debounced(self, file_key: str, delay_seconds: float) -> None:
        try:
            await asyncio.sleep(delay_seconds)
        except asyncio.CancelledError:
            # Superseded by a newer event for the same path, or shutting down
            return

        kind = self._pending_kinds.pop(file_key, None)
        self._debounce_tasks.pop(file_key, None)
        if kind is not None and self._is_monitoring:
            self._emit(Path(file_key), kind)

    def _emit(self, file_path: Path, kind: OperationKind) -> None:
        operation = SyncOperation(path=file_path, kind=kind, origin="watcher")
        if not self.queue.enqueue(operation):
            logger.debug(f"Queue rejected {operation}")

    async def _supervise(self) -> None:
        """Report a fatal error if the observer thread dies while monitoring."""
        while self._is_monitoring:
            try:
                await asyncio.sleep(self.config.supervise_interval_s)
            except asyncio.CancelledError:
                break

            observer = self.observer
            if self._is_monitoring and observer is not None and not observer.is_alive():
                self.report_error(WatchError("File system observer stopped unexpectedly"))
                break

    def report_error(self, error: WatchError) -> None:
        """Forward a subscription failure to the owner (event loop thread)."""
        self._last_error = str(error)
        logger.error(f"Watcher error: {error}")
        if self.on_error:
            self.on_error(error)

    @property
    def is_monitoring(self) -> bool:
        return self._is_monitoring

    @property
    def monitoring_duration(self) -> Optional[timedelta]:
        if not self._monitor_start_time:
            return None
        return datetime.now() - self._monitor_start_time

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_monitoring": self._is_monitoring,
            "source_root": str(self.source_root),
            "strategy": "polling" if self.use_polling else "native",
            "debounce_ms": self.config.debounce_ms,
            "pending_events": len(self._pending_kinds),
            "events_received": self._events_received,
            "events_dropped": self._events_dropped,
            "last_error": self._last_error,
        }


class SyncFileSystemEventHandler(FileSystemEventHandler):
    """
    Watchdog event handler that forwards file events to SourceTreeWatcher.

    Runs on the observer thread; everything past this point happens on the
    event loop via call_soon_threadsafe.
    """

    def __init__(self, watcher: SourceTreeWatcher):
        super().__init__()
        self.watcher = watcher
        self._event_loop: Optional[asyncio.AbstractEventLoop] = None

    def set_event_loop(self, loop: Optional[asyncio.AbstractEventLoop]) -> None:
        self._event_loop = loop

    def _forward(self, path: Any, kind: OperationKind) -> None:
        loop = self._event_loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self.watcher.dispatch, os.fsdecode(path), kind)
        except RuntimeError:
            # Loop closed between the check and the call
            pass

    def on_created(self, event: WatchdogEvent) -> None:
        if isinstance(event, FileCreatedEvent):
            self._forward(event.src_path, OperationKind.CREATED)

    def on_modified(self, event: WatchdogEvent) -> None:
        if isinstance(event, FileModifiedEvent):
            self._forward(event.src_path, OperationKind.MODIFIED)

    def on_deleted(self, event: WatchdogEvent) -> None:
        if isinstance(event, FileDeletedEvent):
            self._forward(event.src_path, OperationKind.REMOVED)

    def on_moved(self, event: WatchdogEvent) -> None:
        if isinstance(event, FileMovedEvent):
            self._forward(event.src_path, OperationKind.REMOVED)
            self._forward(event.dest_path, OperationKind.CREATED)
