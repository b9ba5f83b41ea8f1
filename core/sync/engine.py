"""
Synchronization Engine.

Owns one run's configuration, queue, policy and watcher; decides what each
operation does to the target tree and drives the engine state machine.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Union

import aiofiles.os

from ..errors import ConfigurationError, PathSecurityError, WatchError
from ..models.config import SyncConfiguration, SyncSettings
from .events import EngineState, OperationKind, OperationOutcome, OperationResult, SyncOperation
from .policy import PathPolicy
from .queue import SyncQueue
from .retry import RetryableIO
from .scanner import InitialScanner
from .watcher import SourceTreeWatcher, WatcherConfig

logger = logging.getLogger(__name__)

LogSink = Callable[[str], None]
StatusSink = Callable[[bool], None]
AlertSink = Callable[[str], None]


@dataclass
class SyncEngineMetrics:
    """Counters for one engine instance, across runs."""

    operations_processed: int = 0
    files_copied: int = 0
    files_deleted: int = 0
    files_skipped: int = 0
    files_filtered: int = 0
    security_blocks: int = 0
    files_failed: int = 0

    runs_started: int = 0
    fatal_errors: int = 0
    last_error_time: Optional[datetime] = None
    last_error_message: Optional[str] = None


class SyncEngine:
    """
    One-way mirror of a filtered source tree into a target tree.

    The engine is the only writer of its state and the only code touching
    the target tree; all work goes through its single-flight queue.

    Sinks:
        log_sink: timestamped, human-readable log lines
        status_sink: True once watching, False once stopped
        alert_sink: blocking user-visible failures (configuration errors and
            fatal watch errors only; never per-file problems)
    """

    def __init__(
        self,
        log_sink: Optional[LogSink] = None,
        status_sink: Optional[StatusSink] = None,
        alert_sink: Optional[AlertSink] = None,
        settings: Optional[SyncSettings] = None,
        io: Optional[RetryableIO] = None
    ):
        self.settings = settings or SyncSettings()
        self._log_sink = log_sink
        self._status_sink = status_sink
        self._alert_sink = alert_sink

        self.io = io or RetryableIO(
            max_attempts=self.settings.retry_max_attempts,
            base_delay=self.settings.retry_base_delay
        )
        self.queue = SyncQueue(self.process)

        # Per-run state, reset by stop()
        self.config: Optional[SyncConfiguration] = None
        self.policy: Optional[PathPolicy] = None
        self._watcher: Optional[SourceTreeWatcher] = None

        self._state = EngineState.STOPPED
        self._state_changed = asyncio.Event()
        self._start_task: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Task] = None
        self._fatal_task: Optional[asyncio.Task] = None

        self.metrics = SyncEngineMetrics()
        self.last_fatal_error: Optional[str] = None
        self.start_time: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Sinks

    def log(self, message: str, level: int = logging.INFO) -> None:
        """Send a line to the module logger and a timestamped copy to the log sink."""
        logger.log(level, message)
        if self._log_sink:
            timestamp = datetime.now().strftime('%H:%M:%S')
            try:
                self._log_sink(f"[{timestamp}] {message}")
            except Exception as e:
                logger.warning(f"Error in log sink: {e}")

    def _alert(self, message: str) -> None:
        if self._alert_sink:
            try:
                self._alert_sink(message)
            except Exception as e:
                logger.warning(f"Error in alert sink: {e}")

    def _report_status(self, running: bool) -> None:
        if self._status_sink:
            try:
                self._status_sink(running)
            except Exception as e:
                logger.warning(f"Error in status sink: {e}")

    # ------------------------------------------------------------------
    # State machine

    @property
    def state(self) -> EngineState:
        return self._state

    def _set_state(self, state: EngineState) -> None:
        if state == self._state:
            return
        logger.debug(f"Engine state {self._state.value} -> {state.value}")
        self._state = state
        self._state_changed.set()
        self._state_changed = asyncio.Event()

    def is_running(self) -> bool:
        return self._state == EngineState.RUNNING

    async def wait_for_state(self, state: EngineState, timeout: Optional[float] = None) -> bool:
        """
        Wait until the engine reaches the given state.

        Returns:
            True if reached, False on timeout
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._state != state:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            try:
                await asyncio.wait_for(self._state_changed.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return self._state == state
        return True

    def start(self, config: Union[SyncConfiguration, Mapping[str, Any]]) -> bool:
        """
        Validate the configuration and begin watching.

        Must be called from a running event loop. Success or failure of the
        subscription itself is reported later through the sinks.

        Args:
            config: A SyncConfiguration or a mapping of host option names

        Returns:
            False if already started or the configuration is invalid,
            True once a start attempt is underway
        """
        if self._state == EngineState.STOPPING:
            self.log('Sync service is still stopping.', logging.WARNING)
            return False
        if self._state != EngineState.STOPPED:
            self.log('Sync service is already running.', logging.WARNING)
            return False

        try:
            validated = SyncConfiguration.from_options(config)
        except ConfigurationError as e:
            self.log(f'Error: invalid configuration: {e}', logging.ERROR)
            self._alert(f'Godot Sync: invalid configuration - {e}')
            return False

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.log('Error: start() requires a running event loop.', logging.ERROR)
            return False

        self.config = validated
        self.policy = PathPolicy(validated)
        self.last_fatal_error = None
        self.queue.reopen()
        self._set_state(EngineState.STARTING)

        self.log(f'Starting watcher on: {validated.source_root}')
        self.log(f'Target directory: {validated.target_root}')
        self.log(f'Watching extensions: {", ".join(sorted(validated.extensions))}')
        self.log(f'File deletion is {"ENABLED" if validated.allow_deletion else "DISABLED"}.')

        self.metrics.runs_started += 1
        self._start_task = loop.create_task(self._start_watching())
        return True

    async def _start_watching(self) -> None:
        config = self.config
        policy = self.policy

        self._watcher = SourceTreeWatcher(
            policy,
            self.queue,
            use_polling=config.use_polling,
            config=WatcherConfig.from_settings(self.settings),
            on_error=self.handle_watch_error
        )

        try:
            await self._watcher.start_monitoring()
        except WatchError as e:
            self._record_fatal(str(e))
            self.log(f'Error starting watcher: {e}', logging.ERROR)
            self._alert(f'Godot Sync: error starting - {e}')
            self._start_task = None
            await self.stop()
            return

        if self._state != EngineState.STARTING:
            return

        self._set_state(EngineState.RUNNING)
        self.start_time = datetime.now()
        self.log('Watcher ready.')
        self._report_status(True)

        self.log('Starting initial sync...')
        scanner = InitialScanner(policy, self.queue)
        try:
            queued = await scanner.scan()
        except OSError as e:
            self._record_fatal(str(e))
            self.log(f'Error during initial sync: {e}', logging.ERROR)
            self._alert(f'Godot Sync: initial sync error - {e}')
            self._start_task = None
            await self.stop()
            return

        self.log(f'Initial sync queued ({queued} files).')
        self._start_task = None

    def handle_watch_error(self, error: Exception) -> None:
        """
        Fatal subscription failure: alert once and stop the engine.

        Called on the event loop thread.
        """
        if self._state not in (EngineState.STARTING, EngineState.RUNNING):
            return
        self._record_fatal(str(error))
        self.log(f'Watcher error: {error}', logging.ERROR)
        self._alert(f'Godot Sync watcher error: {error}')
        self._set_state(EngineState.STOPPING)
        self._fatal_task = asyncio.get_running_loop().create_task(self.stop())

    def _record_fatal(self, message: str) -> None:
        self.last_fatal_error = message
        self.metrics.fatal_errors += 1
        self.metrics.last_error_message = message
        self.metrics.last_error_time = datetime.now()

    async def stop(self) -> None:
        """Close the subscription, discard pending operations, reset. Idempotent."""
        if self._state == EngineState.STOPPED:
            self.log('Watcher already stopped.')
            self._report_status(False)
            return

        if self._stop_task is None:
            self._stop_task = asyncio.get_running_loop().create_task(self._shutdown())
        await asyncio.shield(self._stop_task)

    async def _shutdown(self) -> None:
        self._set_state(EngineState.STOPPING)
        self.log('Stopping watcher...')

        try:
            # Nothing queued may start once stopping begins
            discarded = self.queue.discard_pending()

            start_task = self._start_task
            self._start_task = None
            if start_task is not None and not start_task.done():
                start_task.cancel()
                await asyncio.gather(start_task, return_exceptions=True)

            if self._watcher is not None:
                try:
                    await self._watcher.stop_monitoring()
                except Exception as e:
                    self.log(f'Error stopping watcher: {e}', logging.WARNING)
                self._watcher = None

            # In-flight operation finishes
            discarded += await self.queue.close()
            if discarded:
                self.log(f'Discarded {discarded} pending operation(s).')
        finally:
            self.config = None
            self.policy = None
            self._set_state(EngineState.STOPPED)
            self._stop_task = None
            self.log('Watcher stopped.')
            self._report_status(False)

    # ------------------------------------------------------------------
    # Operations

    async def process(self, operation: SyncOperation) -> OperationResult:
        """
        Decide and perform one operation. Queue handler.

        Per-file failures are logged and returned as FAILED results; they
        never raise and never alert.
        """
        policy = self.policy
        config = self.config
        if policy is None or config is None:
            return OperationResult(operation, OperationOutcome.FILTERED, message="engine stopped")

        if not policy.is_eligible(operation.path):
            result = OperationResult(operation, OperationOutcome.FILTERED)
            self._record(result)
            return result

        relative = policy.relative_path(operation.path)

        if operation.kind == OperationKind.REMOVED and not config.allow_deletion:
            self.log(f'Deletion skipped (disabled): {relative}')
            result = OperationResult(operation, OperationOutcome.SKIPPED_DELETION_DISABLED, relative)
            self._record(result)
            return result

        try:
            target_path = policy.resolve_target_path(operation.path)
        except PathSecurityError as e:
            self.log(f'Security block: Attempted to write outside target root: {relative}', logging.WARNING)
            result = OperationResult(operation, OperationOutcome.BLOCKED, relative, str(e))
            self._record(result)
            return result

        try:
            if operation.is_copy:
                result = await self._copy(operation, target_path, relative)
            else:
                result = await self._delete(operation, target_path, relative)
        except Exception as e:
            self.log(f'Error processing file {relative}: {e}', logging.ERROR)
            self.metrics.last_error_message = str(e)
            self.metrics.last_error_time = datetime.now()
            result = OperationResult(operation, OperationOutcome.FAILED, relative, str(e))

        self._record(result)
        return result

    async def _copy(self, operation: SyncOperation, target_path: Path, relative: str) -> OperationResult:
        await aiofiles.os.makedirs(target_path.parent, exist_ok=True)

        try:
            source_stat = await aiofiles.os.stat(operation.path)
        except FileNotFoundError:
            self.log(f'Skipped (source file gone): {relative}')
            return OperationResult(operation, OperationOutcome.SKIPPED_SOURCE_GONE, relative)

        try:
            target_stat = await aiofiles.os.stat(target_path)
        except FileNotFoundError:
            target_stat = None
        except OSError as e:
            self.log(f'Warning: Could not stat target {relative}. Proceeding. Error: {e}', logging.WARNING)
            target_stat = None

        # Never regress the target; equal mtimes count as in sync
        if target_stat is not None and target_stat.st_mtime_ns >= source_stat.st_mtime_ns:
            self.log(f'Skipped (destination is newer): {relative}')
            return OperationResult(operation, OperationOutcome.SKIPPED_NEWER, relative)

        await self.io.atomic_copy(operation.path, target_path)
        self.log(f'Copied: {relative}')
        return OperationResult(operation, OperationOutcome.COPIED, relative)

    async def _delete(self, operation: SyncOperation, target_path: Path, relative: str) -> OperationResult:
        if await self.io.remove_file(target_path):
            self.log(f'Deleted: {relative}')
            return OperationResult(operation, OperationOutcome.DELETED, relative)

        logger.debug(f"Target already absent: {target_path}")
        return OperationResult(operation, OperationOutcome.ALREADY_ABSENT, relative)

    def _record(self, result: OperationResult) -> None:
        self.metrics.operations_processed += 1
        outcome = result.outcome
        if outcome == OperationOutcome.COPIED:
            self.metrics.files_copied += 1
        elif outcome == OperationOutcome.DELETED:
            self.metrics.files_deleted += 1
        elif outcome == OperationOutcome.FILTERED:
            self.metrics.files_filtered += 1
        elif outcome == OperationOutcome.BLOCKED:
            self.metrics.security_blocks += 1
        elif outcome == OperationOutcome.FAILED:
            self.metrics.files_failed += 1
        else:
            self.metrics.files_skipped += 1

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of engine, queue and watcher state."""
        return {
            "state": self._state.value,
            "is_running": self.is_running(),
            "config": self.config.to_options() if self.config else None,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "operations_processed": self.metrics.operations_processed,
            "files_copied": self.metrics.files_copied,
            "files_deleted": self.metrics.files_deleted,
            "files_skipped": self.metrics.files_skipped,
            "security_blocks": self.metrics.security_blocks,
            "files_failed": self.metrics.files_failed,
            "fatal_errors": self.metrics.fatal_errors,
            "last_error": self.metrics.last_error_message,
            "last_error_time": self.metrics.last_error_time.isoformat() if self.metrics.last_error_time else None,
            "queue": self.queue.get_metrics(),
            "watcher": self._watcher.get_status() if self._watcher else None,
        }
