"""
Continuous one-way synchronization.

Mirrors a filtered source tree into a target tree as files change.

Key Components:
- SyncOperation: Immutable description of one source-tree change
- PathPolicy: Ignore rules and target containment
- RetryableIO: Retried, atomic filesystem actions
- SyncQueue: Single-flight FIFO of pending operations
- SourceTreeWatcher: watchdog-based notifications with debouncing
- InitialScanner: Seeds the queue with the existing tree
- SyncEngine: Run lifecycle and per-operation decisions
"""

from .events import SyncOperation, OperationKind, OperationOutcome, OperationResult, EngineState
from .policy import PathPolicy
from .retry import RetryableIO
from .queue import SyncQueue
from .watcher import SourceTreeWatcher, WatcherConfig
from .scanner import InitialScanner
from .engine import SyncEngine

__all__ = [
    "SyncOperation",
    "OperationKind",
    "OperationOutcome",
    "OperationResult",
    "EngineState",
    "PathPolicy",
    "RetryableIO",
    "SyncQueue",
    "SourceTreeWatcher",
    "WatcherConfig",
    "InitialScanner",
    "SyncEngine",
]
