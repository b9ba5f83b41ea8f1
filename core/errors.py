"""
Error taxonomy for the synchronization engine.

Per-file errors (RetryError, PathSecurityError) stay in the log.
ConfigurationError and WatchError are escalated to the alert sink.
"""

import errno as errno_codes
from typing import Optional


class SyncError(Exception):
    """Base class for all synchronization errors"""

    fatal = False


class ConfigurationError(SyncError):
    """Options rejected at start(): missing roots, overlap, empty extensions"""


class PathSecurityError(SyncError):
    """A computed target path escapes the target root"""

    def __init__(self, relative_path: str, resolved_path: str):
        super().__init__(
            f"Attempted to write outside target root: {relative_path} -> {resolved_path}"
        )
        self.relative_path = relative_path
        self.resolved_path = resolved_path


class RetryError(SyncError):
    """A retried filesystem action failed permanently or exhausted its attempts"""

    def __init__(self, operation_name: str, last_error: BaseException, attempts: int):
        super().__init__(f"{operation_name} failed after {attempts} attempt(s): {last_error}")
        self.operation_name = operation_name
        self.last_error = last_error
        self.attempts = attempts

    @property
    def errno(self) -> Optional[int]:
        return getattr(self.last_error, 'errno', None)

    @property
    def is_not_found(self) -> bool:
        return self.errno == errno_codes.ENOENT


class WatchError(SyncError):
    """The filesystem notification subsystem failed"""

    fatal = True
