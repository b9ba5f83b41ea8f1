"""
Retryable filesystem I/O.

Bounded retries for transient OS contention (locks held by editors, the
Godot importer, antivirus scanners) and an atomic copy primitive built on
a sibling temporary file and a same-directory rename.
"""

import asyncio
import errno
import logging
import os
import secrets
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import aiofiles
import aiofiles.os

from ..errors import RetryError

logger = logging.getLogger(__name__)

# Busy resource, permission timing, text file busy, transient access denied
TRANSIENT_ERRNOS = frozenset(
    getattr(errno, name)
    for name in ('EBUSY', 'EPERM', 'ETXTBSY', 'EACCES')
    if hasattr(errno, name)
)


def is_transient(error: BaseException) -> bool:
    """True if retrying the failed call may succeed."""
    return isinstance(error, OSError) and error.errno in TRANSIENT_ERRNOS


class RetryableIO:
    """
    Filesystem actions with exponential-backoff retries.

    Only transient error numbers are retried. Not-found, is-a-directory and
    everything else fail on the first attempt, since another try cannot
    change the outcome.
    """

    TEMP_MARKER = '.__godotsync_tmp_'
    COPY_CHUNK_SIZE = 1024 * 1024

    def __init__(
        self,
        max_attempts: int = 4,
        base_delay: float = 0.05,
        on_attempt: Optional[Callable[[str, int], None]] = None,
        remove_before_rename: Optional[bool] = None
    ):
        """
        Args:
            max_attempts: Total attempts per action, first one included
            base_delay: Seconds before the first retry; multiplied by 3 each time
            on_attempt: Optional hook called with (operation_name, attempt_number)
            remove_before_rename: Remove an existing target before renaming the
                temporary file over it (defaults to True on Windows only)
        """
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.on_attempt = on_attempt
        if remove_before_rename is None:
            remove_before_rename = os.name == 'nt'
        self.remove_before_rename = remove_before_rename

    def backoff_delay(self, attempt: int, base_delay: Optional[float] = None) -> float:
        """Delay before retrying after the given zero-based attempt."""
        base = self.base_delay if base_delay is None else base_delay
        return base * (3 ** attempt)

    async def with_retry(
        self,
        operation_name: str,
        action: Callable[[], Awaitable[Any]],
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None
    ) -> Any:
        """
        Run an async action, retrying transient OS errors.

        Args:
            operation_name: Label used in logs and in the raised error
            action: Zero-argument coroutine function
            max_attempts: Override of the instance attempt limit
            base_delay: Override of the instance base delay

        Returns:
            Whatever the action returns

        Raises:
            RetryError: on a non-transient error or once attempts are exhausted
        """
        attempts_allowed = max_attempts or self.max_attempts
        last_error: Optional[Exception] = None

        for attempt in range(attempts_allowed):
            if self.on_attempt:
                self.on_attempt(operation_name, attempt + 1)
            try:
                return await action()
            except Exception as e:
                last_error = e
                if not is_transient(e):
                    raise RetryError(operation_name, e, attempt + 1) from e
                if attempt + 1 >= attempts_allowed:
                    break
                delay = self.backoff_delay(attempt, base_delay)
                logger.debug(
                    f"{operation_name} attempt {attempt + 1} hit {errno.errorcode.get(e.errno, e.errno)}, "
                    f"retrying in {delay:.3f}s"
                )
                await asyncio.sleep(delay)

        raise RetryError(operation_name, last_error, attempts_allowed) from last_error

    def temp_path_for(self, target_path: Path) -> Path:
        """Collision-resistant sibling of the target, unique per process and call."""
        suffix = f"{self.TEMP_MARKER}{os.getpid()}_{secrets.token_hex(6)}"
        return target_path.with_name(target_path.name + suffix)

    async def atomic_copy(self, source_path: Path, target_path: Path) -> None:
        """
        Copy a file so readers of target_path never see a partial write.

        Raises:
            RetryError: if copying to the temporary file or renaming it fails
        """
        source_path = Path(source_path)
        target_path = Path(target_path)
        temp_path = self.temp_path_for(target_path)

        try:
            await self.with_retry(
                'copyFile(tmp)',
                lambda: self._copy_contents(source_path, temp_path)
            )

            if self.remove_before_rename:
                try:
                    await self.with_retry(
                        'removeExistingTarget',
                        lambda: self._remove_if_exists(target_path),
                        max_attempts=3,
                        base_delay=0.03
                    )
                except RetryError as e:
                    logger.warning(f"Could not remove existing target {target_path}: {e}")

            await self.with_retry(
                'rename(tmp->dst)',
                lambda: aiofiles.os.replace(temp_path, target_path)
            )
        except Exception:
            await self._discard_temp(temp_path)
            raise

    async def remove_file(self, path: Path) -> bool:
        """
        Unlink a file with retries.

        Returns:
            True if the file was removed, False if it was already absent
        """
        try:
            await self.with_retry('unlink', lambda: aiofiles.os.remove(path))
            return True
        except RetryError as e:
            if e.is_not_found:
                return False
            raise

    async def _copy_contents(self, source_path: Path, temp_path: Path) -> None:
        async with aiofiles.open(source_path, 'rb') as src, aiofiles.open(temp_path, 'wb') as dst:
            while True:
                chunk = await src.read(self.COPY_CHUNK_SIZE)
                if not chunk:
                    break
                await dst.write(chunk)

    async def _remove_if_exists(self, path: Path) -> None:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass

    async def _discard_temp(self, temp_path: Path) -> None:
        """Best-effort cleanup; never raises."""
        try:
            await aiofiles.os.remove(temp_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove temporary file {temp_path}: {e}")
