"""
Initial Scanner.

Seeds the queue with the source tree's current state once the watch
subscription is ready, since notifications only cover later changes.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import List

from .events import SyncOperation
from .policy import PathPolicy
from .queue import SyncQueue

logger = logging.getLogger(__name__)


class InitialScanner:
    """
    Recursive walk of the source root.

    Ignored subtrees are pruned without descending into them. Every eligible
    regular file becomes a synthetic CREATED operation; the engine's mtime
    comparison skips files that are already up to date.
    """

    def __init__(self, policy: PathPolicy, queue: SyncQueue):
        self.policy = policy
        self.queue = queue

    def collect(self) -> List[Path]:
        """
        Walk the source tree and return eligible files in walk order.

        Raises:
            OSError: if the source root itself cannot be listed
        """
        found: List[Path] = []
        stack = [self.policy.source_root]

        while stack:
            directory = stack.pop()
            try:
                with os.scandir(directory) as entries:
                    children = sorted(entries, key=lambda entry: entry.name)
            except OSError as e:
                if directory == self.policy.source_root:
                    raise
                logger.warning(f"Skipping unreadable directory {directory}: {e}")
                continue
            subdirs = []
            for entry in children:
                path = Path(entry.path)
                if self.policy.should_ignore(path):
                    continue
                try:
                    if entry.is_dir(follow_symlinks=False):
                        subdirs.append(path)
                    elif entry.is_file(follow_symlinks=False):
                        if self.policy.is_extension_eligible(path):
                            found.append(path)
                except OSError as e:
                    logger.warning(f"Skipping unreadable entry {path}: {e}")
            # Depth-first, alphabetical
            stack.extend(reversed(subdirs))

        return found

    async def scan(self) -> int:
        """
        Collect off the event loop, then enqueue.

        Returns:
            Number of operations accepted by the queue
        """
        files = await asyncio.to_thread(self.collect)
        queued = 0
        for path in files:
            if self.queue.enqueue(SyncOperation.created(path, origin="scan")):
                queued += 1
        logger.info(f"Initial scan queued {queued}/{len(files)} files from {self.policy.source_root}")
        return queued
