"""
Path Policy.

Decides which source paths take part in synchronization and guards every
computed target path against escaping the target root.
"""

import logging
import os
from pathlib import Path
from typing import List

from ..errors import PathSecurityError
from ..models.config import SyncConfiguration, is_within

logger = logging.getLogger(__name__)


class PathPolicy:
    """
    Ignore rules and target containment for one SyncConfiguration.

    Reserved directories are Godot's generated data and are never mirrored,
    whatever the hidden-file setting says.
    """

    # Godot build cache and import metadata
    RESERVED_DIRECTORIES = frozenset({'.godot', '.import'})

    # Per-resource import metadata files (scene.tscn.import)
    IMPORT_ARTIFACT_SUFFIX = '.import'

    HIDDEN_MARKER = '.'

    def __init__(self, config: SyncConfiguration):
        self.config = config
        self.source_root = config.source_root
        self.target_root = config.target_root

    def relative_parts(self, path: Path) -> List[str]:
        """Path segments relative to the source root (lexical, may contain '..')."""
        rel = os.path.relpath(os.path.normpath(str(path)), str(self.source_root))
        if rel == os.curdir:
            return []
        return rel.split(os.sep)

    def relative_path(self, path: Path) -> str:
        return os.path.relpath(os.path.normpath(str(path)), str(self.source_root))

    def should_ignore(self, path: Path) -> bool:
        """
        Check whether a path lies in an excluded subtree.

        Args:
            path: Absolute path in (or computed against) the source tree

        Returns:
            True for reserved directories at any depth, and for hidden
            segments unless include_hidden is set
        """
        parts = self.relative_parts(path)

        if any(part in self.RESERVED_DIRECTORIES for part in parts):
            return True

        if not self.config.include_hidden:
            for part in parts:
                if part in (os.curdir, os.pardir):
                    continue
                if part.startswith(self.HIDDEN_MARKER):
                    return True

        return False

    def is_extension_eligible(self, path: Path) -> bool:
        """Check the lowercase filename suffix against the configured set."""
        suffix = Path(path).suffix.lower()
        if suffix not in self.config.extensions:
            return False
        if suffix == self.IMPORT_ARTIFACT_SUFFIX and not self.config.sync_import_artifacts:
            return False
        return True

    def is_eligible(self, path: Path) -> bool:
        return not self.should_ignore(path) and self.is_extension_eligible(path)

    def resolve_target_path(self, source_path: Path) -> Path:
        """
        Map a source path onto the target tree.

        Args:
            source_path: Absolute source-tree path

        Returns:
            Resolved target path inside the target root

        Raises:
            PathSecurityError: if the resolved path is not the target root or
                a descendant of it
        """
        relative = self.relative_path(source_path)
        candidate = (self.target_root / relative).resolve()

        if not is_within(candidate, self.target_root):
            logger.warning(f"Rejected target path outside {self.target_root}: {candidate}")
            raise PathSecurityError(relative, str(candidate))

        return candidate
