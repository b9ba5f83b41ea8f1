"""
Default configuration values for godot-sync.

Centralized defaults that can be overridden by environment variables or the
saved configuration file.
"""

from typing import Any, Dict

# Extensions offered on first use
DEFAULT_EXTENSIONS = ".gd, .tscn, .tres, .res, .import, .shader, .json, .cfg"

# Host options, keyed by their persisted names
DEFAULT_OPTIONS: Dict[str, Any] = {
    "sourceDir": None,
    "targetDir": None,
    "extensions": DEFAULT_EXTENSIONS,
    "allowDeletion": False,
    "includeHidden": False,
    "usePolling": False,
    # None means derived from the saved extension list
    "syncImportArtifacts": None,
}

OPTION_KEYS = tuple(DEFAULT_OPTIONS)

BOOLEAN_OPTIONS = frozenset({
    "allowDeletion",
    "includeHidden",
    "usePolling",
    "syncImportArtifacts",
})

# Global default settings
DEFAULT_SETTINGS: Dict[str, Any] = {
    "version": "1.0.0",
    "options": {},
    "log": [],
}

# Environment variable mappings
ENV_VAR_MAPPING = {
    'GODOT_SYNC_SOURCE_DIR': 'sourceDir',
    'GODOT_SYNC_TARGET_DIR': 'targetDir',
    'GODOT_SYNC_EXTENSIONS': 'extensions',
    'GODOT_SYNC_ALLOW_DELETION': 'allowDeletion',
    'GODOT_SYNC_INCLUDE_HIDDEN': 'includeHidden',
    'GODOT_SYNC_USE_POLLING': 'usePolling',
    'GODOT_SYNC_SYNC_IMPORT_ARTIFACTS': 'syncImportArtifacts',
}
