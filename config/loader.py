"""
Configuration loading and persistence.

Keeps the host's saved options and a bounded recent-log buffer in a JSON
file, applies environment overrides, and assembles engine options.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence
import logging

from core.models.config import SyncSettings, normalize_extensions
from .defaults import (
    BOOLEAN_OPTIONS,
    DEFAULT_OPTIONS,
    DEFAULT_SETTINGS,
    ENV_VAR_MAPPING,
    OPTION_KEYS,
)

logger = logging.getLogger(__name__)


class ConfigurationLoader:
    """Load and save godot-sync host state"""

    def __init__(self, settings: Optional[SyncSettings] = None):
        self.settings = settings or SyncSettings()
        self.config_file = self.settings.config_file
        self.max_log_lines = self.settings.max_log_lines

    def load(self) -> Dict[str, Any]:
        """Read the state file; a missing or corrupt file yields defaults"""
        data = json.loads(json.dumps(DEFAULT_SETTINGS))
        if not self.config_file.exists():
            return data

        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                stored = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load config from {self.config_file}: {e}")
            return data

        if not isinstance(stored, dict):
            logger.error(f"Ignoring malformed config in {self.config_file}")
            return data

        if isinstance(stored.get('options'), dict):
            data['options'] = {
                key: value for key, value in stored['options'].items()
                if key in OPTION_KEYS
            }
        if isinstance(stored.get('log'), list):
            data['log'] = [str(line) for line in stored['log']][-self.max_log_lines:]
        return data

    def save(self, data: Dict[str, Any]) -> bool:
        """Write the state file atomically"""
        try:
            self.config_file.parent.mkdir(parents=True, exist_ok=True)

            # Write atomically using temporary file
            temp_file = self.config_file.with_suffix(f'.{os.getpid()}.tmp')
            with open(temp_file, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(temp_file, self.config_file)

            logger.debug(f"Saved configuration to {self.config_file}")
            return True

        except OSError as e:
            logger.error(f"Failed to save config to {self.config_file}: {e}")
            return False

    def get_saved_options(self) -> Dict[str, Any]:
        return self.load()['options']

    def set_option(self, key: str, value: Any) -> Any:
        """
        Persist one option.

        Args:
            key: Persisted option name (sourceDir, extensions, ...)
            value: Raw value; strings are converted for boolean options

        Returns:
            The stored value

        Raises:
            KeyError: for unknown option names
            ValueError: for unparseable boolean values
        """
        if key not in OPTION_KEYS:
            raise KeyError(f"Unknown option '{key}'. Valid options: {', '.join(OPTION_KEYS)}")

        converted = self._convert_option_value(key, value)
        if key == 'extensions' and converted is not None:
            # Same form as typed by the user, without empty entries
            parts = converted.split(',') if isinstance(converted, str) else converted
            converted = ', '.join(part.strip() for part in parts if part.strip())
        if key in ('sourceDir', 'targetDir') and converted:
            converted = str(Path(converted).expanduser().resolve())

        data = self.load()
        if converted is None:
            data['options'].pop(key, None)
        else:
            data['options'][key] = converted
        self.save(data)
        return converted

    def save_options(self, options: Mapping[str, Any]) -> None:
        """Persist several options at once, skipping None values"""
        for key, value in options.items():
            if value is not None:
                self.set_option(key, value)

    def _convert_option_value(self, key: str, value: Any) -> Any:
        if value is None or key not in BOOLEAN_OPTIONS or isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ('true', 'yes', '1', 'on'):
            return True
        if text in ('false', 'no', '0', 'off'):
            return False
        raise ValueError(f"Invalid boolean for '{key}': {value}")

    def _apply_env_overrides(self, options: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to options"""
        for env_var, key in ENV_VAR_MAPPING.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                try:
                    options[key] = self._convert_option_value(key, env_value)
                except ValueError as e:
                    logger.warning(f"Ignoring {env_var}: {e}")
        return options

    def build_options(self, overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """
        Assemble engine options.

        Precedence, lowest first: defaults, saved options, environment,
        explicit overrides (None values are ignored).

        syncImportArtifacts defaults to True when no extension list has been
        saved, otherwise to whether '.import' is part of the saved list.
        """
        saved = self.get_saved_options()
        options = dict(DEFAULT_OPTIONS)
        options.update(saved)
        options = self._apply_env_overrides(options)
        for key, value in (overrides or {}).items():
            if value is not None:
                options[key] = value

        if options.get('syncImportArtifacts') is None:
            saved_extensions = saved.get('extensions')
            if saved_extensions is None:
                options['syncImportArtifacts'] = True
            else:
                options['syncImportArtifacts'] = '.import' in normalize_extensions(saved_extensions)

        return options

    def append_log(self, line: str) -> None:
        """Add a line to the persisted log, keeping the newest max_log_lines"""
        self.append_log_lines([line])

    def append_log_lines(self, lines: Sequence[str]) -> None:
        """Add several lines with a single rewrite of the state file"""
        if not lines:
            return
        data = self.load()
        data['log'].extend(lines)
        if len(data['log']) > self.max_log_lines:
            data['log'] = data['log'][-self.max_log_lines:]
        self.save(data)

    def recent_log(self, lines: Optional[int] = None) -> List[str]:
        log = self.load()['log']
        if lines is not None:
            return log[-lines:] if lines > 0 else []
        return log

    def clear_log(self) -> None:
        data = self.load()
        data['log'] = []
        self.save(data)
