"""
Configuration models for godot-sync.

SyncConfiguration is the validated, immutable option set of one engine run.
SyncSettings carries process-wide tuning read from the environment.
"""

import os
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Union
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..errors import ConfigurationError


def normalize_extensions(value: Union[str, Iterable[str]]) -> FrozenSet[str]:
    """Lowercase each suffix and make sure it starts with a dot."""
    if isinstance(value, str):
        value = value.split(',')
    normalized = set()
    for ext in value:
        ext = str(ext).strip().lower()
        if not ext:
            continue
        normalized.add(ext if ext.startswith('.') else f'.{ext}')
    return frozenset(normalized)


def is_within(child: Path, parent: Path) -> bool:
    """True if child equals parent or lies beneath it (case-insensitive on Windows)."""
    child_n = os.path.normcase(str(child))
    parent_n = os.path.normcase(str(parent))
    if child_n == parent_n:
        return True
    return child_n.startswith(parent_n.rstrip(os.sep) + os.sep)


class SyncConfiguration(BaseModel):
    """
    Validated options for one synchronization run.

    Accepts either the field names or the host option names
    (sourceDir, targetDir, extensions, allowDeletion, includeHidden,
    usePolling, syncImportArtifacts). Roots are resolved to absolute
    paths and must be existing, non-overlapping directories.
    """
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    source_root: Path = Field(alias="sourceDir")
    target_root: Path = Field(alias="targetDir")
    extensions: FrozenSet[str] = Field(alias="extensions")
    allow_deletion: bool = Field(default=False, alias="allowDeletion")
    include_hidden: bool = Field(default=False, alias="includeHidden")
    use_polling: bool = Field(default=False, alias="usePolling")
    sync_import_artifacts: bool = Field(default=True, alias="syncImportArtifacts")

    @field_validator('source_root', 'target_root', mode='before')
    @classmethod
    def validate_root(cls, v: Any) -> Path:
        """Resolve a root and require an existing directory"""
        if v is None or (isinstance(v, str) and not v.strip()):
            raise ValueError('directory must be set')
        path = Path(v).expanduser().resolve()
        if not path.exists():
            raise ValueError(f'directory does not exist: {path}')
        if not path.is_dir():
            raise ValueError(f'not a directory: {path}')
        return path

    @field_validator('extensions', mode='before')
    @classmethod
    def validate_extensions(cls, v: Any) -> FrozenSet[str]:
        """Normalize suffixes and reject an empty set"""
        if v is None:
            raise ValueError('at least one extension is required')
        extensions = normalize_extensions(v)
        if not extensions:
            raise ValueError('at least one extension is required')
        return extensions

    @model_validator(mode='after')
    def validate_no_overlap(self) -> 'SyncConfiguration':
        """Source and target must not be equal or contain one another"""
        if is_within(self.source_root, self.target_root) or is_within(self.target_root, self.source_root):
            raise ValueError('Source and Target must not overlap or be the same directory')
        return self

    @classmethod
    def from_options(cls, options: Union['SyncConfiguration', Mapping[str, Any]]) -> 'SyncConfiguration':
        """
        Build (or re-validate) a configuration.

        Raises:
            ConfigurationError: if any option is missing or invalid
        """
        if isinstance(options, SyncConfiguration):
            options = options.model_dump()
        try:
            return cls.model_validate(dict(options))
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(part) for part in err['loc']) or 'config'}: {err['msg']}"
                for err in e.errors()
            )
            raise ConfigurationError(details) from e

    def to_options(self) -> Dict[str, Any]:
        """Host option names, for display and persistence"""
        return {
            "sourceDir": str(self.source_root),
            "targetDir": str(self.target_root),
            "extensions": sorted(self.extensions),
            "allowDeletion": self.allow_deletion,
            "includeHidden": self.include_hidden,
            "usePolling": self.use_polling,
            "syncImportArtifacts": self.sync_import_artifacts,
        }


class SyncSettings(BaseSettings):
    """Process-wide settings with environment variable support"""
    model_config = SettingsConfigDict(
        env_prefix="GODOT_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Watcher
    debounce_ms: int = Field(default=200, ge=0, le=10000)
    supervise_interval_s: float = Field(default=1.0, gt=0.0, le=60.0)

    # Retry policy
    retry_max_attempts: int = Field(default=4, ge=1, le=10)
    retry_base_delay_ms: float = Field(default=50.0, ge=0.0, le=5000.0)

    # Persistent host state
    config_dir: Path = Field(default_factory=lambda: Path.home() / ".godot-sync")
    max_log_lines: int = Field(default=200, ge=1)
    log_flush_interval_s: float = Field(default=2.0, gt=0.0, le=60.0)

    # Module loggers; the engine log sink is the user-facing stream
    log_level: str = Field(default="WARNING", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")

    @property
    def config_file(self) -> Path:
        return self.config_dir / "config.json"

    @property
    def retry_base_delay(self) -> float:
        """Base retry delay in seconds"""
        return self.retry_base_delay_ms / 1000.0
