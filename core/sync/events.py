"""
Synchronization Operation Models.

Defines operation kinds, engine states, and the data structures that flow
from the watcher and the initial scanner through the queue into the engine.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator
import uuid


class OperationKind(Enum):
    """Kinds of source-tree changes that trigger synchronization"""
    CREATED = "created"     # New file appeared in the source tree
    MODIFIED = "modified"   # Existing source file changed
    REMOVED = "removed"     # Source file deleted


class EngineState(Enum):
    """Lifecycle states of a SyncEngine"""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class OperationOutcome(Enum):
    """Terminal states of a single operation"""
    COPIED = "copied"
    DELETED = "deleted"
    FILTERED = "filtered"
    SKIPPED_NEWER = "skipped_newer"
    SKIPPED_DELETION_DISABLED = "skipped_deletion_disabled"
    SKIPPED_SOURCE_GONE = "skipped_source_gone"
    ALREADY_ABSENT = "already_absent"
    BLOCKED = "blocked"
    FAILED = "failed"


class SyncOperation(BaseModel):
    """
    A single pending change in the source tree.

    Operations are produced by the watcher or the initial scanner and are
    consumed exactly once by the engine. They are never mutated.
    """
    model_config = ConfigDict(frozen=True)

    operation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    path: Path
    kind: OperationKind
    timestamp: datetime = Field(default_factory=datetime.now)
    origin: str = "watcher"

    @field_validator('path')
    @classmethod
    def validate_path(cls, v: Path) -> Path:
        """Ensure path is absolute"""
        if not v.is_absolute():
            raise ValueError('Operation path must be absolute')
        return v

    @classmethod
    def created(cls, path: Path, **kwargs) -> 'SyncOperation':
        """Create a file creation operation"""
        return cls(path=path, kind=OperationKind.CREATED, **kwargs)

    @classmethod
    def modified(cls, path: Path, **kwargs) -> 'SyncOperation':
        """Create a file modification operation"""
        return cls(path=path, kind=OperationKind.MODIFIED, **kwargs)

    @classmethod
    def removed(cls, path: Path, **kwargs) -> 'SyncOperation':
        """Create a file removal operation"""
        return cls(path=path, kind=OperationKind.REMOVED, **kwargs)

    @property
    def is_copy(self) -> bool:
        return self.kind in (OperationKind.CREATED, OperationKind.MODIFIED)

    @property
    def age_seconds(self) -> float:
        """Get operation age in seconds"""
        return (datetime.now() - self.timestamp).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging"""
        return {
            "operation_id": self.operation_id,
            "kind": self.kind.value,
            "path": str(self.path),
            "origin": self.origin,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        return f"{self.kind.value.upper()}: {self.path}"


@dataclass(frozen=True)
class OperationResult:
    """What the engine did with one operation."""
    operation: SyncOperation
    outcome: OperationOutcome
    relative_path: Optional[str] = None
    message: Optional[str] = None

    @property
    def wrote_target(self) -> bool:
        return self.outcome in (OperationOutcome.COPIED, OperationOutcome.DELETED)

    @property
    def failed(self) -> bool:
        return self.outcome == OperationOutcome.FAILED
