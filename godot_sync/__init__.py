"""
Godot Sync - continuous one-way mirroring of source files into a Godot project.

Watches a source tree and copies eligible files into the target project as
they change, with an initial catch-up sync on start.
"""

__version__ = "0.1.0"
__author__ = "Godot Sync Team"

# Package imports for convenient access
from core.models.config import SyncConfiguration, SyncSettings
from core.sync import SyncEngine, EngineState

__all__ = [
    "SyncConfiguration",
    "SyncSettings",
    "SyncEngine",
    "EngineState",
    "__version__",
]
