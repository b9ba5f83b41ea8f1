"""
godot-sync core package

One-way, continuous mirroring of a filtered source tree into a Godot project.
"""

__version__ = "0.1.0"
__author__ = "Godot Sync Team"

from .errors import SyncError, ConfigurationError, PathSecurityError, RetryError, WatchError
from .models import SyncConfiguration, SyncSettings

__all__ = [
    "SyncError",
    "ConfigurationError",
    "PathSecurityError",
    "RetryError",
    "WatchError",
    "SyncConfiguration",
    "SyncSettings",
]
