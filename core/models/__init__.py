"""
Core data models for godot-sync

Pydantic models for run configuration and process settings.
"""

from .config import SyncConfiguration, SyncSettings, normalize_extensions

__all__ = [
    "SyncConfiguration",
    "SyncSettings",
    "normalize_extensions",
]
