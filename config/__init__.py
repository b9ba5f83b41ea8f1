"""
Configuration management for godot-sync

Handles saved options, environment overrides, and the persisted log.
"""

from .loader import ConfigurationLoader
from .defaults import DEFAULT_SETTINGS, DEFAULT_OPTIONS, DEFAULT_EXTENSIONS

__all__ = ["ConfigurationLoader", "DEFAULT_SETTINGS", "DEFAULT_OPTIONS", "DEFAULT_EXTENSIONS"]
