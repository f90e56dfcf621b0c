"""
Storage Layer.

This package handles all filesystem state: the configuration file, the shared
artifact directory, and the retention sweep that keeps it bounded.
"""

from .artifacts import ArtifactStore
from .config_manager import ConfigManager
from .retention import RetentionSweeper

__all__ = ["ArtifactStore", "ConfigManager", "RetentionSweeper"]
