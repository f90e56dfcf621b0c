"""
Media Tooling Layer.

This package wraps the external extraction tool: command-line construction,
process execution, metadata pre-fetch, and playlist expansion.
"""

from .metadata import VideoMetadata
from .tool import ExtractorTool

__all__ = ["ExtractorTool", "VideoMetadata"]
