"""
Data Models Layer.

This package contains the Pydantic models and dataclasses that define the core
data structures used throughout the application, such as configuration,
sessions, and progress messages.
"""

from .config import ExtractionOptions, ServerConfig
from .session import (
    ErrorKind,
    ExtractionOutcome,
    ProgressMessage,
    Session,
    WorkItem,
)

__all__ = [
    "ErrorKind",
    "ExtractionOptions",
    "ExtractionOutcome",
    "ProgressMessage",
    "ServerConfig",
    "Session",
    "WorkItem",
]
