"""
Core data structures for extraction sessions: sessions, work items, outcomes,
and the progress messages streamed to subscribers.
"""

import asyncio
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Optional
from urllib.parse import quote

from pydantic import BaseModel, Field, model_validator
from pydantic.alias_generators import to_camel


def generate_session_id() -> str:
    """Returns a fresh, never-reused session identifier."""
    return f"session_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


def generate_attempt_token() -> str:
    """Returns a unique token embedded in every artifact name of one attempt."""
    return f"{int(time.time() * 1000)}{secrets.token_hex(3)}"


def download_url_for(file_name: str) -> str:
    """Builds the retrieval locator for an artifact name."""
    return f"/downloads/{quote(file_name)}"


class ErrorKind(str, Enum):
    """Categories of failure reported for an extraction unit or a batch."""

    TOOL_START = "tool_start"
    TOOL_EXIT = "tool_exit"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    NO_OUTPUT = "no_output"
    BATCH = "batch"


@dataclass
class WorkItem:
    """One unit of extraction."""

    source: str
    duration: Optional[float] = None
    title: Optional[str] = None


@dataclass
class Session:
    """Bookkeeping for one client-initiated batch or single extraction."""

    id: str
    cancelled: bool = False
    cancel_notified: bool = False
    processes: set[asyncio.subprocess.Process] = field(default_factory=set)
    files: set[str] = field(default_factory=set)
    expected_name_patterns: set[str] = field(default_factory=set)
    started_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.monotonic)

    def touch(self) -> None:
        self.last_activity = time.monotonic()


@dataclass(frozen=True)
class ExtractionOutcome:
    """Result of one Extraction Worker run."""

    success: bool
    file_name: Optional[str] = None
    download_url: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    exit_code: Optional[int] = None

    @classmethod
    def ok(cls, file_name: str) -> "ExtractionOutcome":
        return cls(True, file_name=file_name, download_url=download_url_for(file_name))

    @classmethod
    def failed(
        cls, kind: ErrorKind, error: str, exit_code: Optional[int] = None
    ) -> "ExtractionOutcome":
        return cls(False, error=error, error_kind=kind, exit_code=exit_code)

    @classmethod
    def cancelled(cls) -> "ExtractionOutcome":
        return cls.failed(ErrorKind.CANCELLED, "Download cancelled")

    @property
    def was_cancelled(self) -> bool:
        return self.error_kind is ErrorKind.CANCELLED


MessageKind = Literal["start", "progress", "success", "error", "complete"]


class ProgressMessage(BaseModel):
    """
    An immutable event emitted to a session's subscriber.

    Serialized with camelCase keys, `kind` travelling as `type`, and unset
    optional fields omitted.
    """

    kind: MessageKind = Field(alias="type")
    session_id: str
    current: Optional[int] = None
    total: Optional[int] = None
    video_url: Optional[str] = None
    file_name: Optional[str] = None
    download_url: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[ErrorKind] = None
    successful: Optional[int] = None
    failed: Optional[int] = None

    class Config:
        """Pydantic model configuration."""

        frozen = True
        populate_by_name = True
        alias_generator = to_camel
        use_enum_values = True

    @model_validator(mode="after")
    def validate_counters(self) -> "ProgressMessage":
        if self.current is not None and self.total is not None:
            if self.current > self.total:
                raise ValueError(
                    f"current ({self.current}) cannot exceed total ({self.total})."
                )
        return self

    def to_json(self) -> str:
        """Renders the wire representation sent over the transport."""
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def cancellation(cls, session_id: str) -> "ProgressMessage":
        return cls(
            kind="error",
            session_id=session_id,
            error="Download cancelled by user",
            error_code=ErrorKind.CANCELLED,
        )
