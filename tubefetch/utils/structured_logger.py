"""
Structured event logging for extraction sessions.
Mirrors key events to the console logger and, optionally, to a JSONL file.
"""

import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.markup import escape


class StructuredLogger:
    """
    Logger that outputs both human-readable and machine-parseable events.

    Usage:
        logger = StructuredLogger("tubefetch", log_dir=Path("logs"))
        logger.info("item_completed", session_id="session_1", file_name="a.mp3")
    """

    def __init__(
        self,
        name: str,
        log_dir: Optional[Path] = None,
        enable_json: bool = True,
    ):
        """
        Args:
            name: Logger name
            log_dir: Directory for JSON log files (None = disabled)
            enable_json: Enable JSON file logging
        """
        self.name = name
        self.log_dir = log_dir
        self.enable_json = enable_json and log_dir is not None
        self._logger = logging.getLogger(name)

        self._json_file = None
        if self.enable_json:
            log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            json_log_path = log_dir / f"tubefetch_{timestamp}.jsonl"
            self._json_file = open(json_log_path, "a", encoding="utf-8")  # noqa: SIM115

    def _format_message(self, event: str, **context) -> str:
        parts = [f"[{event}]"]
        parts.extend(f"{key}={value}" for key, value in context.items())
        return " ".join(parts)

    def _write_json(self, level: str, event: str, **context) -> None:
        if not self._json_file or self._json_file.closed:
            return
        entry = {
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "event": event,
            **context,
        }
        try:
            self._json_file.write(json.dumps(entry, default=str) + "\n")
            self._json_file.flush()
        except (OSError, ValueError) as e:
            print(f"JSON logging failed: {e}", file=sys.stderr)

    def _emit(self, level: int, event: str, **context) -> None:
        self._logger.log(level, escape(self._format_message(event, **context)))
        if self.enable_json:
            self._write_json(logging.getLevelName(level), event, **context)

    def debug(self, event: str, **context) -> None:
        self._emit(logging.DEBUG, event, **context)

    def info(self, event: str, **context) -> None:
        self._emit(logging.INFO, event, **context)

    def warning(self, event: str, **context) -> None:
        self._emit(logging.WARNING, event, **context)

    def error(self, event: str, **context) -> None:
        self._emit(logging.ERROR, event, **context)

    def close(self) -> None:
        """Close JSON log file."""
        if self._json_file and not self._json_file.closed:
            self._json_file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class SessionEventLogger:
    """Specialized logger for session lifecycle events."""

    def __init__(self, logger: StructuredLogger):
        self.logger = logger

    def session_started(self, session_id: str, total: int, quality: str, media_format: str):
        self.logger.info(
            "session_started",
            session_id=session_id,
            total=total,
            quality=quality,
            media_format=media_format,
        )

    def item_started(self, session_id: str, current: int, total: int, source: str):
        self.logger.debug(
            "item_started",
            session_id=session_id,
            current=current,
            total=total,
            source=source,
        )

    def item_completed(self, session_id: str, current: int, file_name: str):
        self.logger.info(
            "item_completed", session_id=session_id, current=current, file_name=file_name
        )

    def item_failed(self, session_id: str, current: int, error: str, error_code: str):
        self.logger.warning(
            "item_failed",
            session_id=session_id,
            current=current,
            error=error,
            error_code=error_code,
        )

    def session_completed(
        self, session_id: str, successful: int, failed: int, duration_s: float
    ):
        self.logger.info(
            "session_completed",
            session_id=session_id,
            successful=successful,
            failed=failed,
            duration_s=round(duration_s, 2),
        )

    def session_cancelled(
        self, session_id: str, processes_signalled: int, files_deleted: int
    ):
        self.logger.info(
            "session_cancelled",
            session_id=session_id,
            processes_signalled=processes_signalled,
            files_deleted=files_deleted,
        )

    def retention_swept(self, removed: int, failed: int, sessions_expired: int):
        self.logger.debug(
            "retention_swept",
            removed=removed,
            failed=failed,
            sessions_expired=sessions_expired,
        )


def create_structured_logger(
    log_dir: Optional[Path] = None, enable_json: bool = False
) -> tuple[StructuredLogger, SessionEventLogger]:
    """
    Create the structured loggers.

    Returns:
        Tuple of (base_logger, session_logger)
    """
    base = StructuredLogger("tubefetch.events", log_dir=log_dir, enable_json=enable_json)
    return base, SessionEventLogger(base)

