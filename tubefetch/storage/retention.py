"""
Periodic, session-independent deletion of old artifacts.
"""

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from tubefetch.core.registry import ProcessRegistry
from tubefetch.utils.structured_logger import SessionEventLogger

log = logging.getLogger(__name__)


@dataclass
class SweepResult:
    removed: int = 0
    failed: int = 0
    sessions_expired: int = 0


class RetentionSweeper:
    """
    Deletes every file in the artifact directory older than `max_age_seconds`,
    once at start and then every `interval_seconds`.

    When a registry is attached, each pass also expires idle session records.
    """

    def __init__(
        self,
        directory: Path,
        max_age_seconds: float = 3600,
        interval_seconds: float = 600,
        registry: Optional[ProcessRegistry] = None,
        session_idle_timeout: float = 3600,
        events: Optional[SessionEventLogger] = None,
    ):
        self.directory = directory
        self.max_age_seconds = max_age_seconds
        self.interval_seconds = interval_seconds
        self.registry = registry
        self.session_idle_timeout = session_idle_timeout
        self.events = events
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Starts the periodic background sweep task."""
        if not self.running:
            self._task = asyncio.create_task(self._sweep_loop())
            log.debug("Started retention sweep task.")

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await self.sweep_once()
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                log.debug("Retention sweep task cancelled.")
                break
            except Exception as e:
                log.warning(f"Error in retention sweep loop: {e}")
                await asyncio.sleep(self.interval_seconds)

    async def stop(self) -> None:
        """Stops the background sweep task gracefully."""
        if self.running:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            log.debug("Stopped retention sweep task.")

    async def sweep_once(self) -> SweepResult:
        """Runs a single pass now."""
        result = await asyncio.to_thread(self._remove_expired_entries)
        if self.registry is not None:
            result.sessions_expired = self.registry.expire_idle(self.session_idle_timeout)
        if self.events:
            self.events.retention_swept(
                result.removed, result.failed, result.sessions_expired
            )
        return result

    def _remove_expired_entries(self) -> SweepResult:
        """Scans the artifact directory and removes expired files."""
        result = SweepResult()
        if not self.directory.is_dir():
            return result

        now = time.time()
        for entry in self.directory.iterdir():
            try:
                if not entry.is_file():
                    continue
                if now - entry.stat().st_mtime > self.max_age_seconds:
                    entry.unlink()
                    result.removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                result.failed += 1
                log.warning(f"Failed to remove expired artifact {entry.name}: {e}")

        if result.removed > 0:
            log.info(f"Retention sweep: removed {result.removed} expired artifacts.")
        return result
