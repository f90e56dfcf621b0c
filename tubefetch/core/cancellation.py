"""
Cancellation of a session: process termination, artifact removal, and the
single cancellation notice to the subscriber.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

from tubefetch.models.config import ServerConfig
from tubefetch.models.session import ProgressMessage, Session
from tubefetch.storage.artifacts import SWEEPABLE_EXTENSIONS, ArtifactStore, is_sweepable
from tubefetch.utils.structured_logger import SessionEventLogger
from tubefetch.web.channel import ProgressChannel

from .registry import ProcessRegistry, send_kill, send_terminate

log = logging.getLogger(__name__)


@dataclass
class CancellationReport:
    """What one cancellation pass did."""

    session_id: str
    processes_signalled: int = 0
    files_deleted: list[str] = field(default_factory=list)
    notified: bool = False


async def announce_cancellation(
    registry: ProcessRegistry, channel: ProgressChannel, session_id: str
) -> bool:
    """Publishes the session's cancellation message, at most once per session."""
    if not registry.claim_cancel_notice(session_id):
        return False
    await channel.publish(session_id, ProgressMessage.cancellation(session_id))
    return True


def sweep_session_leftovers(
    store: ArtifactStore,
    session: Session,
    max_age: float,
    now: Optional[float] = None,
    extensions: Iterable[str] = SWEEPABLE_EXTENSIONS,
) -> list[str]:
    """
    Best-effort removal of artifacts a session produced but never registered.

    A file qualifies if its extension is allow-listed and either its name
    starts with one of the session's expected prefixes, or it was modified
    during the session's lifetime and is at most `max_age` seconds old.
    Files already in the session's `files` set are left to the exact pass.
    """
    now = time.time() if now is None else now
    window_start = max(session.started_at, now - max_age)
    prefixes = tuple(session.expected_name_patterns)
    extensions = tuple(extensions)
    deleted = []

    for name in store.names():
        if name in session.files or not is_sweepable(name, extensions):
            continue
        matched = bool(prefixes) and name.startswith(prefixes)
        if not matched:
            try:
                mtime = store.path(name).stat().st_mtime
            except FileNotFoundError:
                continue
            matched = window_start <= mtime <= now
        if matched and store.safe_delete(name):
            deleted.append(name)
    return deleted


class CancellationController:
    """Flips a session to cancelled and removes everything it left behind."""

    def __init__(
        self,
        config: ServerConfig,
        registry: ProcessRegistry,
        channel: ProgressChannel,
        store: ArtifactStore,
        events: Optional[SessionEventLogger] = None,
    ):
        self.config = config
        self.registry = registry
        self.channel = channel
        self.store = store
        self.events = events

    async def cancel(self, session_id: str) -> CancellationReport:
        """
        Cancels a session. Safe to call repeatedly: later calls repeat the
        cleanup but never publish a second cancellation message.
        """
        report = CancellationReport(session_id)
        session = self.registry.mark_cancelled(session_id)
        log.info(f"[yellow]Cancelling session {session_id}[/yellow]")

        for handle in list(session.processes):
            if send_terminate(handle):
                report.processes_signalled += 1
                self._schedule_kill(handle)

        report.files_deleted = await asyncio.to_thread(self._delete_files, session)

        report.notified = await announce_cancellation(
            self.registry, self.channel, session_id
        )

        asyncio.get_running_loop().call_later(
            self.config.cancel_grace, self.registry.remove, session_id
        )

        if self.events:
            self.events.session_cancelled(
                session_id, report.processes_signalled, len(report.files_deleted)
            )
        return report

    def _delete_files(self, session: Session) -> list[str]:
        deleted = [name for name in list(session.files) if self.store.safe_delete(name)]
        if self.config.heuristic_cleanup:
            leftovers = sweep_session_leftovers(
                self.store, session, self.config.heuristic_max_age
            )
            if leftovers:
                log.debug(f"Heuristic sweep removed: {', '.join(leftovers)}")
            deleted.extend(leftovers)
        return deleted

    def _schedule_kill(self, handle: asyncio.subprocess.Process) -> None:
        def _kill_if_alive() -> None:
            leader_alive = handle.returncode is None
            # The leader may be gone while helpers in its group linger.
            if send_kill(handle) and leader_alive:
                log.warning(f"Killed process group {handle.pid} after SIGTERM grace.")

        asyncio.get_running_loop().call_later(self.config.kill_grace, _kill_if_alive)
