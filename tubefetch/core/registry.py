"""
The session store: live child processes, produced artifacts, and the
cancellation flag of every session.

Every method is synchronous and free of awaits, so within the event loop
each call is atomic with respect to worker callbacks and cancellation
requests. No method blocks.
"""

import asyncio
import logging
import os
import signal
import time
from collections import OrderedDict
from typing import Optional

from tubefetch.models.session import Session, generate_session_id

log = logging.getLogger(__name__)

# Children run in their own process group so helpers they spawn (ffmpeg)
# receive the same signals.
GROUP_SIGNALS = hasattr(os, "killpg")
KILL_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)

# Longer than any tool invocation can live, so a late check on a removed
# session still sees the cancellation.
TOMBSTONE_TTL_SECONDS = 24 * 3600.0


class ProcessRegistry:
    """Tracks live child-process handles and spawned artifacts per session."""

    def __init__(self, tombstone_ttl: float = TOMBSTONE_TTL_SECONDS):
        self._sessions: dict[str, Session] = {}
        # Cancelled ids outlive their records so late checks still see True.
        # Maps id to (notice already sent, time cancelled), oldest first.
        self._tombstones: OrderedDict[str, tuple[bool, float]] = OrderedDict()
        self._tombstone_ttl = tombstone_ttl

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def create_session(self) -> str:
        """Creates a new session record and returns its id."""
        session_id = generate_session_id()
        while session_id in self._sessions or session_id in self._tombstones:
            session_id = generate_session_id()
        self._sessions[session_id] = Session(id=session_id)
        log.debug(f"Created session {session_id}")
        return session_id

    def session(self, session_id: str) -> Session:
        """Returns the session record, creating it on first reference."""
        session = self._sessions.get(session_id)
        if session is None:
            session = Session(id=session_id)
            if session_id in self._tombstones:
                session.cancelled = True
                session.cancel_notified = self._tombstones[session_id][0]
            self._sessions[session_id] = session
        return session

    def get(self, session_id: str) -> Optional[Session]:
        """Returns the session record if it exists, without creating it."""
        return self._sessions.get(session_id)

    def register(self, session_id: str, handle: asyncio.subprocess.Process) -> bool:
        """
        Attaches a live handle to a session.

        If the session is already cancelled the handle is signalled at once
        and False is returned; the caller must treat it as not registered.
        """
        session = self.session(session_id)
        session.touch()
        if session.cancelled:
            log.debug(f"Session {session_id} is cancelled; terminating new process.")
            send_terminate(handle)
            return False
        session.processes.add(handle)
        return True

    def active_ids(self) -> list[str]:
        """Ids of sessions that still own live processes."""
        return [sid for sid, session in self._sessions.items() if session.processes]

    def unregister(self, session_id: str, handle: asyncio.subprocess.Process) -> None:
        """Detaches a handle. A no-op if it, or the session, is already gone."""
        session = self._sessions.get(session_id)
        if session is not None:
            session.processes.discard(handle)
            session.touch()

    def is_cancelled(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is not None:
            return session.cancelled
        return session_id in self._tombstones

    def mark_cancelled(self, session_id: str) -> Session:
        """Flips the session's flag to cancelled. The flag never reverts."""
        session = self.session(session_id)
        session.cancelled = True
        session.touch()
        self._remember_cancelled(session_id, session.cancel_notified)
        return session

    def claim_cancel_notice(self, session_id: str) -> bool:
        """Returns True exactly once per session: the right to announce cancellation."""
        session = self.session(session_id)
        if session.cancel_notified:
            return False
        session.cancel_notified = True
        if session.cancelled:
            self._remember_cancelled(session_id, True)
        return True

    def add_file(self, session_id: str, file_name: str) -> None:
        session = self.session(session_id)
        session.files.add(file_name)
        session.touch()

    def add_expected_pattern(self, session_id: str, prefix: str) -> None:
        session = self.session(session_id)
        session.expected_name_patterns.add(prefix)
        session.touch()

    def remove(self, session_id: str) -> None:
        """Drops a session's bookkeeping; its cancellation, if any, is remembered."""
        session = self._sessions.pop(session_id, None)
        if session is not None:
            log.debug(f"Removed session {session_id}")

    def expire_idle(self, max_idle: float) -> int:
        """
        Removes sessions with no live processes and no activity for `max_idle`
        seconds. Returns the number of sessions removed.
        """
        now = time.monotonic()
        stale = [
            sid
            for sid, session in self._sessions.items()
            if not session.processes and now - session.last_activity > max_idle
        ]
        for sid in stale:
            self.remove(sid)
        if stale:
            log.debug(f"Expired {len(stale)} idle sessions.")
        self._prune_tombstones(now)
        return len(stale)

    def _remember_cancelled(self, session_id: str, notified: bool) -> None:
        now = time.monotonic()
        self._tombstones[session_id] = (notified, now)
        self._tombstones.move_to_end(session_id)
        self._prune_tombstones(now)

    def _prune_tombstones(self, now: float) -> None:
        """Forgets cancellations older than the tombstone TTL."""
        while self._tombstones:
            oldest, (_, cancelled_at) = next(iter(self._tombstones.items()))
            if now - cancelled_at <= self._tombstone_ttl:
                break
            del self._tombstones[oldest]


def signal_process_group(handle: asyncio.subprocess.Process, sig: int) -> bool:
    """
    Signals the handle's whole process group, or just the handle where process
    groups are unavailable. Returns False if nothing was there to signal.
    """
    try:
        if GROUP_SIGNALS:
            os.killpg(handle.pid, sig)
        else:
            handle.send_signal(sig)
        return True
    except (ProcessLookupError, PermissionError):
        # PermissionError: a group of zombies on some platforms.
        return False


def send_terminate(handle: asyncio.subprocess.Process) -> bool:
    """Sends SIGTERM to a handle's group, tolerating one that has already exited."""
    if handle.returncode is not None:
        return False
    return signal_process_group(handle, signal.SIGTERM)


def send_kill(handle: asyncio.subprocess.Process) -> bool:
    """Sends SIGKILL to a handle's group. Survivors of an exited leader count too."""
    return signal_process_group(handle, KILL_SIGNAL)
