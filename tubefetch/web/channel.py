"""
Per-session publish point forwarding progress messages to one subscriber.
"""

import logging
from typing import Optional, Protocol

from tubefetch.models.session import ProgressMessage

log = logging.getLogger(__name__)


class Connection(Protocol):
    """The part of a transport connection the channel relies on."""

    @property
    def closed(self) -> bool: ...

    async def send_str(self, data: str) -> None: ...


class ProgressChannel:
    """
    Delivers messages to whichever connection is currently associated with a
    session. Delivery is best-effort: with no open subscriber a message is
    dropped, and nothing is queued or replayed.
    """

    def __init__(self):
        self._connections: dict[str, Connection] = {}

    def associate(self, session_id: str, connection: Connection) -> None:
        """Makes `connection` the session's subscriber, replacing any previous one."""
        if session_id in self._connections:
            log.debug(f"Replacing subscriber for session {session_id}")
        self._connections[session_id] = connection

    def disassociate(
        self, session_id: str, connection: Optional[Connection] = None
    ) -> None:
        """
        Removes the session's subscriber. When `connection` is given, only
        removes it if it is still the current one.
        """
        current = self._connections.get(session_id)
        if current is None:
            return
        if connection is not None and current is not connection:
            return
        del self._connections[session_id]

    def is_subscribed(self, session_id: str) -> bool:
        connection = self._connections.get(session_id)
        return connection is not None and not connection.closed

    async def publish(self, session_id: str, message: ProgressMessage) -> bool:
        """Sends a message to the session's subscriber. Returns True if sent."""
        connection = self._connections.get(session_id)
        if connection is None or connection.closed:
            return False
        try:
            await connection.send_str(message.to_json())
            return True
        except (ConnectionError, RuntimeError) as e:
            log.warning(f"[yellow]Failed to send message to session {session_id}:[/] {e}")
            return False
