"""
Process-wide map from user id to that user's live connection.

At most one connection is registered per user: a newer connection replaces
the older one, which then stops receiving pushes. All reads and writes go
through register / lookup / unregister_if_current, each of which is atomic
with respect to the others.
"""

import logging
import threading
from typing import Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

HandleT = TypeVar("HandleT")


class ConnectionRegistry(Generic[HandleT]):
    """Thread-safe user id -> connection handle map."""

    def __init__(self) -> None:
        self._connections: Dict[str, HandleT] = {}
        self._lock = threading.Lock()

    def register(self, user_id: str, handle: HandleT) -> Optional[HandleT]:
        """
        Make handle the user's live connection, replacing any existing one.

        Returns:
            The previously registered handle, if any
        """
        with self._lock:
            previous = self._connections.get(user_id)
            self._connections[user_id] = handle
        if previous is not None and previous is not handle:
            logger.info(f"Live connection for user {user_id} superseded by a newer one")
        return previous

    def lookup(self, user_id: str) -> Optional[HandleT]:
        with self._lock:
            return self._connections.get(user_id)

    def unregister_if_current(self, user_id: str, handle: HandleT) -> bool:
        """
        Remove the user's entry only if it is still this handle.

        A connection that disconnects after the same user reconnected must not
        remove the newer registration.

        Returns:
            True if the entry was removed
        """
        with self._lock:
            if self._connections.get(user_id) is handle:
                del self._connections[user_id]
                return True
        logger.debug(f"Skipped unregister for user {user_id}: handle no longer current")
        return False

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def __contains__(self, user_id: str) -> bool:
        return self.lookup(user_id) is not None
