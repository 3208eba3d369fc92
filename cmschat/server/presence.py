from typing import Callable, Dict, List, Optional, Set
from .events import build_presence_event
from ..utils.logger import setup_logger

logger = setup_logger('cmschat.presence')

Publisher = Callable[[dict], None]


class SessionRegistry:
    """Process-wide map of users to their live connection IDs.

    A user is online while at least one of their connections is open.
    Transitions between offline and online are announced through
    ``publish`` with a ``presence:update`` event. State lives in memory
    only; after a restart every user is offline until they reconnect.

    All methods are synchronous, so on a single event loop each call is
    atomic with respect to other handlers.
    """

    def __init__(self, publish: Optional[Publisher] = None):
        """Initialize an empty registry.

        Args:
            publish (Optional[Publisher]): Called with presence events;
                may be attached later through the ``publish`` attribute
        """
        self.publish = publish
        self._connections: Dict[str, Set[str]] = {}

    def _announce(self, principal_id: str, online: bool):
        logger.info(f"User {principal_id} is now {'online' if online else 'offline'}")
        if self.publish is not None:
            self.publish(build_presence_event(principal_id, online))

    def register_connection(self, principal_id: str, connection_id: str) -> bool:
        """Add a live connection for a user.

        Returns:
            bool: True if the user just came online
        """
        live = self._connections.setdefault(principal_id, set())
        came_online = not live
        live.add(connection_id)
        logger.debug(f"User {principal_id} has {len(live)} live connections")
        if came_online:
            self._announce(principal_id, True)
        return came_online

    def unregister_connection(self, principal_id: str, connection_id: str) -> bool:
        """Remove a live connection for a user.

        Returns:
            bool: True if the user just went offline
        """
        live = self._connections.get(principal_id)
        if not live:
            return False
        live.discard(connection_id)
        if live:
            logger.debug(f"User {principal_id} has {len(live)} live connections")
            return False
        del self._connections[principal_id]
        self._announce(principal_id, False)
        return True

    def is_online(self, principal_id: str) -> bool:
        return bool(self._connections.get(principal_id))

    def connections_for(self, principal_id: str) -> Set[str]:
        return set(self._connections.get(principal_id, ()))

    def online_principals(self) -> List[str]:
        return sorted(self._connections.keys())
