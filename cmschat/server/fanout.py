from typing import Iterable
from .errors import FanoutDeliveryFailure
from .hub import Hub
from .presence import SessionRegistry
from ..utils.logger import setup_logger

logger = setup_logger('cmschat.fanout')


class Fanout:
    """Best-effort delivery of events to live connections.

    Called only after the state change behind an event has been stored.
    Neither method raises: a connection that cannot take the event is
    logged and skipped, and clients that miss events recover by fetching
    conversations and messages again.
    """

    def __init__(self, hub: Hub, registry: SessionRegistry):
        self.hub = hub
        self.registry = registry

    def _deliver_all(self, connection_ids: Iterable[str], event: dict) -> int:
        delivered = 0
        for connection_id in connection_ids:
            try:
                self.hub.deliver(connection_id, event)
                delivered += 1
            except FanoutDeliveryFailure as e:
                logger.warning(f"Dropped {event.get('type')} event: {e}")
        return delivered

    def publish(self, participants: Iterable[str], event: dict) -> int:
        """Send a conversation event to every live connection of the participants.

        Streams that joined specific conversations only get events of those.

        Args:
            participants: User IDs of the conversation members
            event (dict): Event built by ``cmschat.server.events``

        Returns:
            int: Number of connections the event was queued for
        """
        try:
            connection_ids = set()
            for user_id in participants:
                connection_ids |= self.registry.connections_for(user_id)
            conversation_id = event.get("payload", {}).get("conversationId")
            targets = [c for c in sorted(connection_ids) if self.hub.wants(c, conversation_id)]
            delivered = self._deliver_all(targets, event)
        except Exception:
            logger.exception(f"Publishing {event.get('type')} failed")
            return 0
        logger.debug(f"Event {event.get('type')} queued for {delivered}/{len(connection_ids)} connections")
        return delivered

    def broadcast(self, event: dict) -> int:
        """Send a global event, such as a presence update, to every open connection."""
        try:
            delivered = self._deliver_all(self.hub.connection_ids(), event)
        except Exception:
            logger.exception(f"Broadcasting {event.get('type')} failed")
            return 0
        logger.debug(f"Event {event.get('type')} broadcast to {delivered} connections")
        return delivered
