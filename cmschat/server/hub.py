import asyncio, uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set
from .errors import FanoutDeliveryFailure
from ..utils.logger import setup_logger

logger = setup_logger('cmschat.hub')

DEFAULT_QUEUE_SIZE = 256


@dataclass
class Connection:
    """One live event stream.

    Attributes:
        id (str): Connection identifier, unique per process
        principal_id (Optional[str]): Authenticated user, None for anonymous streams
        queue (asyncio.Queue): Outgoing events waiting to be written to the stream
        conversation_ids (Optional[Set[str]]): Conversations the stream joined;
            None receives events of every conversation the user belongs to
    """
    id: str
    principal_id: Optional[str]
    queue: asyncio.Queue = field(repr=False)
    conversation_ids: Optional[Set[str]] = None


class Hub:
    """Event routing hub for live connections.

    Manages the open event streams. Each stream has a dedicated bounded
    asyncio Queue; putting into it never blocks, so publishing events
    cannot stall the request that triggered them.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        """Initialize event hub.

        Attributes:
            connections (Dict[str, Connection]): Maps connection IDs to connections
            queue_size (int): Capacity of each connection queue
            _lock (asyncio.Lock): Serializes opening and closing of connections
        """
        self.connections: Dict[str, Connection] = {}
        self.queue_size = queue_size
        self._lock = asyncio.Lock()
        logger.info("Event Hub initialized")

    async def open_connection(self, principal_id: Optional[str],
                              conversation_ids: Optional[Set[str]] = None) -> Connection:
        """Register a new connection and its event queue.

        Args:
            principal_id (Optional[str]): Authenticated user, or None
            conversation_ids (Optional[Set[str]]): Joined conversations, None for all

        Returns:
            Connection: The new connection
        """
        async with self._lock:
            conn = Connection(
                id=uuid.uuid4().hex,
                principal_id=principal_id,
                queue=asyncio.Queue(maxsize=self.queue_size),
                conversation_ids=set(conversation_ids) if conversation_ids is not None else None,
            )
            self.connections[conn.id] = conn
            logger.info(f"Opened connection {conn.id} for {principal_id or 'anonymous'}")
            logger.debug(f"Open connections: {len(self.connections)}")
            return conn

    async def close_connection(self, connection_id: str) -> Optional[Connection]:
        """Remove a connection, typically when its stream ends."""
        async with self._lock:
            conn = self.connections.pop(connection_id, None)
            if conn is not None:
                logger.info(f"Closed connection {connection_id}")
                logger.debug(f"Remaining connections: {len(self.connections)}")
            return conn

    def connection_ids(self) -> List[str]:
        return list(self.connections.keys())

    def wants(self, connection_id: str, conversation_id: Optional[str]) -> bool:
        """Check whether a connection joined the conversation an event belongs to."""
        conn = self.connections.get(connection_id)
        if conn is None or conn.conversation_ids is None or conversation_id is None:
            return True
        return conversation_id in conn.conversation_ids

    def deliver(self, connection_id: str, event: dict):
        """Queue an event for one connection without waiting.

        Raises:
            FanoutDeliveryFailure: If the connection is gone or its queue is full
        """
        conn = self.connections.get(connection_id)
        if conn is None:
            raise FanoutDeliveryFailure(connection_id, "not connected")
        try:
            conn.queue.put_nowait(event)
        except asyncio.QueueFull:
            raise FanoutDeliveryFailure(connection_id, "queue full") from None
        logger.debug(f"Queued {event.get('type')} for connection {connection_id}")
