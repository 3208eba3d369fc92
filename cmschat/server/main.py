import asyncio
from grpc import aio
from .config import Settings, load_settings
from .fanout import Fanout
from .hub import Hub
from .presence import SessionRegistry
from .repo import ConversationsRepo, MessagesRepo
from .service import MessagingService, generic_handler, logger  # Reuse the same logger
from .store import MessageStore


def build_service(settings: Settings) -> MessagingService:
    """Wire repositories, hub, presence registry and fan-out into the service.

    Args:
        settings (Settings): Server settings

    Returns:
        MessagingService: Service ready to be registered on a grpc server
    """
    conversations = ConversationsRepo(settings.conversations_path)
    messages = MessagesRepo(settings.messages_path)
    hub = Hub(queue_size=settings.queue_size)
    registry = SessionRegistry()
    fanout = Fanout(hub, registry)
    registry.publish = fanout.broadcast
    store = MessageStore(conversations, messages, fanout)
    return MessagingService(store, hub, registry, settings.jwt_secret)


async def serve(settings: Settings = None):
    """Start the messaging server.

    Sets up and runs the gRPC server with the messaging service.
    Initializes all required components:
    - Conversation repository
    - Message repository
    - Event hub and session registry

    Args:
        settings (Settings, optional): Defaults to ``load_settings()``

    Side Effects:
        - Creates data directories if needed
        - Starts gRPC server
        - Logs server startup progress
    """
    settings = settings or load_settings()
    server = aio.server()
    server.add_generic_rpc_handlers((generic_handler(build_service(settings)),))
    listen_addr = f"{settings.host}:{settings.port}"
    server.add_insecure_port(listen_addr)
    logger.info(f"Server starting, listening on {listen_addr}")
    await server.start()
    logger.info(f"Server is now running on {listen_addr}")
    await server.wait_for_termination()

if __name__ == "__main__":
    asyncio.run(serve())
