import functools, time
import grpc
from grpc import aio
from . import codec
from .access import require_member
from .auth import optional_principal, require_principal
from .errors import ChatError, TransientStoreError, ValidationError
from .hub import Hub
from .presence import SessionRegistry
from .store import MessageStore
from ..utils.logger import setup_logger

logger = setup_logger('cmschat.server')

SERVICE_NAME = "cmschat.Messaging"


def _required(body: dict, key: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{key} is required")
    return value


def _authenticated(method):
    """Wrap an RPC handler with body decoding, authentication and error mapping.

    The wrapped handler receives ``(self, principal, body)`` and returns a
    JSON-serializable dict. Known errors are reported with their status
    code and message; anything else becomes INTERNAL "Server error" with
    the details kept in the server log.
    """
    @functools.wraps(method)
    async def wrapper(self, request: bytes, context: aio.ServicerContext):
        try:
            body = codec.decode(request)
            principal = require_principal(self.jwt_secret, context.invocation_metadata())
            return await method(self, principal, body)
        except TransientStoreError as e:
            logger.error(f"{method.__name__}: store failure: {e.detail}")
            await context.abort(e.status_code, e.message)
        except ChatError as e:
            logger.info(f"{method.__name__}: {e.status_code.name} {e.message}")
            await context.abort(e.status_code, e.message)
        except Exception:
            logger.exception(f"{method.__name__} error")
            await context.abort(grpc.StatusCode.INTERNAL, "Server error")
    return wrapper


class MessagingService:
    """gRPC service exposing the messaging core.

    Request/response calls operate on conversations and messages for the
    authenticated caller. ``Subscribe`` opens a live event stream; it also
    accepts anonymous callers, who only receive presence updates.
    """

    def __init__(self, store: MessageStore, hub: Hub, registry: SessionRegistry, jwt_secret: str):
        """Initialize messaging service.

        Args:
            store (MessageStore): Conversation and message operations
            hub (Hub): Live connection queues
            registry (SessionRegistry): Presence tracking
            jwt_secret (str): Secret used to verify bearer tokens
        """
        self.store = store
        self.hub = hub
        self.registry = registry
        self.jwt_secret = jwt_secret

    @_authenticated
    async def ListConversations(self, principal, body):
        views = self.store.list_conversations(principal.id)
        return {"conversations": [v.to_dict() for v in views]}

    @_authenticated
    async def ListMessages(self, principal, body):
        messages = self.store.list_messages(_required(body, "conversationId"), principal.id)
        return {"messages": [m.to_dict() for m in messages]}

    @_authenticated
    async def SendMessage(self, principal, body):
        msg = self.store.send_message(
            _required(body, "conversationId"),
            principal.id,
            body.get("text"),
            body.get("to"),
        )
        logger.info(f"SendMessage: {principal.id} posted {msg.id} to {msg.conversation_id}")
        return msg.to_dict()

    @_authenticated
    async def MarkConversationRead(self, principal, body):
        modified = self.store.mark_conversation_read(_required(body, "conversationId"), principal.id)
        return {"ok": True, "modified": modified}

    @_authenticated
    async def MarkMessageRead(self, principal, body):
        self.store.mark_message_read(_required(body, "messageId"), principal.id)
        return {"ok": True}

    @_authenticated
    async def WhoIsOnline(self, principal, body):
        user_ids = body.get("userIds")
        if user_ids is None:
            return {"online": self.registry.online_principals()}
        if not isinstance(user_ids, list):
            raise ValidationError("userIds must be a list")
        return {"online": [str(u) for u in user_ids if self.registry.is_online(str(u))]}

    async def Health(self, request: bytes, context: aio.ServicerContext):
        return {"ok": True, "ts": int(time.time() * 1000)}

    def _joined_conversations(self, body: dict, principal_id):
        ids = body.get("conversationIds")
        if ids is None:
            return None
        if not isinstance(ids, list) or not all(isinstance(i, str) and i for i in ids):
            raise ValidationError("conversationIds must be a list of ids")
        if principal_id is None:
            logger.info("Subscribe: anonymous stream cannot join conversations, ignoring")
            return None
        for conversation_id in ids:
            require_member(self.store.conversations.get(conversation_id), principal_id)
        return set(ids)

    async def Subscribe(self, request: bytes, context: aio.ServicerContext):
        """Stream live events to the caller until the call ends.

        Authenticated callers are registered in the session registry for
        the lifetime of the stream; the registry announces when they come
        online and go offline.

        The request may carry ``conversationIds`` to join only those
        conversations; each must be one the caller belongs to. Anonymous
        callers cannot join conversations, so the list is ignored for them.

        Yields:
            dict: Events queued for this connection
        """
        principal = optional_principal(self.jwt_secret, context.invocation_metadata())
        principal_id = principal.id if principal else None
        try:
            conversation_ids = self._joined_conversations(codec.decode(request), principal_id)
        except ChatError as e:
            logger.info(f"Subscribe: {e.status_code.name} {e.message}")
            await context.abort(e.status_code, e.message)
        conn = await self.hub.open_connection(principal_id, conversation_ids)
        if principal_id:
            self.registry.register_connection(principal_id, conn.id)
        try:
            while True:
                yield await conn.queue.get()
        finally:
            if principal_id:
                self.registry.unregister_connection(principal_id, conn.id)
            await self.hub.close_connection(conn.id)
            logger.info(f"Subscribe: stream {conn.id} of {principal_id or 'anonymous'} ended")


def method_path(name: str) -> str:
    return f"/{SERVICE_NAME}/{name}"


UNARY_METHODS = (
    "ListConversations",
    "ListMessages",
    "SendMessage",
    "MarkConversationRead",
    "MarkMessageRead",
    "WhoIsOnline",
    "Health",
)


def generic_handler(service: MessagingService) -> grpc.GenericRpcHandler:
    """Build the grpc handler that routes calls to ``service``.

    Request bodies are passed through as bytes and decoded by the
    handlers, so malformed JSON is reported as INVALID_ARGUMENT.
    """
    handlers = {
        name: grpc.unary_unary_rpc_method_handler(
            getattr(service, name),
            response_serializer=codec.encode,
        )
        for name in UNARY_METHODS
    }
    handlers["Subscribe"] = grpc.unary_stream_rpc_method_handler(
        service.Subscribe,
        response_serializer=codec.encode,
    )
    return grpc.method_handlers_generic_handler(SERVICE_NAME, handlers)
