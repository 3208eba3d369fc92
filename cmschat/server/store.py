import time, uuid
from typing import List, Optional
from .access import require_member
from .errors import NotFoundError, TransientStoreError, ValidationError
from .events import (
    build_delivered_event,
    build_new_message_event,
    build_read_event,
)
from .fanout import Fanout
from .models import Conversation, Message
from .repo import ConversationsRepo, MessagesRepo
from ..utils.logger import setup_logger

logger = setup_logger('cmschat.store')


class ConversationView:
    """A conversation together with its most recent message."""

    def __init__(self, conversation: Conversation, last_message: Optional[Message]):
        self.conversation = conversation
        self.last_message = last_message

    def to_dict(self) -> dict:
        data = self.conversation.to_dict()
        data["lastMessage"] = self.last_message.to_dict() if self.last_message else None
        return data


class MessageStore:
    """Messaging operations over conversations and messages.

    Every operation checks conversation membership before touching any
    state, stores its change, and only then hands events to the fan-out.
    Authorization and storage errors propagate to the caller; fan-out
    never fails an operation.
    """

    def __init__(self, conversations: ConversationsRepo, messages: MessagesRepo,
                 fanout: Optional[Fanout] = None):
        """Initialize the store.

        Args:
            conversations (ConversationsRepo): Conversation persistence
            messages (MessagesRepo): Message persistence
            fanout (Optional[Fanout]): Realtime publisher; events are
                skipped when None
        """
        self.conversations = conversations
        self.messages = messages
        self.fanout = fanout

    def _publish(self, conversation: Conversation, event: dict):
        if self.fanout is not None:
            self.fanout.publish(conversation.participants, event)

    def list_conversations(self, principal_id: str) -> List[ConversationView]:
        """List the principal's conversations, most recently active first.

        Each entry carries the conversation's newest message as a preview.
        Messages sharing a timestamp are ordered by their store sequence,
        so the preview is the one stored last.
        """
        conversations = self.conversations.for_user(principal_id)
        last = self.messages.last_for_conversations(c.id for c in conversations)
        return [ConversationView(c, last.get(c.id)) for c in conversations]

    def list_messages(self, conversation_id: str, principal_id: str) -> List[Message]:
        """List a conversation's messages, oldest first, and record delivery.

        Every returned message sent by someone else that the principal had
        not received yet gets the principal added to ``delivered_to``; the
        affected IDs are announced in a single ``message:delivered`` event.

        Raises:
            NotFoundError: If the conversation does not exist
            ForbiddenError: If the principal is not a participant
        """
        conversation = require_member(self.conversations.get(conversation_id), principal_id)
        messages = self.messages.for_conversation(conversation_id)
        pending = [
            m.id for m in messages
            if m.from_user_id != principal_id and principal_id not in m.delivered_to
        ]
        if pending:
            delivered = self.messages.add_delivered(pending, principal_id)
            if delivered:
                logger.debug(f"list_messages: {len(delivered)} messages in {conversation_id} delivered to {principal_id}")
                self._publish(conversation, build_delivered_event(conversation_id, principal_id, delivered))
        return messages

    def send_message(self, conversation_id: str, principal_id: str, text: Optional[str],
                     to: Optional[List[str]] = None) -> Message:
        """Post a message to a conversation.

        Publishes ``message:new`` and then ``message:delivered`` for the
        sender's own copy, so the sender's clients can show it as sent.

        Raises:
            ValidationError: If the text is missing or blank
            NotFoundError: If the conversation does not exist
            ForbiddenError: If the principal is not a participant
        """
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Message text is required")
        if to is not None and not isinstance(to, list):
            raise ValidationError("Recipients must be a list of user ids")
        conversation = require_member(self.conversations.get(conversation_id), principal_id)

        now = int(time.time() * 1000)
        msg = self.messages.append(Message(
            id=uuid.uuid4().hex[:24],
            conversation_id=conversation_id,
            from_user_id=principal_id,
            text=text.strip(),
            created_ts=now,
            to=[str(r) for r in (to or [])],
        ))
        try:
            self.conversations.touch(conversation_id, now)
        except TransientStoreError:
            logger.error(f"send_message: activity bump failed, undoing message {msg.id}")
            self.messages.remove(msg.id)
            raise

        self._publish(conversation, build_new_message_event(msg))
        self._publish(conversation, build_delivered_event(conversation_id, principal_id, [msg.id]))
        return msg

    def mark_conversation_read(self, conversation_id: str, principal_id: str) -> int:
        """Mark every message from other participants as read by the principal.

        Returns:
            int: Number of messages newly marked; 0 when already caught up
        """
        conversation = require_member(self.conversations.get(conversation_id), principal_id)
        modified = self.messages.mark_conversation_read(conversation_id, principal_id)
        logger.debug(f"mark_conversation_read: {principal_id} caught up on {conversation_id} ({modified} new)")
        self._publish(conversation, build_read_event(conversation_id, principal_id))
        return modified

    def mark_message_read(self, message_id: str, principal_id: str) -> bool:
        """Mark a single message as read by the principal.

        Idempotent: repeated calls succeed without publishing again.

        Returns:
            bool: True if the message was newly marked

        Raises:
            NotFoundError: If the message or its conversation does not exist
            ForbiddenError: If the principal is not a participant
        """
        msg = self.messages.get(message_id)
        if msg is None:
            raise NotFoundError("Message not found")
        conversation = require_member(self.conversations.get(msg.conversation_id), principal_id)
        added = self.messages.add_read(message_id, principal_id)
        if added:
            self._publish(conversation, build_read_event(conversation.id, principal_id, message_id))
        return added
