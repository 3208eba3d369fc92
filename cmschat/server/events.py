"""
Realtime event builders.

Every event has the same envelope:
{
    "type": str,        # one of EventType
    "timestamp": int,   # server time in ms when the event was built
    "payload": dict     # event specific fields
}
"""

import time
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from .models import Message


class EventType(str, Enum):
    NEW_MESSAGE = "message:new"
    DELIVERED = "message:delivered"
    READ = "message:read"
    PRESENCE_UPDATE = "presence:update"


def build_event(event_type: EventType, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": event_type.value,
        "timestamp": int(time.time() * 1000),
        "payload": payload,
    }


def build_new_message_event(message: Message) -> Dict[str, Any]:
    return build_event(
        EventType.NEW_MESSAGE,
        {
            "id": message.id,
            "conversationId": message.conversation_id,
            "from": message.from_user_id,
            "to": list(message.to),
            "text": message.text,
            "createdAt": message.created_ts,
        },
    )


def build_delivered_event(conversation_id: str, by: str, message_ids: Iterable[str]) -> Dict[str, Any]:
    return build_event(
        EventType.DELIVERED,
        {
            "conversationId": conversation_id,
            "by": by,
            "messageIds": list(message_ids),
        },
    )


def build_read_event(conversation_id: str, by: str, message_id: Optional[str] = None) -> Dict[str, Any]:
    """Build a read event.

    Without ``message_id`` the event means the user has read the whole
    conversation and carries ``all: true``.
    """
    payload: Dict[str, Any] = {"conversationId": conversation_id, "by": by}
    if message_id is None:
        payload["all"] = True
    else:
        payload["messageId"] = message_id
    return build_event(EventType.READ, payload)


def build_presence_event(user_id: str, online: bool) -> Dict[str, Any]:
    return build_event(EventType.PRESENCE_UPDATE, {"userId": user_id, "online": online})
