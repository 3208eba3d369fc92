from dataclasses import dataclass, field
from typing import List, Optional, Set

@dataclass
class Conversation:
    """Represents a conversation between dashboard users.
    
    Attributes:
        id (str): Unique conversation identifier
        participants (List[str]): User IDs of the members, no duplicates
        title (Optional[str]): Display title, usually set for group chats
        is_group (bool): True for group conversations
        created_ts (int): Unix timestamp in milliseconds when created
        updated_ts (int): Unix timestamp in milliseconds of the last activity
    """
    id: str
    participants: List[str]
    title: Optional[str] = None
    is_group: bool = False
    created_ts: int = 0
    updated_ts: int = 0

    def __post_init__(self):
        # keep first occurrence order, drop repeats
        self.participants = list(dict.fromkeys(self.participants))
        if not self.participants:
            raise ValueError("Conversation must have at least one participant")
        if not self.updated_ts:
            self.updated_ts = self.created_ts

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "participants": list(self.participants),
            "title": self.title,
            "isGroup": self.is_group,
            "createdAt": self.created_ts,
            "updatedAt": self.updated_ts,
        }

@dataclass
class Message:
    """Represents a message posted to a conversation.
    
    Receipt sets only ever grow: once a user ID is in ``delivered_to`` or
    ``read_by`` it stays there.
    
    Attributes:
        id (str): Unique message identifier
        conversation_id (str): ID of the owning conversation
        from_user_id (str): ID of the sender
        text (str): Trimmed, non-empty message body
        created_ts (int): Unix timestamp in milliseconds when sent
        seq (int): Store-wide insertion sequence, breaks timestamp ties
        to (List[str]): Optional explicit recipients
        delivered_to (Set[str]): User IDs whose client has fetched the message
        read_by (Set[str]): User IDs who acknowledged the message as read
    """
    id: str
    conversation_id: str
    from_user_id: str
    text: str
    created_ts: int
    seq: int = 0
    to: List[str] = field(default_factory=list)
    delivered_to: Set[str] = field(default_factory=set)
    read_by: Set[str] = field(default_factory=set)

    @property
    def sort_key(self):
        return (self.created_ts, self.seq)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversation": self.conversation_id,
            "from": self.from_user_id,
            "to": list(self.to),
            "text": self.text,
            "createdAt": self.created_ts,
            "deliveredTo": sorted(self.delivered_to),
            "readBy": sorted(self.read_by),
        }
