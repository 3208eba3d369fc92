import json, os, time, uuid
from typing import Dict, Iterable, List, Optional
from .models import Conversation, Message
from .errors import TransientStoreError
from ..utils.logger import setup_logger

logger = setup_logger('cmschat.repo')


def _now_ms() -> int:
    return int(time.time() * 1000)


class _JsonlFile:
    """Append/rewrite helper shared by the repositories."""

    def __init__(self, path: str):
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self.path = path

    def records(self) -> Iterable[dict]:
        if not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                yield json.loads(line)

    def append(self, rec: dict):
        try:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(rec, ensure_ascii=False) + "\n")
                f.flush(); os.fsync(f.fileno())
        except OSError as e:
            logger.error(f"Append to {self.path} failed: {e}")
            raise TransientStoreError(str(e)) from e

    def rewrite(self, recs: Iterable[dict]):
        # write a sibling file and swap it in so readers never see a partial file
        tmp_path = self.path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                for rec in recs:
                    f.write(json.dumps(rec, ensure_ascii=False) + "\n")
                f.flush(); os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Rewrite of {self.path} failed: {e}")
            raise TransientStoreError(str(e)) from e


class ConversationsRepo:
    """Repository for conversations in JSONL format."""

    def __init__(self, path: str):
        """Initialize conversations repository.

        Args:
            path (str): Path to JSONL file storing conversation data

        Side Effects:
            - Creates directory structure if not exists
            - Loads existing conversations from file
        """
        self._file = _JsonlFile(path)
        self.path = path
        self.conversations_by_id: Dict[str, Conversation] = {}
        self._load()

    def _load(self):
        for rec in self._file.records():
            conv = Conversation(**rec)
            self.conversations_by_id[conv.id] = conv

    @staticmethod
    def _record(c: Conversation) -> dict:
        return {
            "id": c.id,
            "participants": list(c.participants),
            "title": c.title,
            "is_group": c.is_group,
            "created_ts": c.created_ts,
            "updated_ts": c.updated_ts,
        }

    def create(self, participants: List[str], title: Optional[str] = None,
               is_group: bool = False, created_ts: Optional[int] = None) -> Conversation:
        """Create and store a new conversation.

        Args:
            participants (List[str]): Member user IDs (duplicates are dropped)
            title (Optional[str]): Optional display title
            is_group (bool): Group conversation flag
            created_ts (Optional[int]): Creation time, defaults to now

        Returns:
            Conversation: The stored conversation

        Raises:
            ValueError: If participants is empty
            TransientStoreError: If the file cannot be written
        """
        ts = created_ts if created_ts is not None else _now_ms()
        conv = Conversation(
            id=uuid.uuid4().hex[:24],
            participants=participants,
            title=title,
            is_group=is_group,
            created_ts=ts,
            updated_ts=ts,
        )
        self._file.append(self._record(conv))
        self.conversations_by_id[conv.id] = conv
        logger.info(f"New conversation created: {conv.id} with {len(conv.participants)} participants")
        return conv

    def get(self, conversation_id: str) -> Optional[Conversation]:
        return self.conversations_by_id.get(conversation_id)

    def for_user(self, user_id: str) -> List[Conversation]:
        """Get conversations the user belongs to, most recently active first."""
        convs = [c for c in self.conversations_by_id.values() if user_id in c.participants]
        convs.sort(key=lambda c: c.updated_ts, reverse=True)
        return convs

    def touch(self, conversation_id: str, ts: int):
        """Bump the last-activity timestamp of a conversation.

        Side Effects:
            - Rewrites the conversations file
            - Restores the previous timestamp if the write fails
        """
        conv = self.conversations_by_id[conversation_id]
        previous = conv.updated_ts
        conv.updated_ts = max(previous, ts)
        try:
            self._file.rewrite(self._record(c) for c in self.conversations_by_id.values())
        except TransientStoreError:
            conv.updated_ts = previous
            raise
        logger.debug(f"Conversation {conversation_id} activity bumped to {conv.updated_ts}")


class MessagesRepo:
    """Repository for messages with delivery and read tracking."""

    def __init__(self, path: str):
        """Initialize messages repository.

        Args:
            path (str): Path to JSONL file storing message data

        Side Effects:
            - Creates directory structure if not exists
            - Loads existing messages from file
        """
        self._file = _JsonlFile(path)
        self.path = path
        self._messages: List[Message] = []
        self._by_id: Dict[str, Message] = {}
        self._next_seq = 1
        self._load()

    def _load(self):
        """Load messages from JSONL file.

        Records written before sequence numbers existed get one assigned
        in file order.
        """
        for rec in self._file.records():
            rec["delivered_to"] = set(rec.get("delivered_to") or [])
            rec["read_by"] = set(rec.get("read_by") or [])
            rec["to"] = list(rec.get("to") or [])
            if not rec.get("seq"):
                rec["seq"] = self._next_seq
            msg = Message(**rec)
            self._next_seq = max(self._next_seq, msg.seq + 1)
            self._messages.append(msg)
            self._by_id[msg.id] = msg

    @staticmethod
    def _record(m: Message) -> dict:
        return {
            "id": m.id,
            "conversation_id": m.conversation_id,
            "from_user_id": m.from_user_id,
            "text": m.text,
            "created_ts": m.created_ts,
            "seq": m.seq,
            "to": list(m.to),
            "delivered_to": sorted(m.delivered_to),  # Convert set to list for JSON
            "read_by": sorted(m.read_by),
        }

    def _rewrite(self):
        self._file.rewrite(self._record(m) for m in self._messages)

    def append(self, m: Message) -> Message:
        """Append new message to repository.

        Args:
            m (Message): Message object to store; ``seq`` is assigned here

        Returns:
            Message: The stored message

        Side Effects:
            - Appends message to JSONL file
            - Updates in-memory message list
        """
        m.seq = self._next_seq
        self._file.append(self._record(m))
        self._next_seq += 1
        self._messages.append(m)
        self._by_id[m.id] = m
        logger.info(f"New message saved: {m.id} from {m.from_user_id} in conversation {m.conversation_id}")
        return m

    def remove(self, message_id: str):
        """Drop a message that was just appended.

        Only used to undo a send whose follow-up write failed.

        Side Effects:
            - Rewrites the messages file without the message
            - Restores the message in memory if the write fails
        """
        msg = self._by_id.pop(message_id, None)
        if msg is None:
            return
        index = self._messages.index(msg)
        del self._messages[index]
        try:
            self._rewrite()
        except TransientStoreError:
            self._messages.insert(index, msg)
            self._by_id[message_id] = msg
            raise
        logger.warning(f"Message {message_id} removed")

    def get(self, message_id: str) -> Optional[Message]:
        return self._by_id.get(message_id)

    def for_conversation(self, conversation_id: str) -> List[Message]:
        """Get all messages of a conversation, oldest first."""
        messages = [m for m in self._messages if m.conversation_id == conversation_id]
        messages.sort(key=lambda m: m.sort_key)
        return messages

    def last_for_conversations(self, conversation_ids: Iterable[str]) -> Dict[str, Message]:
        """Get the newest message of each conversation.

        Args:
            conversation_ids: Conversations to look up

        Returns:
            Dict[str, Message]: Maps conversation ID to its latest message;
            conversations without messages are absent
        """
        wanted = set(conversation_ids)
        last: Dict[str, Message] = {}
        for m in self._messages:
            if m.conversation_id not in wanted:
                continue
            current = last.get(m.conversation_id)
            if current is None or m.sort_key > current.sort_key:
                last[m.conversation_id] = m
        return last

    def add_delivered(self, message_ids: Iterable[str], user_id: str) -> List[str]:
        """Add a user to ``delivered_to`` of several messages.

        Set-add semantics: messages already delivered to the user are
        left untouched and are not reported.

        Returns:
            List[str]: IDs of the messages that actually changed

        Side Effects:
            - Rewrites the messages file once if anything changed
            - Reverts the in-memory additions if the write fails
        """
        changed = []
        for message_id in message_ids:
            msg = self._by_id.get(message_id)
            if msg is not None and user_id not in msg.delivered_to:
                msg.delivered_to.add(user_id)
                changed.append(msg)
        if not changed:
            return []
        try:
            self._rewrite()
        except TransientStoreError:
            for msg in changed:
                msg.delivered_to.discard(user_id)
            raise
        logger.info(f"{len(changed)} messages marked as delivered to user {user_id}")
        return [m.id for m in changed]

    def mark_conversation_read(self, conversation_id: str, user_id: str) -> int:
        """Add a user to ``read_by`` of every message in a conversation
        that the user did not send and has not read yet.

        Returns:
            int: Number of messages newly marked
        """
        changed = [
            m for m in self._messages
            if m.conversation_id == conversation_id
            and m.from_user_id != user_id
            and user_id not in m.read_by
        ]
        if not changed:
            return 0
        for msg in changed:
            msg.read_by.add(user_id)
        try:
            self._rewrite()
        except TransientStoreError:
            for msg in changed:
                msg.read_by.discard(user_id)
            raise
        logger.info(f"{len(changed)} messages in {conversation_id} marked as read by user {user_id}")
        return len(changed)

    def add_read(self, message_id: str, user_id: str) -> bool:
        """Add a user to ``read_by`` of one message.

        Returns:
            bool: True if the user was added, False if already present
        """
        msg = self._by_id[message_id]
        if user_id in msg.read_by:
            return False
        msg.read_by.add(user_id)
        try:
            self._rewrite()
        except TransientStoreError:
            msg.read_by.discard(user_id)
            raise
        logger.info(f"Message {message_id} marked as read by user {user_id}")
        return True
