from typing import Optional
from .models import Conversation
from .errors import ForbiddenError, NotFoundError


def is_member(conversation: Optional[Conversation], principal_id: Optional[str]) -> bool:
    """Check whether a principal belongs to a conversation.

    Returns False for a missing conversation or an anonymous principal.
    """
    if conversation is None or not principal_id:
        return False
    return principal_id in conversation.participants


def require_member(conversation: Optional[Conversation], principal_id: Optional[str]) -> Conversation:
    """Return the conversation if the principal is a member, raise otherwise.

    Raises:
        NotFoundError: If the conversation does not exist
        ForbiddenError: If the principal is not a participant
    """
    if conversation is None:
        raise NotFoundError("Conversation not found")
    if not is_member(conversation, principal_id):
        raise ForbiddenError()
    return conversation
