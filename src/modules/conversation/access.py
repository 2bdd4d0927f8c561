"""Who may read or post on a conversation."""

from src.exceptions import ForbiddenException
from src.modules.conversation.store import Conversation
from src.modules.identity.auth import ChatIdentity


def ensure_participant(conversation: Conversation, identity: ChatIdentity) -> None:
    """Admins may act on any conversation; customers only on their own.

    A conversation owned by a user account is restricted to that account.
    Guest conversations are reachable by anyone holding their session or
    ticket id, but never by ticket number alone.
    """
    if identity.is_admin:
        return
    owner_id = conversation.customer_user_id
    if owner_id is not None:
        if owner_id != identity.user_id:
            raise ForbiddenException("You are not a participant in this conversation")
        return
    if conversation.by_ticket_number:
        raise ForbiddenException("Guest conversations are reached by their id, not the ticket number")
