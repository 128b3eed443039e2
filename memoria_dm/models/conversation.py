from typing import Optional, TypedDict

from memoria_dm.models.message import MessageDocument
from memoria_dm.models.user import UserDocument


class ConversationSummary(TypedDict):
    # derived per viewer from the messages collection, never stored
    partner_id: str
    partner: Optional[UserDocument]
    last_message: MessageDocument
    unread_count: int
