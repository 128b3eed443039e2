from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from memoria_dm.schemas.user import UserPublic


class CamelModel(BaseModel):

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SendMessageRequest(CamelModel):
    # content rules are enforced by the service so callers get one error shape
    receiver_id: Optional[str] = None
    content: Optional[str] = None


class MessageOut(CamelModel):

    id: str
    sender_id: str
    receiver_id: str
    content: str
    created_at: datetime
    is_read: bool

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "MessageOut":
        return cls(
            id=str(doc["_id"]),
            sender_id=doc["sender_id"],
            receiver_id=doc["receiver_id"],
            content=doc["content"],
            created_at=doc["created_at"],
            is_read=bool(doc.get("is_read", False)),
        )


class LastMessage(CamelModel):

    id: str
    content: str
    created_at: datetime
    sender_id: str
    is_read: bool


class ConversationOut(CamelModel):

    partner_id: str
    partner: Optional[UserPublic] = None
    last_message: LastMessage
    unread_count: int

    @classmethod
    def from_summary(cls, summary: Dict[str, Any]) -> "ConversationOut":
        last = summary["last_message"]
        partner = summary.get("partner")
        return cls(
            partner_id=summary["partner_id"],
            partner=UserPublic.from_doc(partner) if partner else None,
            last_message=LastMessage(
                id=str(last["_id"]),
                content=last["content"],
                created_at=last["created_at"],
                sender_id=last["sender_id"],
                is_read=bool(last.get("is_read", False)),
            ),
            unread_count=summary["unread_count"],
        )


class ReadResult(BaseModel):

    updated: int


class UnreadCount(BaseModel):

    count: int


def messages_out(docs: List[Dict[str, Any]]) -> List[MessageOut]:
    return [MessageOut.from_doc(d) for d in docs]
