from typing import Any, Dict, List

from memoria_dm.models.conversation import ConversationSummary
from memoria_dm.repositories.message_repository import MessageRepository
from memoria_dm.repositories.user_repository import UserRepository


class ConversationAggregator:
    """Per-viewer projection of the messages collection into conversations.

    Nothing here is stored: every call re-reads committed messages, so a list
    may miss an append that commits concurrently but the next call sees it.
    """

    def __init__(self, message_repo: MessageRepository, user_repo: UserRepository) -> None:
        self._message_repo = message_repo
        self._user_repo = user_repo

    async def list_conversations(self, viewer_id: str) -> List[ConversationSummary]:
        last_messages: Dict[str, Dict[str, Any]] = {}
        unread: Dict[str, int] = {}
        # newest first, so the first message seen per partner is its last one
        async for msg in self._message_repo.iter_involving(viewer_id):
            partner_id = msg["receiver_id"] if msg["sender_id"] == viewer_id else msg["sender_id"]
            if partner_id not in last_messages:
                last_messages[partner_id] = msg
                unread[partner_id] = 0
            if msg["receiver_id"] == viewer_id and not msg.get("is_read", False):
                unread[partner_id] += 1

        partners = await self._user_repo.get_users_by_ids(last_messages.keys())
        summaries: List[ConversationSummary] = [
            {
                "partner_id": partner_id,
                "partner": partners.get(partner_id),
                "last_message": msg,
                "unread_count": unread[partner_id],
            }
            for partner_id, msg in last_messages.items()
        ]
        summaries.sort(key=lambda s: s["partner_id"])
        summaries.sort(key=lambda s: s["last_message"]["created_at"], reverse=True)
        return summaries

    async def get_conversation(self, viewer_id: str, partner_id: str) -> List[Dict[str, Any]]:
        if not partner_id or partner_id == viewer_id:
            return []
        return await self._message_repo.list_between(viewer_id, partner_id)
