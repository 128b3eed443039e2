import logging
from typing import Any, Dict, List, Optional

from memoria_dm.models.conversation import ConversationSummary
from memoria_dm.repositories.message_repository import MessageRepository
from memoria_dm.repositories.user_repository import UserRepository
from memoria_dm.services.conversation_service import ConversationAggregator
from memoria_dm.services.read_state_service import ReadStateReconciler
from memoria_dm.utils.exceptions import NotFoundError, ValidationError
from memoria_dm.utils.realtime_bus import publish_to_user


logger = logging.getLogger(__name__)


class ChatService:
    """Messaging operations on behalf of an authenticated viewer.

    Nothing is retried here: a failed send must be re-issued by the user so a
    message is never stored twice.
    """

    def __init__(self, message_repo: MessageRepository, user_repo: UserRepository) -> None:
        self._message_repo = message_repo
        self._user_repo = user_repo
        self._conversations = ConversationAggregator(message_repo, user_repo)
        self._read_state = ReadStateReconciler(message_repo)

    async def send_message(self, sender_id: str, receiver_id: Optional[str], content: Optional[str]) -> Dict[str, Any]:
        # validate everything before the store is touched
        self._message_repo.validate(sender_id, receiver_id or "", content)
        receiver = await self._user_repo.get_user_by_id(receiver_id)
        if not receiver:
            raise ValidationError("Receiver not found", operation="send", partner_id=receiver_id)

        saved = await self._message_repo.append(sender_id, receiver_id, content)
        logger.info("Message %s sent sender=%s receiver=%s", saved["_id"], sender_id, receiver_id)
        await self._notify(sender_id, {"type": "message", "partnerId": receiver_id, "messageId": saved["_id"]})
        await self._notify(receiver_id, {"type": "message", "partnerId": sender_id, "messageId": saved["_id"]})
        return saved

    async def get_thread(self, viewer_id: str, partner_id: str) -> List[Dict[str, Any]]:
        return await self._conversations.get_conversation(viewer_id, partner_id)

    async def list_conversations(self, viewer_id: str) -> List[ConversationSummary]:
        return await self._conversations.list_conversations(viewer_id)

    async def mark_conversation_read(self, viewer_id: str, partner_id: str) -> int:
        if not partner_id or partner_id == viewer_id:
            raise ValidationError("A conversation partner is required", operation="mark_read", partner_id=partner_id)
        updated = await self._read_state.mark_conversation_read(viewer_id, partner_id)
        if updated:
            await self._notify(viewer_id, {"type": "read", "partnerId": partner_id})
            await self._notify(partner_id, {"type": "read", "partnerId": viewer_id})
        return updated

    async def mark_all_read(self, viewer_id: str) -> int:
        updated = await self._read_state.mark_all_read(viewer_id)
        if updated:
            await self._notify(viewer_id, {"type": "read_all"})
        return updated

    async def mark_message_read(self, viewer_id: str, message_id: str) -> bool:
        updated = await self._message_repo.mark_message_read(message_id, viewer_id)
        if updated:
            msg = await self._message_repo.get_message(message_id)
            if msg:
                await self._notify(viewer_id, {"type": "read", "partnerId": msg["sender_id"]})
                await self._notify(msg["sender_id"], {"type": "read", "partnerId": viewer_id})
        return updated

    async def unread_count(self, viewer_id: str) -> int:
        return await self._read_state.unread_total(viewer_id)

    async def get_partner(self, partner_id: str) -> Dict[str, Any]:
        user = await self._user_repo.get_user_by_id(partner_id)
        if not user:
            raise NotFoundError("User not found", operation="get_user", partner_id=partner_id)
        return user

    async def _notify(self, user_id: str, event: Dict[str, Any]) -> None:
        # the write already committed; a lost event only delays the client's refetch
        try:
            await publish_to_user(user_id, event)
        except Exception as exc:
            logger.warning("Realtime publish to user=%s failed: %s", user_id, exc)
