from typing import List

from fastapi import APIRouter, Depends

from memoria_dm.routers.chat import get_chat_service
from memoria_dm.schemas.message import ConversationOut, ReadResult, UnreadCount
from memoria_dm.services.chat_service import ChatService
from memoria_dm.utils.dependencies import get_current_user


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.get("", response_model=List[ConversationOut])
async def list_conversations(current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    summaries = await service.list_conversations(current_user["_id"])
    return [ConversationOut.from_summary(s) for s in summaries]


@router.get("/unread-count", response_model=UnreadCount)
async def unread_count(current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return UnreadCount(count=await service.unread_count(current_user["_id"]))


@router.patch("/mark-all-read", response_model=ReadResult)
async def mark_all_read(current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return ReadResult(updated=await service.mark_all_read(current_user["_id"]))


@router.patch("/{partner_id}/read", response_model=ReadResult)
async def mark_conversation_read(partner_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return ReadResult(updated=await service.mark_conversation_read(current_user["_id"], partner_id))
