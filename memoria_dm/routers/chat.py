import asyncio
import logging
from typing import List

import jwt
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from memoria_dm.database.connection import mongo_db_dependency
from memoria_dm.repositories.message_repository import MessageRepository
from memoria_dm.repositories.user_repository import UserRepository
from memoria_dm.schemas.message import MessageOut, ReadResult, SendMessageRequest, messages_out
from memoria_dm.services.chat_service import ChatService
from memoria_dm.utils.dependencies import get_current_user
from memoria_dm.utils.realtime_bus import get_bus, user_channel
from memoria_dm.utils.security import decode_access_token
from memoria_dm.utils.websocket_manager import manager


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["chat"])


def get_chat_service(db = Depends(mongo_db_dependency)) -> ChatService:
    msg_repo = MessageRepository(db)
    user_repo = UserRepository(db)
    return ChatService(msg_repo, user_repo)


@router.post("", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
async def send_message(body: SendMessageRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    saved = await service.send_message(current_user["_id"], body.receiver_id, body.content)
    return MessageOut.from_doc(saved)


@router.get("/conversation/{partner_id}", response_model=List[MessageOut])
async def get_thread(partner_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    # an unknown partner or an untouched conversation is an empty thread
    messages = await service.get_thread(current_user["_id"], partner_id)
    return messages_out(messages)


@router.patch("/{message_id}/read", response_model=ReadResult)
async def mark_message_read(message_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    updated = await service.mark_message_read(current_user["_id"], message_id)
    return ReadResult(updated=int(updated))


@router.websocket("/ws/{user_id}")
async def events_socket(websocket: WebSocket, user_id: str):
    # token travels as ?token=... since browsers cannot set headers on websockets
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4401)
        return
    try:
        payload = decode_access_token(token)
    except jwt.InvalidTokenError:
        await websocket.close(code=4401)
        return
    if payload.get("sub") != user_id:
        await websocket.close(code=4403)
        return

    await manager.connect(user_id, websocket)
    bus = await get_bus()
    subscriber = None
    sub_task = None
    if bus.enabled:
        subscriber = await bus.subscribe(user_channel(user_id), websocket.send_text)
        sub_task = asyncio.create_task(subscriber.run())
    try:
        while True:
            # clients only send keepalives; events flow server -> client
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        logger.debug("Websocket closed for user=%s", user_id)
    finally:
        manager.disconnect(user_id, websocket)
        if subscriber is not None:
            await subscriber.cancel()
        if sub_task is not None:
            sub_task.cancel()
