from fastapi import APIRouter, Depends

from memoria_dm.routers.chat import get_chat_service
from memoria_dm.schemas.user import UserPublic
from memoria_dm.services.chat_service import ChatService
from memoria_dm.utils.dependencies import get_current_user


router = APIRouter(prefix="/users", tags=["users"])


@router.get("/{user_id}", response_model=UserPublic)
async def get_user(user_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    """Profile of a user who may not be in the caller's conversation list yet."""
    return UserPublic.from_doc(await service.get_partner(user_id))
