from typing import Dict, Iterable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase

from memoria_dm.repositories.message_repository import store_errors


def _to_object_id(user_id: str) -> Optional[ObjectId]:
    try:
        return ObjectId(user_id)
    except (InvalidId, TypeError):
        return None


class UserRepository:
    """Read side of the profile directory; profiles are owned elsewhere."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def get_user_by_id(self, user_id: str) -> Optional[dict]:

        oid = _to_object_id(user_id)
        if oid is None:
            return None
        with store_errors("get_user", partner_id=user_id):
            user = await self._collection.find_one({"_id": oid})
        if user:
            user["_id"] = str(user["_id"])  # normalize to string for API layer
        return user

    async def get_users_by_ids(self, user_ids: Iterable[str]) -> Dict[str, dict]:

        oids: List[ObjectId] = [oid for oid in (_to_object_id(u) for u in user_ids) if oid is not None]
        if not oids:
            return {}
        users: Dict[str, dict] = {}
        with store_errors("get_users"):
            async for user in self._collection.find({"_id": {"$in": oids}}):
                user["_id"] = str(user["_id"])
                users[user["_id"]] = user
        return users
