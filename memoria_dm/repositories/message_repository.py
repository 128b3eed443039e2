import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from memoria_dm.config import get_settings
from memoria_dm.utils.exceptions import NotFoundError, TransientStoreError, ValidationError


logger = logging.getLogger(__name__)

THREAD_SORT = [("created_at", ASCENDING), ("seq", ASCENDING)]
NEWEST_FIRST = [("created_at", DESCENDING), ("seq", DESCENDING)]


def pair_key(user_a: str, user_b: str) -> str:
    """Key of the unordered pair {user_a, user_b}."""
    low, high = sorted([user_a, user_b])
    return f"{low}:{high}"


def _utcnow() -> datetime:
    now = datetime.now(timezone.utc)
    # BSON datetimes keep milliseconds only
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def _normalize(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc["_id"] = str(doc.get("_id"))
    created_at = doc.get("created_at")
    if isinstance(created_at, datetime) and created_at.tzinfo is None:
        doc["created_at"] = created_at.replace(tzinfo=timezone.utc)
    return doc


@contextmanager
def store_errors(operation: str, partner_id: Optional[str] = None) -> Iterator[None]:
    try:
        yield
    except PyMongoError as exc:
        logger.warning("Message store unavailable during %s: %s", operation, exc)
        raise TransientStoreError("Message store unavailable", operation=operation, partner_id=partner_id) from exc


class MessageRepository:

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        max_length: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db = db
        self._max_length = max_length or get_settings().message_max_length
        self._clock = clock

    @property
    def collection(self):
        return self._db["messages"]

    @property
    def counters(self):
        return self._db["counters"]

    async def ensure_indexes(self) -> None:
        with store_errors("ensure_indexes"):
            await self.collection.create_index([("pair_key", ASCENDING), ("created_at", ASCENDING), ("seq", ASCENDING)])
            await self.collection.create_index([("sender_id", ASCENDING), ("created_at", DESCENDING)])
            await self.collection.create_index([("receiver_id", ASCENDING), ("created_at", DESCENDING)])
            await self.collection.create_index([("receiver_id", ASCENDING), ("is_read", ASCENDING)])
            await self.collection.create_index([("seq", ASCENDING)], unique=True)

    def validate(self, sender_id: str, receiver_id: str, content: Optional[str]) -> str:
        """Return the stored form of ``content`` or raise ``ValidationError``."""
        if not receiver_id:
            raise ValidationError("Receiver ID is required", operation="send")
        if sender_id == receiver_id:
            raise ValidationError("Cannot send message to yourself", operation="send", partner_id=receiver_id)
        text = (content or "").strip()
        if not text:
            raise ValidationError("Message content is required", operation="send", partner_id=receiver_id)
        if len(text) > self._max_length:
            raise ValidationError(
                f"Message cannot exceed {self._max_length} characters",
                operation="send",
                partner_id=receiver_id,
            )
        return text

    async def next_sequence(self) -> int:
        counter = await self.counters.find_one_and_update(
            {"_id": "messages"},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(counter["seq"])

    async def current_sequence(self) -> int:
        with store_errors("current_sequence"):
            counter = await self.counters.find_one({"_id": "messages"})
        return int(counter["seq"]) if counter else 0

    async def append(self, sender_id: str, receiver_id: str, content: str) -> Dict[str, Any]:
        text = self.validate(sender_id, receiver_id, content)
        with store_errors("send", partner_id=receiver_id):
            seq = await self.next_sequence()
            doc: Dict[str, Any] = {
                "seq": seq,
                "sender_id": sender_id,
                "receiver_id": receiver_id,
                "pair_key": pair_key(sender_id, receiver_id),
                "content": text,
                "created_at": self._clock(),
                "is_read": False,
            }
            result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def list_between(self, user_a: str, user_b: str) -> List[Dict[str, Any]]:
        with store_errors("get_thread", partner_id=user_b):
            cursor = self.collection.find({"pair_key": pair_key(user_a, user_b)}).sort(THREAD_SORT)
            items = await cursor.to_list(length=None)
        return [_normalize(it) for it in items]

    async def iter_involving(self, user_id: str) -> AsyncIterator[Dict[str, Any]]:
        query = {"$or": [{"sender_id": user_id}, {"receiver_id": user_id}]}
        with store_errors("list_conversations"):
            async for doc in self.collection.find(query).sort(NEWEST_FIRST):
                yield _normalize(doc)

    async def unread_sequences(self, receiver_id: str, sender_id: Optional[str] = None) -> List[int]:
        """Sequence numbers of the unread messages stored for ``receiver_id`` right now."""
        query: Dict[str, Any] = {"receiver_id": receiver_id, "is_read": False}
        if sender_id:
            query["sender_id"] = sender_id
        with store_errors("mark_read", partner_id=sender_id):
            cursor = self.collection.find(query, {"seq": 1})
            return [int(doc["seq"]) async for doc in cursor]

    async def mark_read(self, receiver_id: str, sender_id: Optional[str] = None, seqs: Optional[List[int]] = None) -> int:
        # the is_read predicate is evaluated at write time, per document
        query: Dict[str, Any] = {"receiver_id": receiver_id, "is_read": False}
        if sender_id:
            query["sender_id"] = sender_id
        if seqs is not None:
            if not seqs:
                return 0
            query["seq"] = {"$in": list(seqs)}
        with store_errors("mark_read", partner_id=sender_id):
            result = await self.collection.update_many(query, {"$set": {"is_read": True}})
        return result.modified_count or 0

    async def mark_message_read(self, message_id: str, receiver_id: str) -> bool:
        try:
            oid = ObjectId(message_id)
        except (InvalidId, TypeError):
            raise NotFoundError("Message not found", operation="mark_message_read")
        with store_errors("mark_message_read"):
            existing = await self.collection.find_one({"_id": oid, "receiver_id": receiver_id})
            if not existing:
                raise NotFoundError("Message not found", operation="mark_message_read")
            result = await self.collection.update_one(
                {"_id": oid, "receiver_id": receiver_id, "is_read": False},
                {"$set": {"is_read": True}},
            )
        return bool(result.modified_count)

    async def get_message(self, message_id: str) -> Optional[Dict[str, Any]]:
        try:
            oid = ObjectId(message_id)
        except (InvalidId, TypeError):
            return None
        with store_errors("get_message"):
            doc = await self.collection.find_one({"_id": oid})
        return _normalize(doc) if doc else None

    async def count_unread(self, receiver_id: str) -> int:
        with store_errors("unread_count"):
            return await self.collection.count_documents({"receiver_id": receiver_id, "is_read": False})
