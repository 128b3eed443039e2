import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from memoria_dm.client.api import MessagingClient
from memoria_dm.client.cache import CONVERSATIONS, UNREAD_COUNT, QueryCache, QueryKey, stale_keys, thread_key, user_key
from memoria_dm.utils.exceptions import MessagingError, NotFoundError, ValidationError


logger = logging.getLogger(__name__)


class ViewState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    SENDING = "sending"
    READY_WITH_ERROR = "ready_with_error"


@dataclass
class ConversationView:
    partner_id: str
    state: ViewState = ViewState.IDLE
    messages: List[Dict[str, Any]] = field(default_factory=list)
    partner: Optional[Dict[str, Any]] = None
    draft: str = ""
    # text of the send in flight, if any
    pending: Optional[str] = None
    error: Optional[MessagingError] = None


class MessagingSynchronizer:
    """Keeps a UI's conversations, threads and unread counter in step with the server.

    Each partner has its own :class:`ConversationView`, so a send that
    finishes after the user moved to another conversation still lands on the
    view it was issued from. Refetches replace ``messages`` and conversation
    data only; drafts are changed by the user or by a successful send of that
    exact text.
    """

    def __init__(self, api: MessagingClient, cache: Optional[QueryCache] = None) -> None:
        self._api = api
        self.cache = cache or QueryCache()
        self.views: Dict[str, ConversationView] = {}
        self.active_partner_id: Optional[str] = None
        self.conversations: List[Dict[str, Any]] = []
        self.unread_count: int = 0

    def view(self, partner_id: str) -> ConversationView:
        if partner_id not in self.views:
            self.views[partner_id] = ConversationView(partner_id=partner_id)
        return self.views[partner_id]

    @property
    def active_view(self) -> Optional[ConversationView]:
        if self.active_partner_id is None:
            return None
        return self.view(self.active_partner_id)

    def set_draft(self, partner_id: str, text: str) -> None:
        self.view(partner_id).draft = text

    async def load_conversations(self, force: bool = False) -> List[Dict[str, Any]]:
        self.conversations = await self.cache.fetch(CONVERSATIONS, self._api.list_conversations, force=force)
        return self.conversations

    async def load_unread_count(self, force: bool = False) -> int:
        self.unread_count = await self.cache.fetch(UNREAD_COUNT, self._api.unread_count, force=force)
        return self.unread_count

    async def _load_thread(self, partner_id: str) -> List[Dict[str, Any]]:
        messages = await self.cache.fetch(thread_key(partner_id), lambda: self._api.get_thread(partner_id))
        self.view(partner_id).messages = messages
        return messages

    def _partner_from_conversations(self, partner_id: str) -> Optional[Dict[str, Any]]:
        for conv in self.conversations:
            if conv.get("partnerId") == partner_id and conv.get("partner"):
                return conv["partner"]
        return None

    async def _load_partner(self, partner_id: str) -> Optional[Dict[str, Any]]:
        partner = self._partner_from_conversations(partner_id)
        if partner is not None:
            return partner
        # first contact: the partner is not in the conversation list yet
        try:
            return await self.cache.fetch(user_key(partner_id), lambda: self._api.get_user(partner_id))
        except NotFoundError:
            return None

    async def select(self, partner_id: str) -> ConversationView:
        if not partner_id:
            raise ValidationError("A conversation partner is required", operation="select")
        self.active_partner_id = partner_id
        view = self.view(partner_id)
        if view.state is ViewState.IDLE:
            view.state = ViewState.LOADING
        try:
            await self._load_thread(partner_id)
            view.partner = await self._load_partner(partner_id)
        except MessagingError as exc:
            view.error = exc
            if view.state is not ViewState.SENDING:
                view.state = ViewState.READY_WITH_ERROR
            raise
        if view.state is not ViewState.SENDING:
            view.state = ViewState.READY
            view.error = None
        return view

    def deselect(self) -> None:
        # an in-flight send keeps running against its own view
        self.active_partner_id = None

    async def send(self, partner_id: Optional[str] = None, content: Optional[str] = None) -> Dict[str, Any]:
        """Send ``content`` (default: the view's draft) to ``partner_id`` (default: the active partner).

        Validation errors are raised before any request is made. A failed
        request leaves the view in ``READY_WITH_ERROR`` with its messages and
        draft intact; it is not retried.
        """
        partner_id = partner_id or self.active_partner_id
        if not partner_id:
            raise ValidationError("A conversation partner is required", operation="send")
        view = self.view(partner_id)
        text = view.draft if content is None else content
        if not text or not text.strip():
            raise ValidationError("Message content is required", operation="send", partner_id=partner_id)
        if view.state is ViewState.SENDING:
            raise ValidationError("A message is already being sent", operation="send", partner_id=partner_id)

        view.state = ViewState.SENDING
        view.pending = text
        view.error = None
        outcome = ViewState.READY_WITH_ERROR
        try:
            message = await self._api.send_message(partner_id, text)
            outcome = ViewState.READY
        except MessagingError as exc:
            logger.warning("Send to %s failed: %s", partner_id, exc)
            view.error = exc
            raise
        finally:
            # never left in SENDING, whatever the request raised
            view.pending = None
            view.state = outcome

        if view.draft == text:
            view.draft = ""
        await self._invalidate_and_refetch(stale_keys("send", partner_id))
        return message

    async def mark_read(self, partner_id: Optional[str] = None) -> int:
        partner_id = partner_id or self.active_partner_id
        if not partner_id:
            raise ValidationError("A conversation partner is required", operation="mark_read")
        updated = await self._api.mark_conversation_read(partner_id)
        await self._invalidate_and_refetch(stale_keys("mark_read", partner_id))
        return updated

    async def mark_all_read(self) -> int:
        updated = await self._api.mark_all_read()
        await self._invalidate_and_refetch(stale_keys("mark_all_read", cached=self.cache.keys()))
        return updated

    async def handle_event(self, event: Any) -> None:
        """Apply a realtime event pushed for another device or tab of this user."""
        if isinstance(event, (str, bytes)):
            if event in ("pong", b"pong"):
                return
            event = json.loads(event)
        kind = event.get("type")
        if kind in ("message", "read"):
            keys = stale_keys(kind, event.get("partnerId"))
        elif kind == "read_all":
            keys = stale_keys(kind, cached=self.cache.keys())
        else:
            logger.debug("Ignoring realtime event %r", kind)
            return
        await self._invalidate_and_refetch(keys)

    async def _invalidate_and_refetch(self, keys: Iterable[QueryKey]) -> None:
        touched = self.cache.invalidate(keys)
        # only keys the UI has already asked for are refetched
        await asyncio.gather(*(self._refetch(key) for key in sorted(touched)))

    async def _refetch(self, key: QueryKey) -> None:
        try:
            if key == CONVERSATIONS:
                await self.load_conversations()
            elif key == UNREAD_COUNT:
                await self.load_unread_count()
            elif key[0] == "thread":
                await self._load_thread(key[1][0])
        except MessagingError as exc:
            # the entry stays stale, so the next read retries the fetch
            logger.warning("Refetch of %s failed: %s", key, exc)
