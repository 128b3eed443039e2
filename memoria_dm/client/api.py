import logging
from typing import Any, Dict, List, Optional

import httpx

from memoria_dm.config import get_settings
from memoria_dm.utils.exceptions import MessagingError, NotFoundError, TransientStoreError, ValidationError


logger = logging.getLogger(__name__)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        detail = body.get("error") or body.get("detail")
        if isinstance(detail, list):
            # FastAPI request validation errors
            return "; ".join(str(item.get("msg", item)) for item in detail)
        if detail:
            return str(detail)
    return f"HTTP {response.status_code}"


class MessagingClient:
    """HTTP client for the messaging API.

    Every request carries a timeout. Failures are raised as messaging errors
    and never retried here.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout if timeout is not None else get_settings().client_timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "MessagingClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, operation: str, partner_id: Optional[str] = None, **kwargs) -> Any:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientStoreError("Request timed out", operation=operation, partner_id=partner_id) from exc
        except httpx.TransportError as exc:
            raise TransientStoreError(f"Network error: {exc}", operation=operation, partner_id=partner_id) from exc

        if response.is_success:
            try:
                return response.json()
            except ValueError as exc:
                # e.g. an HTML page from a proxy in front of the API
                logger.debug("%s %s -> %s with an undecodable body", method, url, response.status_code)
                raise TransientStoreError(
                    "Unexpected response from server", operation=operation, partner_id=partner_id
                ) from exc
        detail = _error_detail(response)
        logger.debug("%s %s -> %s: %s", method, url, response.status_code, detail)
        if response.status_code in (400, 422):
            raise ValidationError(detail, operation=operation, partner_id=partner_id)
        if response.status_code == 404:
            raise NotFoundError(detail, operation=operation, partner_id=partner_id)
        if response.status_code >= 500:
            raise TransientStoreError(detail, operation=operation, partner_id=partner_id)
        error = MessagingError(detail, operation=operation, partner_id=partner_id)
        error.status_code = response.status_code
        raise error

    async def list_conversations(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/conversations", "list_conversations")

    async def get_thread(self, partner_id: str) -> List[Dict[str, Any]]:
        return await self._request("GET", f"/messages/conversation/{partner_id}", "get_thread", partner_id)

    async def send_message(self, receiver_id: str, content: str) -> Dict[str, Any]:
        return await self._request(
            "POST", "/messages", "send", receiver_id, json={"receiverId": receiver_id, "content": content}
        )

    async def mark_conversation_read(self, partner_id: str) -> int:
        body = await self._request("PATCH", f"/conversations/{partner_id}/read", "mark_read", partner_id)
        return int(body["updated"])

    async def mark_all_read(self) -> int:
        body = await self._request("PATCH", "/conversations/mark-all-read", "mark_all_read")
        return int(body["updated"])

    async def unread_count(self) -> int:
        body = await self._request("GET", "/conversations/unread-count", "unread_count")
        return int(body["count"])

    async def get_user(self, user_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/users/{user_id}", "get_user", user_id)
