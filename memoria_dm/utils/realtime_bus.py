import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as redis

from memoria_dm.config import get_settings
from memoria_dm.utils.websocket_manager import manager


logger = logging.getLogger(__name__)


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


class NoopBus:

    enabled = False

    async def publish(self, channel: str, message: str) -> None:
        return

    async def subscribe(self, channel: str, on_message: Callable[[str], Awaitable[None]]):
        # Return a context manager-like object with an async cancel()
        class _Sub:
            async def run(self):
                await asyncio.Future()
            async def cancel(self):
                return
        return _Sub()

    async def close(self) -> None:
        return


class RedisBus:
    """Fans events out across server processes via Redis pub/sub."""

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: Callable[[str], Awaitable[None]]):
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)

        class _Sub:
            _running = True

            async def run(self_inner):
                while self_inner._running:
                    try:
                        msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                        if msg and msg.get("type") == "message":
                            data = msg.get("data")
                            if isinstance(data, bytes):
                                data = data.decode("utf-8")
                            await on_message(data)
                    except redis.RedisError as exc:
                        logger.warning("Redis subscription on %s failed: %s", channel, exc)
                        await asyncio.sleep(0.5)

            async def cancel(self_inner):
                self_inner._running = False
                try:
                    await pubsub.unsubscribe(channel)
                    await pubsub.aclose()
                except redis.RedisError as exc:
                    logger.debug("Redis unsubscribe from %s failed: %s", channel, exc)

        return _Sub()

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    url: Optional[str] = get_settings().redis_url
    _bus = RedisBus(url) if url else NoopBus()
    return _bus


async def close_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
        _bus = None


async def publish_to_user(user_id: str, event: Dict[str, Any]) -> None:
    """Deliver an event to every device of ``user_id``.

    Through Redis when configured, otherwise straight to this process's
    websockets.
    """
    payload = json.dumps(event)
    bus = await get_bus()
    if bus.enabled:
        await bus.publish(user_channel(user_id), payload)
    else:
        await manager.send_personal_message(user_id, payload)
