"""
Ephemeral timer store (Redis)
Keys carry a TTL and a small JSON payload; expiry notifications feed the push path.
Nothing stored here is authoritative: the persisted session expiry is.
"""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import orjson
import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

logger = logging.getLogger(__name__)

# Redis TTL sentinels
TTL_KEY_MISSING = -2
TTL_NO_EXPIRY = -1


class TimerStore(Protocol):
    async def set_with_ttl(self, key: str, ttl_seconds: int, payload: Dict[str, Any]) -> None: ...

    async def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    async def delete(self, key: str) -> bool: ...

    async def list_keys_by_prefix(self, prefix: str) -> List[str]: ...

    async def time_to_live(self, key: str) -> int: ...

    def subscribe_expired(self, prefix: str) -> AsyncIterator[str]: ...

    async def close(self) -> None: ...


class RedisTimerStore:
    """TimerStore backed by redis.asyncio"""

    def __init__(
        self,
        redis_url: str,
        password: Optional[str] = None,
        socket_timeout: float = 5.0,
        connect_timeout: float = 5.0,
        enable_notifications: bool = True,
    ):
        self.redis_url = redis_url
        self.enable_notifications = enable_notifications
        self.client = aioredis.from_url(
            redis_url,
            password=password,
            socket_timeout=socket_timeout,
            socket_connect_timeout=connect_timeout,
            decode_responses=True,
        )
        self.db = self.client.connection_pool.connection_kwargs.get("db", 0)

    async def set_with_ttl(self, key: str, ttl_seconds: int, payload: Dict[str, Any]) -> None:
        await self.client.set(key, orjson.dumps(payload).decode("utf-8"), ex=max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self.client.get(key)
        if raw is None:
            return None
        try:
            return orjson.loads(raw)
        except orjson.JSONDecodeError:
            logger.warning(f"⚠️ TIMER_STORE: Unreadable payload under {key}")
            return None

    async def delete(self, key: str) -> bool:
        return bool(await self.client.delete(key))

    async def list_keys_by_prefix(self, prefix: str) -> List[str]:
        return [key async for key in self.client.scan_iter(match=f"{prefix}*", count=500)]

    async def time_to_live(self, key: str) -> int:
        return int(await self.client.ttl(key))

    async def _enable_expiry_notifications(self) -> None:
        try:
            await self.client.config_set("notify-keyspace-events", "Ex")
            logger.info("✅ TIMER_STORE: Keyspace expiry notifications enabled")
        except ResponseError as e:
            # Managed Redis often forbids CONFIG SET; the sweeper still covers expiry
            logger.warning(f"⚠️ TIMER_STORE: Could not enable expiry notifications ({e}) - relying on sweep")

    async def subscribe_expired(self, prefix: str) -> AsyncIterator[str]:
        """Yield expired keys under prefix until cancelled"""
        if self.enable_notifications:
            await self._enable_expiry_notifications()

        channel = f"__keyevent@{self.db}__:expired"
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(channel)
        logger.info(f"👂 TIMER_STORE: Listening on {channel}")
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                key = message.get("data")
                if isinstance(key, str) and key.startswith(prefix):
                    yield key
        finally:
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()
            except RedisError as e:
                logger.debug(f"Pubsub close error: {e}")

    async def health_check(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            logger.warning(f"⚠️ TIMER_STORE: Redis unavailable: {e}")
            return False

    async def close(self) -> None:
        await self.client.aclose()
