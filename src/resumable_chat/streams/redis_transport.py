"""Redis-backed stream transport shared across worker processes.

A stream's state lives in one key. While the stream is produced the key
holds ``active`` with a short expiry that the producer keeps extending, so
a marker left behind by a crashed worker lapses within seconds. When the
stream finishes the key holds ``done`` for the longer retention period.
"""

import json
from typing import Awaitable, Callable, Optional

import structlog
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from .events import StreamEvent
from .registry import StreamTransport, StreamTransportError, Subscription

logger = structlog.get_logger()

KEY_PREFIX = "resumable-chat:stream"
END_MARKER = "__end__"
ACTIVE = "active"
DONE = "done"


def _state_key(stream_id: str) -> str:
    return f"{KEY_PREFIX}:{stream_id}:state"


def _channel(stream_id: str) -> str:
    return f"{KEY_PREFIX}:{stream_id}:events"


class RedisSubscription(Subscription):
    """Subscription reading from a Redis pub/sub channel.

    Ends on the end marker, or once the stream is no longer active and
    nothing is left to read.
    """

    def __init__(
        self,
        pubsub,
        stream_id: str,
        is_active: Callable[[str], Awaitable[bool]],
        poll_timeout: float = 1.0,
    ) -> None:
        self._pubsub = pubsub
        self._stream_id = stream_id
        self._is_active = is_active
        self._poll_timeout = poll_timeout
        self._closed = False
        self._draining = False

    async def __anext__(self) -> StreamEvent:
        while not self._closed:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self._poll_timeout
                )
            except RedisError as e:
                logger.error("stream_subscription_failed", stream_id=self._stream_id, error=str(e))
                await self.aclose()
                break

            if message is None:
                if self._draining:
                    logger.info("stream_subscription_expired", stream_id=self._stream_id)
                    await self.aclose()
                    break
                if not await self._still_active():
                    # One more poll picks up events published just before the end.
                    self._draining = True
                continue

            payload = message["data"]
            if isinstance(payload, bytes):
                payload = payload.decode("utf-8")
            if payload == END_MARKER:
                await self.aclose()
                break
            return json.loads(payload)

        raise StopAsyncIteration

    async def _still_active(self) -> bool:
        try:
            return await self._is_active(self._stream_id)
        except StreamTransportError as e:
            logger.warning("stream_state_unreadable", stream_id=self._stream_id, error=str(e))
            return False

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe(_channel(self._stream_id))
            await self._pubsub.aclose()
        except RedisError as e:
            logger.warning("stream_unsubscribe_failed", stream_id=self._stream_id, error=str(e))


class RedisStreamTransport(StreamTransport):
    """Stream state in a key, events over pub/sub."""

    def __init__(
        self,
        client: "aioredis.Redis",
        ttl_seconds: int = 86_400,
        active_ttl_seconds: int = 10,
        poll_timeout: float = 1.0,
    ) -> None:
        self._client = client
        self._ttl_seconds = ttl_seconds
        self._active_ttl_seconds = active_ttl_seconds
        self._poll_timeout = poll_timeout
        self.keepalive_interval = active_ttl_seconds / 3

    @classmethod
    def from_url(
        cls, url: str, ttl_seconds: int = 86_400, active_ttl_seconds: int = 10
    ) -> "RedisStreamTransport":
        return cls(aioredis.from_url(url), ttl_seconds=ttl_seconds, active_ttl_seconds=active_ttl_seconds)

    async def create(self, stream_id: str) -> bool:
        try:
            created = await self._client.set(
                _state_key(stream_id), ACTIVE, nx=True, ex=self._active_ttl_seconds
            )
        except RedisError as e:
            raise StreamTransportError(str(e)) from e
        return bool(created)

    async def keepalive(self, stream_id: str) -> None:
        try:
            await self._client.expire(_state_key(stream_id), self._active_ttl_seconds)
        except RedisError as e:
            raise StreamTransportError(str(e)) from e

    async def is_active(self, stream_id: str) -> bool:
        try:
            state: Optional[bytes] = await self._client.get(_state_key(stream_id))
        except RedisError as e:
            raise StreamTransportError(str(e)) from e
        return state in (ACTIVE.encode(), ACTIVE)

    async def subscribe(self, stream_id: str) -> Subscription:
        pubsub = self._client.pubsub()
        try:
            await pubsub.subscribe(_channel(stream_id))
        except RedisError as e:
            raise StreamTransportError(str(e)) from e
        return RedisSubscription(pubsub, stream_id, self.is_active, poll_timeout=self._poll_timeout)

    async def publish(self, stream_id: str, event: StreamEvent) -> None:
        try:
            await self._client.publish(_channel(stream_id), json.dumps(event, default=str))
        except RedisError as e:
            raise StreamTransportError(str(e)) from e

    async def finish(self, stream_id: str) -> None:
        try:
            await self._client.set(_state_key(stream_id), DONE, ex=self._ttl_seconds)
            await self._client.publish(_channel(stream_id), END_MARKER)
        except RedisError as e:
            raise StreamTransportError(str(e)) from e

    async def ping(self) -> None:
        try:
            await self._client.ping()
        except (RedisError, OSError) as e:
            raise StreamTransportError(str(e)) from e

    async def close(self) -> None:
        await self._client.aclose()
