"""Resumable stream registry.

A turn publishes its events under a stream id; any process that shares the
transport can attach to that id while the turn is live. Attaching is a live
tap: subscribers receive events from the moment they subscribe onward.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

import structlog

from ..config import Settings
from .events import StreamEvent
from .tasks import BackgroundTasks

logger = structlog.get_logger()

_END = object()


class StreamTransportError(Exception):
    """Raised when the shared transport cannot be reached."""


class Subscription:
    """Async iterator over one subscriber's events."""

    def __init__(
        self,
        queue: "asyncio.Queue[object]",
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self._queue = queue
        self._on_close = on_close
        self._closed = False

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> StreamEvent:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            await self.aclose()
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            await self._on_close()


class StreamTransport(ABC):
    """Shared pub/sub medium behind the registry."""

    @abstractmethod
    async def create(self, stream_id: str) -> bool:
        """Mark a stream active; False when the id was already used."""
        pass

    @abstractmethod
    async def is_active(self, stream_id: str) -> bool:
        pass

    @abstractmethod
    async def subscribe(self, stream_id: str) -> Subscription:
        pass

    @abstractmethod
    async def publish(self, stream_id: str, event: StreamEvent) -> None:
        pass

    @abstractmethod
    async def finish(self, stream_id: str) -> None:
        """Mark the stream concluded and end every subscription."""
        pass

    # Seconds between keepalive calls while a stream is produced; None disables them.
    keepalive_interval: Optional[float] = None

    async def keepalive(self, stream_id: str) -> None:
        """Extend the active marker of a stream that is still being produced."""
        return None

    async def ping(self) -> None:
        """Raise StreamTransportError when the transport is unreachable."""
        return None

    async def close(self) -> None:
        return None


class InMemoryStreamTransport(StreamTransport):
    """Process-local transport; resumable only within one worker."""

    def __init__(self) -> None:
        self._active: Set[str] = set()
        self._subscribers: Dict[str, List["asyncio.Queue[object]"]] = {}

    async def create(self, stream_id: str) -> bool:
        if stream_id in self._active:
            return False
        self._active.add(stream_id)
        return True

    async def is_active(self, stream_id: str) -> bool:
        return stream_id in self._active

    async def subscribe(self, stream_id: str) -> Subscription:
        queue: "asyncio.Queue[object]" = asyncio.Queue()
        self._subscribers.setdefault(stream_id, []).append(queue)

        async def unsubscribe() -> None:
            queues = self._subscribers.get(stream_id)
            if queues and queue in queues:
                queues.remove(queue)
                if not queues:
                    self._subscribers.pop(stream_id, None)

        return Subscription(queue, unsubscribe)

    async def publish(self, stream_id: str, event: StreamEvent) -> None:
        for queue in tuple(self._subscribers.get(stream_id, ())):
            queue.put_nowait(event)

    async def finish(self, stream_id: str) -> None:
        self._active.discard(stream_id)
        for queue in self._subscribers.pop(stream_id, []):
            queue.put_nowait(_END)

    def subscriber_count(self, stream_id: str) -> int:
        return len(self._subscribers.get(stream_id, ()))

    @property
    def active_count(self) -> int:
        return len(self._active)


class ResumableStreamRegistry:
    """Publishes turn streams under durable ids and lets clients re-attach."""

    def __init__(self, transport: StreamTransport, tasks: BackgroundTasks) -> None:
        self.transport = transport
        self._tasks = tasks

    async def produce(
        self,
        stream_id: str,
        producer: Callable[[], AsyncIterator[StreamEvent]],
    ) -> Subscription:
        """Start publishing ``producer()`` under ``stream_id``.

        Returns the first subscription, opened before any event is
        published, so the caller sees the whole stream.
        """
        if not await self.transport.create(stream_id):
            raise ValueError(f"Stream {stream_id} already exists")

        subscription = None
        try:
            subscription = await self.transport.subscribe(stream_id)
            self._tasks.spawn(self._pump(stream_id, producer()), name=f"stream:{stream_id}")
        except BaseException:
            # Nothing will ever finish this stream, so release its active marker now.
            if subscription is not None:
                await subscription.aclose()
            try:
                await self.transport.finish(stream_id)
            except StreamTransportError as e:
                logger.error("stream_release_failed", stream_id=stream_id, error=str(e))
            raise
        logger.info("stream_registered", stream_id=stream_id)
        return subscription

    async def _pump(self, stream_id: str, source: AsyncIterator[StreamEvent]) -> None:
        publishing = True
        heartbeat = asyncio.create_task(self._keep_alive(stream_id))
        try:
            async for event in source:
                if not publishing:
                    continue
                try:
                    await self.transport.publish(stream_id, event)
                except StreamTransportError as e:
                    # Keep draining so the turn still completes and persists.
                    publishing = False
                    logger.error("stream_publish_failed", stream_id=stream_id, error=str(e))
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            try:
                await self.transport.finish(stream_id)
            except StreamTransportError as e:
                logger.error("stream_finish_failed", stream_id=stream_id, error=str(e))
            logger.info("stream_concluded", stream_id=stream_id)

    async def _keep_alive(self, stream_id: str) -> None:
        interval = self.transport.keepalive_interval
        if not interval:
            return
        while True:
            await asyncio.sleep(interval)
            try:
                await self.transport.keepalive(stream_id)
            except StreamTransportError as e:
                logger.warning("stream_keepalive_failed", stream_id=stream_id, error=str(e))

    async def attach(self, stream_id: str) -> Optional[Subscription]:
        """Tap a live stream; None when it has concluded or never existed."""
        try:
            subscription = await self.transport.subscribe(stream_id)
            if not await self.transport.is_active(stream_id):
                await subscription.aclose()
                return None
        except StreamTransportError as e:
            logger.warning("stream_attach_failed", stream_id=stream_id, error=str(e))
            return None

        logger.info("stream_attached", stream_id=stream_id)
        return subscription


@dataclass(frozen=True)
class Available:
    registry: ResumableStreamRegistry


@dataclass(frozen=True)
class Unavailable:
    reason: str


RegistryStatus = Union[Available, Unavailable]


def build_stream_registry(settings: Settings, tasks: BackgroundTasks) -> RegistryStatus:
    """Construct the registry for the configured transport."""
    if settings.stream_transport == "none":
        return Unavailable("resumable streams disabled")

    if settings.stream_transport == "redis":
        if not settings.redis_url:
            logger.info("resumable_streams_disabled", reason="missing REDIS_URL")
            return Unavailable("missing REDIS_URL")
        from .redis_transport import RedisStreamTransport

        transport: StreamTransport = RedisStreamTransport.from_url(
            settings.redis_url,
            ttl_seconds=settings.stream_ttl_seconds,
            active_ttl_seconds=settings.stream_active_ttl_seconds,
        )
        return Available(ResumableStreamRegistry(transport, tasks))

    if settings.stream_transport == "memory":
        return Available(ResumableStreamRegistry(InMemoryStreamTransport(), tasks))

    raise ValueError(f"Unknown stream transport: {settings.stream_transport}")


async def verify_stream_registry(status: RegistryStatus) -> RegistryStatus:
    """Degrade to Unavailable when the transport does not answer."""
    if isinstance(status, Unavailable):
        return status
    try:
        await status.registry.transport.ping()
    except StreamTransportError as e:
        logger.warning("resumable_streams_disabled", reason="transport unreachable", error=str(e))
        return Unavailable(f"transport unreachable: {e}")
    return status
