"""
Change notifier.

Fans change events out to per-user and per-relationship channels. Subscribers
own their handle and release it with `close()` or by using it as an async
context manager:

    async with notifier.subscribe(relationship_channel(rel_id)) as sub:
        event = await sub.get(timeout=5)

`RedisChangeNotifier` also mirrors every event onto Redis pub/sub so other
processes can relay it to their own local subscribers.
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, Iterable, Optional
from uuid import uuid4

from redis.exceptions import RedisError

from companion.core.config import settings
from companion.realtime.events import parse_change_event
from companion.utils.redis_pool import get_redis

log = logging.getLogger(__name__)

REDIS_CHANNEL_PREFIX = "changes"

Callback = Callable[[object], Awaitable[None]]


def user_channel(user_id: int) -> str:
    return f"user:{user_id}"


def relationship_channel(relationship_id: str) -> str:
    return f"relationship:{relationship_id}"


def channels_for_application(app) -> list[str]:
    return [user_channel(app.youth_id), user_channel(app.elderly_id)]


def channels_for_relationship(rel) -> list[str]:
    return [
        relationship_channel(rel.id),
        user_channel(rel.youth_id),
        user_channel(rel.elderly_id),
    ]


class Subscription:

    def __init__(self, notifier: "ChangeNotifier", channels: tuple[str, ...], callback: Optional[Callback] = None):
        self.notifier = notifier
        self.channels = channels
        self.callback = callback
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def deliver(self, event) -> None:
        if self.closed:
            return
        if self.callback is not None:
            await self.callback(event)
        else:
            self.queue.put_nowait(event)

    async def get(self, timeout: float | None = None):
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.notifier.unsubscribe(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()


class ChangeNotifier:
    """In-process fan-out. At-least-once per subscriber, no cross-channel ordering."""

    def __init__(self):
        self._subscriptions: dict[str, set[Subscription]] = {}

    def subscribe(self, *channels: str, callback: Optional[Callback] = None) -> Subscription:
        sub = Subscription(self, tuple(channels), callback)
        for channel in channels:
            self._subscriptions.setdefault(channel, set()).add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        for channel in sub.channels:
            subs = self._subscriptions.get(channel)
            if subs is None:
                continue
            subs.discard(sub)
            if not subs:
                self._subscriptions.pop(channel, None)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscriptions.get(channel, ()))

    async def publish(self, event, channels: Iterable[str]) -> None:
        await self._deliver_local(event, channels)

    async def _deliver_local(self, event, channels: Iterable[str]) -> None:
        delivered: set[int] = set()
        for channel in channels:
            for sub in list(self._subscriptions.get(channel, ())):
                # a subscriber listening on several channels gets the event once
                if id(sub) in delivered:
                    continue
                delivered.add(id(sub))
                try:
                    await sub.deliver(event)
                except Exception:
                    log.exception("Change subscriber failed on %s", channel)


class RedisChangeNotifier(ChangeNotifier):

    def __init__(self):
        super().__init__()
        self.origin = str(uuid4())

    async def publish(self, event, channels: Iterable[str]) -> None:
        channels = list(channels)
        await self._deliver_local(event, channels)
        envelope = {"origin": self.origin, "event": event.model_dump(mode="json")}
        try:
            redis = await get_redis()
            body = json.dumps(envelope)
            for channel in channels:
                await redis.publish(f"{REDIS_CHANNEL_PREFIX}:{channel}", body)
        except RedisError as e:
            log.warning("Failed to mirror change event to redis: %s", e)

    async def relay(self, pattern: str = "*") -> None:
        """Forward events published by other processes to local subscribers. Runs until cancelled."""
        redis = await get_redis()
        pubsub = redis.pubsub()
        await pubsub.psubscribe(f"{REDIS_CHANNEL_PREFIX}:{pattern}")
        try:
            async for raw in pubsub.listen():
                if raw.get("type") != "pmessage":
                    continue
                envelope = _load(raw["data"])
                if not envelope or envelope.get("origin") == self.origin:
                    continue
                event = parse_change_event(envelope.get("event") or {})
                if event is None:
                    continue
                channel = raw["channel"].split(":", 1)[1]
                await self._deliver_local(event, [channel])
        finally:
            await pubsub.aclose()


def _load(data) -> dict | None:
    try:
        return json.loads(data)
    except (TypeError, ValueError):
        return None


_notifier: Optional[ChangeNotifier] = None


def get_notifier() -> ChangeNotifier:
    global _notifier
    if _notifier is None:
        if settings.REALTIME_BACKEND == "redis":
            _notifier = RedisChangeNotifier()
        else:
            _notifier = ChangeNotifier()
        log.info("Change notifier initialized (backend=%s)", settings.REALTIME_BACKEND)
    return _notifier


async def publish_quietly(notifier: Optional[ChangeNotifier], event, channels: Iterable[str]) -> None:
    """Best-effort publish used after a committed write."""
    if notifier is None:
        return
    try:
        await notifier.publish(event, channels)
    except Exception:
        log.exception("Failed to publish %s change", getattr(event, "table", "?"))
