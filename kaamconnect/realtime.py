# Change feed: push channels of row changes scoped to one equipment item.
# Local subscribers get events directly; other processes receive them through Redis Pub/Sub.
from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable, Dict, Optional, Set
from uuid import uuid4

from pydantic import ValidationError

from .redis_client import get_redis, is_redis_enabled
from .schemas import ChangeEvent

logger = logging.getLogger("kaamconnect.realtime")

Handler = Callable[[ChangeEvent], None]

# Redis pattern covering every table/equipment channel
REDIS_PATTERN = "changes:*"


def channel_name(table: str, equipment_id: int) -> str:
    return f"changes:{table}:{equipment_id}"


class Subscription:
    """
    A handler registered on one channel.

    Acquired through ChangeFeed.subscribe(); release() detaches it and is
    idempotent. Use as a context manager to release on every exit path:

        with feed.subscribe("equipment_messages", eid, on_change):
            ...
    """
    def __init__(
        self,
        feed: "ChangeFeed",
        channel: str,
        handler: Handler,
        loop: Optional[asyncio.AbstractEventLoop],
    ) -> None:
        self.channel = channel
        self.handler = handler
        # Event loop that owns the handler; events from other threads are marshalled onto it
        self.loop = loop
        self.active = True
        self._feed = feed

    def deliver(self, event: ChangeEvent) -> None:
        if self.active:
            self.handler(event)

    def release(self) -> None:
        if not self.active:
            return
        self.active = False
        self._feed._remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


class ChangeFeed:
    """
    In-process registry of channel subscriptions.

    publish() dispatches to local subscribers and, when Redis is enabled,
    republishes the event for other API processes. Each event is stamped with
    this feed's origin id so the Redis listener can skip our own echoes.
    """
    def __init__(self) -> None:
        self.origin = uuid4().hex
        self._channels: Dict[str, Set[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, table: str, equipment_id: int, handler: Handler) -> Subscription:
        try:
            loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        sub = Subscription(self, channel_name(table, equipment_id), handler, loop)
        with self._lock:
            self._channels.setdefault(sub.channel, set()).add(sub)
        logger.debug("realtime.subscribed", extra={"channel": sub.channel})
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._channels.get(sub.channel)
            if subs is not None:
                subs.discard(sub)
                if not subs:
                    del self._channels[sub.channel]
        logger.debug("realtime.released", extra={"channel": sub.channel})

    def subscriber_count(self, table: str, equipment_id: int) -> int:
        with self._lock:
            return len(self._channels.get(channel_name(table, equipment_id), ()))

    def publish(self, event: ChangeEvent) -> None:
        if event.origin is None:
            event = event.model_copy(update={"origin": self.origin})
        self.dispatch(event)

        r = get_redis()
        if r is None:
            return
        channel = channel_name(event.table, event.equipment_id)
        try:
            r.publish(channel, event.model_dump_json())
        except Exception as exc:
            # Local subscribers already have the event; other processes miss it
            logger.warning("redis.publish.failed", extra={"channel": channel, "error": str(exc)})

    def dispatch(self, event: ChangeEvent) -> None:
        channel = channel_name(event.table, event.equipment_id)
        with self._lock:
            recipients = list(self._channels.get(channel, ()))
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None

        for sub in recipients:
            if sub.loop is None or sub.loop is current:
                self._deliver(sub, event)
            elif sub.loop.is_closed():
                # Owner loop is gone; the subscription can never be served again
                sub.release()
            else:
                sub.loop.call_soon_threadsafe(self._deliver, sub, event)

    @staticmethod
    def _deliver(sub: Subscription, event: ChangeEvent) -> None:
        try:
            sub.deliver(event)
        except Exception:
            # One broken handler must not stop delivery to the others or fail the publisher
            logger.exception("realtime.handler.failed", extra={"channel": sub.channel})


change_feed = ChangeFeed()


def start_redis_subscriber(feed: ChangeFeed = change_feed) -> None:
    """
    Start a daemon thread that listens on changes:* and re-dispatches events
    published by other processes to local subscribers. Best-effort fail-open.
    """
    if not is_redis_enabled():
        logger.info("redis.subscriber.disabled")
        return

    def _run() -> None:
        backoff = 0.5
        max_backoff = 5.0
        while True:
            try:
                r = get_redis()
                if r is None:
                    time.sleep(min(backoff, max_backoff))
                    backoff = min(max_backoff, backoff * 2)
                    continue

                pubsub = r.pubsub()
                pubsub.psubscribe(REDIS_PATTERN)
                logger.info("redis.subscriber.started")
                backoff = 0.5  # reset on success
                for message in pubsub.listen():
                    if message is None or message.get("type") != "pmessage":
                        continue
                    data = message.get("data")
                    try:
                        event = ChangeEvent.model_validate_json(data)
                    except ValidationError:
                        logger.warning("redis.subscriber.bad_payload", extra={"channel": str(message.get("channel"))})
                        continue
                    if event.origin == feed.origin:
                        continue
                    feed.dispatch(event)
            except Exception as exc:
                logger.warning("redis.subscriber.reconnect", extra={"error": str(exc), "backoff": backoff})
                time.sleep(min(backoff, max_backoff))
                backoff = min(max_backoff, backoff * 2)

    t = threading.Thread(target=_run, name="redis-change-subscriber", daemon=True)
    t.start()
