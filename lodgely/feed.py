# Row-level change feed: in-process fan-out of store writes to subscribers, with optional
# Redis Pub/Sub mirroring so clients connected to other processes see the same events.
from __future__ import annotations

import asyncio
import inspect
import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from .redis_client import get_redis, is_redis_enabled

logger = logging.getLogger("lodgely.store")

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"

CHANNEL_PREFIX = "changes:"

Predicate = Callable[[Dict[str, Any]], bool]
Handler = Callable[["ChangeEvent"], Any]


@dataclass(frozen=True)
class ChangeEvent:
    """One insert/update/delete on a table, carrying the new row payload (old row for deletes)."""

    table: str
    type: str
    new: Dict[str, Any] = field(default_factory=dict)
    old: Optional[Dict[str, Any]] = None
    origin: str = ""

    @property
    def row(self) -> Dict[str, Any]:
        return self.new or self.old or {}

    def to_json(self) -> str:
        return json.dumps(
            {"table": self.table, "type": self.type, "new": self.new, "old": self.old, "origin": self.origin},
            default=str,
        )

    @classmethod
    def from_json(cls, raw: str) -> "ChangeEvent":
        data = json.loads(raw)
        return cls(
            table=data["table"],
            type=data["type"],
            new=data.get("new") or {},
            old=data.get("old"),
            origin=data.get("origin") or "",
        )


class Subscription:
    """
    Cancellable handle for one (table, predicate, handler) registration.

    Events are queued per subscription and handled one at a time, in publish order,
    on the event loop that published them. Release with unsubscribe() or use as an
    async context manager:

        async with feed.subscribe("messages", lambda row: row["conversation_id"] == cid, on_change):
            ...
    """

    def __init__(self, feed: "ChangeFeed", table: str, predicate: Optional[Predicate], handler: Handler, name: str = "") -> None:
        self.table = table
        self.name = name or table
        self._feed = feed
        self._predicate = predicate
        self._handler = handler
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._pending = 0
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    @property
    def pending(self) -> int:
        return self._pending

    def matches(self, event: ChangeEvent) -> bool:
        if self.table not in (event.table, "*"):
            return False
        if self._predicate is None:
            return True
        try:
            return bool(self._predicate(event.row))
        except Exception as exc:
            logger.warning("feed.predicate.failed", extra={"subscription": self.name, "error": repr(exc)})
            return False

    def offer(self, event: ChangeEvent) -> None:
        if not self._active or not self.matches(event):
            return
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._pending += 1
        self._queue.put_nowait(event)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run(), name=f"feed:{self.name}")

    async def _run(self) -> None:
        assert self._queue is not None
        while self._active:
            event = await self._queue.get()
            try:
                if self._active:
                    result = self._handler(event)
                    if inspect.isawaitable(result):
                        await result
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # A failing handler never stops delivery of later events
                logger.warning(
                    "feed.handler.failed",
                    extra={"subscription": self.name, "table": event.table, "error": repr(exc)},
                )
            finally:
                self._pending -= 1
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        if self._queue is not None and self._active:
            await self._queue.join()

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._feed._remove(self)
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
        self._worker = None
        if self._queue is not None:
            # Drop whatever is still queued so drain() waiters are released
            while not self._queue.empty():
                self._queue.get_nowait()
                self._pending -= 1
                self._queue.task_done()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.unsubscribe()


class SubscriptionGroup:
    """Several subscriptions acquired and released together."""

    def __init__(self, subscriptions: Optional[List[Any]] = None) -> None:
        self._subscriptions: List[Any] = list(subscriptions or [])

    def add(self, subscription: Any) -> Any:
        self._subscriptions.append(subscription)
        return subscription

    @property
    def active(self) -> bool:
        return any(s.active for s in self._subscriptions)

    async def drain(self) -> None:
        for s in list(self._subscriptions):
            await s.drain()

    def unsubscribe(self) -> None:
        for s in self._subscriptions:
            s.unsubscribe()

    async def __aenter__(self) -> "SubscriptionGroup":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.unsubscribe()


class ChangeFeed:
    """Publish/subscribe hub for ChangeEvents produced by RemoteStore."""

    def __init__(self, mirror_to_redis: bool = True) -> None:
        self.origin = uuid4().hex
        self._mirror_to_redis = mirror_to_redis
        self._subscriptions: List[Subscription] = []
        self._bridge_stop = threading.Event()
        # One worker keeps cross-process publishes in write order
        self._redis_writer: Optional[ThreadPoolExecutor] = None

    def subscribe(self, table: str, predicate: Optional[Predicate], handler: Handler, name: str = "") -> Subscription:
        sub = Subscription(self, table, predicate, handler, name=name)
        self._subscriptions.append(sub)
        logger.debug("feed.subscribed", extra={"subscription": sub.name, "table": table})
        return sub

    def _remove(self, sub: Subscription) -> None:
        try:
            self._subscriptions.remove(sub)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: ChangeEvent) -> None:
        """Deliver a locally produced event and mirror it to other processes. Call from the loop thread."""
        if not event.origin:
            event = ChangeEvent(event.table, event.type, event.new, event.old, origin=self.origin)
        self.deliver(event)
        if self._mirror_to_redis:
            self._publish_redis(event)

    def deliver(self, event: ChangeEvent) -> None:
        for sub in list(self._subscriptions):
            sub.offer(event)

    def _publish_redis(self, event: ChangeEvent) -> None:
        if not is_redis_enabled():
            return
        if self._redis_writer is None:
            self._redis_writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="lodgely-feed-publish")
        self._redis_writer.submit(self._publish_redis_now, event)

    def _publish_redis_now(self, event: ChangeEvent) -> None:
        try:
            r = get_redis()
            if r is not None:
                r.publish(f"{CHANNEL_PREFIX}{event.table}", event.to_json())
        except Exception:
            logger.warning("redis.publish.failed", extra={"table": event.table})

    async def settle(self, rounds: int = 10) -> None:
        """Wait for all subscribers to drain, including events their handlers publish in turn."""
        for _ in range(rounds):
            busy = [s for s in self._subscriptions if s.pending]
            if not busy:
                return
            for s in busy:
                await s.drain()
            # Let freshly scheduled worker tasks start
            await asyncio.sleep(0)

    def close(self) -> None:
        self._bridge_stop.set()
        if self._redis_writer is not None:
            self._redis_writer.shutdown(wait=False)
            self._redis_writer = None
        for sub in list(self._subscriptions):
            sub.unsubscribe()

    def start_redis_bridge(self, loop: asyncio.AbstractEventLoop) -> Optional[threading.Thread]:
        """
        Start a background thread that subscribes to changes:* and re-delivers events
        published by other processes on `loop`. Best-effort; reconnects with backoff.
        """
        if not is_redis_enabled():
            logger.info("redis.bridge.disabled")
            return None
        self._bridge_stop.clear()

        def _run() -> None:
            backoff = 0.5
            max_backoff = 5.0
            while not self._bridge_stop.is_set():
                try:
                    r = get_redis()
                    if r is None:
                        time.sleep(min(backoff, max_backoff))
                        backoff = min(max_backoff, backoff * 2)
                        continue

                    pubsub = r.pubsub()
                    pubsub.psubscribe(f"{CHANNEL_PREFIX}*")
                    logger.info("redis.bridge.started")
                    backoff = 0.5
                    while not self._bridge_stop.is_set():
                        message = pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                        if message is None or message.get("type") != "pmessage":
                            continue
                        data = message.get("data")
                        try:
                            raw = data.decode("utf-8") if isinstance(data, bytes) else str(data)
                            event = ChangeEvent.from_json(raw)
                        except (ValueError, KeyError):
                            logger.warning("redis.bridge.malformed")
                            continue
                        if event.origin == self.origin:
                            continue
                        loop.call_soon_threadsafe(self.deliver, event)
                    pubsub.close()
                except Exception as exc:
                    logger.warning("redis.bridge.error", extra={"error": repr(exc)})
                    time.sleep(min(backoff, max_backoff))
                    backoff = min(max_backoff, backoff * 2)

        t = threading.Thread(target=_run, name="redis-change-bridge", daemon=True)
        t.start()
        return t
