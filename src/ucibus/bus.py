"""Publish/subscribe bus: the Bus protocol and an in-process broker.

LocalBus semantics:
    - topics are `/`-separated; subscriptions may use `+` and `#`
    - retained publish stores the latest payload per topic and replays it
      to every new matching subscription; an empty retained payload
      (tombstone) clears the topic
    - each subscription has its own queue and worker task, so delivery is
      ordered per subscriber and a slow handler never blocks the publisher
    - publish/subscribe with a Caller is checked against AccessControl;
      caller=None is the trusted in-process path
    - publishing while closed raises TransportUnavailable
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ucibus.acl import topic_matches
from ucibus.errors import TransportUnavailable

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ucibus.acl import AccessControl, Caller

logger = logging.getLogger("ucibus.bus")


@dataclass(frozen=True)
class Message:
    topic: str
    payload: bytes
    retain: bool = False

    @property
    def is_tombstone(self) -> bool:
        return not self.payload

    def json(self) -> Any:
        """Decode the JSON payload; a tombstone decodes to None."""
        if not self.payload:
            return None
        return json.loads(self.payload)


def encode_payload(obj: Any) -> bytes:
    """JSON-encode obj; None and empty strings become an empty payload."""
    if obj is None or obj == "":
        return b""
    if isinstance(obj, bytes):
        return obj
    if isinstance(obj, str):
        return obj.encode()
    return json.dumps(obj, indent=2).encode()


@runtime_checkable
class Bus(Protocol):
    @property
    def connected(self) -> bool: ...

    async def publish(self, topic: str, payload: Any, *, retain: bool = False, caller: Caller | None = None) -> None: ...

    async def subscribe(
        self, pattern: str, handler: Callable[[Message], Awaitable[None]], *, caller: Caller | None = None,
    ) -> Subscription: ...

    async def unsubscribe(self, subscription: Subscription) -> None: ...


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

class Subscription:
    """One subscriber: a pattern, a handler and an ordered delivery queue."""

    def __init__(self, pattern: str, handler: Callable[[Message], Awaitable[None]]) -> None:
        self.pattern = pattern
        self.handler = handler
        self._queue: asyncio.Queue[Message] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self.pending = 0

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"sub:{self.pattern}")

    def deliver(self, message: Message) -> None:
        self.pending += 1
        self._queue.put_nowait(message)

    async def join(self) -> None:
        await self._queue.join()

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self.handler(message)
            except Exception:
                logger.exception("handler for %s failed on %s", self.pattern, message.topic)
            finally:
                self.pending -= 1
                self._queue.task_done()


# ---------------------------------------------------------------------------
# In-process broker
# ---------------------------------------------------------------------------

class LocalBus:
    """In-process broker with retained messages and ACL checks."""

    def __init__(self, acl: AccessControl | None = None) -> None:
        self.acl = acl
        self._subscriptions: list[Subscription] = []
        self._retained: dict[str, Message] = {}
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        logger.info("local bus connected")

    async def close(self) -> None:
        self._connected = False
        for sub in list(self._subscriptions):
            await sub.stop()
        self._subscriptions.clear()
        logger.info("local bus closed")

    async def __aenter__(self) -> LocalBus:
        await self.connect()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Publish / subscribe
    # ------------------------------------------------------------------

    async def publish(self, topic: str, payload: Any, *, retain: bool = False, caller: Caller | None = None) -> None:
        if not self._connected:
            msg = f"bus not connected, cannot publish to {topic}"
            raise TransportUnavailable(msg)
        if "+" in topic.split("/") or "#" in topic.split("/"):
            msg = f"cannot publish to wildcard topic {topic!r}"
            raise ValueError(msg)
        if caller is not None and self.acl is not None:
            self.acl.check(caller, topic, "publish")

        message = Message(topic=topic, payload=encode_payload(payload), retain=retain)
        if retain:
            if message.is_tombstone:
                self._retained.pop(topic, None)
            else:
                self._retained[topic] = message

        delivered = 0
        for sub in self._subscriptions:
            if topic_matches(sub.pattern, topic):
                sub.deliver(message)
                delivered += 1
        logger.debug("published %s (%d bytes, retain=%s) to %d subscribers", topic, len(message.payload), retain, delivered)

    async def subscribe(
        self, pattern: str, handler: Callable[[Message], Awaitable[None]], *, caller: Caller | None = None,
    ) -> Subscription:
        if not self._connected:
            msg = f"bus not connected, cannot subscribe to {pattern}"
            raise TransportUnavailable(msg)
        if caller is not None and self.acl is not None:
            self.acl.check(caller, pattern, "subscribe")

        sub = Subscription(pattern, handler)
        sub.start()
        self._subscriptions.append(sub)
        for topic, message in self._retained.items():
            if topic_matches(pattern, topic):
                sub.deliver(message)
        logger.debug("subscribed %s", pattern)
        return sub

    async def unsubscribe(self, subscription: Subscription) -> None:
        with contextlib.suppress(ValueError):
            self._subscriptions.remove(subscription)
        await subscription.stop()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def retained(self, topic: str) -> Message | None:
        return self._retained.get(topic)

    def retained_matching(self, pattern: str) -> dict[str, Message]:
        return {t: m for t, m in self._retained.items() if topic_matches(pattern, t)}

    async def join(self) -> None:
        """Wait until every queued message, including ones published by handlers, is handled."""
        while any(sub.pending for sub in self._subscriptions):
            for sub in list(self._subscriptions):
                await sub.join()

    def status(self) -> dict[str, Any]:
        return {
            "connected": self._connected,
            "subscriptions": len(self._subscriptions),
            "retained": len(self._retained),
        }
