import asyncio
import json
import threading
from collections.abc import AsyncGenerator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from time import monotonic
from typing import Any

from finance_tracker.domain.timefmt import utcnow
from finance_tracker.logger import get_logger

logger = get_logger(__name__)

TRANSACTION_UPDATE = "transaction_update"
HEARTBEAT = "heartbeat"
CONNECTED_FRAME = "data: Connected to SSE\n\n"

DEFAULT_QUEUE_SIZE = 64


@dataclass(frozen=True)
class ChangeEvent:
    user_id: str
    operation: str
    timestamp: datetime = field(default_factory=utcnow)
    type: str = TRANSACTION_UPDATE

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "userId": self.user_id,
            "operation": self.operation,
            "timestamp": self.timestamp.isoformat(),
        }


class Subscription:
    """One subscriber's mailbox, bound to the event loop that created it."""

    def __init__(self, notifier: "ChangeNotifier", user_id: str, maxsize: int) -> None:
        self.notifier = notifier
        self.user_id = user_id
        self.loop = asyncio.get_running_loop()
        self.queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def _offer(self, event: ChangeEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            # A pending event already forces a full reload.
            logger.debug("[SSE] Queue full for user %s; dropping event.", self.user_id)

    def deliver(self, event: ChangeEvent) -> None:
        if self.closed or self.loop.is_closed():
            return
        self.loop.call_soon_threadsafe(self._offer, event)

    async def next_event(self, timeout: float | None = None) -> ChangeEvent | None:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.notifier.unsubscribe(self)


class ChangeNotifier:
    """Fans transaction mutations out to the push channels of the same user."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscription]] = {}

    def subscribe(self, user_id: str) -> Subscription:
        subscription = Subscription(self, user_id, self.queue_size)
        with self._lock:
            self._subscribers.setdefault(user_id, []).append(subscription)
        logger.info("[SSE] Channel opened for user %s.", user_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.user_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.user_id, None)
        logger.info("[SSE] Channel closed for user %s.", subscription.user_id)

    def subscriber_count(self, user_id: str | None = None) -> int:
        with self._lock:
            if user_id is not None:
                return len(self._subscribers.get(user_id, []))
            return sum(len(subs) for subs in self._subscribers.values())

    def publish(self, user_id: str, operation: str) -> int:
        """Store listener. Safe to call from any thread."""
        with self._lock:
            subscribers = list(self._subscribers.get(user_id, []))
        if not subscribers:
            return 0
        event = ChangeEvent(user_id=user_id, operation=operation)
        for subscription in subscribers:
            subscription.deliver(event)
        logger.debug("[SSE] %s change for user %s sent to %d channel(s).", operation, user_id, len(subscribers))
        return len(subscribers)


def format_sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def heartbeat_frame() -> str:
    return format_sse({"type": HEARTBEAT, "timestamp": utcnow().isoformat()})


async def stream_events(
    subscription: Subscription,
    *,
    heartbeat_seconds: float,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncGenerator[str, None]:
    """Yield SSE frames: a greeting, change events and periodic heartbeats."""
    try:
        yield CONNECTED_FRAME
        next_heartbeat = monotonic() + heartbeat_seconds
        while True:
            if is_disconnected is not None and await is_disconnected():
                break
            remaining = max(0.0, next_heartbeat - monotonic())
            event = await subscription.next_event(timeout=remaining)
            if event is not None:
                yield format_sse(event.to_payload())
            if monotonic() >= next_heartbeat:
                yield heartbeat_frame()
                next_heartbeat = monotonic() + heartbeat_seconds
    finally:
        subscription.close()
