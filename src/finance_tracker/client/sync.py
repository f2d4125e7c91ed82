import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from finance_tracker.client.channel import ChannelEvent, PushChannel
from finance_tracker.errors import TransportError
from finance_tracker.logger import get_logger

logger = get_logger(__name__)

POLL_INTERVAL_SECONDS = 10.0

ChannelFactory = Callable[[], PushChannel]
ReloadCallback = Callable[[], Awaitable[object]]
SleepFunc = Callable[[float], Awaitable[None]]


class SyncState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    LIVE = "live"
    DEGRADED = "degraded"
    POLLING = "polling"
    CLOSED = "closed"


_TRANSITIONS: dict[SyncState, frozenset[SyncState]] = {
    SyncState.IDLE: frozenset({SyncState.CONNECTING, SyncState.CLOSED}),
    SyncState.CONNECTING: frozenset({SyncState.LIVE, SyncState.DEGRADED, SyncState.CLOSED}),
    SyncState.LIVE: frozenset({SyncState.DEGRADED, SyncState.CLOSED}),
    SyncState.DEGRADED: frozenset({SyncState.CONNECTING, SyncState.POLLING, SyncState.CLOSED}),
    # Polling is one-way for the lifetime of the session.
    SyncState.POLLING: frozenset({SyncState.CLOSED}),
    SyncState.CLOSED: frozenset(),
}


@dataclass(frozen=True)
class BackoffPolicy:
    """Linear reconnect delay with a cap and a failure budget."""

    base_delay: float = 5.0
    max_delay: float = 60.0
    max_failures: int = 3

    def delay(self, failures: int) -> float:
        return min(self.base_delay * max(1, failures), self.max_delay)

    def exhausted(self, failures: int) -> bool:
        return failures >= self.max_failures


class SyncOrchestrator:
    """Keeps one session in sync: push channel first, timed polling after repeated failures.

    A single supervisor task owns the channel, the backoff sleep and the poll
    loop, so pushing and polling never run at the same time. Every signal
    triggers a full reload; there is no incremental merge.
    """

    def __init__(
        self,
        user_id: str,
        channel_factory: ChannelFactory,
        reload: ReloadCallback,
        *,
        backoff: BackoffPolicy | None = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        reset_on_heartbeat: bool = True,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.user_id = user_id
        self.channel_factory = channel_factory
        self.reload = reload
        self.backoff = backoff or BackoffPolicy()
        self.poll_interval = poll_interval
        self.reset_on_heartbeat = reset_on_heartbeat
        self._sleep = sleep
        self.state = SyncState.IDLE
        self.history: list[SyncState] = [SyncState.IDLE]
        self.failures = 0
        self._task: asyncio.Task[None] | None = None
        self._channel: PushChannel | None = None
        self._reloads: set[asyncio.Task[None]] = set()

    @property
    def polling(self) -> bool:
        return self.state is SyncState.POLLING

    @property
    def closed(self) -> bool:
        return self.state is SyncState.CLOSED

    def _transition(self, new_state: SyncState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid sync transition {self.state.value} -> {new_state.value}")
        logger.debug("[SYNC] %s -> %s (user %s)", self.state.value, new_state.value, self.user_id)
        self.state = new_state
        self.history.append(new_state)

    def start(self) -> None:
        self._transition(SyncState.CONNECTING)
        self._task = asyncio.create_task(self._supervise())
        self._task.add_done_callback(self._supervisor_done)

    def _supervisor_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[SYNC] Supervisor for user %s stopped unexpectedly.", self.user_id, exc_info=exc)

    async def stop(self) -> None:
        if self.state is SyncState.CLOSED:
            return
        self._transition(SyncState.CLOSED)

        current = asyncio.current_task()
        pending = [task for task in (self._task, *self._reloads) if task is not None and task is not current]
        self._task = None
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        channel, self._channel = self._channel, None
        if channel is not None:
            await channel.close()
        logger.info("[SYNC] Stopped for user %s.", self.user_id)

    async def _supervise(self) -> None:
        while True:
            await self._run_channel()
            self.failures += 1
            self._transition(SyncState.DEGRADED)

            if self.backoff.exhausted(self.failures):
                logger.warning(
                    "[SYNC] Push channel failed %d times; polling every %.0f s.",
                    self.failures,
                    self.poll_interval,
                )
                self._transition(SyncState.POLLING)
                await self._poll()
                return

            delay = self.backoff.delay(self.failures)
            logger.info("[SYNC] Reconnecting in %.0f s (attempt %d).", delay, self.failures + 1)
            await self._sleep(delay)
            self._transition(SyncState.CONNECTING)

    async def _run_channel(self) -> None:
        """Consume one channel until it fails or ends. Either way counts as a failure."""
        channel = self.channel_factory()
        self._channel = channel
        try:
            async for event in channel.events():
                if self.state is SyncState.CONNECTING:
                    self._transition(SyncState.LIVE)
                    logger.info("[SYNC] Push channel live for user %s.", self.user_id)
                self._handle_event(event)
            logger.warning("[SYNC] Push channel closed by the server.")
        except TransportError as exc:
            logger.warning("[SYNC] Push channel error: %s", exc.message)
        except Exception:
            logger.exception("[SYNC] Push channel crashed.")
        finally:
            self._channel = None
            await channel.close()

    def _handle_event(self, event: ChannelEvent) -> None:
        if event.is_change:
            self.failures = 0
            if event.user_id == self.user_id:
                self._schedule_reload()
            else:
                logger.debug("[SYNC] Ignoring change for user %s.", event.user_id)
        elif event.is_heartbeat:
            if self.reset_on_heartbeat:
                self.failures = 0
        elif event.type == "error":
            logger.warning("[SYNC] Server reported: %s", event.payload.get("message", "unknown error"))

    def _schedule_reload(self) -> None:
        task = asyncio.create_task(self._safe_reload())
        self._reloads.add(task)
        task.add_done_callback(self._reloads.discard)

    async def _safe_reload(self) -> None:
        try:
            await self.reload()
        except Exception:
            logger.exception("[SYNC] Reload failed.")

    async def _poll(self) -> None:
        # A reload may stop this session from inside the loop.
        while not self.closed:
            await self._sleep(self.poll_interval)
            await self._safe_reload()
