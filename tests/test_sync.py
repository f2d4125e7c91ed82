import asyncio
from collections.abc import AsyncIterator, Callable

import pytest

from finance_tracker.client.channel import ChannelError, ChannelEvent
from finance_tracker.client.sync import BackoffPolicy, SyncOrchestrator, SyncState


class ScriptedChannel:
    def __init__(self, events: list[ChannelEvent] | None = None, error: Exception | None = None, hang: bool = False):
        self._events = events or []
        self._error = error
        self._hang = hang
        self.closed = False

    async def events(self) -> AsyncIterator[ChannelEvent]:
        for event in self._events:
            yield event
        if self._error is not None:
            raise self._error
        if self._hang:
            await asyncio.Event().wait()

    async def close(self) -> None:
        self.closed = True


class ChannelFactory:
    def __init__(self, *channels: ScriptedChannel, fallback: Callable[[], ScriptedChannel] | None = None):
        self._channels = list(channels)
        self._fallback = fallback or (lambda: ScriptedChannel(error=ChannelError("connection refused")))
        self.opened: list[ScriptedChannel] = []

    def __call__(self) -> ScriptedChannel:
        channel = self._channels.pop(0) if self._channels else self._fallback()
        self.opened.append(channel)
        return channel


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class ReloadCounter:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls = 0
        self.error = error

    async def __call__(self) -> None:
        self.calls += 1
        if self.error is not None:
            raise self.error


def _change(user_id: str) -> ChannelEvent:
    return ChannelEvent(type="transaction_update", user_id=user_id)


async def _wait_until(predicate: Callable[[], bool]) -> None:
    for _ in range(1000):
        if predicate():
            return
        await asyncio.sleep(0.001)
    raise AssertionError("condition not reached")


def test_backoff_policy() -> None:
    policy = BackoffPolicy()

    assert policy.delay(0) == 5.0
    assert policy.delay(1) == 5.0
    assert policy.delay(2) == 10.0
    assert policy.delay(50) == 60.0
    assert not policy.exhausted(2)
    assert policy.exhausted(3)


@pytest.mark.anyio
async def test_three_failures_switch_to_polling() -> None:
    factory = ChannelFactory()
    sleep = RecordingSleep()
    reload = ReloadCounter()
    sync = SyncOrchestrator("u1", factory, reload, sleep=sleep)

    sync.start()
    await _wait_until(lambda: reload.calls >= 2)
    await sync.stop()

    assert len(factory.opened) == 3
    assert all(channel.closed for channel in factory.opened)
    assert sleep.delays[:2] == [5.0, 10.0]
    assert all(delay == 10.0 for delay in sleep.delays[2:])
    assert sync.history[:8] == [
        SyncState.IDLE,
        SyncState.CONNECTING,
        SyncState.DEGRADED,
        SyncState.CONNECTING,
        SyncState.DEGRADED,
        SyncState.CONNECTING,
        SyncState.DEGRADED,
        SyncState.POLLING,
    ]
    assert sync.history[-1] is SyncState.CLOSED
    assert sync.closed


@pytest.mark.anyio
async def test_polling_survives_reload_failures() -> None:
    reload = ReloadCounter(error=RuntimeError("server down"))
    sync = SyncOrchestrator("u1", ChannelFactory(), reload, sleep=RecordingSleep())

    sync.start()
    await _wait_until(lambda: reload.calls >= 3)

    assert sync.polling
    await sync.stop()


@pytest.mark.anyio
async def test_reload_can_stop_polling_session() -> None:
    sleep = RecordingSleep()
    calls: list[SyncState] = []

    async def reload_then_stop() -> None:
        calls.append(sync.state)
        await sync.stop()

    sync = SyncOrchestrator("u1", ChannelFactory(), reload_then_stop, sleep=sleep, poll_interval=10.0)

    sync.start()
    await _wait_until(lambda: sync.closed)
    await asyncio.sleep(0.01)

    assert calls == [SyncState.POLLING]
    assert sleep.delays == [5.0, 10.0, 10.0]
    assert sync.history[-2:] == [SyncState.POLLING, SyncState.CLOSED]


@pytest.mark.anyio
async def test_supervisor_crash_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    def broken_factory() -> ScriptedChannel:
        raise RuntimeError("no channel")

    sync = SyncOrchestrator("u1", broken_factory, ReloadCounter(), sleep=RecordingSleep())

    with caplog.at_level("ERROR"):
        sync.start()
        await _wait_until(lambda: sync._task is not None and sync._task.done())
        await asyncio.sleep(0)

    assert "stopped unexpectedly" in caplog.text
    await sync.stop()
    assert sync.closed


@pytest.mark.anyio
async def test_first_event_goes_live_and_matching_change_reloads() -> None:
    channel = ScriptedChannel([ChannelEvent(type="connected"), _change("u1"), _change("u2")], hang=True)
    reload = ReloadCounter()
    sync = SyncOrchestrator("u1", ChannelFactory(channel), reload, sleep=RecordingSleep())

    sync.start()
    await _wait_until(lambda: reload.calls == 1)
    await asyncio.sleep(0.01)

    assert sync.state is SyncState.LIVE
    assert reload.calls == 1

    await sync.stop()
    assert channel.closed
    assert sync.state is SyncState.CLOSED


@pytest.mark.anyio
async def test_stream_end_counts_as_failure() -> None:
    factory = ChannelFactory(ScriptedChannel([ChannelEvent(type="connected")]), fallback=lambda: ScriptedChannel(hang=True))
    sleep = RecordingSleep()
    sync = SyncOrchestrator("u1", factory, ReloadCounter(), sleep=sleep)

    sync.start()
    await _wait_until(lambda: len(factory.opened) == 2)

    assert sync.failures == 1
    assert sleep.delays == [5.0]
    assert SyncState.LIVE in sync.history
    await sync.stop()


@pytest.mark.anyio
async def test_heartbeat_resets_failure_count() -> None:
    factory = ChannelFactory(
        ScriptedChannel(error=ChannelError("dropped")),
        ScriptedChannel([ChannelEvent(type="heartbeat")], hang=True),
    )
    sync = SyncOrchestrator("u1", factory, ReloadCounter(), sleep=RecordingSleep())

    sync.start()
    await _wait_until(lambda: sync.state is SyncState.LIVE)

    assert sync.failures == 0
    await sync.stop()


@pytest.mark.anyio
async def test_heartbeat_reset_can_be_disabled() -> None:
    factory = ChannelFactory(
        ScriptedChannel(error=ChannelError("dropped")),
        ScriptedChannel([ChannelEvent(type="heartbeat")], hang=True),
    )
    sync = SyncOrchestrator("u1", factory, ReloadCounter(), sleep=RecordingSleep(), reset_on_heartbeat=False)

    sync.start()
    await _wait_until(lambda: sync.state is SyncState.LIVE)

    assert sync.failures == 1
    await sync.stop()


@pytest.mark.anyio
async def test_stop_is_idempotent() -> None:
    sync = SyncOrchestrator("u1", ChannelFactory(fallback=lambda: ScriptedChannel(hang=True)), ReloadCounter())

    sync.start()
    await asyncio.sleep(0)
    await sync.stop()
    await sync.stop()

    assert sync.history.count(SyncState.CLOSED) == 1


def test_invalid_transitions_raise() -> None:
    sync = SyncOrchestrator("u1", ChannelFactory(), ReloadCounter())

    with pytest.raises(RuntimeError, match="idle -> live"):
        sync._transition(SyncState.LIVE)

    sync.state = SyncState.POLLING
    with pytest.raises(RuntimeError):
        sync._transition(SyncState.CONNECTING)
