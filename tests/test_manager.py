"""
Tests for LinkManager: start/stop/deliver, queue draining and link loss.

The serial port is replaced by FakeLink; delays are shrunk to zero unless a
test is about timing.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from fake_link import FakeLink
from robobridge.events import BroadcastSink
from robobridge.link.errors import ConfigureError, OpenError, OpenErrorKind, WriteError
from robobridge.link.manager import LinkConfig, LinkManager, LinkState
from robobridge.link.pending import Trigger
from robobridge.link.reconnect import AutoReconnect


# ── Fixtures / helpers ────────────────────────────────────────────────────────


class LinkFactory:
    """Hands out pre-built FakeLinks (or fresh ones) and remembers them."""

    def __init__(self, *links: FakeLink) -> None:
        self._queued = list(links)
        self.created: list[FakeLink] = []

    def __call__(self, config: LinkConfig) -> FakeLink:
        link = self._queued.pop(0) if self._queued else FakeLink(config.path)
        self.created.append(link)
        return link


def _config(**overrides) -> LinkConfig:
    values = dict(
        path="/dev/fake",
        baudrate=9600,
        open_attempts=3,
        open_retry_delay=0,
        settle_delay=0,
        drain_throttle=0,
        watch_key="Robot1111111111111111111111111111111111111",
    )
    values.update(overrides)
    return LinkConfig(**values)


def _busy() -> OpenError:
    return OpenError("Resource busy", OpenErrorKind.TRANSIENT)


def _make_manager(*links: FakeLink, source=None, **config):
    sink = BroadcastSink()
    events = []
    sink.add_listener(events.append)
    factory = LinkFactory(*links)
    manager = LinkManager(_config(**config), sink, source=source, link_factory=factory)
    return manager, factory, events


def _kinds(events) -> list[str]:
    return [event.kind for event in events]


def _fake_source() -> AsyncMock:
    source = AsyncMock()
    source.subscribe = AsyncMock(return_value=42)
    source.unsubscribe = AsyncMock()
    return source


# ── start ─────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestStart:
    async def test_start_brings_link_up(self):
        """Opens, configures and reports the link as running."""
        manager, factory, events = _make_manager()

        outcome = await manager.start()

        assert outcome.ok is True
        assert outcome.error is None
        assert manager.state is LinkState.RUNNING
        assert manager.status() == {"running": True, "path": "/dev/fake"}
        link = factory.created[0]
        assert link.is_open
        assert link.control_lines == (True, True)
        assert set(link.listeners) == {"data", "error", "close"}
        assert events[-1].kind == "status"
        assert events[-1].payload == {"running": True, "path": "/dev/fake"}

    async def test_start_when_running_is_noop(self):
        """A second start on a running link opens nothing new."""
        manager, factory, _ = _make_manager()
        await manager.start()

        outcome = await manager.start()

        assert outcome.ok is True
        assert len(factory.created) == 1

    async def test_fatal_open_error_returns_failure(self):
        """A fatal open error fails the start without retrying."""
        link = FakeLink(open_errors=[OpenError("No such file or directory")])
        manager, factory, _ = _make_manager(link)

        outcome = await manager.start()

        assert outcome.ok is False
        assert "Failed to open serial port" in outcome.error
        assert "No such file" in outcome.error
        assert manager.state is LinkState.STOPPED
        assert manager._handle is None
        assert link.open_calls == 1

    async def test_two_transient_failures_then_running(self):
        """Busy, busy, ok ends with a running link."""
        link = FakeLink(open_errors=[_busy(), _busy(), None])
        manager, _, _ = _make_manager(link)

        outcome = await manager.start()

        assert outcome.ok is True
        assert manager.state is LinkState.RUNNING
        assert link.open_calls == 3

    async def test_three_transient_failures_give_up(self):
        """Gives up after the configured number of attempts."""
        link = FakeLink(open_errors=[_busy(), _busy(), _busy(), None])
        manager, _, _ = _make_manager(link)

        outcome = await manager.start()

        assert outcome.ok is False
        assert link.open_calls == 3
        assert manager.state is LinkState.STOPPED

    async def test_busy_busy_ok_waits_for_retry_delay(self):
        """Waits the retry delay between transient failures."""
        link = FakeLink(open_errors=[_busy(), _busy(), None])
        manager, _, _ = _make_manager(link, open_retry_delay=0.4)

        loop = asyncio.get_running_loop()
        started = loop.time()
        outcome = await manager.start()

        assert outcome.ok is True
        assert loop.time() - started >= 0.8

    async def test_configure_failure_cleans_up(self):
        """A control-line failure closes the handle and fails the start."""
        link = FakeLink(configure_error=ConfigureError("cannot set DTR"))
        manager, _, _ = _make_manager(link)

        outcome = await manager.start()

        assert outcome.ok is False
        assert "DTR" in outcome.error
        assert manager.state is LinkState.STOPPED
        assert manager._handle is None
        assert not link.is_open

    async def test_concurrent_starts_share_one_handle(self):
        """Concurrent starts await one attempt and open one handle."""
        manager, factory, _ = _make_manager(settle_delay=0.05)

        outcomes = await asyncio.gather(*(manager.start() for _ in range(5)))

        assert all(outcome.ok for outcome in outcomes)
        assert len(factory.created) == 1
        assert manager.state is LinkState.RUNNING

    async def test_concurrent_starts_share_failure(self):
        """Concurrent starts all see the same failure."""
        link = FakeLink(open_errors=[_busy(), _busy(), _busy()])
        manager, factory, _ = _make_manager(link, open_retry_delay=0.01)

        first, second = await asyncio.gather(manager.start(), manager.start())

        assert first == second
        assert first.ok is False
        assert len(factory.created) == 1

    async def test_subscribes_to_event_source(self):
        """Subscribes to the watched account once running."""
        source = _fake_source()
        manager, _, _ = _make_manager(source=source)

        await manager.start()

        source.subscribe.assert_awaited_once()
        key, callback = source.subscribe.await_args.args
        assert key == "Robot1111111111111111111111111111111111111"
        assert callable(callback)

    async def test_subscription_failure_fails_start(self):
        """A failed subscription releases the handle and fails the start."""
        source = _fake_source()
        source.subscribe.side_effect = RuntimeError("rpc down")
        manager, factory, _ = _make_manager(source=source)

        outcome = await manager.start()

        assert outcome.ok is False
        assert "rpc down" in outcome.error
        assert manager.state is LinkState.STOPPED
        assert not factory.created[0].is_open

    async def test_stale_handle_is_closed_before_new_start(self):
        """A leftover handle is closed before a new one is opened."""
        manager, factory, _ = _make_manager()
        await manager.start()
        stale = factory.created[0]
        # Simulate a lost link whose cleanup has not run yet
        manager._state = LinkState.STOPPED

        await manager.start()

        assert len(factory.created) == 2
        assert not stale.is_open
        assert factory.created[1].is_open

    async def test_start_aborts_if_stopped_during_settle(self):
        """A stop during the settle delay aborts the start."""
        manager, factory, _ = _make_manager(settle_delay=0.1)

        start_task = asyncio.create_task(manager.start())
        await asyncio.sleep(0.02)
        assert manager.state is LinkState.STARTING
        await manager.stop()
        outcome = await start_task

        assert outcome.ok is False
        assert manager.state is LinkState.STOPPED
        assert not factory.created[0].is_open


# ── stop ──────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestStop:
    async def test_stop_releases_everything(self):
        """Closes the handle, unsubscribes and broadcasts the link as down."""
        source = _fake_source()
        manager, factory, events = _make_manager(source=source)
        await manager.start()

        outcome = await manager.stop()

        assert outcome.ok is True
        assert manager.state is LinkState.STOPPED
        assert manager._handle is None
        assert manager.status() == {"running": False, "path": None}
        assert not factory.created[0].is_open
        source.unsubscribe.assert_awaited_once_with(42)
        assert events[-1].kind == "status"
        assert events[-1].payload == {"running": False}

    async def test_stop_when_never_started(self):
        """Stopping a stopped link is a no-op that still succeeds."""
        manager, _, _ = _make_manager()
        outcome = await manager.stop()
        assert outcome.ok is True
        assert manager.state is LinkState.STOPPED

    async def test_stop_survives_close_failure(self):
        """A refused close falls back to destroy."""
        link = FakeLink(close_error=OSError("close refused"))
        manager, _, _ = _make_manager(link)
        await manager.start()

        outcome = await manager.stop()

        assert outcome.ok is True
        assert manager._handle is None
        assert manager.state is LinkState.STOPPED
        assert link.destroy_calls == 1

    async def test_stop_survives_unsubscribe_failure(self):
        """An unsubscribe error does not block the stop."""
        source = _fake_source()
        source.unsubscribe.side_effect = RuntimeError("socket gone")
        manager, _, _ = _make_manager(source=source)
        await manager.start()

        outcome = await manager.stop()

        assert outcome.ok is True
        assert manager._handle is None
        assert manager.state is LinkState.STOPPED


# ── deliver ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestDeliver:
    async def test_deliver_while_stopped_queues(self):
        """Triggers are queued while the link is down."""
        manager, _, events = _make_manager()

        written = await manager.deliver(Trigger(msg="F"))

        assert written is False
        assert manager.pending_count() == 1
        assert events[-1].kind == "queued"
        assert events[-1].payload["count"] == 1

    async def test_queued_trigger_written_once_on_start(self):
        """A queued trigger is written exactly once on start."""
        manager, factory, events = _make_manager()
        await manager.deliver(Trigger(msg="F", signature="sig-1"))

        await manager.start()

        assert factory.created[0].written_commands == ["F"]
        assert manager.pending_count() == 0
        sent = [e for e in events if e.kind == "sent"]
        assert len(sent) == 1
        assert sent[0].payload["signature"] == "sig-1"

    async def test_queued_triggers_drain_in_order(self):
        """Queued triggers go out in arrival order."""
        manager, factory, _ = _make_manager()
        for msg in ["A", "B", "C"]:
            await manager.deliver(Trigger(msg=msg))

        await manager.start()

        assert factory.created[0].written_commands == ["A", "B", "C"]

    async def test_deliver_while_running_writes_immediately(self):
        """A running link with an empty queue writes straight away."""
        manager, factory, events = _make_manager()
        await manager.start()

        written = await manager.deliver(Trigger(msg="F", source="api", signature="sig"))

        assert written is True
        assert factory.created[0].writes == [b"F\n"]
        assert events[-1].kind == "sent"
        assert events[-1].payload == {"msg": "F", "trigger": "api", "signature": "sig"}

    async def test_write_failure_queues_trigger_and_takes_link_down(self):
        """A failed write keeps the trigger queued and marks the link down."""
        link = FakeLink(write_errors=[WriteError("device busy")])
        manager, _, events = _make_manager(link)
        await manager.start()

        written = await manager.deliver(Trigger(msg="F"))

        assert written is False
        assert manager.pending_count() == 1
        assert manager.state is LinkState.STOPPED
        assert _kinds(events)[-2:] == ["queued", "status"]
        assert events[-1].payload == {"running": False, "error": "Write failed: device busy"}

        await asyncio.sleep(0.01)
        assert manager._handle is None
        assert not link.is_open

    async def test_write_glitch_backlog_delivered_after_reconnect(self):
        """After a write glitch the next reconnect writes the whole backlog in order."""
        link = FakeLink(write_errors=[WriteError("glitch")])
        manager, factory, _ = _make_manager(link)
        await manager.start()

        results = [await manager.deliver(Trigger(msg=f"T{i}")) for i in range(5)]
        await asyncio.sleep(0.01)

        assert results == [False] * 5
        assert manager.pending_count() == 5
        assert await AutoReconnect(manager, interval=60).tick() is True

        assert manager.state is LinkState.RUNNING
        assert factory.created[1].written_commands == ["T0", "T1", "T2", "T3", "T4"]
        assert manager.pending_count() == 0

    async def test_failed_drain_resumes_in_order_on_next_start(self):
        """A failed drain write is retried first on the next start, ahead of newer triggers."""
        link = FakeLink(write_errors=[WriteError("glitch")])
        manager, factory, _ = _make_manager(link)
        await manager.deliver(Trigger(msg="A"))

        # The drain on start fails, keeps "A" queued and takes the link down
        await manager.start()
        assert manager.pending_count() == 1
        assert manager.state is LinkState.STOPPED

        written = await manager.deliver(Trigger(msg="B"))
        assert written is False
        assert [t.msg for t in manager.pending_items()] == ["A", "B"]

        await asyncio.sleep(0.01)
        outcome = await manager.start()

        assert outcome.ok is True
        assert link.written_commands == []
        assert factory.created[1].written_commands == ["A", "B"]
        assert manager.pending_count() == 0

    async def test_deliveries_during_drain_are_queued_behind(self):
        """Triggers arriving mid-drain wait behind the backlog."""
        manager, factory, _ = _make_manager(drain_throttle=0.05)
        for msg in ["A", "B"]:
            await manager.deliver(Trigger(msg=msg))

        start_task = asyncio.create_task(manager.start())
        await asyncio.sleep(0.02)
        written = await manager.deliver(Trigger(msg="C"))
        await start_task

        assert written is False
        assert factory.created[0].written_commands == ["A", "B", "C"]
        assert manager.pending_count() == 0


# ── Draining vs stop ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_stop_during_drain_throttle_halts_drain():
    """A stop during the drain pause leaves the rest queued."""
    manager, factory, _ = _make_manager(drain_throttle=0.1)
    for msg in ["A", "B", "C"]:
        await manager.deliver(Trigger(msg=msg))

    start_task = asyncio.create_task(manager.start())
    # Let the first item go out and the throttle sleep begin
    await asyncio.sleep(0.03)
    await manager.stop()
    await start_task
    await asyncio.sleep(0.15)

    link = factory.created[0]
    assert link.written_commands == ["A"]
    assert [t.msg for t in manager.pending_items()] == ["B", "C"]
    assert manager.state is LinkState.STOPPED


@pytest.mark.asyncio
async def test_drain_pending_is_noop_when_stopped():
    """Draining without a live link writes nothing."""
    manager, _, _ = _make_manager()
    await manager.deliver(Trigger())
    assert await manager.drain_pending() == 0
    assert manager.pending_count() == 1


# ── Link loss ─────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestLinkLoss:
    async def test_runtime_error_marks_link_down_and_cleans_up(self):
        """A read error marks the link down and releases it."""
        source = _fake_source()
        manager, factory, events = _make_manager(source=source)
        await manager.start()
        link = factory.created[0]

        link.lose(OSError("device disconnected"))

        assert manager.state is LinkState.STOPPED
        down = [e for e in events if e.kind == "status" and not e.payload["running"]]
        assert len(down) == 1
        assert "device disconnected" in down[0].payload["error"]

        # Let the spawned cleanup run
        await asyncio.sleep(0.01)
        assert manager._handle is None
        source.unsubscribe.assert_awaited_once_with(42)

    async def test_triggers_after_loss_are_queued_then_delivered(self):
        """Triggers queued after a loss go out on the next start."""
        manager, factory, _ = _make_manager()
        await manager.start()
        factory.created[0].lose(OSError("unplugged"))
        await asyncio.sleep(0.01)

        assert await manager.deliver(Trigger(msg="F")) is False

        await manager.start()
        assert factory.created[1].written_commands == ["F"]
        assert manager.pending_count() == 0


# ── Event source / broadcast ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_account_change_delivers_default_trigger():
    """An account change writes the default command."""
    source = _fake_source()
    manager, factory, events = _make_manager(source=source)
    await manager.start()
    _, on_change = source.subscribe.await_args.args

    on_change({"lamports": 1})
    await asyncio.sleep(0.01)

    assert factory.created[0].written_commands == ["F"]
    sent = [e for e in events if e.kind == "sent"]
    assert sent[-1].payload["trigger"] == "chain"


@pytest.mark.asyncio
async def test_serial_data_is_broadcast():
    """Bytes read from the device are broadcast as text."""
    manager, factory, events = _make_manager()
    await manager.start()

    factory.created[0].emit("data", b"OK\r\n")

    assert events[-1].kind == "serial-data"
    assert events[-1].payload == {"text": "OK\r\n"}


@pytest.mark.asyncio
async def test_character_split_across_reads_is_decoded_once():
    """A UTF-8 character split over two reads comes out whole."""
    manager, factory, events = _make_manager()
    await manager.start()
    link = factory.created[0]

    link.emit("data", b"caf\xc3")
    link.emit("data", b"\xa9!")

    texts = [e.payload["text"] for e in events if e.kind == "serial-data"]
    assert texts == ["caf", "é!"]


@pytest.mark.asyncio
async def test_close_stops_link():
    """close() stops the link."""
    manager, factory, _ = _make_manager()
    await manager.start()

    await manager.close()

    assert manager.state is LinkState.STOPPED
    assert not factory.created[0].is_open
