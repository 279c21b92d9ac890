"""
Tests for the event dispatcher and subscriptions.

These tests verify broadcast ordering, the subscribe-before-dispatch
guarantee, bounded buffers with lag reporting, and teardown behaviour.
"""

import asyncio

import pytest
from fakes import KEY_B

from meshcore_client.core.events import (
    AckEvent,
    ConnectedEvent,
    ContactUriEvent,
    DisconnectedEvent,
    ErrorEvent,
    EventDispatcher,
    OkEvent,
    RawPacketEvent,
    SelfInfoEvent,
    TelemetryResponseEvent,
    expects,
)
from meshcore_client.core.models import SelfInfo
from meshcore_client.errors import ChannelClosedError, CommandTimeoutError, SubscriptionLagged
from meshcore_client.protocol.telemetry import Telemetry

# -----------------------------------------------------------------------------
# Dispatch Tests
# -----------------------------------------------------------------------------


class TestDispatch:
    """Tests for EventDispatcher.dispatch()."""

    def test_dispatch_without_subscribers(self, dispatcher: EventDispatcher) -> None:
        """Dispatching with nobody listening is a no-op."""
        assert dispatcher.dispatch(OkEvent()) == 0

    def test_every_subscriber_sees_every_event_in_order(self, dispatcher: EventDispatcher) -> None:
        first = dispatcher.subscribe()
        second = dispatcher.subscribe()
        events = [AckEvent(code=1), OkEvent(), AckEvent(code=2)]

        for event in events:
            assert dispatcher.dispatch(event) == 2

        for sub in (first, second):
            assert [sub.get_nowait() for _ in events] == events
            assert sub.get_nowait() is None

    def test_only_events_after_subscribe_are_seen(self, dispatcher: EventDispatcher) -> None:
        dispatcher.dispatch(AckEvent(code=1))
        sub = dispatcher.subscribe()
        dispatcher.dispatch(AckEvent(code=2))

        assert sub.get_nowait() == AckEvent(code=2)
        assert sub.get_nowait() is None

    def test_unsubscribed_sees_nothing_more(self, dispatcher: EventDispatcher) -> None:
        sub = dispatcher.subscribe()
        dispatcher.dispatch(OkEvent())
        sub.close()
        dispatcher.dispatch(AckEvent(code=1))

        assert dispatcher.subscriber_count == 0
        assert sub.closed
        # Buffered events remain readable after close
        assert isinstance(sub.get_nowait(), OkEvent)
        with pytest.raises(ChannelClosedError):
            sub.get_nowait()

    def test_unsubscribe_twice(self, dispatcher: EventDispatcher) -> None:
        sub = dispatcher.subscribe()

        assert dispatcher.unsubscribe(sub) is True
        assert dispatcher.unsubscribe(sub) is False

    def test_context_manager_unsubscribes(self, dispatcher: EventDispatcher) -> None:
        with dispatcher.subscribe():
            assert dispatcher.subscriber_count == 1
        assert dispatcher.subscriber_count == 0


# -----------------------------------------------------------------------------
# Subscription Tests
# -----------------------------------------------------------------------------


class TestSubscription:
    """Tests for receiving from a subscription."""

    async def test_recv_waits_for_dispatch(self, dispatcher: EventDispatcher) -> None:
        sub = dispatcher.subscribe()
        task = asyncio.create_task(sub.recv())
        await asyncio.sleep(0)
        assert not task.done()

        dispatcher.dispatch(AckEvent(code=9))

        assert await asyncio.wait_for(task, 1.0) == AckEvent(code=9)

    async def test_lag_reported_once(self) -> None:
        """A full buffer drops the oldest events and reports how many."""
        dispatcher = EventDispatcher(queue_size=2)
        sub = dispatcher.subscribe()
        for code in range(5):
            dispatcher.dispatch(AckEvent(code=code))

        with pytest.raises(SubscriptionLagged) as exc_info:
            await sub.recv()
        assert exc_info.value.missed == 3

        assert await sub.recv() == AckEvent(code=3)
        assert await sub.recv() == AckEvent(code=4)

    async def test_slow_subscriber_does_not_affect_others(self) -> None:
        dispatcher = EventDispatcher(queue_size=2)
        slow = dispatcher.subscribe()
        fast = dispatcher.subscribe(queue_size=10)
        for code in range(5):
            dispatcher.dispatch(AckEvent(code=code))

        assert [fast.get_nowait().code for _ in range(5)] == [0, 1, 2, 3, 4]
        with pytest.raises(SubscriptionLagged):
            slow.get_nowait()

    async def test_close_all_wakes_waiters(self, dispatcher: EventDispatcher) -> None:
        sub = dispatcher.subscribe()
        task = asyncio.create_task(sub.recv())
        await asyncio.sleep(0)

        dispatcher.close_all()

        with pytest.raises(ChannelClosedError):
            await asyncio.wait_for(task, 1.0)
        assert dispatcher.subscriber_count == 0

    async def test_subscribe_after_close_all(self, dispatcher: EventDispatcher) -> None:
        dispatcher.subscribe()
        dispatcher.close_all()
        sub = dispatcher.subscribe()
        dispatcher.dispatch(OkEvent())

        assert isinstance(await sub.recv(), OkEvent)

    async def test_async_iteration_stops_on_close(self, dispatcher: EventDispatcher) -> None:
        sub = dispatcher.subscribe()
        dispatcher.dispatch(AckEvent(code=1))
        dispatcher.dispatch(AckEvent(code=2))
        dispatcher.close_all()

        received = [event async for event in sub]

        assert [e.code for e in received] == [1, 2]

    async def test_async_iteration_skips_lag(self) -> None:
        dispatcher = EventDispatcher(queue_size=1)
        sub = dispatcher.subscribe()
        dispatcher.dispatch(AckEvent(code=1))
        dispatcher.dispatch(AckEvent(code=2))
        dispatcher.close_all()

        received = [event async for event in sub]

        assert received == [AckEvent(code=2)]


class TestWaitFor:
    """Tests for predicate waits."""

    async def test_skips_non_matching(self, dispatcher: EventDispatcher) -> None:
        sub = dispatcher.subscribe()
        dispatcher.dispatch(AckEvent(code=1))
        dispatcher.dispatch(OkEvent())
        dispatcher.dispatch(AckEvent(code=2))

        event = await sub.wait_for(lambda e: isinstance(e, AckEvent) and e.code == 2, 1.0)

        assert event == AckEvent(code=2)

    async def test_timeout(self, dispatcher: EventDispatcher) -> None:
        sub = dispatcher.subscribe()

        with pytest.raises(CommandTimeoutError) as exc_info:
            await sub.wait_for(expects(OkEvent), 0.05)

        assert isinstance(exc_info.value, TimeoutError)
        assert exc_info.value.timeout == 0.05

    async def test_closed_while_waiting(self, dispatcher: EventDispatcher) -> None:
        sub = dispatcher.subscribe()
        loop = asyncio.get_running_loop()
        loop.call_soon(dispatcher.close_all)

        with pytest.raises(ChannelClosedError):
            await sub.wait_for(expects(OkEvent), 1.0)

    async def test_dispatcher_wait_for_cleans_up(self, dispatcher: EventDispatcher) -> None:
        loop = asyncio.get_running_loop()
        loop.call_soon(dispatcher.dispatch, ErrorEvent(message="nope"))

        event = await dispatcher.wait_for(expects(ErrorEvent), 1.0)

        assert event.message == "nope"
        assert dispatcher.subscriber_count == 0

    async def test_lag_while_waiting_is_skipped(self) -> None:
        """A waiter that lagged still finds a later match."""
        dispatcher = EventDispatcher(queue_size=1)
        sub = dispatcher.subscribe()
        dispatcher.dispatch(OkEvent())
        dispatcher.dispatch(AckEvent(code=7))

        event = await sub.wait_for(expects(AckEvent), 1.0)

        assert event == AckEvent(code=7)


# -----------------------------------------------------------------------------
# Serialization Tests
# -----------------------------------------------------------------------------


class TestToDict:
    """Tests for JSON-friendly event rendering."""

    def test_event_type_names(self) -> None:
        assert OkEvent().event_type == "response.ok"
        assert AckEvent().event_type == "message.ack"
        assert ConnectedEvent().event_type == "connection.connected"

    def test_simple_fields(self) -> None:
        assert AckEvent(code=5).to_dict() == {"type": "message.ack", "code": 5}

    def test_nested_records(self) -> None:
        data = SelfInfoEvent(info=SelfInfo(public_key=KEY_B, name="n")).to_dict()

        assert data["type"] == "device.self_info"
        assert data["info"]["public_key"] == KEY_B.hex()
        assert data["info"]["name"] == "n"
        assert data["info"]["radio"]["spreading_factor"] == 7

    def test_bytes_as_hex(self) -> None:
        data = RawPacketEvent(packet_type=0x7F, data=b"\x01\xff", error="no decoder").to_dict()
        assert data["data"] == "01ff"

    def test_telemetry(self) -> None:
        event = TelemetryResponseEvent(telemetry=Telemetry.parse(bytes([0x01, 0x67, 0x00, 0xFA])))
        readings = event.to_dict()["telemetry"]

        assert readings == [{"channel": 1, "type": 0x67, "name": "temperature", "value": 25.0}]

    def test_disconnected_reason(self) -> None:
        assert DisconnectedEvent(reason="eof").to_dict() == {"type": "connection.disconnected", "reason": "eof"}
        assert DisconnectedEvent().to_dict() == {"type": "connection.disconnected"}

    def test_contact_uri(self) -> None:
        assert ContactUriEvent(uri="meshcore://00").to_dict()["uri"] == "meshcore://00"
