"""
Tests for command/response correlation.

The transport is mocked; device answers are dispatched directly on the
dispatcher, either from inside send() (an answer racing the write) or
from a scheduled callback (an answer arriving later).
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from meshcore_client.client.engine import AckTracker, CommandEngine
from meshcore_client.core.events import (
    AckEvent,
    ErrorEvent,
    EventDispatcher,
    MessageSentEvent,
    OkEvent,
    SelfInfoEvent,
)
from meshcore_client.errors import (
    ChannelClosedError,
    CommandTimeoutError,
    DeviceError,
    NotConnectedError,
    TransportError,
)
from meshcore_client.protocol.frame import encode_frame

# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def mock_transport() -> MagicMock:
    """Create a connected mock transport."""
    transport = MagicMock()
    transport.is_connected = True
    transport.send = AsyncMock()
    return transport


@pytest.fixture
def engine(mock_transport: MagicMock, dispatcher: EventDispatcher) -> CommandEngine:
    """Create a command engine with a short timeout and no settle delay."""
    return CommandEngine(mock_transport, dispatcher, timeout=0.2, settle_delay=0.0)


def answer_with(dispatcher: EventDispatcher, *events):
    """Make transport.send dispatch events as if the device answered instantly."""

    async def _send(data: bytes) -> None:
        for event in events:
            dispatcher.dispatch(event)

    return _send


# -----------------------------------------------------------------------------
# Wait-for-shape Tests
# -----------------------------------------------------------------------------


class TestSendAndWait:
    """Tests for the wait-for-shape pattern."""

    async def test_writes_framed_payload(
        self, engine: CommandEngine, mock_transport: MagicMock, dispatcher: EventDispatcher
    ) -> None:
        mock_transport.send.side_effect = answer_with(dispatcher, OkEvent())

        await engine.send_expect_ok(b"\x07")

        mock_transport.send.assert_awaited_once_with(encode_frame(b"\x07"))

    async def test_answer_during_write_is_not_missed(
        self, engine: CommandEngine, mock_transport: MagicMock, dispatcher: EventDispatcher
    ) -> None:
        """The subscription exists before the write, so an instant answer is seen."""
        mock_transport.send.side_effect = answer_with(dispatcher, SelfInfoEvent())

        event = await engine.send_and_wait(b"\x01", (SelfInfoEvent,))

        assert isinstance(event, SelfInfoEvent)

    async def test_skips_unrelated_events(
        self, engine: CommandEngine, mock_transport: MagicMock, dispatcher: EventDispatcher
    ) -> None:
        mock_transport.send.side_effect = answer_with(dispatcher, AckEvent(code=1), OkEvent())

        await engine.send_expect_ok(b"\x07")

    async def test_error_becomes_device_error(
        self, engine: CommandEngine, mock_transport: MagicMock, dispatcher: EventDispatcher
    ) -> None:
        mock_transport.send.side_effect = answer_with(dispatcher, ErrorEvent(message="error code 2", code=2))

        with pytest.raises(DeviceError) as exc_info:
            await engine.send_and_wait(b"\x01", (SelfInfoEvent,))

        assert exc_info.value.code == 2

    async def test_error_returned_when_expected(
        self, engine: CommandEngine, mock_transport: MagicMock, dispatcher: EventDispatcher
    ) -> None:
        mock_transport.send.side_effect = answer_with(dispatcher, ErrorEvent(message="x"))

        event = await engine.send_and_wait(b"\x01", (OkEvent, ErrorEvent))

        assert isinstance(event, ErrorEvent)

    async def test_timeout(self, engine: CommandEngine, dispatcher: EventDispatcher) -> None:
        with pytest.raises(CommandTimeoutError):
            await engine.send_expect_ok(b"\x07", timeout=0.05)

        assert dispatcher.subscriber_count == 0

    async def test_late_answer(self, engine: CommandEngine, dispatcher: EventDispatcher) -> None:
        asyncio.get_running_loop().call_later(0.01, dispatcher.dispatch, OkEvent())

        await engine.send_expect_ok(b"\x07")

    async def test_not_connected(self, engine: CommandEngine, mock_transport: MagicMock) -> None:
        mock_transport.is_connected = False

        with pytest.raises(NotConnectedError):
            await engine.send_expect_ok(b"\x07")
        mock_transport.send.assert_not_awaited()

    async def test_transport_failure_propagates(
        self, engine: CommandEngine, mock_transport: MagicMock, dispatcher: EventDispatcher
    ) -> None:
        mock_transport.send.side_effect = TransportError("write failed")

        with pytest.raises(TransportError):
            await engine.send_expect_ok(b"\x07")
        assert dispatcher.subscriber_count == 0

    async def test_send_requires_live_subscription(self, engine: CommandEngine, dispatcher: EventDispatcher) -> None:
        sub = dispatcher.subscribe()
        sub.close()

        with pytest.raises(ValueError):
            await engine.send(sub, b"\x07")

    async def test_concurrent_commands_each_get_an_answer(
        self, engine: CommandEngine, dispatcher: EventDispatcher
    ) -> None:
        """Two waiters for the same shape are both satisfied by one broadcast."""
        asyncio.get_running_loop().call_later(0.01, dispatcher.dispatch, OkEvent())

        await asyncio.gather(engine.send_expect_ok(b"\x07"), engine.send_expect_ok(b"\x07"))


class TestFireAndForget:
    """Tests for commands that do not wait for an answer."""

    async def test_returns_without_answer(self, engine: CommandEngine, mock_transport: MagicMock) -> None:
        await engine.send_fire_and_forget(b"\x08name")

        mock_transport.send.assert_awaited_once_with(encode_frame(b"\x08name"))

    async def test_tags_increase(self, engine: CommandEngine) -> None:
        first = engine.next_tag()
        second = engine.next_tag()

        assert second == first + 1


# -----------------------------------------------------------------------------
# Ack Tracking Tests
# -----------------------------------------------------------------------------


class TestAckTracking:
    """Tests for the MessageSent + Ack pattern."""

    async def test_ack_right_behind_msg_sent(
        self, engine: CommandEngine, mock_transport: MagicMock, dispatcher: EventDispatcher
    ) -> None:
        """An ack dispatched in the same read as MessageSent is not lost."""
        mock_transport.send.side_effect = answer_with(
            dispatcher,
            MessageSentEvent(expected_ack=7, timeout_ms=3000),
            AckEvent(code=7),
        )

        tracker = await engine.send_tracked(b"\x02")

        assert tracker.expected_ack == 7
        assert tracker.suggested_timeout == 3.0
        ack = await tracker.wait()
        assert ack.code == 7
        assert dispatcher.subscriber_count == 0

    async def test_only_exact_code_matches(
        self, engine: CommandEngine, mock_transport: MagicMock, dispatcher: EventDispatcher
    ) -> None:
        """Acks for other codes are ignored: {5, 7, 5} only matches the 7."""
        mock_transport.send.side_effect = answer_with(dispatcher, MessageSentEvent(expected_ack=7))
        tracker = await engine.send_tracked(b"\x02")

        for code in (5, 7, 5):
            dispatcher.dispatch(AckEvent(code=code))

        ack = await tracker.wait(timeout=0.1)
        assert ack.code == 7

    async def test_first_of_equal_codes_wins(
        self, engine: CommandEngine, mock_transport: MagicMock, dispatcher: EventDispatcher
    ) -> None:
        """A waiter for code 5 gets the first code-5 ack and skips the 7."""
        mock_transport.send.side_effect = answer_with(dispatcher, MessageSentEvent(expected_ack=5))
        tracker = await engine.send_tracked(b"\x02")
        first, other, second = AckEvent(code=5), AckEvent(code=7), AckEvent(code=5)

        for event in (first, other, second):
            dispatcher.dispatch(event)

        ack = await tracker.wait(timeout=0.1)
        assert ack is first
        assert ack is not second

    async def test_unrelated_code_before_match_is_skipped(
        self, engine: CommandEngine, mock_transport: MagicMock, dispatcher: EventDispatcher
    ) -> None:
        mock_transport.send.side_effect = answer_with(dispatcher, MessageSentEvent(expected_ack=5))
        tracker = await engine.send_tracked(b"\x02")
        first, second = AckEvent(code=5), AckEvent(code=5)

        for event in (AckEvent(code=7), first, second):
            dispatcher.dispatch(event)

        assert await tracker.wait(timeout=0.1) is first

    async def test_wrong_code_times_out(
        self, engine: CommandEngine, mock_transport: MagicMock, dispatcher: EventDispatcher
    ) -> None:
        mock_transport.send.side_effect = answer_with(dispatcher, MessageSentEvent(expected_ack=7), AckEvent(code=8))
        tracker = await engine.send_tracked(b"\x02")

        with pytest.raises(CommandTimeoutError):
            await tracker.wait(timeout=0.05)
        assert dispatcher.subscriber_count == 0

    async def test_default_timeout_without_device_suggestion(
        self, engine: CommandEngine, mock_transport: MagicMock, dispatcher: EventDispatcher
    ) -> None:
        mock_transport.send.side_effect = answer_with(dispatcher, MessageSentEvent(expected_ack=1, timeout_ms=0))

        with await engine.send_tracked(b"\x02") as tracker:
            assert tracker.suggested_timeout == engine.timeout
        assert dispatcher.subscriber_count == 0

    async def test_error_instead_of_msg_sent(
        self, engine: CommandEngine, mock_transport: MagicMock, dispatcher: EventDispatcher
    ) -> None:
        mock_transport.send.side_effect = answer_with(dispatcher, ErrorEvent(message="table full", code=3))

        with pytest.raises(DeviceError):
            await engine.send_tracked(b"\x02")
        assert dispatcher.subscriber_count == 0

    async def test_session_closed_while_waiting(
        self, engine: CommandEngine, mock_transport: MagicMock, dispatcher: EventDispatcher
    ) -> None:
        mock_transport.send.side_effect = answer_with(dispatcher, MessageSentEvent(expected_ack=1))
        tracker = await engine.send_tracked(b"\x02")
        asyncio.get_running_loop().call_soon(dispatcher.close_all)

        with pytest.raises(ChannelClosedError):
            await tracker.wait(timeout=1.0)

    async def test_wait_for_ack_sees_only_future_acks(self, engine: CommandEngine, dispatcher: EventDispatcher) -> None:
        dispatcher.dispatch(AckEvent(code=3))
        asyncio.get_running_loop().call_soon(dispatcher.dispatch, AckEvent(code=3))

        ack = await engine.wait_for_ack(3, timeout=0.5)

        assert ack.code == 3

    async def test_tracker_close_is_idempotent(self, dispatcher: EventDispatcher) -> None:
        tracker = AckTracker(dispatcher.subscribe(), MessageSentEvent(expected_ack=1), 1.0)

        tracker.close()
        tracker.close()

        assert dispatcher.subscriber_count == 0


# -----------------------------------------------------------------------------
# Tracker Expiry Tests
# -----------------------------------------------------------------------------


class TestAckTrackerExpiry:
    """Tests for trackers that are never waited on."""

    async def test_unawaited_tracker_releases_subscription(
        self, engine: CommandEngine, mock_transport: MagicMock, dispatcher: EventDispatcher
    ) -> None:
        mock_transport.send.side_effect = answer_with(dispatcher, MessageSentEvent(expected_ack=1, timeout_ms=30))

        trackers = [await engine.send_tracked(b"\x02") for _ in range(5)]
        assert dispatcher.subscriber_count == 5

        await asyncio.sleep(0.1)
        for _ in range(20):
            dispatcher.dispatch(AckEvent(code=9))

        assert dispatcher.subscriber_count == 0
        assert all(tracker.closed for tracker in trackers)

    async def test_default_timeout_used_without_device_suggestion(
        self, mock_transport: MagicMock, dispatcher: EventDispatcher
    ) -> None:
        engine = CommandEngine(mock_transport, dispatcher, timeout=0.03, settle_delay=0.0)
        mock_transport.send.side_effect = answer_with(dispatcher, MessageSentEvent(expected_ack=1, timeout_ms=0))

        await engine.send_tracked(b"\x02")
        await asyncio.sleep(0.1)

        assert dispatcher.subscriber_count == 0

    async def test_wait_after_expiry_times_out(
        self, engine: CommandEngine, mock_transport: MagicMock, dispatcher: EventDispatcher
    ) -> None:
        mock_transport.send.side_effect = answer_with(dispatcher, MessageSentEvent(expected_ack=1, timeout_ms=20))
        tracker = await engine.send_tracked(b"\x02")
        await asyncio.sleep(0.08)

        with pytest.raises(CommandTimeoutError):
            await tracker.wait()

    async def test_ack_buffered_before_expiry_is_kept(
        self, engine: CommandEngine, mock_transport: MagicMock, dispatcher: EventDispatcher
    ) -> None:
        mock_transport.send.side_effect = answer_with(
            dispatcher, MessageSentEvent(expected_ack=4, timeout_ms=20), AckEvent(code=4)
        )
        tracker = await engine.send_tracked(b"\x02")
        await asyncio.sleep(0.08)

        ack = await tracker.wait()

        assert ack.code == 4

    async def test_wait_outlives_suggested_timeout(
        self, engine: CommandEngine, mock_transport: MagicMock, dispatcher: EventDispatcher
    ) -> None:
        """An explicit wait timeout replaces the expiry deadline."""
        mock_transport.send.side_effect = answer_with(dispatcher, MessageSentEvent(expected_ack=6, timeout_ms=20))
        tracker = await engine.send_tracked(b"\x02")
        asyncio.get_running_loop().call_later(0.06, dispatcher.dispatch, AckEvent(code=6))

        ack = await tracker.wait(timeout=0.5)

        assert ack.code == 6
