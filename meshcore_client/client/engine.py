"""
Command/response correlation.

The device answers commands over the same stream it uses for unsolicited
pushes, so responses are matched by shape rather than by any request id.
Three patterns are used:

1. Wait for shape: subscribe, send, then wait for the first event whose
   class is in the expected set. An ErrorEvent always counts as an answer
   and becomes DeviceError.
2. Fire and forget: send, pause briefly, return. Used for "set" commands
   whose acknowledgement timing is unreliable.
3. Ack tag: the immediate answer is a MessageSentEvent carrying a code;
   the real result arrives later as an AckEvent with that exact code.

Every path subscribes before writing, so an answer dispatched any time
after the write cannot be missed.
"""

from __future__ import annotations

import asyncio
import itertools
import logging

from meshcore_client.core.events import (
    AckEvent,
    ErrorEvent,
    Event,
    EventDispatcher,
    MessageSentEvent,
    OkEvent,
    Subscription,
)
from meshcore_client.errors import ChannelClosedError, CommandTimeoutError, DeviceError, NotConnectedError
from meshcore_client.protocol.frame import encode_frame, hexdump
from meshcore_client.transport.base import Transport

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
DEFAULT_SETTLE_DELAY = 0.05

EventShapes = tuple[type[Event], ...]


class AckTracker:
    """
    Pending delivery confirmation for a command answered with MessageSentEvent.

    Holds the subscription opened before the command was sent, so an ack
    that arrives right behind the MessageSentEvent is already buffered.
    A tracker nobody waits on expires after the suggested timeout and
    releases its subscription.
    """

    def __init__(self, subscription: Subscription, sent: MessageSentEvent, default_timeout: float) -> None:
        self._subscription = subscription
        self.sent = sent
        self._default_timeout = default_timeout
        self._expired = False
        self._expiry: asyncio.TimerHandle | None = asyncio.get_running_loop().call_later(
            self.suggested_timeout, self._expire
        )

    @property
    def expected_ack(self) -> int:
        return self.sent.expected_ack

    @property
    def suggested_timeout(self) -> float:
        """The device's timeout suggestion in seconds (engine default if it sent none)."""
        if self.sent.timeout_ms > 0:
            return self.sent.timeout_ms / 1000
        return self._default_timeout

    @property
    def closed(self) -> bool:
        return self._subscription.closed

    def _expire(self) -> None:
        self._expiry = None
        if not self._subscription.closed:
            logger.debug("Ack 0x%08x not awaited, tracker expired", self.expected_ack)
            self._expired = True
            self._subscription.close()

    async def wait(self, timeout: float | None = None) -> AckEvent:
        """
        Wait for the ack with the expected code.

        Raises:
            CommandTimeoutError: No matching ack within timeout (defaults to
                the device's suggestion), or the tracker already expired.
            ChannelClosedError: The session was torn down first.
        """
        self._cancel_expiry()
        code = self.expected_ack
        wait_timeout = timeout if timeout is not None else self.suggested_timeout
        try:
            event = await self._subscription.wait_for(
                lambda e: isinstance(e, AckEvent) and e.code == code,
                wait_timeout,
            )
        except ChannelClosedError:
            if self._expired:
                raise CommandTimeoutError(self.suggested_timeout) from None
            raise
        finally:
            self.close()
        assert isinstance(event, AckEvent)
        return event

    def _cancel_expiry(self) -> None:
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None

    def close(self) -> None:
        """Stop tracking without waiting."""
        self._cancel_expiry()
        self._subscription.close()

    def __enter__(self) -> AckTracker:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class CommandEngine:
    """
    Sends framed commands and correlates device answers.

    Writes are serialized with a lock that is held only for the write
    itself; waiting happens on a private subscription afterwards.
    """

    def __init__(
        self,
        transport: Transport,
        dispatcher: EventDispatcher,
        timeout: float = DEFAULT_TIMEOUT,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
    ) -> None:
        self.transport = transport
        self.dispatcher = dispatcher
        self.timeout = timeout
        self.settle_delay = settle_delay
        self._write_lock = asyncio.Lock()
        self._tags = itertools.count(1)
        # Cleared by the session once its read loop has stopped
        self.active = True

    def next_tag(self) -> int:
        """Next value of the monotonically increasing request tag (u32)."""
        return next(self._tags) & 0xFFFFFFFF

    async def _write(self, payload: bytes) -> None:
        if not self.active or not self.transport.is_connected:
            raise NotConnectedError()
        frame = encode_frame(payload)
        async with self._write_lock:
            await self.transport.send(frame)
        logger.debug("TX 0x%02x (%d bytes): %s", payload[0], len(payload), hexdump(payload))

    async def send(self, subscription: Subscription, payload: bytes) -> None:
        """
        Send a command whose answer will be read from an existing subscription.

        Taking the subscription as an argument forces callers to subscribe
        first.
        """
        if subscription.closed:
            raise ValueError("subscription is closed")
        await self._write(payload)

    async def wait_response(
        self,
        subscription: Subscription,
        expected: EventShapes,
        timeout: float | None = None,
    ) -> Event:
        """
        Wait on a subscription for the first event of an expected shape.

        Raises:
            DeviceError: The device answered with an error packet.
            CommandTimeoutError: Nothing expected arrived in time.
        """
        accepted = expected + (ErrorEvent,)
        event = await subscription.wait_for(
            lambda e: isinstance(e, accepted),
            timeout if timeout is not None else self.timeout,
        )
        if isinstance(event, ErrorEvent) and ErrorEvent not in expected:
            raise DeviceError(event.message, event.code)
        return event

    async def send_and_wait(self, payload: bytes, expected: EventShapes, timeout: float | None = None) -> Event:
        """Send a command and wait for the first answer of an expected shape."""
        with self.dispatcher.subscribe() as sub:
            await self.send(sub, payload)
            return await self.wait_response(sub, expected, timeout)

    async def send_expect_ok(self, payload: bytes, timeout: float | None = None) -> None:
        """Send a command answered by OK (or an error)."""
        await self.send_and_wait(payload, (OkEvent,), timeout)

    async def send_fire_and_forget(self, payload: bytes) -> None:
        """Send a command and return after a short settle delay without waiting for an answer."""
        await self._write(payload)
        await asyncio.sleep(self.settle_delay)

    async def send_tracked(self, payload: bytes, timeout: float | None = None) -> AckTracker:
        """
        Send a command answered by MessageSentEvent and track its ack.

        Returns:
            An AckTracker; await tracker.wait() for the delivery ack, or
            close() it if the ack is not needed.
        """
        sub = self.dispatcher.subscribe()
        try:
            await self.send(sub, payload)
            sent = await self.wait_response(sub, (MessageSentEvent,), timeout)
        except BaseException:
            sub.close()
            raise
        assert isinstance(sent, MessageSentEvent)
        logger.debug("Tracking ack 0x%08x (suggested timeout %dms)", sent.expected_ack, sent.timeout_ms)
        return AckTracker(sub, sent, self.timeout)

    async def wait_for_ack(self, code: int, timeout: float | None = None) -> AckEvent:
        """
        Wait for an AckEvent with an exact code, starting now.

        Acks dispatched before this call are not seen; prefer send_tracked().
        """
        event = await self.dispatcher.wait_for(
            lambda e: isinstance(e, AckEvent) and e.code == code,
            timeout if timeout is not None else self.timeout,
        )
        assert isinstance(event, AckEvent)
        return event
