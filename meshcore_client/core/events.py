"""
Event model and dispatcher for the MeshCore client.

Every frame received from the device becomes exactly one Event. The read
loop is the only producer; any number of consumers subscribe to the
dispatcher and each sees every event, in arrival order.

Event types:
- connection.connected / connection.disconnected: session lifecycle
- response.ok / response.error: generic command results
- device.*: self info, device info, battery, time, statistics, signing
- contact.*: contact list entries, adverts, path updates, share URIs
- message.*: received messages, send receipts, acks, queue notifications
- remote.*: login, status, telemetry and binary replies from remote nodes
- packet.raw: a frame that could not be decoded

Usage:
    with dispatcher.subscribe() as sub:
        await transport.send(frame)
        event = await sub.wait_for(lambda e: isinstance(e, AckEvent), timeout=5.0)

A subscription only sees events dispatched after subscribe() returns, so a
caller must subscribe before sending the command whose answer it awaits.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum
from typing import Any, ClassVar

from meshcore_client.core.models import (
    BatteryStatus,
    Channel,
    ChannelMessage,
    Contact,
    ContactMessage,
    CoreStats,
    DeviceInfo,
    DeviceStatus,
    PacketStats,
    PublicKey,
    RadioStats,
    SelfInfo,
)
from meshcore_client.errors import ChannelClosedError, CommandTimeoutError, SubscriptionLagged
from meshcore_client.protocol.packets import PacketType
from meshcore_client.protocol.telemetry import Telemetry

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256

EventPredicate = Callable[["Event"], bool]


def _jsonable(value: Any) -> Any:
    """Render a field value for JSON output."""
    if isinstance(value, PublicKey):
        return value.hex()
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, Enum):
        return value.name.lower()
    if isinstance(value, Telemetry):
        return [
            {"channel": r.channel, "type": r.lpp_type, "name": r.name, "value": _jsonable(r.value)}
            for r in value
        ]
    if isinstance(value, tuple) and hasattr(value, "_asdict"):
        return {k: _jsonable(v) for k, v in value._asdict().items()}
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: _jsonable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass
class Event:
    """Base class for all events."""

    event_type: str = ""

    # Packet kinds this event is decoded from (empty for synthetic events)
    packet_types: ClassVar[tuple[PacketType, ...]] = ()

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary for JSON serialization."""
        result: dict[str, Any] = {"type": self.event_type}
        for f in fields(self):
            if f.name != "event_type":
                result[f.name] = _jsonable(getattr(self, f.name))
        return result


# -- connection lifecycle --


@dataclass
class ConnectedEvent(Event):
    """Fired once the init handshake has completed."""

    event_type: str = field(default="connection.connected", init=False)


@dataclass
class DisconnectedEvent(Event):
    """Fired when the read loop stops (EOF, I/O failure, framing error or teardown)."""

    event_type: str = field(default="connection.disconnected", init=False)
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"type": self.event_type}
        if self.reason:
            result["reason"] = self.reason
        return result


# -- generic responses --


@dataclass
class OkEvent(Event):
    event_type: str = field(default="response.ok", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.OK,)


@dataclass
class ErrorEvent(Event):
    """The device rejected a command."""

    event_type: str = field(default="response.error", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.ERROR,)
    message: str = ""
    code: int | None = None


@dataclass
class DisabledEvent(Event):
    """The requested feature is disabled on the device."""

    event_type: str = field(default="response.disabled", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.DISABLED,)


# -- device --


@dataclass
class SelfInfoEvent(Event):
    event_type: str = field(default="device.self_info", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.SELF_INFO,)
    info: SelfInfo | None = None


@dataclass
class DeviceInfoEvent(Event):
    event_type: str = field(default="device.info", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.DEVICE_INFO,)
    info: DeviceInfo | None = None


@dataclass
class BatteryEvent(Event):
    event_type: str = field(default="device.battery", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.BATTERY,)
    status: BatteryStatus | None = None


@dataclass
class CurrentTimeEvent(Event):
    event_type: str = field(default="device.time", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.CURRENT_TIME,)
    timestamp: int = 0


@dataclass
class PrivateKeyEvent(Event):
    event_type: str = field(default="device.private_key", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.PRIVATE_KEY,)
    key: bytes = b""

    def to_dict(self) -> dict[str, Any]:
        # Never render key material
        return {"type": self.event_type, "length": len(self.key)}


@dataclass
class StatsEvent(Event):
    event_type: str = field(default="device.stats", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.STATS,)
    stats: CoreStats | RadioStats | PacketStats | None = None


@dataclass
class CustomVarsEvent(Event):
    """Custom variables as sent by the device ("key:value,key:value")."""

    event_type: str = field(default="device.custom_vars", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.CUSTOM_VARS,)
    raw: str = ""
    values: dict[str, str] = field(default_factory=dict)


@dataclass
class SignStartedEvent(Event):
    event_type: str = field(default="device.sign_started", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.SIGN_START,)
    max_length: int = 0


@dataclass
class SignatureEvent(Event):
    event_type: str = field(default="device.signature", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.SIGNATURE,)
    signature: bytes = b""


# -- contacts --


@dataclass
class ContactListStartEvent(Event):
    event_type: str = field(default="contact.list_start", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.CONTACT_START,)
    count: int = 0


@dataclass
class ContactEvent(Event):
    """One contact list entry. Updates the contact cache."""

    event_type: str = field(default="contact.entry", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.CONTACT,)
    contact: Contact | None = None


@dataclass
class ContactListEndEvent(Event):
    event_type: str = field(default="contact.list_end", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.CONTACT_END,)
    last_modified: int = 0


@dataclass
class NewContactAdvertEvent(Event):
    """A previously unknown node advertised itself. Updates the contact cache."""

    event_type: str = field(default="contact.new_advert", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.PUSH_NEW_ADVERT,)
    contact: Contact | None = None


@dataclass
class AdvertisementEvent(Event):
    event_type: str = field(default="contact.advert", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.ADVERTISEMENT,)
    public_key: PublicKey | None = None


@dataclass
class PathUpdateEvent(Event):
    event_type: str = field(default="contact.path_update", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.PATH_UPDATE,)
    public_key: PublicKey | None = None


@dataclass
class ContactUriEvent(Event):
    event_type: str = field(default="contact.uri", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.CONTACT_URI,)
    uri: str = ""


# -- messaging --


@dataclass
class ContactMessageEvent(Event):
    event_type: str = field(default="message.contact", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (
        PacketType.CONTACT_MSG_RECV,
        PacketType.CONTACT_MSG_RECV_V3,
    )
    message: ContactMessage | None = None


@dataclass
class ChannelMessageEvent(Event):
    event_type: str = field(default="message.channel", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (
        PacketType.CHANNEL_MSG_RECV,
        PacketType.CHANNEL_MSG_RECV_V3,
    )
    message: ChannelMessage | None = None


@dataclass
class MessageSentEvent(Event):
    """
    The device queued an outgoing message or request.

    The eventual delivery confirmation arrives later as an AckEvent whose
    code equals expected_ack.
    """

    event_type: str = field(default="message.sent", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.MSG_SENT,)
    expected_ack: int = 0
    timeout_ms: int = 0


@dataclass
class AckEvent(Event):
    event_type: str = field(default="message.ack", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.ACK,)
    code: int = 0


@dataclass
class NoMoreMessagesEvent(Event):
    event_type: str = field(default="message.none", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.NO_MORE_MSGS,)


@dataclass
class MessagesWaitingEvent(Event):
    event_type: str = field(default="message.waiting", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.MESSAGES_WAITING,)


# -- channels --


@dataclass
class ChannelInfoEvent(Event):
    event_type: str = field(default="channel.info", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.CHANNEL_INFO,)
    channel: Channel | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"type": self.event_type}
        if self.channel is not None:
            result["index"] = self.channel.index
            result["name"] = self.channel.name
        return result


# -- remote nodes --


@dataclass
class LoginSuccessEvent(Event):
    event_type: str = field(default="remote.login_success", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.LOGIN_SUCCESS,)


@dataclass
class LoginFailedEvent(Event):
    event_type: str = field(default="remote.login_failed", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.LOGIN_FAILED,)


@dataclass
class StatusResponseEvent(Event):
    event_type: str = field(default="remote.status", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.STATUS_RESPONSE,)
    status: DeviceStatus | None = None


@dataclass
class TelemetryResponseEvent(Event):
    event_type: str = field(default="remote.telemetry", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.TELEMETRY_RESPONSE,)
    telemetry: Telemetry = field(default_factory=Telemetry)


@dataclass
class BinaryResponseEvent(Event):
    event_type: str = field(default="remote.binary", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.BINARY_RESPONSE,)
    data: bytes = b""


@dataclass
class PathDiscoveryResponseEvent(Event):
    event_type: str = field(default="remote.path_discovery", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.PATH_DISCOVERY_RESPONSE,)
    data: bytes = b""


@dataclass
class TraceDataEvent(Event):
    event_type: str = field(default="remote.trace", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.TRACE_DATA,)
    data: bytes = b""


@dataclass
class ControlDataEvent(Event):
    event_type: str = field(default="remote.control", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.CONTROL_DATA,)
    data: bytes = b""


@dataclass
class RawDataEvent(Event):
    event_type: str = field(default="radio.raw_data", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.RAW_DATA,)
    data: bytes = b""


@dataclass
class LogDataEvent(Event):
    event_type: str = field(default="radio.log", init=False)
    packet_types: ClassVar[tuple[PacketType, ...]] = (PacketType.LOG_DATA,)
    text: str = ""


# -- fallback --


@dataclass
class RawPacketEvent(Event):
    """
    A frame that has no decoder or failed to decode.

    packet_type is the frame's first byte (None for an empty frame) and
    data the remaining bytes, so nothing received is ever dropped.
    """

    event_type: str = field(default="packet.raw", init=False)
    packet_type: int | None = None
    data: bytes = b""
    error: str = ""


class Subscription:
    """
    A live, bounded feed of dispatched events.

    Events are buffered per subscription. When the buffer is full the oldest
    event is dropped and counted; the next recv() raises SubscriptionLagged
    once with the number of dropped events, then delivery continues with
    the events that were kept.
    """

    def __init__(self, dispatcher: EventDispatcher, maxsize: int) -> None:
        self._dispatcher = dispatcher
        self._queue: deque[Event] = deque()
        self._maxsize = maxsize
        self._wakeup = asyncio.Event()
        self._missed = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Number of buffered, undelivered events."""
        return len(self._queue)

    def _push(self, event: Event) -> None:
        if self._closed:
            return
        if len(self._queue) >= self._maxsize:
            self._queue.popleft()
            self._missed += 1
        self._queue.append(event)
        self._wakeup.set()

    def _close(self) -> None:
        self._closed = True
        self._wakeup.set()

    def close(self) -> None:
        """Stop receiving events. Already buffered events can still be read."""
        self._dispatcher.unsubscribe(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def get_nowait(self) -> Event | None:
        """Return the next buffered event, or None if nothing is buffered."""
        if self._missed:
            missed, self._missed = self._missed, 0
            raise SubscriptionLagged(missed)
        if self._queue:
            return self._queue.popleft()
        if self._closed:
            raise ChannelClosedError()
        return None

    async def recv(self) -> Event:
        """
        Wait for the next event.

        Raises:
            SubscriptionLagged: Events were dropped since the last call.
            ChannelClosedError: The subscription was closed and is drained.
        """
        while True:
            event = self.get_nowait()
            if event is not None:
                return event
            self._wakeup.clear()
            await self._wakeup.wait()

    async def wait_for(self, predicate: EventPredicate, timeout: float) -> Event:
        """
        Wait for the next event matching predicate, skipping the others.

        A lag signal is logged and skipped; the caller only cares about the
        first match.

        Raises:
            CommandTimeoutError: Nothing matched within timeout seconds.
            ChannelClosedError: The subscription was closed first.
        """

        async def _match() -> Event:
            while True:
                try:
                    event = await self.recv()
                except SubscriptionLagged as e:
                    logger.warning("Waiter lagged behind, %d events missed", e.missed)
                    continue
                if predicate(event):
                    return event

        try:
            return await asyncio.wait_for(_match(), timeout)
        except asyncio.TimeoutError:
            raise CommandTimeoutError(timeout) from None

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Event:
        while True:
            try:
                return await self.recv()
            except SubscriptionLagged as e:
                logger.warning("Event stream lagged, %d events missed", e.missed)
            except ChannelClosedError:
                raise StopAsyncIteration from None


class EventDispatcher:
    """
    Broadcast hub for received events.

    dispatch() never blocks and never awaits: it appends the event to every
    live subscription's buffer. subscribe() is synchronous, so an event
    dispatched after it returns is guaranteed to be seen.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._subscriptions: list[Subscription] = []
        self._queue_size = max(1, queue_size)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, queue_size: int | None = None) -> Subscription:
        """Create a subscription that sees every event dispatched from now on."""
        sub = Subscription(self, queue_size or self._queue_size)
        self._subscriptions.append(sub)
        logger.debug("Subscribed (%d live)", len(self._subscriptions))
        return sub

    def unsubscribe(self, sub: Subscription) -> bool:
        """
        Close a subscription and stop delivering to it.

        Returns True if it was live.
        """
        sub._close()
        try:
            self._subscriptions.remove(sub)
        except ValueError:
            return False
        logger.debug("Unsubscribed (%d live)", len(self._subscriptions))
        return True

    def dispatch(self, event: Event) -> int:
        """
        Deliver an event to every live subscription.

        Returns:
            Number of subscriptions that received the event.
        """
        subs = list(self._subscriptions)
        for sub in subs:
            sub._push(event)
        return len(subs)

    async def wait_for(self, predicate: EventPredicate, timeout: float) -> Event:
        """Wait for the next dispatched event matching predicate."""
        with self.subscribe() as sub:
            return await sub.wait_for(predicate, timeout)

    def close_all(self) -> None:
        """Close every live subscription. New subscriptions can still be made."""
        subs, self._subscriptions = self._subscriptions, []
        for sub in subs:
            sub._close()
        if subs:
            logger.debug("Closed %d subscriptions", len(subs))


def expects(*event_classes: type[Event]) -> EventPredicate:
    """Predicate matching any of the given event classes."""
    return lambda event: isinstance(event, event_classes)
