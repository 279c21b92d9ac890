"""
Command families with typed results.

CommandHandler wraps the byte builders from protocol.commands in the
correlation pattern each command needs and unpacks the answer into a
model object. A device error becomes DeviceError; an answer of the wrong
shape becomes UnexpectedResponseError.

Commands that trigger work on a remote node (messages, logins, status and
telemetry requests, binary requests, path discovery, trace) return an
AckTracker. Use it as a context manager, or call wait()/close(), so the
underlying subscription is released:

    with await client.commands.send_message(contact.public_key, "hi") as tracker:
        await tracker.wait()
"""

from __future__ import annotations

import logging
import time
from typing import TypeVar

from meshcore_client.client.engine import AckTracker, CommandEngine
from meshcore_client.core.events import (
    BatteryEvent,
    ChannelInfoEvent,
    ChannelMessageEvent,
    ContactListEndEvent,
    ContactMessageEvent,
    ContactUriEvent,
    CurrentTimeEvent,
    CustomVarsEvent,
    DeviceInfoEvent,
    DisabledEvent,
    Event,
    LoginFailedEvent,
    LoginSuccessEvent,
    MessageSentEvent,
    NoMoreMessagesEvent,
    PrivateKeyEvent,
    SelfInfoEvent,
    SignatureEvent,
    SignStartedEvent,
    StatsEvent,
    StatusResponseEvent,
    TelemetryResponseEvent,
)
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
    StatsType,
    TelemetryMode,
)
from meshcore_client.core.state import DeviceState
from meshcore_client.errors import DeviceError, UnexpectedResponseError
from meshcore_client.protocol import commands as cmd
from meshcore_client.protocol.commands import BinaryReqType
from meshcore_client.protocol.telemetry import Telemetry

logger = logging.getLogger(__name__)

# Bytes of data per SIGN_DATA command
SIGN_CHUNK_SIZE = 128

E = TypeVar("E", bound=Event)
S = TypeVar("S", CoreStats, RadioStats, PacketStats)


def _expect(event: Event, event_class: type[E]) -> E:
    if not isinstance(event, event_class):
        raise UnexpectedResponseError(event, event_class)
    return event


def _now() -> int:
    return int(time.time())


class CommandHandler:
    """All command families of a MeshCore companion device."""

    def __init__(self, engine: CommandEngine, state: DeviceState) -> None:
        self.engine = engine
        self.state = state

    def next_tag(self) -> int:
        return self.engine.next_tag()

    # -- device --

    async def app_start(self) -> SelfInfo:
        """Init handshake; the device answers with its self description."""
        event = await self.engine.send_and_wait(cmd.build_app_start(), (SelfInfoEvent,))
        info = _expect(event, SelfInfoEvent).info
        assert info is not None
        return info

    async def get_time(self) -> int:
        event = await self.engine.send_and_wait(cmd.build_get_time(), (CurrentTimeEvent,))
        return _expect(event, CurrentTimeEvent).timestamp

    async def set_time(self, timestamp: int) -> None:
        await self.engine.send_fire_and_forget(cmd.build_set_time(timestamp))

    async def sync_time(self) -> int:
        """Set the device clock to the host clock. Returns the timestamp sent."""
        now = _now()
        await self.set_time(now)
        return now

    async def get_battery(self) -> BatteryStatus:
        event = await self.engine.send_and_wait(cmd.build_get_battery(), (BatteryEvent,))
        status = _expect(event, BatteryEvent).status
        assert status is not None
        return status

    async def device_query(self) -> DeviceInfo:
        event = await self.engine.send_and_wait(cmd.build_device_query(), (DeviceInfoEvent,))
        info = _expect(event, DeviceInfoEvent).info
        assert info is not None
        return info

    async def send_advert(self, flood: bool = False) -> None:
        await self.engine.send_expect_ok(cmd.build_send_advert(flood))

    async def set_name(self, name: str) -> None:
        await self.engine.send_fire_and_forget(cmd.build_set_name(name))

    async def set_coords(self, latitude: float, longitude: float) -> None:
        """
        Set the advertised location.

        Raises:
            InvalidCoordinatesError: Out of range; nothing is sent.
        """
        payload = cmd.build_set_coords(latitude, longitude)
        await self.engine.send_fire_and_forget(payload)

    async def set_tx_power(self, power: int) -> None:
        await self.engine.send_fire_and_forget(cmd.build_set_tx_power(power))

    async def set_radio(self, frequency_mhz: float, bandwidth_khz: float, spreading_factor: int, coding_rate: int) -> None:
        await self.engine.send_fire_and_forget(
            cmd.build_set_radio(frequency_mhz, bandwidth_khz, spreading_factor, coding_rate)
        )

    async def set_tuning(self, rx_delay: int, airtime_factor: int) -> None:
        await self.engine.send_fire_and_forget(cmd.build_set_tuning(rx_delay, airtime_factor))

    async def set_device_pin(self, pin: int) -> None:
        await self.engine.send_fire_and_forget(cmd.build_set_device_pin(pin))

    async def set_other_params(
        self,
        manual_add_contacts: bool,
        telemetry_mode: TelemetryMode | int = 0,
        advert_loc_policy: int = 0,
        multi_acks: int = 0,
    ) -> None:
        await self.engine.send_fire_and_forget(
            cmd.build_set_other_params(manual_add_contacts, telemetry_mode, advert_loc_policy, multi_acks)
        )

    async def reboot(self) -> None:
        await self.engine.send_expect_ok(cmd.build_reboot())

    async def export_private_key(self) -> bytes:
        """
        Export the device's private key.

        Raises:
            DeviceError: If key export is disabled in the firmware.
        """
        event = await self.engine.send_and_wait(cmd.build_export_private_key(), (PrivateKeyEvent, DisabledEvent))
        if isinstance(event, DisabledEvent):
            raise DeviceError("private key export is disabled")
        return _expect(event, PrivateKeyEvent).key

    async def import_private_key(self, key: bytes) -> None:
        await self.engine.send_expect_ok(cmd.build_import_private_key(key))

    async def get_stats(self, stats_type: StatsType) -> CoreStats | RadioStats | PacketStats:
        return (await self._stats_event(stats_type)).stats

    async def _stats_event(self, stats_type: StatsType) -> StatsEvent:
        event = await self.engine.send_and_wait(cmd.build_get_stats(stats_type), (StatsEvent,))
        stats_event = _expect(event, StatsEvent)
        assert stats_event.stats is not None
        return stats_event

    async def _typed_stats(self, stats_type: StatsType, stats_class: type[S]) -> S:
        event = await self._stats_event(stats_type)
        if not isinstance(event.stats, stats_class):
            raise UnexpectedResponseError(event, stats_class)
        return event.stats

    async def get_core_stats(self) -> CoreStats:
        return await self._typed_stats(StatsType.CORE, CoreStats)

    async def get_radio_stats(self) -> RadioStats:
        return await self._typed_stats(StatsType.RADIO, RadioStats)

    async def get_packet_stats(self) -> PacketStats:
        return await self._typed_stats(StatsType.PACKETS, PacketStats)

    async def get_custom_vars(self) -> dict[str, str]:
        event = await self.engine.send_and_wait(cmd.build_get_custom_vars(), (CustomVarsEvent,))
        return dict(_expect(event, CustomVarsEvent).values)

    async def set_custom_var(self, key: str, value: str) -> None:
        await self.engine.send_fire_and_forget(cmd.build_set_custom_var(key, value))

    # -- contacts --

    async def get_contacts(self, since: int | None = None, timeout: float | None = None) -> dict[PublicKey, Contact]:
        """
        List contacts and return the contact cache once the list is complete.

        Every entry updates the cache before the end marker is dispatched,
        so the returned snapshot includes the whole listing.
        """
        event = await self.engine.send_and_wait(cmd.build_get_contacts(since), (ContactListEndEvent,), timeout)
        _expect(event, ContactListEndEvent)
        return self.state.contacts()

    async def update_contact(self, contact: Contact) -> None:
        await self.engine.send_expect_ok(cmd.build_update_contact(contact))

    async def remove_contact(self, public_key: PublicKey) -> None:
        await self.engine.send_expect_ok(cmd.build_remove_contact(public_key))

    async def reset_path(self, public_key: PublicKey) -> None:
        await self.engine.send_expect_ok(cmd.build_reset_path(public_key))

    async def share_contact(self, public_key: PublicKey) -> None:
        await self.engine.send_expect_ok(cmd.build_share_contact(public_key))

    async def export_contact(self, public_key: PublicKey | None = None) -> str:
        """Export a contact card as a meshcore:// URI (the device itself without a key)."""
        event = await self.engine.send_and_wait(cmd.build_export_contact(public_key), (ContactUriEvent,))
        return _expect(event, ContactUriEvent).uri

    async def import_contact(self, card: bytes) -> None:
        await self.engine.send_expect_ok(cmd.build_import_contact(card))

    # -- messaging --

    async def send_message(
        self,
        recipient: PublicKey,
        text: str,
        attempt: int = 0,
        timestamp: int | None = None,
    ) -> AckTracker:
        payload = cmd.build_send_message(recipient, text, timestamp if timestamp is not None else _now(), attempt)
        return await self.engine.send_tracked(payload)

    async def send_command(self, recipient: PublicKey, command: str, timestamp: int | None = None) -> AckTracker:
        payload = cmd.build_send_command(recipient, command, timestamp if timestamp is not None else _now())
        return await self.engine.send_tracked(payload)

    async def send_channel_message(self, channel_index: int, text: str, timestamp: int | None = None) -> None:
        payload = cmd.build_send_channel_message(channel_index, text, timestamp if timestamp is not None else _now())
        await self.engine.send_expect_ok(payload)

    async def get_message(self) -> ContactMessage | ChannelMessage | None:
        """Pop the next queued message, or None when the queue is empty."""
        event = await self.engine.send_and_wait(
            cmd.build_get_message(),
            (ContactMessageEvent, ChannelMessageEvent, NoMoreMessagesEvent),
        )
        if isinstance(event, (ContactMessageEvent, ChannelMessageEvent)):
            return event.message
        _expect(event, NoMoreMessagesEvent)
        return None

    async def fetch_messages(self) -> list[ContactMessage | ChannelMessage]:
        """Drain the device's message queue."""
        messages: list[ContactMessage | ChannelMessage] = []
        while (message := await self.get_message()) is not None:
            messages.append(message)
        if messages:
            logger.debug("Fetched %d queued messages", len(messages))
        return messages

    async def send_login(self, destination: PublicKey, password: str) -> AckTracker:
        return await self.engine.send_tracked(cmd.build_send_login(destination, password))

    async def login(self, destination: PublicKey, password: str, timeout: float | None = None) -> bool:
        """
        Log in to a repeater or room server and wait for the verdict.

        Returns:
            True on LoginSuccess, False on LoginFailed.
        """
        engine = self.engine
        with engine.dispatcher.subscribe() as sub:
            await engine.send(sub, cmd.build_send_login(destination, password))
            sent = _expect(await engine.wait_response(sub, (MessageSentEvent,)), MessageSentEvent)
            if timeout is None:
                timeout = sent.timeout_ms / 1000 if sent.timeout_ms else engine.timeout
            event = await engine.wait_response(sub, (LoginSuccessEvent, LoginFailedEvent), timeout)
        return isinstance(event, LoginSuccessEvent)

    async def send_logout(self, destination: PublicKey) -> None:
        await self.engine.send_expect_ok(cmd.build_send_logout(destination))

    async def send_status_request(self, destination: PublicKey) -> AckTracker:
        return await self.engine.send_tracked(cmd.build_send_status_request(destination))

    async def request_status(self, destination: PublicKey, timeout: float | None = None) -> DeviceStatus:
        """Ask a remote node for its status and wait for the report."""
        engine = self.engine
        with engine.dispatcher.subscribe() as sub:
            await engine.send(sub, cmd.build_send_status_request(destination))
            sent = _expect(await engine.wait_response(sub, (MessageSentEvent,)), MessageSentEvent)
            if timeout is None:
                timeout = sent.timeout_ms / 1000 if sent.timeout_ms else engine.timeout
            event = await engine.wait_response(sub, (StatusResponseEvent,), timeout)
        status = _expect(event, StatusResponseEvent).status
        assert status is not None
        return status

    async def get_self_telemetry(self) -> Telemetry:
        event = await self.engine.send_and_wait(cmd.build_telemetry_request(), (TelemetryResponseEvent,))
        return _expect(event, TelemetryResponseEvent).telemetry

    async def send_telemetry_request(self, destination: PublicKey) -> AckTracker:
        return await self.engine.send_tracked(cmd.build_telemetry_request(destination))

    # -- channels --

    async def get_channel(self, index: int) -> Channel:
        event = await self.engine.send_and_wait(cmd.build_get_channel(index), (ChannelInfoEvent,))
        channel = _expect(event, ChannelInfoEvent).channel
        assert channel is not None
        return channel

    async def set_channel(self, index: int, name: str, secret: bytes) -> None:
        await self.engine.send_fire_and_forget(cmd.build_set_channel(index, name, secret))

    # -- binary requests --

    async def binary_request(self, destination: PublicKey, request_type: BinaryReqType, data: bytes = b"") -> AckTracker:
        """Send a binary request; the answer arrives later as BinaryResponseEvent."""
        return await self.engine.send_tracked(cmd.build_binary_request(destination, request_type, data))

    async def binary_status_request(self, destination: PublicKey) -> AckTracker:
        return await self.binary_request(destination, BinaryReqType.STATUS)

    async def binary_keep_alive(self, destination: PublicKey) -> AckTracker:
        return await self.binary_request(destination, BinaryReqType.KEEP_ALIVE)

    async def binary_telemetry_request(self, destination: PublicKey) -> AckTracker:
        return await self.binary_request(destination, BinaryReqType.TELEMETRY)

    async def binary_mma_request(self, destination: PublicKey) -> AckTracker:
        return await self.binary_request(destination, BinaryReqType.MMA)

    async def binary_acl_request(self, destination: PublicKey) -> AckTracker:
        return await self.binary_request(destination, BinaryReqType.ACL)

    async def binary_neighbours_request(
        self,
        destination: PublicKey,
        max_results: int = 255,
        offset: int = 0,
        order_by: int = 0,
        prefix_len: int = 4,
        tag: int | None = None,
    ) -> AckTracker:
        data = cmd.build_neighbours_request_data(
            max_results, offset, order_by, prefix_len, tag if tag is not None else self.next_tag()
        )
        return await self.binary_request(destination, BinaryReqType.NEIGHBOURS, data)

    # -- routing --

    async def path_discovery(self, destination: PublicKey) -> AckTracker:
        return await self.engine.send_tracked(cmd.build_path_discovery(destination))

    async def send_trace(
        self,
        path: bytes = b"",
        tag: int | None = None,
        auth_code: int = 0,
        flags: int = 0,
    ) -> AckTracker:
        payload = cmd.build_send_trace(tag if tag is not None else self.next_tag(), auth_code, flags, path)
        return await self.engine.send_tracked(payload)

    async def set_flood_scope(self, key: bytes) -> None:
        await self.engine.send_expect_ok(cmd.build_set_flood_scope(key))

    async def set_flood_scope_topic(self, topic: str) -> None:
        await self.set_flood_scope(cmd.flood_scope_key(topic))

    async def clear_flood_scope(self) -> None:
        await self.engine.send_expect_ok(cmd.build_set_flood_scope(None))

    async def node_discover(
        self,
        filter_type: int,
        prefix_only: bool = True,
        tag: int | None = None,
        since: int | None = None,
    ) -> int:
        """
        Broadcast a node discovery request.

        Returns:
            The request tag; answers arrive as ControlDataEvent.
        """
        if tag is None:
            tag = self.next_tag()
        await self.engine.send_expect_ok(cmd.build_node_discover(filter_type, tag, prefix_only, since))
        return tag

    # -- signing --

    async def sign_start(self) -> int:
        """Begin a signing session. Returns the maximum data length."""
        event = await self.engine.send_and_wait(cmd.build_sign_start(), (SignStartedEvent,))
        return _expect(event, SignStartedEvent).max_length

    async def sign_data(self, chunk: bytes) -> None:
        await self.engine.send_expect_ok(cmd.build_sign_data(chunk))

    async def sign_finish(self, timeout: float | None = None) -> bytes:
        event = await self.engine.send_and_wait(cmd.build_sign_finish(), (SignatureEvent,), timeout)
        return _expect(event, SignatureEvent).signature

    async def sign(self, data: bytes, chunk_size: int = SIGN_CHUNK_SIZE) -> bytes:
        """
        Have the device sign data with its private key.

        Raises:
            ValueError: If data is longer than the device accepts.
        """
        max_length = await self.sign_start()
        if max_length and len(data) > max_length:
            raise ValueError(f"data of {len(data)} bytes exceeds signing limit of {max_length}")
        for offset in range(0, len(data), chunk_size):
            await self.sign_data(data[offset : offset + chunk_size])
        return await self.sign_finish()
