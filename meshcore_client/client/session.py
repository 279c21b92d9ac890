"""
MeshCore client session.

A session owns one transport and the background read loop that pumps it:

    transport bytes -> FrameDecoder -> decode_packet -> DeviceState.apply
                                                     -> EventDispatcher.dispatch

The read loop is the only writer of the cached state and the only
producer of events. The state update and the dispatch of the same event
happen back to back without yielding, so a subscriber woken by an event
always finds the cache already reflecting it.

Usage:
    client = MeshCoreClient.serial("/dev/ttyUSB0")
    info = await client.connect()
    contacts = await client.commands.get_contacts()
    await client.disconnect()
"""

from __future__ import annotations

import asyncio
import logging

from meshcore_client.client.commands import CommandHandler
from meshcore_client.client.engine import CommandEngine
from meshcore_client.config import ClientConfig, get_config
from meshcore_client.core.events import ConnectedEvent, DisconnectedEvent, Event, EventDispatcher, Subscription
from meshcore_client.core.models import Contact, PublicKey, SelfInfo
from meshcore_client.core.state import DeviceState
from meshcore_client.errors import FrameTooLargeError, NotConnectedError, TransportError
from meshcore_client.protocol.frame import FrameDecoder, hexdump
from meshcore_client.protocol.parser import decode_packet
from meshcore_client.transport.base import Transport
from meshcore_client.transport.serial import SerialTransport

logger = logging.getLogger(__name__)


class MeshCoreClient:
    """
    Session with one MeshCore companion device.

    Commands are issued through the `commands` attribute; events are
    observed through subscribe().
    """

    def __init__(self, transport: Transport, config: ClientConfig | None = None) -> None:
        self.config = config or get_config()
        session = self.config.session

        self.transport = transport
        self.dispatcher = EventDispatcher(session.event_queue_size)
        self.state = DeviceState()
        self.engine = CommandEngine(
            transport,
            self.dispatcher,
            timeout=session.command_timeout,
            settle_delay=session.settle_delay,
        )
        self.commands = CommandHandler(self.engine, self.state)

        self._decoder = FrameDecoder(session.max_frame_size)
        self._read_task: asyncio.Task[None] | None = None

    @classmethod
    def serial(cls, port: str | None = None, baudrate: int | None = None, config: ClientConfig | None = None) -> MeshCoreClient:
        """Create a client for a serial port (defaults from config)."""
        config = config or get_config()
        return cls(SerialTransport(port, baudrate, config.serial), config)

    # -- lifecycle --

    @property
    def is_connected(self) -> bool:
        return self.transport.is_connected and self._read_task is not None and not self._read_task.done()

    async def connect(self) -> SelfInfo:
        """
        Open the transport, start the read loop and run the init handshake.

        Returns:
            The device's self description.

        Raises:
            TransportError: The transport could not be opened.
            DeviceError / CommandTimeoutError: The handshake failed; the
                session is torn down again.
        """
        await self.transport.connect()
        self._decoder.clear()
        self.engine.active = True
        self._read_task = asyncio.create_task(self._read_loop(), name="meshcore-read-loop")

        # Let stale frames from a previous session arrive and be dispatched first
        await asyncio.sleep(self.config.session.startup_settle)

        try:
            info = await self.commands.app_start()
        except BaseException:
            await self.disconnect()
            raise

        logger.info("Connected to %s (%s)", info.name or "unnamed device", info.public_key)
        self.dispatcher.dispatch(ConnectedEvent())
        return info

    async def disconnect(self) -> None:
        """Stop the read loop and close the transport. Safe to call twice."""
        task, self._read_task = self._read_task, None
        self.engine.active = False
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            # A cancelled loop never reported the disconnect itself
            self._on_disconnected("disconnected by client")

        await self.transport.disconnect()
        logger.info("Disconnected")

    async def __aenter__(self) -> MeshCoreClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    # -- read loop --

    def _handle_payload(self, payload: bytes) -> Event:
        event = decode_packet(payload)
        # Apply and dispatch without yielding in between
        self.state.apply(event)
        self.dispatcher.dispatch(event)
        return event

    async def _read_loop(self) -> None:
        chunk_size = self.config.serial.read_chunk_size
        reason = "end of stream"
        try:
            while True:
                data = await self.transport.read(chunk_size)
                if not data:
                    break
                self._decoder.feed(data)
                for payload in self._decoder.frames():
                    if logger.isEnabledFor(logging.DEBUG):
                        logger.debug("RX %d bytes: %s", len(payload), hexdump(payload))
                    self._handle_payload(payload)
        except FrameTooLargeError as e:
            logger.error("Framing error, dropping connection: %s", e)
            reason = str(e)
        except (TransportError, NotConnectedError) as e:
            logger.error("Read failed: %s", e)
            reason = str(e)
        except Exception as e:
            logger.exception("Read loop crashed: %s", e)
            reason = f"read loop error: {e}"

        # Nothing more can be read, so nothing more may be written
        self.engine.active = False
        try:
            await self.transport.disconnect()
        except TransportError as e:
            logger.warning("Closing transport failed: %s", e)
        self._on_disconnected(reason)

    def _on_disconnected(self, reason: str) -> None:
        logger.info("Session ended: %s", reason)
        self.dispatcher.dispatch(DisconnectedEvent(reason=reason))
        self.dispatcher.close_all()

    # -- events and cached state --

    def subscribe(self, queue_size: int | None = None) -> Subscription:
        """Subscribe to every event received from now on."""
        return self.dispatcher.subscribe(queue_size)

    @property
    def self_info(self) -> SelfInfo | None:
        return self.state.self_info

    def contacts(self) -> dict[PublicKey, Contact]:
        return self.state.contacts()

    def get_contact(self, public_key: PublicKey) -> Contact | None:
        return self.state.get_contact(public_key)

    def __repr__(self) -> str:
        state = "connected" if self.is_connected else "disconnected"
        return f"MeshCoreClient({self.transport!r}, {state})"
