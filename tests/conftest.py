"""Shared fixtures for the meshcore-client test suite."""

from collections.abc import AsyncIterator

import pytest
from fakes import FakeTransport, fast_config, packet, self_info_body

from meshcore_client.client import MeshCoreClient
from meshcore_client.core.events import EventDispatcher
from meshcore_client.protocol.commands import CommandOpcode
from meshcore_client.protocol.packets import PacketType


@pytest.fixture
def transport() -> FakeTransport:
    """Create a fake transport with no scripted replies."""
    return FakeTransport()


@pytest.fixture
def dispatcher() -> EventDispatcher:
    """Create a fresh event dispatcher."""
    return EventDispatcher(queue_size=16)


@pytest.fixture
def client(transport: FakeTransport) -> MeshCoreClient:
    """Create an unconnected client on the fake transport."""
    return MeshCoreClient(transport, fast_config())


@pytest.fixture
async def connected_client(client: MeshCoreClient, transport: FakeTransport) -> AsyncIterator[MeshCoreClient]:
    """Create a client that has completed the init handshake."""
    transport.reply(CommandOpcode.APP_START, packet(PacketType.SELF_INFO, self_info_body()))
    await client.connect()
    yield client
    await client.disconnect()
