"""
Transports carrying the MeshCore byte stream.

- base: the transport contract and an asyncio-stream implementation
- serial: USB serial ports via pyserial-asyncio
"""

from meshcore_client.transport.base import StreamTransport, Transport
from meshcore_client.transport.serial import SerialTransport, list_ports

__all__ = [
    "SerialTransport",
    "StreamTransport",
    "Transport",
    "list_ports",
]
