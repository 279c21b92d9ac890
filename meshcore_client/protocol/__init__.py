"""
Wire protocol for MeshCore companion devices.

This package contains the byte-level layers:
- frame: length-delimited framing over the serial stream
- packets: packet kind numbering
- parser: per-kind payload decoders
- telemetry: Cayenne LPP sensor records
- commands: outbound command builders

The parser is not re-exported here because it depends on the event model;
import it from meshcore_client.protocol.parser.
"""

from meshcore_client.protocol.frame import FrameDecoder, encode_frame
from meshcore_client.protocol.packets import PacketType, classify

__all__ = [
    "FrameDecoder",
    "PacketType",
    "classify",
    "encode_frame",
]
