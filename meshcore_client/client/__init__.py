"""
Client session for MeshCore companion devices.

- session: MeshCoreClient, the connection lifecycle and read loop
- engine: command/response correlation and ack tracking
- commands: typed operations built on the engine
"""

from meshcore_client.client.commands import CommandHandler
from meshcore_client.client.engine import AckTracker, CommandEngine
from meshcore_client.client.session import MeshCoreClient

__all__ = [
    "AckTracker",
    "CommandEngine",
    "CommandHandler",
    "MeshCoreClient",
]
