"""
MeshCore Client - asyncio host library for MeshCore companion radios.

Talks to a MeshCore device over its USB serial link: frames and decodes
the binary protocol, correlates command responses, tracks message acks,
and fans device events out to any number of subscribers.
"""

__version__ = "0.1.0"
__author__ = "MeshCore Client Contributors"
__license__ = "MIT"

from meshcore_client.client import MeshCoreClient
from meshcore_client.core.models import Contact, PublicKey, SelfInfo
from meshcore_client.errors import MeshCoreError

__all__ = ["Contact", "MeshCoreClient", "MeshCoreError", "PublicKey", "SelfInfo", "__version__"]
