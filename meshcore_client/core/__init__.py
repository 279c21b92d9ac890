"""
Core domain package.

Decoded records, the event model and dispatcher, and the cached device
state. Nothing in here touches the transport; consumers should usually
import from the specific module they need (e.g. `meshcore_client.core.events`).
"""

from __future__ import annotations

__all__: list[str] = []
