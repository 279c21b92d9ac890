"""
Exception hierarchy for the MeshCore client.

Every error raised to callers derives from MeshCoreError, so "device
rejected", "device never responded" and "local precondition violated"
can be told apart by type rather than by message text:

- TransportError / NotConnectedError: the byte stream is unusable
- FrameError: the framing layer saw something it cannot recover from
- ProtocolError: the device answered, but not with what we wanted
- CommandTimeoutError: the device did not answer in time
- InvalidCoordinatesError / InvalidPublicKeyError: rejected locally
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from meshcore_client.core.events import Event


class MeshCoreError(Exception):
    """Base exception for all MeshCore client errors."""

    pass


class TransportError(MeshCoreError):
    """I/O failure on the underlying byte stream."""

    pass


class NotConnectedError(MeshCoreError):
    """An operation needed a live transport and there was none."""

    def __init__(self, message: str = "not connected") -> None:
        super().__init__(message)


class FrameError(MeshCoreError):
    """Unrecoverable framing error."""

    pass


class FrameTooLargeError(FrameError):
    """A frame header declared a payload larger than allowed."""

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"frame too large: {size} bytes exceeds maximum {limit}")
        self.size = size
        self.limit = limit


class DecodeError(MeshCoreError):
    """
    A packet body could not be decoded.

    Never escapes the packet classifier: the classifier turns it into a
    RawPacketEvent so the stream keeps flowing.
    """

    pass


class ProtocolError(MeshCoreError):
    """The device responded, but the response is a failure."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class DeviceError(ProtocolError):
    """The device answered a command with an error packet."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message or "device reported an error")
        self.code = code


class UnexpectedResponseError(ProtocolError):
    """The device answered with a packet shape the command did not expect."""

    def __init__(self, event: "Event", expected: Any = None) -> None:
        name = type(event).__name__
        super().__init__(f"unexpected response: {name}")
        self.event = event
        self.expected = expected


class CommandTimeoutError(MeshCoreError, TimeoutError):
    """No matching response arrived within the timeout."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"command timed out after {timeout * 1000:.0f}ms")
        self.timeout = timeout


class ChannelClosedError(MeshCoreError):
    """The event subscription was closed (session torn down)."""

    def __init__(self, message: str = "channel closed") -> None:
        super().__init__(message)


class SubscriptionLagged(MeshCoreError):
    """
    A subscriber fell behind and events were dropped for it.

    Raised once from Subscription.recv(); the subscription keeps
    delivering newer events afterwards.
    """

    def __init__(self, missed: int) -> None:
        super().__init__(f"subscriber lagged, {missed} events missed")
        self.missed = missed


class InvalidCoordinatesError(MeshCoreError, ValueError):
    """Latitude/longitude outside of the valid range."""

    pass


class InvalidPublicKeyError(MeshCoreError, ValueError):
    """A public key was not 32 bytes (or 64 hex characters)."""

    pass
