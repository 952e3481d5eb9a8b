"""Protocols and enums for castlink."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol


class ChannelState(Enum):
    """State of the signaling channel."""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class AuthState(Enum):
    """State of the credential exchange."""

    UNAUTHENTICATED = "unauthenticated"
    PENDING = "pending"
    AUTHENTICATED = "authenticated"
    REJECTED = "rejected"


class NegotiationState(Enum):
    """State of the offer/answer exchange and resulting media session."""

    IDLE = "idle"
    OFFER_SENT = "offer_sent"
    CONNECTED = "connected"
    FAILED = "failed"


class SessionState(Enum):
    """Top-level state exposed to the UI layer."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_AUTH = "awaiting_auth"
    AUTHENTICATED = "authenticated"
    CASTING = "casting"


# ============================================================================
# Media collaborators
# ============================================================================


@dataclass
class CaptureOptions:
    """What to capture for a cast.

    Defaults to the full monitor with cursor and stereo 48 kHz system audio.
    """

    video: bool = True
    audio: bool = True
    framerate: int = 30
    video_size: str | None = None
    show_cursor: bool = True
    audio_sample_rate: int = 48000
    audio_channels: int = 2


@dataclass
class LocalMedia:
    """Tracks produced for one cast."""

    tracks: list[Any] = field(default_factory=list)

    def tracks_of_kind(self, kind: str) -> list[Any]:
        return [t for t in self.tracks if getattr(t, "kind", None) == kind]


class LocalMediaProducer(Protocol):
    """Source of local media tracks (DI for testing)."""

    async def get_local_media(self, options: CaptureOptions) -> LocalMedia:
        """Acquire tracks.

        Raises:
            PermissionDeniedError: Capture refused.
            NoDeviceError: Nothing to capture from.
        """
        ...
