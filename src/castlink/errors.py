"""Base exceptions for castlink."""


class CastlinkError(Exception):
    """Base exception for all castlink errors."""

    pass


class FormatError(CastlinkError):
    """Access code has the wrong length or non-hex characters."""

    pass


class RangeError(CastlinkError):
    """Decoded address octet outside 0-255."""

    pass


class ChannelError(CastlinkError):
    """Signaling channel transport failure."""

    pass


class MessageError(CastlinkError):
    """Signaling envelope could not be decoded."""

    pass


class AuthError(CastlinkError):
    """Authentication error."""

    pass


class AuthRejectedError(AuthError):
    """Receiver explicitly rejected the credential."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class NotAuthenticatedError(CastlinkError):
    """Session start attempted before authentication succeeded."""

    pass


class MediaError(CastlinkError):
    """Local media acquisition failed."""

    pass


class PermissionDeniedError(MediaError):
    """Capture was refused by the OS or the operator."""

    pass


class NoDeviceError(MediaError):
    """No capture device available."""

    pass


class NegotiationError(CastlinkError):
    """Offer/answer or candidate application failed."""

    pass
