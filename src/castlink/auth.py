"""Credential exchange with the receiver.

Flow:
1. Client sends {"type": "auth", "pin": ...} as soon as the channel is open
2. Receiver answers "auth_success" or "auth_failed" (optional "message")
3. "error" reports are surfaced but do not change the state

Each attempt is bound to the channel generation it was sent on. A verdict
that arrives on an older generation is ignored, so a late "auth_success"
from a dropped socket can never authenticate its replacement.
"""

import logging
from typing import Any, Callable

from castlink.channel import SignalingChannel, invoke_handler
from castlink.errors import AuthError, AuthRejectedError, ChannelError
from castlink.message import Auth, AuthFailed, AuthSuccess, Envelope, ErrorReport
from castlink.protocols import AuthState

__all__ = [
    "AuthError",
    "AuthRejectedError",
    "AuthState",
    "AuthenticationFlow",
    "DEFAULT_REJECT_REASON",
]

logger = logging.getLogger(__name__)

DEFAULT_REJECT_REASON = "Invalid PIN"

SuccessCallback = Callable[[SignalingChannel, int], Any]
FailureCallback = Callable[[str], Any]
ErrorCallback = Callable[[str], Any]


class AuthenticationFlow:
    """Drives one credential exchange at a time over a SignalingChannel."""

    def __init__(self) -> None:
        self._state = AuthState.UNAUTHENTICATED
        self._channel: SignalingChannel | None = None
        self._generation: int | None = None
        self._on_success: SuccessCallback | None = None
        self._on_failure: FailureCallback | None = None
        self._on_error: ErrorCallback | None = None

    @property
    def state(self) -> AuthState:
        """Current authentication state."""
        return self._state

    @property
    def channel(self) -> SignalingChannel | None:
        """Channel the current attempt is bound to."""
        return self._channel

    @property
    def generation(self) -> int | None:
        """Channel generation the current attempt is bound to."""
        return self._generation

    @property
    def is_authenticated(self) -> bool:
        """Authenticated on a channel generation that is still open."""
        return (
            self._state is AuthState.AUTHENTICATED
            and self._channel is not None
            and self._channel.is_current(self._generation)
        )

    def on_success(self, callback: SuccessCallback) -> None:
        """Register callback for acceptance, called with (channel, generation)."""
        self._on_success = callback

    def on_failure(self, callback: FailureCallback) -> None:
        """Register callback for rejection, called with the reason."""
        self._on_failure = callback

    def on_error(self, callback: ErrorCallback) -> None:
        """Register callback for receiver error reports."""
        self._on_error = callback

    async def authenticate(self, channel: SignalingChannel, credential: str) -> None:
        """Send a credential over the channel's current socket.

        Args:
            channel: Open signaling channel.
            credential: PIN or access code. Not retained after sending.

        Raises:
            AuthError: Empty credential.
            ChannelError: Channel not open or send failed.
        """
        if not credential:
            raise AuthError("Credential must not be empty")

        generation = channel.generation
        if not channel.is_current(generation):
            raise ChannelError("Cannot authenticate, channel is not open")

        self._channel = channel
        self._generation = generation
        self._state = AuthState.PENDING
        logger.info(f"Authenticating ({len(credential)}-character credential)")

        try:
            await channel.send(Auth(pin=credential), generation)
        except ChannelError:
            self._state = AuthState.UNAUTHENTICATED
            raise

    async def handle_message(self, message: Envelope, generation: int) -> None:
        """Apply an inbound envelope from the channel."""
        if generation != self._generation or self._channel is None:
            logger.debug(f"Ignoring '{message.type}' from stale channel generation {generation}")
            return
        if not self._channel.is_current(generation):
            logger.debug(f"Ignoring '{message.type}', channel generation {generation} closed")
            return

        if isinstance(message, AuthSuccess):
            if self._state is not AuthState.PENDING:
                logger.warning(f"Unexpected auth_success in state {self._state.value}, ignoring")
                return
            self._state = AuthState.AUTHENTICATED
            logger.info("Authentication successful")
            if self._on_success:
                await invoke_handler(self._on_success, self._channel, generation)

        elif isinstance(message, AuthFailed):
            if self._state is not AuthState.PENDING:
                logger.warning(f"Unexpected auth_failed in state {self._state.value}, ignoring")
                return
            reason = message.message or DEFAULT_REJECT_REASON
            self._state = AuthState.REJECTED
            logger.warning(f"Authentication failed: {reason}")
            if self._on_failure:
                await invoke_handler(self._on_failure, reason)

        elif isinstance(message, ErrorReport):
            reason = message.message or "Unknown receiver error"
            logger.error(f"Receiver error: {reason}")
            if self._on_error:
                await invoke_handler(self._on_error, reason)

        else:
            logger.debug(f"Ignoring '{message.type}' while {self._state.value}")

    def invalidate(self) -> None:
        """Forget the bound channel after it closed."""
        if self._state is not AuthState.UNAUTHENTICATED:
            logger.debug(f"Authentication reset (was {self._state.value})")
        self._state = AuthState.UNAUTHENTICATED
        self._channel = None
        self._generation = None
