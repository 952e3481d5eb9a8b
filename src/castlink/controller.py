"""Top-level session state machine.

    DISCONNECTED -> CONNECTING -> AWAITING_AUTH -> AUTHENTICATED -> CASTING
         ^______________ channel lost (any state) ______________|
                                        AUTHENTICATED <- stop / media lost

SessionController owns one SignalingChannel, AuthenticationFlow and
SessionNegotiator and only sequences calls between them. Inbound messages
go to the auth flow until it reports success, then to the negotiator.

Usage:
    controller = SessionController(config, media_producer=ScreenCaptureProducer())
    controller.on_state_changed(print)
    await controller.connect("0A0A0A01FF", credential="123456")
    ...  # wait for SessionState.AUTHENTICATED
    await controller.start_casting()
    ...
    await controller.shutdown()
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable

from aiortc import RTCConfiguration, RTCPeerConnection

from castlink.access_code import AccessCode, resolve
from castlink.auth import AuthenticationFlow
from castlink.channel import Connector, SignalingChannel, invoke_handler
from castlink.config import Config
from castlink.errors import (
    AuthError,
    AuthRejectedError,
    CastlinkError,
    ChannelError,
    NegotiationError,
    NotAuthenticatedError,
)
from castlink.message import Envelope
from castlink.negotiator import SessionNegotiator
from castlink.protocols import (
    AuthState,
    ChannelState,
    CaptureOptions,
    LocalMediaProducer,
    NegotiationState,
    SessionState,
)

logger = logging.getLogger(__name__)

STATUS_TEXT = {
    SessionState.DISCONNECTED: "Disconnected",
    SessionState.CONNECTING: "Connecting to receiver...",
    SessionState.AWAITING_AUTH: "Connected - Authentication required",
    SessionState.AUTHENTICATED: "Authenticated - Ready to cast",
    SessionState.CASTING: "Casting...",
}


@dataclass(frozen=True)
class SessionStatus:
    """Single current status for display: state plus last error."""

    state: SessionState
    error: str | None = None

    @property
    def text(self) -> str:
        base = STATUS_TEXT[self.state]
        if self.error:
            return f"{base} ({self.error})"
        return base


class SessionController:
    """Coordinates resolution, signaling, authentication and negotiation."""

    def __init__(
        self,
        config: Config | None = None,
        media_producer: LocalMediaProducer | None = None,
        connector: Connector | None = None,
        pc_factory: Callable[[RTCConfiguration], RTCPeerConnection] | None = None,
    ):
        """Initialize controller.

        Args:
            config: Client configuration.
            media_producer: Source of local tracks; ScreenCaptureProducer if None.
            connector: Websocket opener passed to the channel (for testing).
            pc_factory: RTCPeerConnection factory passed to the negotiator (for testing).
        """
        self._config = config or Config()
        if media_producer is None:
            from castlink.media import ScreenCaptureProducer

            media_producer = ScreenCaptureProducer()
        self._media_producer = media_producer

        self.channel = SignalingChannel(
            config=self._config.channel,
            connector=connector,
            port=self._config.port,
        )
        self.auth = AuthenticationFlow()
        self.negotiator = SessionNegotiator(self.auth, pc_factory=pc_factory)

        self._state = SessionState.DISCONNECTED
        self._last_error: str | None = None
        self._pending_credential: str | None = None

        self._on_state_changed: Callable[[SessionState], Any] | None = None
        self._on_auth_failed: Callable[[AuthRejectedError], Any] | None = None
        self._on_media_lost: Callable[[str], Any] | None = None

        self.channel.subscribe(self._route_message)
        self.channel.on_connecting(self._handle_channel_connecting)
        self.channel.on_open(self._handle_channel_open)
        self.channel.on_close(self._handle_channel_close)
        self.auth.on_success(self._handle_auth_success)
        self.auth.on_failure(self._handle_auth_failure)
        self.auth.on_error(self._handle_receiver_error)
        self.negotiator.on_state_change(self._handle_negotiation_state)
        self.negotiator.on_failure(self._handle_negotiation_failure)
        self.negotiator.on_error(self._handle_receiver_error)

    # =========================================================================
    # Event surface
    # =========================================================================

    def on_state_changed(self, callback: Callable[[SessionState], Any]) -> None:
        """Register callback for every state transition."""
        self._on_state_changed = callback

    def on_auth_failed(self, callback: Callable[[AuthRejectedError], Any]) -> None:
        """Register callback for credential rejection, called with AuthRejectedError."""
        self._on_auth_failed = callback

    def on_media_lost(self, callback: Callable[[str], Any]) -> None:
        """Register callback for a dropped media session."""
        self._on_media_lost = callback

    @property
    def state(self) -> SessionState:
        """Current session state."""
        return self._state

    @property
    def status(self) -> SessionStatus:
        """Current state and the most recent error reason."""
        return SessionStatus(self._state, self._last_error)

    # =========================================================================
    # Operator actions
    # =========================================================================

    async def connect(self, code: str | AccessCode, credential: str | None = None) -> None:
        """Resolve the code, open the channel and send the credential.

        Args:
            code: Access code typed by the operator.
            credential: PIN to send; defaults to the access code itself.

        Raises:
            FormatError, RangeError: Invalid code, nothing was sent.
            ChannelError: The receiver could not be reached.
        """
        try:
            access_code = code if isinstance(code, AccessCode) else AccessCode.parse(code)
            address = resolve(access_code, port=self._config.port)
        except CastlinkError as e:
            self._last_error = str(e)
            raise

        # A background retry is CONNECTING with no credential queued
        retrying = self._state is SessionState.CONNECTING and self._pending_credential is None
        if self._state is not SessionState.DISCONNECTED and not retrying:
            logger.warning(f"connect() ignored in state {self._state.value}")
            return

        # A background reconnect to the previous receiver gives way to the operator
        if self.channel.state in (ChannelState.CONNECTING, ChannelState.OPEN):
            await self.channel.close()

        logger.info(f"Resolved access code to {address}")
        self._last_error = None
        self._pending_credential = credential or access_code.text
        await self._set_state(SessionState.CONNECTING)

        try:
            await self.channel.connect(access_code)
        except ChannelError as e:
            self._pending_credential = None
            self._last_error = str(e)
            await self._set_state(SessionState.DISCONNECTED)
            raise

    async def authenticate(self, credential: str) -> None:
        """Send a freshly entered credential.

        Raises:
            AuthError: Not waiting for a credential, or empty credential.
            ChannelError: Channel closed.
        """
        if self._state is not SessionState.AWAITING_AUTH:
            raise AuthError(f"Cannot authenticate in state {self._state.value}")
        if self.auth.state is AuthState.PENDING:
            raise AuthError("Authentication already in progress")
        self._last_error = None
        await self.auth.authenticate(self.channel, credential)

    async def start_casting(self, options: CaptureOptions | None = None) -> None:
        """Capture local media and negotiate the session.

        Raises:
            NotAuthenticatedError: Not in AUTHENTICATED state.
            PermissionDeniedError, NoDeviceError, NegotiationError, ChannelError
        """
        if self._state is not SessionState.AUTHENTICATED:
            raise NotAuthenticatedError(f"Cannot cast in state {self._state.value}")

        try:
            await self.negotiator.start_session(self.channel, self._media_producer, options)
        except CastlinkError as e:
            self._last_error = f"Failed to start casting: {e}"
            raise

        if self._state is SessionState.AUTHENTICATED and self.negotiator.is_active:
            self._last_error = None
            await self._set_state(SessionState.CASTING)

    async def stop_casting(self) -> None:
        """Stop the media session; the channel stays authenticated."""
        await self.negotiator.stop_session()
        if self._state is SessionState.CASTING:
            await self._set_state(SessionState.AUTHENTICATED)

    async def disconnect(self) -> None:
        """Operator disconnect: no automatic reconnection."""
        self._pending_credential = None
        self._last_error = None
        await self.negotiator.stop_session()
        await self._set_state(SessionState.DISCONNECTED)
        await self.channel.close()
        self.auth.invalidate()

    async def shutdown(self) -> None:
        """Tear everything down for process exit."""
        self._pending_credential = None
        await self.negotiator.stop_session()
        await self._set_state(SessionState.DISCONNECTED)
        await self.channel.shutdown()
        self.auth.invalidate()
        logger.info("Session controller shut down")

    # =========================================================================
    # Component callbacks
    # =========================================================================

    async def _route_message(self, message: Envelope, generation: int) -> None:
        if self.auth.state is AuthState.AUTHENTICATED:
            await self.negotiator.handle_message(message, generation)
        else:
            await self.auth.handle_message(message, generation)

    async def _handle_channel_connecting(self, generation: int) -> None:
        await self._set_state(SessionState.CONNECTING)

    async def _handle_channel_open(self, generation: int) -> None:
        await self._set_state(SessionState.AWAITING_AUTH)
        credential = self._pending_credential
        self._pending_credential = None
        if credential is None:
            logger.info("Reconnected, waiting for credential")
            return
        try:
            await self.auth.authenticate(self.channel, credential)
        except (AuthError, ChannelError) as e:
            self._last_error = str(e)
            logger.warning(f"Could not send credential: {e}")

    async def _handle_channel_close(self, generation: int) -> None:
        self.auth.invalidate()
        if self.negotiator.is_active:
            await self.negotiator.stop_session()
        if self._state is not SessionState.DISCONNECTED:
            if self._last_error is None:
                self._last_error = "Connection lost"
            await self._set_state(SessionState.DISCONNECTED)
        if self.channel.reconnect_pending:
            logger.info("Channel lost, reconnection scheduled")

    async def _handle_auth_success(self, channel: SignalingChannel, generation: int) -> None:
        self._last_error = None
        await self._set_state(SessionState.AUTHENTICATED)

    async def _handle_auth_failure(self, reason: str) -> None:
        self._last_error = f"Authentication failed: {reason}"
        if self._on_auth_failed:
            await invoke_handler(self._on_auth_failed, AuthRejectedError(reason))

    async def _handle_receiver_error(self, reason: str) -> None:
        self._last_error = reason

    async def _handle_negotiation_state(self, state: NegotiationState) -> None:
        if state is NegotiationState.CONNECTED:
            logger.info("Casting to receiver")
            return
        if state is NegotiationState.FAILED:
            reason = "Connection lost"
            self._last_error = reason
            await self.negotiator.stop_session()
            if self._on_media_lost:
                await invoke_handler(self._on_media_lost, reason)
            if self._state is SessionState.CASTING:
                await self._set_state(SessionState.AUTHENTICATED)

    async def _handle_negotiation_failure(self, error: NegotiationError) -> None:
        self._last_error = str(error)
        if self._state is SessionState.CASTING:
            await self._set_state(SessionState.AUTHENTICATED)

    async def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        logger.info(f"Session state: {self._state.value} -> {state.value}")
        self._state = state
        if self._on_state_changed:
            await invoke_handler(self._on_state_changed, state)
