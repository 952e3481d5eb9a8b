"""WebRTC offer/answer negotiation over the signaling channel.

This side always offers. Once authenticated:

1. capture local media and add every track to a new RTCPeerConnection
2. create the offer, set it as local description, send {"type": "offer"}
3. send each gathered local candidate as its own {"type": "candidate"}
4. apply the receiver's "answer" and "candidate" messages as they arrive

The negotiator is the only owner of the peer connection and the capture
tracks. stop_session() releases both and is also the cleanup path for
every failure inside start_session().
"""

import logging
from typing import Any, Callable

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from castlink.auth import AuthenticationFlow
from castlink.channel import SignalingChannel, invoke_handler
from castlink.errors import (
    ChannelError,
    MediaError,
    NegotiationError,
    NotAuthenticatedError,
)
from castlink.message import Answer, Candidate, Envelope, ErrorReport, Offer
from castlink.protocols import AuthState, CaptureOptions, LocalMediaProducer, NegotiationState

logger = logging.getLogger(__name__)

DEFAULT_STUN_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
]

StateCallback = Callable[[NegotiationState], Any]
FailureCallback = Callable[[NegotiationError], Any]
ErrorCallback = Callable[[str], Any]


def local_candidates(sdp: str) -> list[dict[str, Any]]:
    """Extract candidates from a local description in RTCIceCandidateInit shape.

    Args:
        sdp: Raw SDP (starts with "v=0").

    Returns:
        One dict per a=candidate line, with sdpMid and sdpMLineIndex of its
        media section.
    """
    candidates: list[dict[str, Any]] = []
    section: list[dict[str, Any]] = []
    mid: str | None = None
    index = -1

    def flush() -> None:
        for c in section:
            c["sdpMid"] = mid if mid is not None else str(index)
        candidates.extend(section)

    for raw in sdp.splitlines():
        line = raw.strip()
        if line.startswith("m="):
            flush()
            section = []
            mid = None
            index += 1
        elif line.startswith("a=mid:"):
            mid = line[len("a=mid:"):]
        elif line.startswith("a=candidate:") and index >= 0:
            section.append({"candidate": line[2:], "sdpMLineIndex": index})
    flush()
    return candidates


class SessionNegotiator:
    """Initiator side of a single peer media session."""

    def __init__(
        self,
        auth: AuthenticationFlow,
        stun_servers: list[str] | None = None,
        pc_factory: Callable[[RTCConfiguration], RTCPeerConnection] | None = None,
    ):
        """Initialize negotiator.

        Args:
            auth: Authentication flow that gates start_session().
            stun_servers: STUN server URLs.
            pc_factory: Factory to create RTCPeerConnection (for testing).
        """
        self._auth = auth
        self.stun_servers = list(stun_servers or DEFAULT_STUN_SERVERS)
        self._pc_factory = pc_factory or self._default_pc_factory

        self._state = NegotiationState.IDLE
        self._pc: RTCPeerConnection | None = None
        self._tracks: list[Any] = []
        self._channel: SignalingChannel | None = None
        self._generation: int | None = None
        self._session_id = 0
        self._active_session: int | None = None

        self._on_state_change: StateCallback | None = None
        self._on_failure: FailureCallback | None = None
        self._on_error: ErrorCallback | None = None

    def _default_pc_factory(self, config: RTCConfiguration) -> RTCPeerConnection:
        """Create default RTCPeerConnection."""
        return RTCPeerConnection(configuration=config)

    @property
    def state(self) -> NegotiationState:
        """Current negotiation state."""
        return self._state

    @property
    def is_active(self) -> bool:
        """True from start_session() until stop_session()."""
        return self._active_session is not None

    def on_state_change(self, callback: StateCallback) -> None:
        """Register callback for CONNECTED / FAILED transitions."""
        self._on_state_change = callback

    def on_failure(self, callback: FailureCallback) -> None:
        """Register callback for answer/candidate application failures."""
        self._on_failure = callback

    def on_error(self, callback: ErrorCallback) -> None:
        """Register callback for receiver error reports."""
        self._on_error = callback

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    async def start_session(
        self,
        channel: SignalingChannel,
        media_producer: LocalMediaProducer,
        options: CaptureOptions | None = None,
    ) -> None:
        """Capture media and send the offer.

        Args:
            channel: The authenticated signaling channel.
            media_producer: Source of local tracks.
            options: Capture options, defaults to CaptureOptions().

        Raises:
            NotAuthenticatedError: Not authenticated on this channel.
            PermissionDeniedError, NoDeviceError: Capture failed.
            ChannelError: Channel lost while sending.
            NegotiationError: Session already active, or offer creation failed.
        """
        if self._auth.state is not AuthState.AUTHENTICATED or self._auth.channel is not channel:
            raise NotAuthenticatedError("Authenticate before starting a session")
        generation = self._auth.generation
        if not channel.is_current(generation):
            raise NotAuthenticatedError("Authenticated channel is no longer open")
        if self._active_session is not None:
            raise NegotiationError("A session is already active")

        self._session_id += 1
        session_id = self._session_id
        self._active_session = session_id
        self._channel = channel
        self._generation = generation

        try:
            media = await media_producer.get_local_media(options or CaptureOptions())
            if session_id != self._session_id:
                _stop_tracks(media.tracks)
                raise NegotiationError("Session stopped during capture")
            self._tracks = list(media.tracks)

            pc = self._create_pc(session_id)
            for track in self._tracks:
                logger.debug(f"Adding {getattr(track, 'kind', 'unknown')} track")
                pc.addTrack(track)

            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
            self._ensure_current(session_id)

            await channel.send(Offer(sdp=offer.sdp), generation)
            self._state = NegotiationState.OFFER_SENT
            logger.info(f"Offer sent ({len(self._tracks)} tracks)")

            # Trickle: one envelope per candidate, in gathering order
            local_description = pc.localDescription
            sdp = local_description.sdp if local_description else ""
            for init in local_candidates(sdp):
                self._ensure_current(session_id)
                await channel.send(Candidate(candidate=init), generation)
        except (MediaError, NegotiationError, ChannelError) as e:
            logger.warning(f"Failed to start session: {e}")
            await self._abort(session_id)
            raise
        except Exception as e:
            logger.error(f"Failed to start session: {e}")
            await self._abort(session_id)
            raise NegotiationError(f"Offer creation failed: {e}") from e

    async def stop_session(self) -> None:
        """Stop tracks and close the peer connection. Safe to call repeatedly."""
        pc = self._pc
        tracks = self._tracks
        was_active = self._active_session is not None

        self._session_id += 1
        self._active_session = None
        self._pc = None
        self._tracks = []
        self._channel = None
        self._generation = None
        self._state = NegotiationState.IDLE

        if not was_active and pc is None and not tracks:
            return

        _stop_tracks(tracks)
        if pc is not None:
            try:
                await pc.close()
            except Exception as e:
                logger.warning(f"Error closing peer connection: {e}")
        logger.info("Session stopped")

    # =========================================================================
    # Inbound signaling
    # =========================================================================

    async def handle_message(self, message: Envelope, generation: int) -> None:
        """Apply an answer or remote candidate from the receiver."""
        if not self._auth.is_authenticated or generation != self._auth.generation:
            logger.debug(f"Ignoring '{message.type}', not authenticated on generation {generation}")
            return

        if isinstance(message, ErrorReport):
            reason = message.message or "Unknown receiver error"
            logger.error(f"Receiver error: {reason}")
            if self._on_error:
                await invoke_handler(self._on_error, reason)
            return

        if not isinstance(message, (Answer, Candidate)):
            logger.debug(f"Ignoring '{message.type}' during negotiation")
            return

        pc = self._pc
        session_id = self._session_id
        if pc is None or generation != self._generation:
            logger.debug(f"Ignoring '{message.type}', no active session")
            return

        try:
            if isinstance(message, Answer):
                await pc.setRemoteDescription(RTCSessionDescription(sdp=message.sdp, type="answer"))
                logger.info("Remote description set")
            else:
                await self._add_remote_candidate(pc, message.candidate)
        except Exception as e:
            if session_id != self._session_id:
                return
            error = NegotiationError(f"Failed to apply {message.type}: {e}")
            logger.error(str(error))
            await self.stop_session()
            if self._on_failure:
                await invoke_handler(self._on_failure, error)

    async def _add_remote_candidate(self, pc: RTCPeerConnection, init: dict[str, Any]) -> None:
        line = init.get("candidate") or ""
        if not line:
            logger.debug("Remote end-of-candidates")
            return
        if line.startswith("a="):
            line = line[2:]
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]

        candidate = candidate_from_sdp(line)
        candidate.sdpMid = init.get("sdpMid")
        candidate.sdpMLineIndex = init.get("sdpMLineIndex")
        await pc.addIceCandidate(candidate)
        logger.debug(f"Added remote candidate: {line[:60]}")

    # =========================================================================
    # Internal methods
    # =========================================================================

    def _create_pc(self, session_id: int) -> RTCPeerConnection:
        if self.stun_servers:
            config = RTCConfiguration(iceServers=[RTCIceServer(urls=self.stun_servers)])
        else:
            config = RTCConfiguration(iceServers=[])
        pc = self._pc_factory(config)
        self._pc = pc

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            if session_id != self._session_id or self._pc is not pc:
                return
            state = pc.connectionState
            logger.info(f"Connection state: {state}")
            if state == "connected":
                await self._transition(NegotiationState.CONNECTED)
            elif state in ("disconnected", "failed"):
                await self._transition(NegotiationState.FAILED)

        return pc

    async def _transition(self, state: NegotiationState) -> None:
        if state is self._state:
            return
        self._state = state
        if self._on_state_change:
            await invoke_handler(self._on_state_change, state)

    def _ensure_current(self, session_id: int) -> None:
        if session_id != self._session_id:
            raise NegotiationError("Session stopped during negotiation")

    async def _abort(self, session_id: int) -> None:
        if session_id == self._session_id:
            await self.stop_session()


def _stop_tracks(tracks: list[Any]) -> None:
    for track in tracks:
        try:
            track.stop()
        except Exception as e:
            logger.debug(f"Error stopping track: {e}")
