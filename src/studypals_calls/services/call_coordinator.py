"""Call session coordinator: lifecycle of a single peer-to-peer call."""

import asyncio
import logging
import time
from typing import Any, Awaitable, Optional

from ..models.media import MediaStream
from ..models.schemas import IceCandidate, IncomingCall, SessionDescription, SignalKind, SignalMessage
from ..models.state import (
    ACTIVE_STATES,
    CallDirection,
    CallFlags,
    CallSession,
    CallState,
    CallType,
    can_transition,
)
from .broadcast import Broadcaster
from .errors import CallError, InvalidStateError, MediaAcquisitionError, NegotiationError, SignalingError
from .media_base import AudioRouting, MediaCapture
from .peer_base import PEER_CONNECTED, PEER_DISCONNECTED, PEER_FAILED, PeerConnection, PeerConnectionFactory
from .signaling_base import SignalingChannel, Unsubscribe

logger = logging.getLogger(__name__)


class CallSessionCoordinator:
    """Owns one call at a time and mediates between UI intents and WebRTC.

    UI code calls the intent methods (``start_call``, ``answer_call``,
    ``end_call`` and the toggles) and observes the broadcast channels
    ``state_changes``, ``local_streams``, ``remote_streams`` and
    ``session_ready``. All mutation happens on the event loop the
    coordinator runs on; ``start_call``/``answer_call`` are serialized and
    overlapping attempts are rejected rather than queued.
    """

    def __init__(
        self,
        user_id: str,
        signaling: SignalingChannel,
        media_capture: MediaCapture,
        peer_factory: PeerConnectionFactory,
        audio_routing: Optional[AudioRouting] = None,
        ended_grace_s: float = 0.5,
        ring_timeout_s: Optional[float] = 45.0,
        connection_timeout_s: Optional[float] = 30.0,
    ):
        """Initialize the coordinator.

        Args:
            user_id: Identity of the local user
            signaling: Channel used to exchange offers, answers and candidates
            media_capture: Camera/microphone/screen capture capability
            peer_factory: Callable returning a fresh peer connection per call
            audio_routing: Optional speakerphone routing capability
            ended_grace_s: How long ``ended`` is held before resetting to ``idle``
            ring_timeout_s: Unanswered ringing calls are ended after this (None disables)
            connection_timeout_s: Calls stuck connecting fail after this (None disables)
        """
        self.user_id = user_id
        self.signaling = signaling
        self.media_capture = media_capture
        self.audio_routing = audio_routing
        self._peer_factory = peer_factory
        self._ended_grace_s = ended_grace_s
        self._ring_timeout_s = ring_timeout_s
        self._connection_timeout_s = connection_timeout_s

        self.state_changes: Broadcaster[CallState] = Broadcaster("call_state")
        self.local_streams: Broadcaster[Optional[MediaStream]] = Broadcaster("local_stream")
        self.remote_streams: Broadcaster[Optional[MediaStream]] = Broadcaster("remote_stream")
        self.session_ready: Broadcaster[str] = Broadcaster("session_ready", replay_latest=False)

        self._state = CallState.IDLE
        self._session: Optional[CallSession] = None
        self._flags = CallFlags()
        self._peer: Optional[PeerConnection] = None
        self._local_media: Optional[MediaStream] = None
        self._screen_stream: Optional[MediaStream] = None
        self._remote_offer: Optional[SessionDescription] = None
        self._remote_description_set = False
        self._pending_candidates: list[IceCandidate] = []
        self._ready_call_id: Optional[str] = None
        self._last_call_id: Optional[str] = None

        self._intent_lock = asyncio.Lock()
        self._screen_lock = asyncio.Lock()
        self._tearing_down = False
        self._closed = False
        self._signal_unsubscribe: Optional[Unsubscribe] = None
        self._incoming_unsubscribe: Optional[Unsubscribe] = None
        self._transport_unsubscribe: Optional[Unsubscribe] = None
        self._deferred_incoming: Optional[IncomingCall] = None
        self._deferred_unsubscribe: Optional[Unsubscribe] = None
        self._timers: dict[str, asyncio.Task] = {}
        self._reset_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()

        self.state_changes.publish(CallState.IDLE)

    @classmethod
    def from_settings(
        cls,
        settings,
        signaling: SignalingChannel,
        media_capture: MediaCapture,
        peer_factory: PeerConnectionFactory,
        audio_routing: Optional[AudioRouting] = None,
    ) -> "CallSessionCoordinator":
        """Build a coordinator using identity and timings from ``Settings``."""
        if not settings.user_id:
            raise ValueError("USER_ID must be configured to place or receive calls")
        return cls(
            user_id=settings.user_id,
            signaling=signaling,
            media_capture=media_capture,
            peer_factory=peer_factory,
            audio_routing=audio_routing,
            ended_grace_s=settings.ended_grace_s,
            ring_timeout_s=settings.ring_timeout_s,
            connection_timeout_s=settings.connection_timeout_s,
        )

    # Read-only accessors -------------------------------------------------

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def session(self) -> Optional[CallSession]:
        return self._session

    @property
    def flags(self) -> CallFlags:
        return self._flags

    @property
    def current_call_id(self) -> Optional[str]:
        return self._session.call_id if self._session else None

    @property
    def current_call_type(self) -> Optional[CallType]:
        return self._session.call_type if self._session else None

    @property
    def peer_id(self) -> Optional[str]:
        return self._session.peer_id if self._session else None

    @property
    def direction(self) -> Optional[CallDirection]:
        return self._session.direction if self._session else None

    @property
    def local_stream(self) -> Optional[MediaStream]:
        return self._session.local_stream if self._session else None

    @property
    def remote_stream(self) -> Optional[MediaStream]:
        return self._session.remote_stream if self._session else None

    # Lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Start listening for incoming calls."""
        if self._closed:
            raise InvalidStateError("Coordinator is closed")
        if self._incoming_unsubscribe is None:
            self._incoming_unsubscribe = self.signaling.on_incoming_call(
                self.user_id, self._handle_incoming_call
            )
            logger.info(f"Listening for incoming calls for {self.user_id}")
        if self._transport_unsubscribe is None:
            self._transport_unsubscribe = self.signaling.on_transport_error(self._on_signaling_lost)

    async def close(self) -> None:
        """End any call, stop listening and close every broadcast channel."""
        if self._closed:
            return
        logger.info("Closing call coordinator")
        self._closed = True

        if self._incoming_unsubscribe:
            self._incoming_unsubscribe()
            self._incoming_unsubscribe = None
        if self._transport_unsubscribe:
            self._transport_unsubscribe()
            self._transport_unsubscribe = None
        self._take_deferred_incoming()

        await self.end_call()
        if self._session is not None and not self._tearing_down:
            # Session that never got past idle-level setup
            await self._abort_session(self._session)

        if self._reset_task:
            self._reset_task.cancel()
            self._reset_task = None
        if self._state in (CallState.ENDED, CallState.ERROR):
            self._reset_to_idle()

        await self._release_local_media()
        self._cancel_timers()
        for task in list(self._tasks):
            task.cancel()

        self.state_changes.close()
        self.local_streams.close()
        self.remote_streams.close()
        self.session_ready.close()
        logger.info("Call coordinator closed")

    async def __aenter__(self) -> "CallSessionCoordinator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # Intents -------------------------------------------------------------

    async def start_call(self, recipient_id: str, call_type: CallType) -> bool:
        """Place an outgoing call.

        Args:
            recipient_id: User to call
            call_type: Audio or video

        Returns:
            True if the offer was sent; False if busy or setup failed, in
            which case the coordinator is back to ``idle``
        """
        if self._closed:
            logger.warning("Cannot start call: coordinator is closed")
            return False
        if recipient_id == self.user_id:
            logger.warning("Cannot start call: caller and recipient are the same user")
            return False
        if self._state != CallState.IDLE or self._intent_lock.locked():
            logger.warning(
                f"Cannot start call to {recipient_id}: busy ({self._state.value})",
                extra={"evt": "call_busy"},
            )
            return False

        async with self._intent_lock:
            call_id = self._new_call_id(recipient_id)
            session = self._begin_session(call_id, call_type, CallDirection.OUTGOING, recipient_id)
            logger.info(f"Starting {call_type.value} call to {recipient_id} (call ID: {call_id})")
            self._set_state(CallState.CONNECTING)

            try:
                await self._acquire_local_media(session)
                await self._open_peer(session)
                offer = await self._negotiate(self._require_peer(session).create_offer(call_type))
                self._ensure_current(session)

                self._subscribe_signals(session)
                await self._send(
                    SignalMessage(
                        kind=SignalKind.OFFER,
                        call_id=call_id,
                        sender_id=self.user_id,
                        recipient_id=recipient_id,
                        call_type=call_type,
                        description=offer,
                    )
                )
                self._ensure_current(session)

            except CallError as e:
                logger.error(f"Failed to start call {call_id}: {e}", extra={"evt": "call_start_failed"})
                await self._abort_session(session)
                return False

            self._set_state(CallState.RINGING)
            logger.info(f"Call offer sent for {call_id}")
            return True

    async def answer_call(self, call_id: str) -> bool:
        """Answer the ringing incoming call ``call_id``.

        Returns:
            True if the answer was sent. False if there is no matching
            ringing incoming call (no transition), media could not be
            acquired (call keeps ringing), or negotiation failed (call ends)
        """
        session = self._session
        if not call_id:
            logger.warning("Cannot answer call: no call ID given")
            return False
        if (
            session is None
            or session.direction != CallDirection.INCOMING
            or session.call_id != call_id
            or self._state != CallState.RINGING
        ):
            logger.warning(f"Cannot answer call {call_id}: no matching incoming call is ringing")
            return False
        if self._intent_lock.locked():
            logger.warning(f"Cannot answer call {call_id}: another operation is in progress")
            return False

        async with self._intent_lock:
            try:
                await self._acquire_local_media(session)
            except CallError as e:
                logger.error(f"Cannot answer call {call_id}: {e}", extra={"evt": "call_answer_failed"})
                return False

            self._set_state(CallState.CONNECTING)
            logger.info(f"Answering call {call_id}")

            try:
                await self._open_peer(session)
                await self._apply_remote_description(self._remote_offer)
                answer = await self._negotiate(self._require_peer(session).create_answer(session.call_type))
                self._ensure_current(session)
                await self._send(
                    SignalMessage(
                        kind=SignalKind.ANSWER,
                        call_id=call_id,
                        sender_id=self.user_id,
                        recipient_id=session.peer_id,
                        description=answer,
                    )
                )
            except InvalidStateError as e:
                logger.warning(f"Call {call_id} ended while answering: {e}")
                return False
            except CallError as e:
                logger.error(f"Failed to answer call {call_id}: {e}", extra={"evt": "call_answer_failed"})
                await self._fail(e)
                return False

            logger.info(f"Call answer sent for {call_id}")
            return True

    async def decline_call(self) -> None:
        """Dismiss an incoming call without answering."""
        await self.end_call()

    async def end_call(self) -> None:
        """End the current call. Safe to call in any state, any number of times."""
        if self._session is None or self._tearing_down:
            return
        if self._state in (CallState.IDLE, CallState.ENDED):
            return
        logger.info(f"Ending call {self._session.call_id}")
        await self._teardown(notify_peer=True)

    async def wait_until_ready(self, timeout: Optional[float] = None) -> str:
        """Wait until the current call is connected with both streams bound.

        Returns:
            The call ID of the ready session

        Raises:
            asyncio.TimeoutError: If not ready within ``timeout``
            StopAsyncIteration: If the coordinator closes first
        """
        if self._session is not None and self._ready_call_id == self._session.call_id:
            return self._ready_call_id
        with self.session_ready.subscribe() as subscription:
            return await subscription.get(timeout)

    # Toggles -------------------------------------------------------------

    async def toggle_mute(self) -> None:
        """Mute or unmute the microphone."""
        self._flags.muted = not self._flags.muted
        self._apply_flags_to_tracks()
        logger.info(f"Microphone {'muted' if self._flags.muted else 'unmuted'}")

    async def toggle_camera(self) -> None:
        """Disable or re-enable the camera track without releasing it."""
        session = self._session
        if session is None or not session.is_video:
            logger.debug("Camera toggle ignored: no video call")
            return
        self._flags.camera_off = not self._flags.camera_off
        self._apply_flags_to_tracks()
        logger.info(f"Camera {'disabled' if self._flags.camera_off else 'enabled'}")

    async def switch_camera(self) -> None:
        """Swap between front and rear camera."""
        session = self._session
        if session is None or not session.is_video or self._local_media is None:
            logger.debug("Camera switch ignored: no video call")
            return
        track = self._local_media.video_track
        if track is None:
            return
        try:
            await self.media_capture.switch_camera(track)
            logger.info("Camera switched")
        except Exception as e:
            logger.error(f"Failed to switch camera: {e}")

    async def toggle_speaker(self) -> None:
        """Route call audio between loudspeaker and earpiece."""
        self._flags.speaker_on = not self._flags.speaker_on
        await self._route_audio(self._flags.speaker_on)
        logger.info(f"Speaker {'on' if self._flags.speaker_on else 'off'}")

    async def enable_screen_sharing(self) -> None:
        """Send a screen capture instead of the camera."""
        session = self._session
        if session is None or not session.is_video:
            logger.debug("Screen sharing ignored: no video call")
            return
        if self._flags.screen_sharing or self._peer is None:
            return

        # Overlapping enables wait here and then see the flag set
        async with self._screen_lock:
            if self._flags.screen_sharing or session is not self._session or self._tearing_down:
                return

            try:
                screen = await self.media_capture.acquire_display_media()
            except Exception as e:
                logger.error(f"Failed to start screen capture: {e}")
                return

            track = screen.video_track
            if session is not self._session or self._tearing_down or self._peer is None or track is None:
                await self.media_capture.release_local_media(screen)
                return

            try:
                await self._peer.replace_video_track(track)
            except Exception as e:
                logger.error(f"Failed to replace video track with screen capture: {e}")
                await self.media_capture.release_local_media(screen)
                return

            if session is not self._session or self._tearing_down:
                await self.media_capture.release_local_media(screen)
                return

            self._screen_stream = screen
            self._flags.screen_sharing = True
            track.on_ended(lambda _track: self._spawn(self.disable_screen_sharing()))

            session.local_stream = screen
            self.local_streams.publish(screen)
            logger.info("Screen sharing enabled")

    async def disable_screen_sharing(self) -> None:
        """Switch the outgoing video back to the camera."""
        if not self._flags.screen_sharing:
            return

        async with self._screen_lock:
            if not self._flags.screen_sharing:
                return
            self._flags.screen_sharing = False
            screen, self._screen_stream = self._screen_stream, None

            camera_track = self._local_media.video_track if self._local_media else None
            if self._peer is not None and camera_track is not None:
                try:
                    await self._peer.replace_video_track(camera_track)
                except Exception as e:
                    logger.error(f"Failed to restore camera track: {e}")

            if screen is not None:
                await self.media_capture.release_local_media(screen)

            session = self._session
            if session is not None and not self._tearing_down:
                session.local_stream = self._local_media
                self.local_streams.publish(self._local_media)
            logger.info("Screen sharing disabled, back to camera")

    # State machine -------------------------------------------------------

    def _set_state(self, new_state: CallState) -> None:
        old_state = self._state
        if new_state == old_state:
            return
        if not can_transition(old_state, new_state):
            raise InvalidStateError(f"Illegal transition {old_state.value} -> {new_state.value}")

        self._state = new_state
        if self._session is not None:
            self._session.state = new_state
        logger.info(
            f"Call state: {old_state.value} -> {new_state.value}",
            extra={"evt": "call_state", "call_id": self.current_call_id, "state": new_state.value},
        )
        self._update_timers(new_state)
        self.state_changes.publish(new_state)
        self._check_ready()

    def _begin_session(
        self, call_id: str, call_type: CallType, direction: CallDirection, peer_id: str
    ) -> CallSession:
        session = CallSession(call_id, call_type, direction, peer_id, state=self._state)
        self._session = session
        self._flags = session.flags
        self._remote_offer = None
        self._remote_description_set = False
        self._pending_candidates.clear()
        self._ready_call_id = None
        self._last_call_id = call_id
        return session

    def _ensure_current(self, session: CallSession) -> None:
        if self._session is not session or self._tearing_down:
            raise InvalidStateError(f"Call {session.call_id} was ended")

    def _new_call_id(self, recipient_id: str) -> str:
        return f"{self.user_id}_{recipient_id}_{int(time.time() * 1000)}"

    def _check_ready(self) -> None:
        session = self._session
        if (
            session is not None
            and self._state == CallState.CONNECTED
            and session.has_media
            and self._ready_call_id != session.call_id
        ):
            self._ready_call_id = session.call_id
            logger.info(f"Call {session.call_id} ready", extra={"evt": "call_ready"})
            self.session_ready.publish(session.call_id)

    async def _teardown(self, notify_peer: bool) -> None:
        """Release everything the session holds and move to ``ended``."""
        session = self._session
        self._tearing_down = True
        self._cancel_timers()
        self._unsubscribe_signals()

        await self._release_local_media()

        if self._peer is not None:
            peer, self._peer = self._peer, None
            try:
                await peer.close()
            except Exception as e:
                logger.warning(f"Error closing peer connection: {e}")

        if notify_peer and session is not None:
            try:
                await self._send(
                    SignalMessage(
                        kind=SignalKind.HANGUP,
                        call_id=session.call_id,
                        sender_id=self.user_id,
                        recipient_id=session.peer_id,
                    )
                )
            except CallError as e:
                logger.warning(f"Could not notify peer of hangup: {e}")

        if session is not None:
            session.local_stream = None
            session.remote_stream = None
        self._pending_candidates.clear()
        self.local_streams.publish(None)
        self.remote_streams.publish(None)

        self._set_state(CallState.ENDED)
        self._schedule_reset()
        logger.info("Call ended and resources cleaned up")

    async def _abort_session(self, session: CallSession) -> None:
        """Undo a start/answer that never reached the peer."""
        if self._session is not session or self._tearing_down:
            return
        self._unsubscribe_signals()
        had_media = self._local_media is not None
        await self._release_local_media()
        if self._peer is not None:
            peer, self._peer = self._peer, None
            try:
                await peer.close()
            except Exception as e:
                logger.warning(f"Error closing peer connection: {e}")
        if had_media:
            self.local_streams.publish(None)

        self._session = None
        self._flags = CallFlags()
        self._remote_offer = None
        self._remote_description_set = False
        self._pending_candidates.clear()
        if self._state != CallState.IDLE:
            self._set_state(CallState.IDLE)

    async def _fail(self, error: Exception) -> None:
        """Drive the session through ``error`` to ``ended``."""
        if self._session is None or self._tearing_down:
            return
        if self._state in (CallState.IDLE, CallState.ENDED, CallState.ERROR):
            return
        logger.error(
            f"Call {self._session.call_id} failed: {error}",
            extra={"evt": "call_error", "error": str(error)},
        )
        self._set_state(CallState.ERROR)
        await self._teardown(notify_peer=True)

    def _schedule_reset(self) -> None:
        if self._reset_task is not None:
            self._reset_task.cancel()
        self._reset_task = asyncio.ensure_future(self._reset_after_grace())

    async def _reset_after_grace(self) -> None:
        await asyncio.sleep(self._ended_grace_s)
        self._reset_task = None
        self._reset_to_idle()

    def _reset_to_idle(self) -> None:
        if self._state not in (CallState.ENDED, CallState.ERROR):
            return
        self._session = None
        self._flags = CallFlags()
        self._remote_offer = None
        self._remote_description_set = False
        self._ready_call_id = None
        self._tearing_down = False
        self._set_state(CallState.IDLE)

        deferred = self._take_deferred_incoming()
        if deferred is not None and not self._closed:
            logger.info(f"Presenting call {deferred.call_id} held during the ended state")
            self._spawn(self._handle_incoming_call(deferred))

    # Timers --------------------------------------------------------------

    def _update_timers(self, state: CallState) -> None:
        if state != CallState.RINGING:
            self._cancel_timer("ring")
        if state != CallState.CONNECTING:
            self._cancel_timer("connect")

        if state == CallState.RINGING and self._ring_timeout_s is not None:
            self._start_timer("ring", self._ring_timeout_s, self._on_ring_timeout)
        elif state == CallState.CONNECTING and self._connection_timeout_s is not None:
            self._start_timer("connect", self._connection_timeout_s, self._on_connection_timeout)

    def _start_timer(self, name: str, delay: float, callback) -> None:
        self._cancel_timer(name)

        async def fire() -> None:
            await asyncio.sleep(delay)
            self._timers.pop(name, None)
            await callback()

        self._timers[name] = asyncio.ensure_future(fire())

    def _cancel_timer(self, name: str) -> None:
        timer = self._timers.pop(name, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    def _cancel_timers(self) -> None:
        for name in list(self._timers):
            self._cancel_timer(name)

    async def _on_ring_timeout(self) -> None:
        if self._state == CallState.RINGING:
            logger.info(
                f"Call {self.current_call_id} not answered within {self._ring_timeout_s}s",
                extra={"evt": "call_missed"},
            )
            await self.end_call()

    async def _on_connection_timeout(self) -> None:
        if self._state == CallState.CONNECTING:
            await self._fail(
                NegotiationError(f"Call failed to connect within {self._connection_timeout_s}s")
            )

    # Media ---------------------------------------------------------------

    async def _acquire_local_media(self, session: CallSession) -> None:
        if self._local_media is not None:
            return
        try:
            stream = await self.media_capture.acquire_local_media(video=session.is_video)
        except MediaAcquisitionError:
            raise
        except Exception as e:
            raise MediaAcquisitionError(str(e)) from e

        if self._session is not session or self._tearing_down:
            await self.media_capture.release_local_media(stream)
            raise InvalidStateError(f"Call {session.call_id} was ended")

        logger.info(f"Local stream obtained: {len(stream.tracks)} tracks")
        self._local_media = stream
        session.local_stream = stream
        self._apply_flags_to_tracks()
        self.local_streams.publish(stream)
        await self._route_audio(self._flags.speaker_on)

    async def _release_local_media(self) -> None:
        """Stop captured tracks. Each stream is released once."""
        streams = [s for s in (self._screen_stream, self._local_media) if s is not None]
        self._screen_stream = None
        self._local_media = None
        self._flags.screen_sharing = False
        for stream in streams:
            try:
                await self.media_capture.release_local_media(stream)
                logger.info(f"Released local stream {stream.id[:8]}")
            except Exception as e:
                logger.error(f"Error releasing local media: {e}")

    def _apply_flags_to_tracks(self) -> None:
        if self._local_media is None:
            return
        for track in self._local_media.audio_tracks():
            track.enabled = not self._flags.muted
        for track in self._local_media.video_tracks():
            track.enabled = not self._flags.camera_off

    async def _route_audio(self, speaker_on: bool) -> None:
        if self.audio_routing is None:
            return
        try:
            await self.audio_routing.set_speakerphone(speaker_on)
        except Exception as e:
            logger.warning(f"Audio routing failed: {e}")

    def _bind_remote_stream(self, session: CallSession, stream: MediaStream) -> None:
        if self._session is not session or self._tearing_down:
            return
        logger.info(f"Remote stream bound: {len(stream.tracks)} tracks")
        session.remote_stream = stream
        self.remote_streams.publish(stream)
        self._check_ready()

    # Peer connection -----------------------------------------------------

    async def _open_peer(self, session: CallSession) -> None:
        self._ensure_current(session)
        try:
            peer = self._peer_factory()
        except Exception as e:
            raise NegotiationError(f"Could not create peer connection: {e}") from e
        self._peer = peer

        peer.on_remote_stream(lambda stream: self._bind_remote_stream(session, stream))
        peer.on_ice_candidate(lambda candidate: self._on_local_candidate(session, candidate))
        peer.on_connection_state(lambda state: self._on_peer_state(session, state))

        await self._negotiate(peer.add_stream(session.local_stream))

    def _require_peer(self, session: CallSession) -> PeerConnection:
        self._ensure_current(session)
        if self._peer is None:
            raise NegotiationError("No peer connection")
        return self._peer

    async def _negotiate(self, operation: Awaitable[Any]) -> Any:
        try:
            return await operation
        except CallError:
            raise
        except Exception as e:
            raise NegotiationError(str(e)) from e

    async def _apply_remote_description(self, description: Optional[SessionDescription]) -> None:
        if description is None or self._peer is None:
            raise NegotiationError("No remote description to apply")
        await self._negotiate(self._peer.set_remote_description(description))
        self._remote_description_set = True
        logger.info(f"Remote {description.type} applied")
        await self._flush_pending_candidates()

    async def _flush_pending_candidates(self) -> None:
        if not self._pending_candidates or self._peer is None:
            return
        candidates, self._pending_candidates = self._pending_candidates, []
        logger.info(f"Processing {len(candidates)} pending ICE candidates")
        for candidate in candidates:
            try:
                await self._peer.add_ice_candidate(candidate)
            except Exception as e:
                logger.warning(f"Error adding pending ICE candidate: {e}")

    def _on_local_candidate(self, session: CallSession, candidate: IceCandidate) -> None:
        if self._session is not session or self._tearing_down:
            return
        message = SignalMessage(
            kind=SignalKind.CANDIDATE,
            call_id=session.call_id,
            sender_id=self.user_id,
            recipient_id=session.peer_id,
            candidate=candidate,
        )
        self._spawn(self._send_candidate(message))

    async def _send_candidate(self, message: SignalMessage) -> None:
        try:
            await self._send(message)
        except SignalingError as e:
            if self._state == CallState.CONNECTED:
                await self._fail(e)
            else:
                logger.warning(f"Could not send ICE candidate: {e}")

    def _on_peer_state(self, session: CallSession, state: str) -> None:
        if self._session is not session or self._tearing_down:
            return
        logger.info(f"Peer connection state: {state}")
        if state == PEER_CONNECTED:
            if self._state in (CallState.CONNECTING, CallState.RINGING):
                self._set_state(CallState.CONNECTED)
        elif state in (PEER_FAILED, PEER_DISCONNECTED):
            self._spawn(self._fail(NegotiationError(f"Peer connection {state}")))

    # Signaling -----------------------------------------------------------

    async def _send(self, message: SignalMessage) -> None:
        try:
            await self.signaling.send_signal(message.call_id, message)
        except CallError:
            raise
        except Exception as e:
            raise SignalingError(str(e)) from e

    def _subscribe_signals(self, session: CallSession) -> None:
        self._unsubscribe_signals()

        async def handler(message: SignalMessage) -> None:
            await self._handle_signal(session, message)

        self._signal_unsubscribe = self.signaling.on_signal(session.call_id, handler)

    def _unsubscribe_signals(self) -> None:
        if self._signal_unsubscribe is not None:
            self._signal_unsubscribe()
            self._signal_unsubscribe = None

    async def _handle_signal(self, session: CallSession, message: SignalMessage) -> None:
        if self._session is not session or self._tearing_down:
            return
        if message.sender_id != session.peer_id:
            logger.warning(f"Ignoring signal from {message.sender_id} on call {session.call_id}")
            return

        if message.kind == SignalKind.ANSWER:
            if session.direction != CallDirection.OUTGOING or self._remote_description_set:
                logger.debug("Ignoring duplicate or unexpected answer")
                return
            logger.info(f"Received answer for call {session.call_id}")
            try:
                await self._apply_remote_description(message.description)
            except CallError as e:
                await self._fail(e)

        elif message.kind == SignalKind.CANDIDATE:
            if self._peer is not None and self._remote_description_set:
                try:
                    await self._peer.add_ice_candidate(message.candidate)
                except Exception as e:
                    logger.warning(f"Error adding ICE candidate: {e}")
            else:
                self._pending_candidates.append(message.candidate)
                logger.debug("Queued ICE candidate until remote description is set")

        elif message.kind == SignalKind.HANGUP:
            if self._state in (CallState.IDLE, CallState.ENDED):
                return
            logger.info(f"Peer {session.peer_id} ended call {session.call_id}")
            await self._teardown(notify_peer=False)

        else:
            logger.debug(f"Ignoring {message.kind.value} signal on established call")

    async def _handle_incoming_call(self, incoming: IncomingCall) -> None:
        if incoming.callee_id != self.user_id:
            logger.info(f"Ignoring call {incoming.call_id}: not addressed to us")
            return
        if incoming.caller_id == self.user_id:
            logger.info(f"Ignoring our own outgoing call {incoming.call_id}")
            return
        if self._state == CallState.ENDED and not self._closed:
            self._defer_incoming(incoming)
            return
        if self._state != CallState.IDLE or self._intent_lock.locked() or self._closed:
            logger.info(
                f"Ignoring incoming call {incoming.call_id}: busy ({self._state.value})",
                extra={"evt": "call_busy"},
            )
            return
        if incoming.call_id == self._last_call_id:
            logger.info(f"Ignoring duplicate call notification {incoming.call_id}")
            return

        logger.info(f"Incoming {incoming.call_type.value} call from {incoming.caller_id} (call ID: {incoming.call_id})")
        session = self._begin_session(
            incoming.call_id, incoming.call_type, CallDirection.INCOMING, incoming.caller_id
        )
        self._remote_offer = incoming.offer
        self._subscribe_signals(session)
        self._set_state(CallState.RINGING)

    def _defer_incoming(self, incoming: IncomingCall) -> None:
        """Hold an offer that arrives while ``ended`` until the reset to ``idle``.

        Only the latest offer is kept. A hangup from its caller drops it.
        """
        if incoming.call_id == self._last_call_id:
            return
        self._take_deferred_incoming()
        logger.info(
            f"Holding incoming call {incoming.call_id} until the previous call is cleared",
            extra={"evt": "call_deferred"},
        )

        def on_signal(message: SignalMessage) -> None:
            if message.kind == SignalKind.HANGUP and message.sender_id == incoming.caller_id:
                logger.info(f"Caller withdrew held call {incoming.call_id}")
                self._take_deferred_incoming()

        self._deferred_incoming = incoming
        self._deferred_unsubscribe = self.signaling.on_signal(incoming.call_id, on_signal)

    def _take_deferred_incoming(self) -> Optional[IncomingCall]:
        incoming, self._deferred_incoming = self._deferred_incoming, None
        if self._deferred_unsubscribe is not None:
            self._deferred_unsubscribe()
            self._deferred_unsubscribe = None
        return incoming

    async def _on_signaling_lost(self, error: Exception) -> None:
        if self._session is None or self._state not in ACTIVE_STATES:
            logger.warning(f"Signaling transport lost with no active call: {error}")
            return
        if not isinstance(error, SignalingError):
            error = SignalingError(str(error))
        await self._fail(error)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background call task failed: {task.exception()}")
