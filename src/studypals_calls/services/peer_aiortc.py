"""WebRTC peer connection and media capture backed by aiortc."""

import asyncio
import functools
import logging
import platform
from typing import Any, Dict, List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp

from ..models.media import AUDIO, VIDEO, MediaStream, MediaTrack
from ..models.schemas import IceCandidate, SessionDescription
from ..models.state import CallType
from .errors import MediaAcquisitionError, NegotiationError
from .media_base import BaseMediaCapture
from .peer_base import BasePeerConnection

logger = logging.getLogger(__name__)


def blank_frame(frame: Any) -> Any:
    """Overwrite a decoded frame with silence (audio) or black (video)."""
    is_yuv = frame.format.name.startswith("yuv")
    for index, plane in enumerate(frame.planes):
        fill = 128 if is_yuv and index > 0 else 0
        plane.update(bytes([fill]) * plane.buffer_size)
    return frame


class SwitchableTrack(MediaStreamTrack):
    """Forwards frames from a source track and blanks them while disabled.

    The handle's ``enabled`` flag is read on every frame, so muting or
    turning the camera off never touches the peer connection. The source
    can be swapped (camera switch) while the track stays attached.
    """

    def __init__(self, kind: str, source: MediaStreamTrack):
        super().__init__()
        self.kind = kind
        self._source = source
        self.handle: Optional[MediaTrack] = None

    @property
    def source(self) -> MediaStreamTrack:
        return self._source

    def replace_source(self, source: MediaStreamTrack) -> MediaStreamTrack:
        """Swap the underlying source; returns the previous one."""
        previous, self._source = self._source, source
        return previous

    async def recv(self):
        frame = await self._source.recv()
        if self.handle is not None and not self.handle.enabled:
            blank_frame(frame)
        return frame

    def stop(self) -> None:
        super().stop()
        self._source.stop()


def default_devices() -> Dict[str, Dict[str, Optional[str]]]:
    """Capture device names and ffmpeg input formats for the current OS."""
    system = platform.system()
    if system == "Darwin":
        return {
            "camera": {"device": "default:none", "format": "avfoundation"},
            "audio": {"device": "none:default", "format": "avfoundation"},
            "screen": {"device": "Capture screen 0:none", "format": "avfoundation"},
        }
    if system == "Windows":
        return {
            "camera": {"device": "video=Integrated Camera", "format": "dshow"},
            "audio": {"device": "audio=Microphone", "format": "dshow"},
            "screen": {"device": "desktop", "format": "gdigrab"},
        }
    return {
        "camera": {"device": "/dev/video0", "format": "v4l2"},
        "audio": {"device": "default", "format": "pulse"},
        "screen": {"device": ":0.0", "format": "x11grab"},
    }


class AiortcMediaCapture(BaseMediaCapture):
    """Camera, microphone and screen capture through ffmpeg devices."""

    def __init__(
        self,
        camera_devices: Optional[List[str]] = None,
        camera_format: Optional[str] = None,
        audio_device: Optional[str] = None,
        audio_format: Optional[str] = None,
        screen_device: Optional[str] = None,
        screen_format: Optional[str] = None,
        video_width: int = 640,
        video_height: int = 480,
        video_fps: int = 30,
    ):
        defaults = default_devices()
        self.camera_devices = camera_devices or [defaults["camera"]["device"]]
        self.camera_format = camera_format or defaults["camera"]["format"]
        self.audio_device = audio_device or defaults["audio"]["device"]
        self.audio_format = audio_format or defaults["audio"]["format"]
        self.screen_device = screen_device or defaults["screen"]["device"]
        self.screen_format = screen_format or defaults["screen"]["format"]
        self.video_options = {
            "video_size": f"{video_width}x{video_height}",
            "framerate": str(video_fps),
        }
        self._camera_index = 0

    @classmethod
    def from_settings(cls, settings) -> "AiortcMediaCapture":
        return cls(
            camera_devices=settings.camera_devices or None,
            camera_format=settings.camera_format,
            audio_device=settings.audio_device,
            audio_format=settings.audio_format,
            screen_device=settings.screen_device,
            screen_format=settings.screen_format,
            video_width=settings.video_width,
            video_height=settings.video_height,
            video_fps=settings.video_fps,
        )

    async def _open_player(self, device: str, fmt: Optional[str], options: Optional[dict] = None) -> MediaPlayer:
        try:
            return await asyncio.to_thread(MediaPlayer, device, format=fmt, options=options or {})
        except Exception as e:
            raise MediaAcquisitionError(f"Could not open {device} ({fmt}): {e}") from e

    @staticmethod
    def _wrap(kind: str, source: MediaStreamTrack, label: str) -> MediaTrack:
        switchable = SwitchableTrack(kind, source)
        handle = MediaTrack(kind, source=switchable, label=label)
        switchable.handle = handle
        return handle

    async def acquire_local_media(self, video: bool) -> MediaStream:
        tracks: List[MediaTrack] = []
        try:
            microphone = await self._open_player(self.audio_device, self.audio_format)
            if microphone.audio is None:
                raise MediaAcquisitionError(f"No audio track on {self.audio_device}")
            tracks.append(self._wrap(AUDIO, microphone.audio, label="microphone"))

            if video:
                device = self.camera_devices[self._camera_index]
                camera = await self._open_player(device, self.camera_format, self.video_options)
                if camera.video is None:
                    raise MediaAcquisitionError(f"No video track on {device}")
                tracks.append(self._wrap(VIDEO, camera.video, label=f"camera:{device}"))
        except MediaAcquisitionError:
            for track in tracks:
                track.stop()
            raise

        logger.info(f"Acquired local media: {[t.kind for t in tracks]}")
        return MediaStream(tracks)

    async def switch_camera(self, track: MediaTrack) -> None:
        if len(self.camera_devices) < 2:
            logger.info("Camera switch requested but only one camera is configured")
            return
        if not isinstance(track.source, SwitchableTrack):
            raise MediaAcquisitionError("Track was not captured by this media capture")

        next_index = (self._camera_index + 1) % len(self.camera_devices)
        device = self.camera_devices[next_index]
        camera = await self._open_player(device, self.camera_format, self.video_options)
        if camera.video is None:
            raise MediaAcquisitionError(f"No video track on {device}")

        previous = track.source.replace_source(camera.video)
        previous.stop()
        self._camera_index = next_index
        track.label = f"camera:{device}"
        logger.info(f"Switched camera to {device}")

    async def acquire_display_media(self) -> MediaStream:
        screen = await self._open_player(
            self.screen_device, self.screen_format, {"framerate": "15"}
        )
        if screen.video is None:
            raise MediaAcquisitionError(f"No video track on {self.screen_device}")
        return MediaStream([self._wrap(VIDEO, screen.video, label="screen")])


def parse_candidate(candidate: IceCandidate):
    """Convert a browser-style candidate into an aiortc RTCIceCandidate."""
    sdp = candidate.candidate
    if sdp.startswith("candidate:"):
        sdp = sdp[len("candidate:"):]
    rtc_candidate = candidate_from_sdp(sdp)
    rtc_candidate.sdpMid = candidate.sdp_mid
    rtc_candidate.sdpMLineIndex = candidate.sdp_mline_index
    return rtc_candidate


class AiortcPeerConnection(BasePeerConnection):
    """Peer connection wrapping ``aiortc.RTCPeerConnection``.

    aiortc gathers ICE candidates before the local description is applied
    and embeds them in the SDP, so no trickle candidates are emitted; remote
    candidates are still accepted.
    """

    def __init__(self, ice_servers: Optional[List[Dict[str, Any]]] = None):
        super().__init__()
        servers = [
            RTCIceServer(
                urls=server["urls"],
                username=server.get("username"),
                credential=server.get("credential"),
            )
            for server in (ice_servers or [])
        ]
        self._pc = RTCPeerConnection(configuration=RTCConfiguration(iceServers=servers))
        self._video_sender = None
        self._has_audio_sender = False
        self._remote_stream: Optional[MediaStream] = None

        self._pc.on("track", self._on_track)
        self._pc.on("connectionstatechange", self._on_connection_state_change)

    def _on_track(self, track: MediaStreamTrack) -> None:
        logger.info(f"Received remote track: {track.kind}")
        if self._remote_stream is None:
            self._remote_stream = MediaStream()
        self._remote_stream.add_track(MediaTrack(track.kind, source=track, label="remote"))
        self._emit_remote_stream(self._remote_stream)

    def _on_connection_state_change(self) -> None:
        state = self._pc.connectionState
        logger.info(f"Connection state: {state}")
        self._emit_connection_state(state)

    async def add_stream(self, stream: MediaStream) -> None:
        for track in stream.tracks:
            sender = self._pc.addTrack(track.source)
            if track.kind == VIDEO and self._video_sender is None:
                self._video_sender = sender
            elif track.kind == AUDIO:
                self._has_audio_sender = True

    def _ensure_receivers(self, call_type: CallType) -> None:
        if not self._has_audio_sender:
            self._pc.addTransceiver(AUDIO, direction="recvonly")
            self._has_audio_sender = True
        if call_type == CallType.VIDEO and self._video_sender is None:
            self._pc.addTransceiver(VIDEO, direction="recvonly")

    async def create_offer(self, call_type: CallType) -> SessionDescription:
        self._ensure_receivers(call_type)
        try:
            offer = await self._pc.createOffer()
            await self._pc.setLocalDescription(offer)
        except Exception as e:
            raise NegotiationError(f"Failed to create offer: {e}") from e
        local = self._pc.localDescription
        logger.info(f"Created offer with {'video' if call_type == CallType.VIDEO else 'audio only'}")
        return SessionDescription(type=local.type, sdp=local.sdp)

    async def create_answer(self, call_type: CallType) -> SessionDescription:
        try:
            answer = await self._pc.createAnswer()
            await self._pc.setLocalDescription(answer)
        except Exception as e:
            raise NegotiationError(f"Failed to create answer: {e}") from e
        local = self._pc.localDescription
        logger.info(f"Created answer with {'video' if call_type == CallType.VIDEO else 'audio only'}")
        return SessionDescription(type=local.type, sdp=local.sdp)

    async def set_remote_description(self, description: SessionDescription) -> None:
        try:
            await self._pc.setRemoteDescription(
                RTCSessionDescription(sdp=description.sdp, type=description.type)
            )
        except Exception as e:
            raise NegotiationError(f"Failed to apply remote {description.type}: {e}") from e
        self._remote_description = description

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        if not candidate.candidate:
            return
        try:
            await self._pc.addIceCandidate(parse_candidate(candidate))
        except Exception as e:
            raise NegotiationError(f"Failed to add ICE candidate: {e}") from e

    async def replace_video_track(self, track: MediaTrack) -> None:
        if self._video_sender is None:
            raise NegotiationError("No video sender found")
        self._video_sender.replaceTrack(track.source)

    async def close(self) -> None:
        if self._remote_stream is not None:
            self._remote_stream.stop()
        await self._pc.close()


def make_peer_factory(ice_servers: List[Dict[str, Any]]):
    """Return a factory producing peer connections with ``ice_servers``."""
    return functools.partial(AiortcPeerConnection, ice_servers=ice_servers)
