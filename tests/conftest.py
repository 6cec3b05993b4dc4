"""Test configuration for pytest."""

import asyncio
from collections import defaultdict
from typing import Optional

import pytest
import pytest_asyncio

from studypals_calls.models.media import AUDIO, VIDEO, MediaStream, MediaTrack
from studypals_calls.models.schemas import IceCandidate, SessionDescription
from studypals_calls.models.state import CallState, CallType
from studypals_calls.services.call_coordinator import CallSessionCoordinator
from studypals_calls.services.media_base import BaseMediaCapture
from studypals_calls.services.peer_base import BasePeerConnection
from studypals_calls.services.signaling_memory import InMemorySignalingHub


class FakeMediaCapture(BaseMediaCapture):
    """Media capture producing in-memory tracks."""

    def __init__(self):
        self.fail_with: Optional[Exception] = None
        self.display_fail_with: Optional[Exception] = None
        self.display_delay_s = 0.0
        self.acquired: list[MediaStream] = []
        self.released: list[MediaStream] = []
        self.displays: list[MediaStream] = []
        self.camera_switches = 0

    async def acquire_local_media(self, video: bool) -> MediaStream:
        if self.fail_with is not None:
            raise self.fail_with
        tracks = [MediaTrack(AUDIO, label="microphone")]
        if video:
            tracks.append(MediaTrack(VIDEO, label="camera:front"))
        stream = MediaStream(tracks)
        self.acquired.append(stream)
        return stream

    async def release_local_media(self, stream: MediaStream) -> None:
        self.released.append(stream)
        stream.stop()

    async def switch_camera(self, track: MediaTrack) -> None:
        self.camera_switches += 1
        track.label = "camera:rear" if track.label == "camera:front" else "camera:front"

    async def acquire_display_media(self) -> MediaStream:
        if self.display_delay_s:
            await asyncio.sleep(self.display_delay_s)
        if self.display_fail_with is not None:
            raise self.display_fail_with
        stream = MediaStream([MediaTrack(VIDEO, label="screen")])
        self.displays.append(stream)
        return stream


class FakeAudioRouting:
    """Records speakerphone routing requests."""

    def __init__(self):
        self.calls: list[bool] = []

    async def set_speakerphone(self, on: bool) -> None:
        self.calls.append(on)


class FakePeerConnection(BasePeerConnection):
    """Peer connection that records negotiation steps.

    Tests drive the connection with ``connect``, ``emit_state`` and
    ``emit_candidate``.
    """

    def __init__(self, owner: str):
        super().__init__()
        self.owner = owner
        self.added_streams: list[MediaStream] = []
        self.remote_descriptions: list[SessionDescription] = []
        self.candidates: list[IceCandidate] = []
        self.replaced_tracks: list[MediaTrack] = []
        self.closed = False
        self.fail_offer: Optional[Exception] = None

    async def add_stream(self, stream: MediaStream) -> None:
        self.added_streams.append(stream)

    async def create_offer(self, call_type: CallType) -> SessionDescription:
        if self.fail_offer is not None:
            raise self.fail_offer
        return SessionDescription(type="offer", sdp=f"v=0 offer from {self.owner} ({call_type.value})")

    async def create_answer(self, call_type: CallType) -> SessionDescription:
        return SessionDescription(type="answer", sdp=f"v=0 answer from {self.owner} ({call_type.value})")

    async def set_remote_description(self, description: SessionDescription) -> None:
        self.remote_descriptions.append(description)
        self._remote_description = description

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        self.candidates.append(candidate)

    async def replace_video_track(self, track: MediaTrack) -> None:
        self.replaced_tracks.append(track)

    async def close(self) -> None:
        self.closed = True

    def connect(self, video: bool = True) -> MediaStream:
        """Deliver a remote stream and report the connection as up."""
        tracks = [MediaTrack(AUDIO, label="remote")]
        if video:
            tracks.append(MediaTrack(VIDEO, label="remote"))
        stream = MediaStream(tracks)
        self._emit_remote_stream(stream)
        self._emit_connection_state("connected")
        return stream

    def emit_state(self, state: str) -> None:
        self._emit_connection_state(state)

    def emit_candidate(self, candidate: IceCandidate) -> None:
        self._emit_ice_candidate(candidate)


@pytest.fixture
def hub():
    """In-process signaling hub shared by all test users."""
    return InMemorySignalingHub()


@pytest.fixture
def peers():
    """Peer connections created per user, in creation order."""
    return defaultdict(list)


@pytest.fixture
def captures():
    """Media capture fake per user."""
    return defaultdict(FakeMediaCapture)


@pytest_asyncio.fixture
async def make_coordinator(hub, peers, captures):
    """Factory building started coordinators wired to the in-memory hub."""
    created: list[CallSessionCoordinator] = []

    async def factory(user_id: str, **kwargs) -> CallSessionCoordinator:
        def peer_factory() -> FakePeerConnection:
            peer = FakePeerConnection(user_id)
            peers[user_id].append(peer)
            return peer

        options = {
            "ended_grace_s": 0.01,
            "ring_timeout_s": None,
            "connection_timeout_s": None,
        }
        options.update(kwargs)
        coordinator = CallSessionCoordinator(
            user_id=user_id,
            signaling=hub.channel(user_id),
            media_capture=captures[user_id],
            peer_factory=peer_factory,
            **options,
        )
        await coordinator.start()
        created.append(coordinator)
        return coordinator

    yield factory

    for coordinator in created:
        await coordinator.close()


@pytest.fixture
def wait_for_state():
    """Wait until a coordinator reaches ``state``."""

    async def waiter(coordinator: CallSessionCoordinator, state: CallState, timeout: float = 1.0) -> None:
        if coordinator.state == state:
            return
        with coordinator.state_changes.subscribe() as subscription:
            while True:
                value = await subscription.get(timeout)
                if value == state:
                    return

    return waiter


@pytest.fixture
def candidate():
    """A host ICE candidate in browser shape."""
    return IceCandidate(
        candidate="candidate:1 1 udp 2130706431 192.168.1.10 54321 typ host",
        sdpMid="0",
        sdpMLineIndex=0,
    )


@pytest.fixture
def audio_routing():
    """Speakerphone routing fake."""
    return FakeAudioRouting()
