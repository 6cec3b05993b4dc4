"""Media stream and track handles shared by the coordinator and backends."""

import logging
import uuid
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

AUDIO = "audio"
VIDEO = "video"


class MediaTrack:
    """A single audio or video track.

    ``enabled`` gates whether the track carries real media; a disabled track
    stays attached to the peer connection so it can be re-enabled without
    renegotiation. ``source`` is the backend object (for example an aiortc
    track) the handle wraps.
    """

    def __init__(self, kind: str, source: Any = None, label: str = "", track_id: Optional[str] = None):
        if kind not in (AUDIO, VIDEO):
            raise ValueError(f"Unsupported track kind: {kind!r}")
        self.id = track_id or str(uuid.uuid4())
        self.kind = kind
        self.label = label
        self.source = source
        self.enabled = True
        self._stopped = False
        self._ended_callbacks: list[Callable[["MediaTrack"], Any]] = []

    @property
    def stopped(self) -> bool:
        return self._stopped

    def on_ended(self, callback: Callable[["MediaTrack"], Any]) -> None:
        """Register a callback fired once when the track stops."""
        self._ended_callbacks.append(callback)

    def stop(self) -> None:
        """Stop the track and release its source. Safe to call repeatedly."""
        if self._stopped:
            return
        self._stopped = True
        self.enabled = False

        stop_source = getattr(self.source, "stop", None)
        if callable(stop_source):
            try:
                stop_source()
            except Exception as e:
                logger.warning(f"Error stopping {self.kind} track source: {e}")

        callbacks, self._ended_callbacks = self._ended_callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception as e:
                logger.warning(f"Track ended callback failed: {e}")

    def __repr__(self) -> str:
        state = "stopped" if self._stopped else ("enabled" if self.enabled else "disabled")
        return f"MediaTrack(kind={self.kind}, id={self.id[:8]}, {state})"


class MediaStream:
    """A group of tracks captured or received together."""

    def __init__(self, tracks: Optional[list[MediaTrack]] = None, stream_id: Optional[str] = None):
        self.id = stream_id or str(uuid.uuid4())
        self._tracks: list[MediaTrack] = list(tracks or [])

    @property
    def tracks(self) -> list[MediaTrack]:
        return list(self._tracks)

    def add_track(self, track: MediaTrack) -> None:
        if track not in self._tracks:
            self._tracks.append(track)

    def remove_track(self, track: MediaTrack) -> None:
        if track in self._tracks:
            self._tracks.remove(track)

    def audio_tracks(self) -> list[MediaTrack]:
        return [t for t in self._tracks if t.kind == AUDIO]

    def video_tracks(self) -> list[MediaTrack]:
        return [t for t in self._tracks if t.kind == VIDEO]

    @property
    def video_track(self) -> Optional[MediaTrack]:
        """First video track, if any."""
        tracks = self.video_tracks()
        return tracks[0] if tracks else None

    @property
    def audio_track(self) -> Optional[MediaTrack]:
        """First audio track, if any."""
        tracks = self.audio_tracks()
        return tracks[0] if tracks else None

    @property
    def stopped(self) -> bool:
        return all(t.stopped for t in self._tracks)

    def stop(self) -> None:
        """Stop every track in the stream."""
        for track in self._tracks:
            track.stop()

    def __repr__(self) -> str:
        return f"MediaStream(id={self.id[:8]}, tracks={self._tracks!r})"
