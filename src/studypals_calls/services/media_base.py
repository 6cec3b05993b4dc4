"""Media capture and audio routing interface definitions."""

from abc import ABC, abstractmethod
from typing import Protocol

from ..models.media import MediaStream, MediaTrack


class MediaCapture(Protocol):
    """Protocol for camera, microphone and screen capture."""

    async def acquire_local_media(self, video: bool) -> MediaStream:
        """Open the microphone (and camera if ``video``) and return a live stream.

        Raises:
            MediaAcquisitionError: Permission denied or device busy
        """
        ...

    async def release_local_media(self, stream: MediaStream) -> None:
        """Stop every track of ``stream`` and free the devices."""
        ...

    async def switch_camera(self, track: MediaTrack) -> None:
        """Swap between front and rear camera, keeping ``track`` bound."""
        ...

    async def acquire_display_media(self) -> MediaStream:
        """Start a screen capture and return a stream with one video track.

        Raises:
            MediaAcquisitionError: Capture refused or unsupported
        """
        ...


class AudioRouting(Protocol):
    """Protocol for device audio output routing."""

    async def set_speakerphone(self, on: bool) -> None:
        """Route call audio to the loudspeaker (True) or earpiece (False)."""
        ...


class BaseMediaCapture(ABC):
    """Base class for media capture implementations."""

    @abstractmethod
    async def acquire_local_media(self, video: bool) -> MediaStream:
        """Acquire microphone and optionally camera."""
        raise NotImplementedError

    async def release_local_media(self, stream: MediaStream) -> None:
        """Stop all tracks of the stream."""
        stream.stop()

    @abstractmethod
    async def switch_camera(self, track: MediaTrack) -> None:
        """Swap physical camera."""
        raise NotImplementedError

    @abstractmethod
    async def acquire_display_media(self) -> MediaStream:
        """Acquire a screen capture stream."""
        raise NotImplementedError
