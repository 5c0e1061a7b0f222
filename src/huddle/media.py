"""Local media capture handles and gated aiortc tracks.

A MediaStream groups MediaTracks. A track's `enabled` flag is the mute
switch: when it is off the underlying aiortc track keeps running but
GatedTrack replaces its frames with silence or black video.
"""

import logging
import secrets
from typing import Optional, Protocol

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import AudioStreamTrack, VideoStreamTrack
from av import AudioFrame, VideoFrame

logger = logging.getLogger(__name__)

AUDIO = "audio"
VIDEO = "video"


class GatedTrack(MediaStreamTrack):
    """Relay frames from a source track, blanking them while disabled."""

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.enabled = True
        self._source = source

    @property
    def source(self) -> MediaStreamTrack:
        return self._source

    def replace_source(self, source: MediaStreamTrack) -> MediaStreamTrack:
        """Relay frames from `source` from now on; returns the previous source.

        Every consumer of this track (each outbound call) switches at once.
        """
        if source.kind != self.kind:
            raise ValueError(f"Cannot replace {self.kind} source with {source.kind}")
        previous, self._source = self._source, source
        return previous

    async def recv(self):
        frame = await self._source.recv()
        if self.enabled:
            return frame
        if isinstance(frame, AudioFrame):
            for plane in frame.planes:
                plane.update(bytes(plane.buffer_size))
            return frame
        if isinstance(frame, VideoFrame):
            return black_frame_like(frame)
        return frame

    def stop(self) -> None:
        super().stop()
        self._source.stop()


def black_frame_like(frame: VideoFrame) -> VideoFrame:
    """A black yuv420p frame with the timing of `frame`."""
    blank = VideoFrame(frame.width, frame.height, "yuv420p")
    luma, *chroma = blank.planes
    luma.update(bytes(luma.buffer_size))
    for plane in chroma:
        plane.update(b"\x80" * plane.buffer_size)
    blank.pts = frame.pts
    if frame.time_base is not None:
        blank.time_base = frame.time_base
    return blank


class MediaTrack:
    """One local or remote track with a mute flag.

    Attributes:
        kind: "audio" or "video".
        source: aiortc track carrying the frames, if any.
    """

    def __init__(self, kind: str, source: Optional[MediaStreamTrack] = None):
        if kind not in (AUDIO, VIDEO):
            raise ValueError(f"Unknown track kind: {kind}")
        self.kind = kind
        self.source = source
        self._enabled = True
        self._ended = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._enabled = value
        if isinstance(self.source, GatedTrack):
            self.source.enabled = value

    @property
    def ended(self) -> bool:
        if self.source is not None and self.source.readyState == "ended":
            return True
        return self._ended

    def stop(self) -> None:
        if self._ended:
            return
        self._ended = True
        if self.source is not None:
            self.source.stop()


class MediaStream:
    """A set of tracks captured or received together."""

    def __init__(self, tracks: list[MediaTrack] | None = None, stream_id: str | None = None):
        self.id = stream_id or secrets.token_hex(8)
        self.tracks: list[MediaTrack] = list(tracks or [])

    def add_track(self, track: MediaTrack) -> None:
        self.tracks.append(track)

    def audio_tracks(self) -> list[MediaTrack]:
        return [t for t in self.tracks if t.kind == AUDIO]

    def video_tracks(self) -> list[MediaTrack]:
        return [t for t in self.tracks if t.kind == VIDEO]

    def has_live(self, kind: str) -> bool:
        """True if some track of kind is enabled and not ended."""
        return any(t.kind == kind and t.enabled and not t.ended for t in self.tracks)

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()


class MediaCapture(Protocol):
    """Source of the local camera/microphone stream."""

    async def capture(self, audio: bool = True, video: bool = True) -> MediaStream:
        """Acquire local media. Raises on failure (e.g., device busy)."""
        ...


class SyntheticCapture:
    """Silence and generated video frames from aiortc's built-in tracks."""

    async def capture(self, audio: bool = True, video: bool = True) -> MediaStream:
        stream = MediaStream()
        if audio:
            stream.add_track(MediaTrack(AUDIO, GatedTrack(AudioStreamTrack())))
        if video:
            stream.add_track(MediaTrack(VIDEO, GatedTrack(VideoStreamTrack())))
        return stream


class PlayerCapture:
    """Capture from a device or file through aiortc's MediaPlayer.

    Examples:
        PlayerCapture("/dev/video0", format="v4l2")
        PlayerCapture("default", format="pulse")
    """

    def __init__(self, file: str, format: str | None = None, options: dict | None = None):
        self._file = file
        self._format = format
        self._options = options or {}

    async def capture(self, audio: bool = True, video: bool = True) -> MediaStream:
        player = MediaPlayer(self._file, format=self._format, options=self._options)
        stream = MediaStream()
        if audio and player.audio is not None:
            stream.add_track(MediaTrack(AUDIO, GatedTrack(player.audio)))
        if video and player.video is not None:
            stream.add_track(MediaTrack(VIDEO, GatedTrack(player.video)))
        if not stream.tracks:
            raise RuntimeError(f"No media tracks available from {self._file}")
        logger.info(f"Captured {len(stream.tracks)} track(s) from {self._file}")
        return stream
