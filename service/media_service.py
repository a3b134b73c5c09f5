# service/media_service.py
import asyncio
import fractions
import logging
import time
from typing import Callable, Iterable, List, Optional, Tuple

import cv2
import numpy as np
from aiortc import MediaStreamTrack, VideoStreamTrack
from aiortc.contrib.media import MediaBlackhole
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame, VideoFrame

from drivers.capture import CaptureBackend
from models.errors import MediaAcquisitionError

logger = logging.getLogger("media_service")

# #3498db in BGR
SYNTHETIC_BACKGROUND = (219, 152, 52)


class SyntheticVideoTrack(VideoStreamTrack):
    """
    Camera placeholder: blue frame with a caption and the current time.
    """

    def __init__(self, width: int = 640, height: int = 480, label: str = "Local Camera"):
        super().__init__()
        self.width = width
        self.height = height
        self.label = label

    def _put_centered(self, image: np.ndarray, text: str, y: int):
        font = cv2.FONT_HERSHEY_SIMPLEX
        (w, _), _ = cv2.getTextSize(text, font, 1.0, 2)
        cv2.putText(image, text, ((self.width - w) // 2, y), font, 1.0, (255, 255, 255), 2, cv2.LINE_AA)

    def render(self) -> np.ndarray:
        bgr = np.empty((self.height, self.width, 3), dtype=np.uint8)
        bgr[:] = SYNTHETIC_BACKGROUND
        self._put_centered(bgr, self.label, self.height // 2)
        self._put_centered(bgr, time.strftime("%H:%M:%S"), self.height // 2 + 40)
        return bgr

    async def recv(self) -> VideoFrame:
        pts, time_base = await self.next_timestamp()
        frame = VideoFrame.from_ndarray(self.render(), format="bgr24")
        frame.pts = pts
        frame.time_base = time_base
        return frame


class SyntheticAudioTrack(MediaStreamTrack):
    """Near-silent sine tone, paced in real time like aiortc's AudioStreamTrack."""

    kind = "audio"

    def __init__(self, sample_rate: int = 48000, ptime: float = 0.02,
                 frequency: float = 440.0, gain: float = 0.01):
        super().__init__()
        self.sample_rate = sample_rate
        self.samples = int(sample_rate * ptime)
        self.frequency = frequency
        self.gain = gain
        self.label = "Synthetic Audio"
        self._start: Optional[float] = None
        self._timestamp = 0

    def render(self, timestamp: int) -> np.ndarray:
        t = (np.arange(self.samples) + timestamp) / self.sample_rate
        wave = self.gain * 32767 * np.sin(2 * np.pi * self.frequency * t)
        return wave.astype(np.int16).reshape(1, -1)

    async def recv(self) -> AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError

        if self._start is None:
            self._start = time.time()
            self._timestamp = 0
        else:
            self._timestamp += self.samples
            wait = self._start + (self._timestamp / self.sample_rate) - time.time()
            if wait > 0:
                await asyncio.sleep(wait)

        frame = AudioFrame.from_ndarray(self.render(self._timestamp), format="s16", layout="mono")
        frame.pts = self._timestamp
        frame.sample_rate = self.sample_rate
        frame.time_base = fractions.Fraction(1, self.sample_rate)
        return frame


class LocalTrack(MediaStreamTrack):
    """Wraps a capture track with an ``enabled`` switch.

    A disabled track keeps producing frames with the same timing, blacked out
    (video) or zeroed (audio), so the negotiated media lines stay unchanged.
    """

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.label = getattr(source, "label", source.kind)
        self.enabled = True

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return self._blank(frame)

    @staticmethod
    def _blank(frame):
        if isinstance(frame, VideoFrame):
            blank = VideoFrame.from_ndarray(np.zeros((frame.height, frame.width, 3), dtype=np.uint8),
                                            format="bgr24")
        else:
            blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
            for plane in blank.planes:
                plane.update(bytes(plane.buffer_size))
            blank.sample_rate = frame.sample_rate
        blank.pts = frame.pts
        blank.time_base = frame.time_base
        return blank

    def stop(self):
        super().stop()
        self.source.stop()


class LocalMedia:
    """Local audio/video state: enable flags plus the acquired tracks.

    Toggles issued before tracks exist are remembered and applied on attach.
    """

    def __init__(self):
        self.audio_enabled = True
        self.video_enabled = True
        self.tracks: List[LocalTrack] = []
        self.synthetic = False

    def attach(self, sources: Iterable[MediaStreamTrack], synthetic: bool = False) -> List[LocalTrack]:
        for source in sources:
            track = source if isinstance(source, LocalTrack) else LocalTrack(source)
            track.enabled = self.audio_enabled if track.kind == "audio" else self.video_enabled
            self.tracks.append(track)
        self.synthetic = synthetic
        logger.info(f"Attached {len(self.tracks)} local tracks (synthetic={synthetic})")
        return list(self.tracks)

    def tracks_of(self, kind: str) -> List[LocalTrack]:
        return [t for t in self.tracks if t.kind == kind]

    def _toggle(self, kind: str, enabled: bool):
        for track in self.tracks_of(kind):
            track.enabled = enabled
            logger.info(f"{kind.capitalize()} track {track.label} enabled: {enabled}")

    def toggle_audio(self, enabled: bool):
        self.audio_enabled = bool(enabled)
        self._toggle("audio", self.audio_enabled)

    def toggle_video(self, enabled: bool):
        self.video_enabled = bool(enabled)
        self._toggle("video", self.video_enabled)

    def stop(self):
        for track in self.tracks:
            try:
                track.stop()
            except Exception as e:
                logger.warning(f"Error stopping {track.kind} track: {e}")
        if self.tracks:
            logger.info(f"Stopped {len(self.tracks)} local tracks")
        self.tracks = []


class SyntheticCaptureBackend(CaptureBackend):
    def __init__(self, width: int = 640, height: int = 480):
        self.width = width
        self.height = height

    async def acquire(self) -> List[MediaStreamTrack]:
        return [SyntheticAudioTrack(), SyntheticVideoTrack(self.width, self.height)]


async def acquire_local_media(primary: Optional[CaptureBackend],
                              fallback: CaptureBackend) -> Tuple[List[MediaStreamTrack], bool]:
    """Returns (tracks, synthetic). Hardware failure never propagates."""
    if primary is not None:
        try:
            return await primary.acquire(), False
        except MediaAcquisitionError as e:
            logger.warning(f"Could not access real camera, using mock stream: {e}")
    return await fallback.acquire(), True


class MediaSink:
    """Rendering surface for local or remote tracks. Does not render itself."""

    def __init__(self):
        self.tracks: List[MediaStreamTrack] = []

    async def attach(self, track: MediaStreamTrack):
        self.tracks.append(track)

    async def detach(self):
        self.tracks = []


class RecorderSink(MediaSink):
    """Feeds each attached track into its own aiortc recorder (blackhole by default)."""

    def __init__(self, recorder_factory: Callable[[MediaStreamTrack], object] = lambda track: MediaBlackhole()):
        super().__init__()
        self.recorder_factory = recorder_factory
        self._recorders = []

    async def attach(self, track: MediaStreamTrack):
        await super().attach(track)
        recorder = self.recorder_factory(track)
        recorder.addTrack(track)
        await recorder.start()
        self._recorders.append(recorder)

    async def detach(self):
        recorders, self._recorders = self._recorders, []
        for recorder in recorders:
            try:
                await recorder.stop()
            except Exception as e:
                logger.warning(f"Error stopping recorder: {e}")
        await super().detach()
