# drivers/capture.py
import asyncio
import logging
from typing import Any, Dict, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer

from models.errors import MediaAcquisitionError

logger = logging.getLogger("capture")


class CaptureBackend:
    """Abstract backend that provides local media tracks."""

    async def acquire(self) -> List[MediaStreamTrack]:
        """Returns [audio, video]."""
        raise NotImplementedError


class DeviceCaptureBackend(CaptureBackend):
    """Opens the local camera and microphone through FFmpeg devices."""

    def __init__(self, video_device: Optional[str], video_format: Optional[str],
                 audio_device: Optional[str] = None, audio_format: Optional[str] = None,
                 width: int = 640, height: int = 480, fps: int = 30,
                 max_retries: int = 1, retry_delay: float = 1.0):
        self.video_device = video_device
        self.video_format = video_format
        self.audio_device = audio_device
        self.audio_format = audio_format
        self.width = width
        self.height = height
        self.fps = fps
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._players: List[MediaPlayer] = []

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "DeviceCaptureBackend":
        return cls(
            video_device=config.get("video_device"),
            video_format=config.get("video_format"),
            audio_device=config.get("audio_device"),
            audio_format=config.get("audio_format"),
            width=config.get("width", 640),
            height=config.get("height", 480),
            fps=config.get("fps", 30),
        )

    def _open(self) -> List[MediaStreamTrack]:
        if not self.video_device or not self.audio_device:
            raise MediaAcquisitionError("Capture device not configured")

        video_player = MediaPlayer(
            self.video_device,
            format=self.video_format,
            options={"video_size": f"{self.width}x{self.height}", "framerate": str(self.fps)},
        )
        if video_player.video is None:
            raise MediaAcquisitionError(f"No video stream on {self.video_device}")
        self._players.append(video_player)

        audio_player = MediaPlayer(self.audio_device, format=self.audio_format)
        if audio_player.audio is None:
            raise MediaAcquisitionError(f"No audio stream on {self.audio_device}")
        self._players.append(audio_player)

        return [audio_player.audio, video_player.video]

    def _release(self):
        for player in self._players:
            for track in (player.audio, player.video):
                if track is not None:
                    try:
                        track.stop()
                    except Exception as e:
                        logger.warning(f"Error releasing capture track: {e}")
        self._players = []

    async def acquire(self) -> List[MediaStreamTrack]:
        loop = asyncio.get_running_loop()
        last_exception = None

        for attempt in range(self.max_retries):
            try:
                logger.info(f"Opening capture devices (attempt {attempt + 1}/{self.max_retries})")
                tracks = await loop.run_in_executor(None, self._open)
                logger.info(f"Capture started: video={self.video_device} audio={self.audio_device}")
                return tracks
            except Exception as e:
                last_exception = e
                logger.warning(f"Attempt {attempt + 1} failed: {e}")
                self._release()
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self.retry_delay)

        raise MediaAcquisitionError(
            f"Failed to open capture devices after {self.max_retries} attempts. Last error: {last_exception}"
        )
