from __future__ import annotations

import asyncio

import numpy as np

from drivers.capture import CaptureBackend, DeviceCaptureBackend
from models.errors import MediaAcquisitionError
from service.media_service import (SYNTHETIC_BACKGROUND, LocalMedia, LocalTrack, RecorderSink,
                                   SyntheticAudioTrack, SyntheticCaptureBackend, SyntheticVideoTrack,
                                   acquire_local_media)


class BrokenCapture(CaptureBackend):
    async def acquire(self):
        raise MediaAcquisitionError("camera busy")


class FakeRecorder:
    def __init__(self):
        self.tracks = []
        self.started = False
        self.stopped = False

    def addTrack(self, track):
        self.tracks.append(track)

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True


def test_synthetic_video_frame_layout() -> None:
    image = SyntheticVideoTrack(width=320, height=240).render()
    assert image.shape == (240, 320, 3)
    assert tuple(image[0, 0]) == SYNTHETIC_BACKGROUND


def test_synthetic_audio_is_quiet_mono() -> None:
    samples = SyntheticAudioTrack().render(0)
    assert samples.shape == (1, 960)
    assert samples.dtype == np.int16
    assert np.abs(samples).max() < 500


def test_disabled_tracks_produce_blank_frames() -> None:
    async def scenario():
        video = LocalTrack(SyntheticVideoTrack(width=64, height=48))
        audio = LocalTrack(SyntheticAudioTrack())
        video.enabled = False
        audio.enabled = False

        frame = await video.recv()
        assert (frame.width, frame.height) == (64, 48)
        assert frame.to_ndarray(format="bgr24").max() == 0

        sound = await audio.recv()
        assert sound.samples == 960
        assert not sound.to_ndarray().any()

        video.enabled = True
        assert (await video.recv()).to_ndarray(format="bgr24").max() > 0
        video.stop()
        audio.stop()
        assert video.source.readyState == "ended"

    asyncio.run(scenario())


def test_toggles_are_remembered_and_scoped_by_kind() -> None:
    media = LocalMedia()
    media.toggle_video(False)
    media.attach([SyntheticAudioTrack(), SyntheticVideoTrack()])

    assert [t.enabled for t in media.tracks_of("video")] == [False]
    assert [t.enabled for t in media.tracks_of("audio")] == [True]

    media.toggle_audio(False)
    media.toggle_video(True)
    assert [t.enabled for t in media.tracks_of("audio")] == [False]
    assert [t.enabled for t in media.tracks_of("video")] == [True]

    media.stop()
    assert media.tracks == []


def test_acquire_falls_back_to_synthetic_media() -> None:
    async def scenario():
        tracks, synthetic = await acquire_local_media(BrokenCapture(), SyntheticCaptureBackend())
        assert synthetic
        assert [t.kind for t in tracks] == ["audio", "video"]

        unconfigured = DeviceCaptureBackend(video_device=None, video_format=None)
        tracks, synthetic = await acquire_local_media(unconfigured, SyntheticCaptureBackend())
        assert synthetic

    asyncio.run(scenario())


def test_recorder_sink_starts_and_stops_one_recorder_per_track() -> None:
    async def scenario():
        recorders = []

        def factory(track):
            recorders.append(FakeRecorder())
            return recorders[-1]

        sink = RecorderSink(factory)
        await sink.attach(SyntheticAudioTrack())
        await sink.attach(SyntheticVideoTrack())
        assert len(recorders) == 2
        assert all(r.started and len(r.tracks) == 1 for r in recorders)

        await sink.detach()
        assert all(r.stopped for r in recorders)
        assert sink.tracks == []

    asyncio.run(scenario())
