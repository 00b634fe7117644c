"""Tests for the camera lease state machine."""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING

import numpy as np
import pytest
from conftest import FakeCameraBackend, FakeStream, make_png, make_settings

from fishid.capture.backend import FacingMode
from fishid.capture.controller import CaptureController, CaptureState
from fishid.errors import (
    CameraBusyError,
    CameraError,
    CameraPermissionError,
    CameraUnavailableError,
    CaptureNotActiveError,
)
from fishid.media.ingest import ImageBlob, ImageIngestPipeline, ImageSource

if TYPE_CHECKING:
    from fishid.ml.inference import InferencePool


def _controller(
    pool: InferencePool,
    backend: FakeCameraBackend | None = None,
    **overrides: object,
) -> tuple[CaptureController, ImageIngestPipeline, FakeCameraBackend]:
    settings = make_settings(**overrides)
    backend = backend or FakeCameraBackend()
    pipeline = ImageIngestPipeline(settings, pool)
    return CaptureController(settings, pool, pipeline, backend), pipeline, backend


class _SlowStream(FakeStream):
    """Blocks inside read_frame until the test lets it proceed."""

    def __init__(self) -> None:
        super().__init__()
        self.in_read = threading.Event()
        self.proceed = threading.Event()
        self.released_during_read = False
        self._reading = False

    def read_frame(self) -> np.ndarray | None:
        self._reading = True
        self.in_read.set()
        self.proceed.wait(timeout=5)
        frame = super().read_frame()
        self._reading = False
        return frame

    def release(self) -> None:
        if self._reading:
            self.released_during_read = True
        super().release()


class _SlowBackend(FakeCameraBackend):
    def open(self, request: object) -> FakeStream:
        self.requests.append(request)  # type: ignore[arg-type]
        stream = _SlowStream()
        self.streams.append(stream)
        return stream


class TestStartCapture:
    async def test_start_reads_back_negotiated_size(self, pool: InferencePool) -> None:
        controller, _, backend = _controller(pool, FakeCameraBackend(stream_size=(640, 480)))

        session = await controller.start_capture()

        assert controller.state is CaptureState.ACTIVE
        assert controller.session is session
        assert (session.width, session.height) == (640, 480)
        request = backend.requests[0]
        assert (request.width, request.height) == (1280, 720)

    async def test_front_camera_on_desktop(self, pool: InferencePool) -> None:
        controller, _, backend = _controller(pool, handheld=False)
        await controller.start_capture()
        assert backend.requests[0].facing_mode is FacingMode.USER

    async def test_rear_camera_on_handheld(self, pool: InferencePool) -> None:
        controller, _, backend = _controller(pool, handheld=True)
        await controller.start_capture()
        assert backend.requests[0].facing_mode is FacingMode.ENVIRONMENT

    async def test_restart_releases_previous_lease_first(self, pool: InferencePool) -> None:
        controller, _, backend = _controller(pool)

        await controller.start_capture()
        await controller.start_capture()

        assert len(backend.streams) == 2
        assert backend.streams[0].released is True
        assert backend.streams[1].released is False
        assert controller.session.stream is backend.streams[1]

    @pytest.mark.parametrize(
        "error",
        [CameraPermissionError(), CameraBusyError(), CameraUnavailableError(), CameraError("driver crashed")],
    )
    async def test_failure_leaves_controller_idle(self, pool: InferencePool, error: CameraError) -> None:
        controller, _, _ = _controller(pool, FakeCameraBackend(error=error))

        with pytest.raises(type(error)):
            await controller.start_capture()

        assert controller.state is CaptureState.IDLE
        assert controller.session is None

    async def test_permission_denied_keeps_no_stream(self, pool: InferencePool) -> None:
        controller, _, backend = _controller(pool, FakeCameraBackend(error=CameraPermissionError()))
        with pytest.raises(CameraPermissionError):
            await controller.start_capture()
        assert backend.streams == []
        assert controller.session is None

    async def test_unsupported_device(self, pool: InferencePool) -> None:
        controller, _, backend = _controller(pool, FakeCameraBackend(supported=False))

        assert controller.camera_supported is False
        with pytest.raises(CameraUnavailableError):
            await controller.start_capture()
        assert backend.requests == []

    async def test_camera_disabled_by_config(self, pool: InferencePool) -> None:
        controller, _, _ = _controller(pool, camera_enabled=False)
        assert controller.camera_supported is False


class TestStopCapture:
    def test_stop_when_idle_is_noop(self, pool: InferencePool) -> None:
        controller, _, _ = _controller(pool)
        controller.stop_capture()
        controller.stop_capture()
        assert controller.state is CaptureState.IDLE

    async def test_stop_twice(self, pool: InferencePool) -> None:
        controller, _, backend = _controller(pool)
        session = await controller.start_capture()

        controller.stop_capture()
        controller.stop_capture()

        assert backend.streams[0].released is True
        assert session.active is False
        assert controller.session is None
        assert controller.state is CaptureState.IDLE

    async def test_ingest_stops_camera(self, pool: InferencePool) -> None:
        controller, pipeline, backend = _controller(pool)
        await controller.start_capture()

        await pipeline.from_file(ImageBlob(data=make_png(), media_type="image/png"))

        assert controller.state is CaptureState.IDLE
        assert backend.streams[0].released is True


class TestTakeSnapshot:
    async def test_snapshot_when_idle(self, pool: InferencePool) -> None:
        controller, _, _ = _controller(pool)
        with pytest.raises(CaptureNotActiveError):
            await controller.take_snapshot()

    async def test_snapshot_yields_asset_and_releases(self, pool: InferencePool) -> None:
        controller, pipeline, backend = _controller(pool, FakeCameraBackend(stream_size=(320, 240)))
        await controller.start_capture()

        asset = await controller.take_snapshot()

        assert asset.source is ImageSource.SNAPSHOT
        assert asset.media_type == "image/jpeg"
        assert (asset.width, asset.height) == (320, 240)
        assert asset.data[:2] == b"\xff\xd8"
        assert asset.preview_url.startswith("data:image/jpeg;base64,")
        assert pipeline.current is asset
        assert controller.state is CaptureState.IDLE
        assert backend.streams[0].released is True

    async def test_snapshot_before_first_frame(self, pool: InferencePool) -> None:
        controller, pipeline, backend = _controller(pool, FakeCameraBackend(frame_ready=False))
        await controller.start_capture()

        with pytest.raises(CaptureNotActiveError, match="No camera frame"):
            await controller.take_snapshot()

        assert controller.state is CaptureState.ACTIVE
        assert backend.streams[0].released is False
        assert pipeline.current is None

    async def test_second_snapshot_needs_new_lease(self, pool: InferencePool) -> None:
        controller, _, _ = _controller(pool)
        await controller.start_capture()
        await controller.take_snapshot()

        with pytest.raises(CaptureNotActiveError):
            await controller.take_snapshot()

    async def test_stop_during_frame_read_defers_release(self, pool: InferencePool) -> None:
        controller, pipeline, backend = _controller(pool, _SlowBackend())
        await controller.start_capture()
        stream = backend.streams[0]
        assert isinstance(stream, _SlowStream)

        snapshot = asyncio.create_task(controller.take_snapshot())
        assert await asyncio.to_thread(stream.in_read.wait, 5)

        controller.stop_capture()
        assert controller.state is CaptureState.IDLE
        assert stream.released is False

        stream.proceed.set()
        with pytest.raises(CaptureNotActiveError):
            await snapshot

        assert stream.released is True
        assert stream.released_during_read is False
        assert pipeline.current is None
