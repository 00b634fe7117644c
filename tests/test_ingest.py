"""Tests for the image ingest pipeline."""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest
from conftest import make_png, make_settings
from PIL import Image

from fishid.errors import UnsupportedMediaError
from fishid.media.ingest import ImageBlob, ImageIngestPipeline, ImageSource, Snapshot
from fishid.ml.preprocessing import decode_image

if TYPE_CHECKING:
    from fishid.config import Settings
    from fishid.ml.inference import InferencePool


class _CameraSpy:
    def __init__(self) -> None:
        self.stops = 0

    def stop_capture(self) -> None:
        self.stops += 1


class _GatedDecode:
    """Holds the decode of one specific payload until the test lets it finish."""

    def __init__(self, slow: bytes) -> None:
        self.slow = slow
        self.started = threading.Event()
        self.proceed = threading.Event()

    def __call__(self, data: bytes) -> Image.Image:
        if data == self.slow:
            self.started.set()
            self.proceed.wait(timeout=5)
        return decode_image(data)


@pytest.fixture()
def pipeline(settings: Settings, pool: InferencePool) -> ImageIngestPipeline:
    return ImageIngestPipeline(settings, pool)


class TestFromFile:
    async def test_png_becomes_current(self, pipeline: ImageIngestPipeline, png_bytes: bytes) -> None:
        asset = await pipeline.from_file(ImageBlob(data=png_bytes, media_type="image/png", filename="perch.png"))

        assert pipeline.current is asset
        assert asset.source is ImageSource.FILE
        assert (asset.width, asset.height) == (64, 48)
        assert asset.image.mode == "RGB"
        assert asset.preview_url.startswith("data:image/png;base64,")

    async def test_drop_source(self, pipeline: ImageIngestPipeline, png_bytes: bytes) -> None:
        asset = await pipeline.from_drop(ImageBlob(data=png_bytes, media_type="IMAGE/PNG"))
        assert asset.source is ImageSource.DROP
        assert asset.media_type == "image/png"

    async def test_new_selection_supersedes(self, pipeline: ImageIngestPipeline) -> None:
        first = await pipeline.from_file(ImageBlob(data=make_png(10, 10), media_type="image/png"))
        second = await pipeline.from_drop(ImageBlob(data=make_png(20, 20), media_type="image/png"))

        assert second.sequence > first.sequence
        assert pipeline.current is second

    @pytest.mark.parametrize("media_type", ["text/plain", "application/pdf", "video/mp4", ""])
    async def test_non_image_rejected(
        self, pipeline: ImageIngestPipeline, png_bytes: bytes, media_type: str
    ) -> None:
        previous = await pipeline.from_file(ImageBlob(data=png_bytes, media_type="image/png"))

        with pytest.raises(UnsupportedMediaError):
            await pipeline.from_file(ImageBlob(data=b"hello", media_type=media_type))

        assert pipeline.current is previous

    async def test_non_image_does_not_stop_camera(self, pipeline: ImageIngestPipeline) -> None:
        camera = _CameraSpy()
        pipeline.attach_camera(camera)
        with pytest.raises(UnsupportedMediaError):
            await pipeline.from_file(ImageBlob(data=b"hello", media_type="text/plain"))
        assert camera.stops == 0

    async def test_undecodable_image_rejected(self, pipeline: ImageIngestPipeline) -> None:
        with pytest.raises(UnsupportedMediaError, match="not a readable image"):
            await pipeline.from_file(ImageBlob(data=b"definitely not a png", media_type="image/png"))
        assert pipeline.current is None

    async def test_empty_file_rejected(self, pipeline: ImageIngestPipeline) -> None:
        with pytest.raises(UnsupportedMediaError):
            await pipeline.from_file(ImageBlob(data=b"", media_type="image/png"))

    async def test_size_limit(self, pool: InferencePool, png_bytes: bytes) -> None:
        pipeline = ImageIngestPipeline(make_settings(max_file_size=16), pool)
        with pytest.raises(UnsupportedMediaError, match="too large"):
            await pipeline.from_file(ImageBlob(data=png_bytes, media_type="image/png"))

    async def test_ingest_stops_camera_first(self, pipeline: ImageIngestPipeline, png_bytes: bytes) -> None:
        camera = _CameraSpy()
        pipeline.attach_camera(camera)
        await pipeline.from_file(ImageBlob(data=png_bytes, media_type="image/png"))
        assert camera.stops == 1


class TestFromSnapshot:
    def test_snapshot_is_already_decoded(self, pipeline: ImageIngestPipeline) -> None:
        image = Image.new("RGB", (32, 24))
        asset = pipeline.from_snapshot(Snapshot(data=b"\xff\xd8jpeg", image=image))

        assert asset.image is image
        assert asset.source is ImageSource.SNAPSHOT
        assert pipeline.current is asset

    def test_snapshot_with_non_image_type(self, pipeline: ImageIngestPipeline) -> None:
        with pytest.raises(UnsupportedMediaError):
            pipeline.from_snapshot(Snapshot(data=b"", image=Image.new("RGB", (1, 1)), media_type="video/raw"))


class TestReset:
    async def test_reset_drops_current(self, pipeline: ImageIngestPipeline, png_bytes: bytes) -> None:
        camera = _CameraSpy()
        pipeline.attach_camera(camera)
        await pipeline.from_file(ImageBlob(data=png_bytes, media_type="image/png"))

        pipeline.reset()

        assert pipeline.current is None
        assert camera.stops == 2

    async def test_ingest_started_before_reset_is_discarded(self, pipeline: ImageIngestPipeline) -> None:
        slow_png = make_png(10, 10)
        gate = _GatedDecode(slow_png)
        with patch("fishid.media.ingest.decode_image", gate):
            pending = asyncio.create_task(pipeline.from_file(ImageBlob(data=slow_png, media_type="image/png")))
            assert await asyncio.to_thread(gate.started.wait, 5)

            pipeline.reset()
            gate.proceed.set()
            await pending

        assert pipeline.current is None


class TestOrdering:
    async def test_slow_ingest_does_not_replace_newer(self, pipeline: ImageIngestPipeline) -> None:
        slow_png = make_png(10, 10)
        gate = _GatedDecode(slow_png)
        with patch("fishid.media.ingest.decode_image", gate):
            pending = asyncio.create_task(pipeline.from_file(ImageBlob(data=slow_png, media_type="image/png")))
            assert await asyncio.to_thread(gate.started.wait, 5)

            newer = await pipeline.from_drop(ImageBlob(data=make_png(20, 20), media_type="image/png"))
            assert pipeline.current is newer

            gate.proceed.set()
            older = await pending

        assert older.sequence < newer.sequence
        assert pipeline.current is newer

    async def test_snapshot_wins_over_slower_file(self, pipeline: ImageIngestPipeline) -> None:
        slow_png = make_png(10, 10)
        gate = _GatedDecode(slow_png)
        with patch("fishid.media.ingest.decode_image", gate):
            pending = asyncio.create_task(pipeline.from_file(ImageBlob(data=slow_png, media_type="image/png")))
            assert await asyncio.to_thread(gate.started.wait, 5)

            snapshot = pipeline.from_snapshot(Snapshot(data=b"\xff\xd8jpeg", image=Image.new("RGB", (8, 8))))
            gate.proceed.set()
            await pending

        assert pipeline.current is snapshot
