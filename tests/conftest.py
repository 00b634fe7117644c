"""Shared fixtures and fakes for the FishID tests."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

from fishid.config import Settings
from fishid.errors import InferenceError
from fishid.ml.inference import InferencePool
from fishid.ml.model_manager import LabelProbability, ModelStatus

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from fishid.capture.backend import StreamRequest
    from fishid.media.ingest import ImageAsset


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "asset_base_url": "http://assets.test",
        "models_dir": "/tmp/fishid_test_models",
        "cache_dir": "/tmp/fishid_test_cache",
        "max_concurrent": 2,
        "camera_enabled": True,
        "handheld": False,
        "offline_cache_enabled": False,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def make_png(width: int = 64, height: int = 48, color: tuple[int, int, int] = (30, 120, 200)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


def prediction(*pairs: tuple[str, float]) -> list[LabelProbability]:
    return [LabelProbability(label=label, probability=p) for label, p in pairs]


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeModelManager:
    """Stands in for OnnxModelManager; returns canned predictions."""

    def __init__(
        self,
        predictions: list[LabelProbability] | None = None,
        *,
        ready: bool = True,
        error: InferenceError | None = None,
    ) -> None:
        self.predictions = predictions or prediction(("Perch", 0.91), ("Catfish", 0.05), ("unknown", 0.04))
        self.error = error
        self._model = object() if ready else None
        self.calls: list[ImageAsset] = []
        self.last_error = None

    @property
    def is_ready(self) -> bool:
        return self._model is not None

    @property
    def model(self) -> object | None:
        return self._model

    @property
    def status(self) -> ModelStatus:
        return ModelStatus.READY if self.is_ready else ModelStatus.LOADING

    async def load(self) -> object:
        self._model = self._model or object()
        return self._model

    async def predict(self, model: object, asset: ImageAsset) -> list[LabelProbability]:
        self.calls.append(asset)
        if self.error is not None:
            raise self.error
        return self.predictions


class FakeStream:
    def __init__(self, width: int = 640, height: int = 480, frame_ready: bool = True) -> None:
        self.width = width
        self.height = height
        self.frame_ready = frame_ready
        self.released = False

    def read_frame(self) -> np.ndarray | None:
        if not self.frame_ready or self.released:
            return None
        frame = np.zeros((self.height, self.width, 3), dtype=np.uint8)
        frame[:, :, 0] = 200
        return frame

    def release(self) -> None:
        self.released = True


class FakeCameraBackend:
    def __init__(
        self,
        *,
        supported: bool = True,
        error: Exception | None = None,
        stream_size: tuple[int, int] = (640, 480),
        frame_ready: bool = True,
    ) -> None:
        self.supported = supported
        self.error = error
        self.stream_size = stream_size
        self.frame_ready = frame_ready
        self.requests: list[StreamRequest] = []
        self.streams: list[FakeStream] = []

    def is_supported(self) -> bool:
        return self.supported

    def open(self, request: StreamRequest) -> FakeStream:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        assert all(s.released for s in self.streams), "opened a second lease while one was held"
        stream = FakeStream(*self.stream_size, frame_ready=self.frame_ready)
        self.streams.append(stream)
        return stream


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return make_settings(models_dir=str(tmp_path / "models"), cache_dir=str(tmp_path / "cache"))


@pytest.fixture()
def pool(settings: Settings) -> Iterator[InferencePool]:
    inference_pool = InferencePool(settings)
    yield inference_pool
    inference_pool.shutdown()


@pytest.fixture()
def png_bytes() -> bytes:
    return make_png()
