"""Model manager: fetch, load and run the fish classifier.

Fetches the two model description documents (``model.json`` and
``metadata.json``) from the asset root, obtains the ONNX weights they point
to (over HTTP or from HuggingFace), creates the ONNX InferenceSession and
runs predictions on canonical ImageAssets.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, TypeVar

import httpx
import numpy as np
from huggingface_hub import hf_hub_download
from huggingface_hub.errors import HfHubHTTPError
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from fishid.errors import InferenceError, ModelLoadError
from fishid.ml.preprocessing import preprocess_for_classification

if TYPE_CHECKING:
    from PIL import Image

    from fishid.config import Settings
    from fishid.media.ingest import ImageAsset
    from fishid.ml.inference import InferencePool

logger = logging.getLogger(__name__)

MODEL_ROOT = "/model/"
TOPOLOGY_FILE = "model.json"
METADATA_FILE = "metadata.json"

M = TypeVar("M", bound=BaseModel)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    @property
    def is_ready(self) -> bool:
        """True once a load has succeeded."""
        ...

    @property
    def model(self) -> LoadedModel | None:
        """The loaded model, if any."""
        ...

    async def load(self) -> LoadedModel:
        """Fetch the model description resources and create the session."""
        ...

    async def predict(self, model: LoadedModel | None, asset: ImageAsset) -> list[LabelProbability]:
        """Return per-label probabilities for an image."""
        ...


# ---------------------------------------------------------------------------
# Model description documents
# ---------------------------------------------------------------------------


class WeightsGroup(BaseModel):
    model_config = ConfigDict(extra="ignore")

    paths: list[str] = Field(min_length=1)


class ModelTopology(BaseModel):
    """Topology descriptor (``model.json``)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    format: str = "onnx"
    weights_manifest: list[WeightsGroup] = Field(alias="weightsManifest", min_length=1)

    @property
    def weights_file(self) -> str:
        return self.weights_manifest[0].paths[0]


class ModelMetadata(BaseModel):
    """Label/metadata descriptor (``metadata.json``)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, protected_namespaces=())

    labels: list[str] = Field(min_length=1)
    image_size: int = Field(default=224, alias="imageSize", gt=0)
    model_name: str | None = Field(default=None, alias="modelName")


class ModelStatus(StrEnum):
    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class LabelProbability:
    """One entry of a raw prediction."""

    label: str
    probability: float


@dataclass(frozen=True)
class LoadedModel:
    """Opaque handle to a loaded classifier and its label vocabulary."""

    name: str
    session: InferenceSession
    input_name: str
    labels: tuple[str, ...]
    image_size: int


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Loads the ONNX fish classifier once and runs predictions with it."""

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient,
        pool: InferencePool,
        log: logging.Logger | None = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._pool = pool
        self._log = log or logger
        self._base_url = settings.asset_base_url.rstrip("/")
        self._models_dir = Path(settings.models_dir)

        self._model: LoadedModel | None = None
        self._status = ModelStatus.NOT_LOADED
        self._last_error: ModelLoadError | None = None

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        return self._model is not None

    @property
    def model(self) -> LoadedModel | None:
        return self._model

    @property
    def status(self) -> ModelStatus:
        return self._status

    @property
    def last_error(self) -> ModelLoadError | None:
        """The error of the most recent failed load, for retry guidance."""
        return self._last_error

    async def load(self) -> LoadedModel:
        """Fetch the description documents and weights, then create the session.

        Raises:
            ModelLoadError: If any resource cannot be fetched or parsed, or the
                session cannot be created. The ready flag stays false.
        """
        if self._model is not None:
            return self._model

        self._status = ModelStatus.LOADING
        self._last_error = None
        try:
            topology = await self._fetch_descriptor(TOPOLOGY_FILE, ModelTopology)
            metadata = await self._fetch_descriptor(METADATA_FILE, ModelMetadata)
            weights_path = await self._ensure_weights(topology.weights_file)
            session = await self._pool.run(self._create_session, weights_path)
        except ModelLoadError as exc:
            self._status = ModelStatus.FAILED
            self._last_error = exc
            self._log.error("Model load failed: %s", exc)
            raise

        model = LoadedModel(
            name=metadata.model_name or weights_path.stem,
            session=session,
            input_name=session.get_inputs()[0].name,
            labels=tuple(metadata.labels),
            image_size=metadata.image_size,
        )
        self._model = model
        self._status = ModelStatus.READY
        self._log.info(
            "Loaded model %s (%s labels, input %spx)",
            model.name,
            len(model.labels),
            model.image_size,
        )
        return model

    async def predict(self, model: LoadedModel | None, asset: ImageAsset) -> list[LabelProbability]:
        """Return one probability per label, in the model's label order.

        Raises:
            InferenceError: If no model is loaded or the image cannot be turned
                into model input.
        """
        if model is None or not self.is_ready:
            raise InferenceError("The model is not loaded")
        return await self._pool.run(self._run_session, model, asset.image)

    def shutdown(self) -> None:
        """Drop the loaded model."""
        self._model = None
        self._status = ModelStatus.NOT_LOADED
        self._log.info("Model released")

    # -- Internal -----------------------------------------------------------

    async def _fetch_descriptor(self, filename: str, model_cls: type[M]) -> M:
        url = f"{self._base_url}{MODEL_ROOT}{filename}"
        try:
            response = await self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ModelLoadError(f"Could not fetch {filename}: {exc}") from exc
        try:
            return model_cls.model_validate_json(response.content)
        except ValidationError as exc:
            raise ModelLoadError(f"Malformed {filename}: {exc.error_count()} validation error(s)") from exc

    async def _ensure_weights(self, filename: str) -> Path:
        """Return a local path to the weights file, downloading it if needed."""
        if self._settings.model_repo_id:
            try:
                downloaded = await self._pool.run(self._download_from_hub, filename)
            except (HfHubHTTPError, OSError) as exc:
                raise ModelLoadError(f"Could not download {filename}: {exc}") from exc
            self._log.info("Downloaded %s to %s", filename, downloaded)
            return downloaded

        # Weights live under /model/ and always come from the network.
        url = f"{self._base_url}{MODEL_ROOT}{filename}"
        try:
            response = await self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ModelLoadError(f"Could not fetch {filename}: {exc}") from exc

        target = self._models_dir / Path(filename).name
        try:
            await self._pool.run(self._write_file, target, response.content)
        except OSError as exc:
            raise ModelLoadError(f"Could not store {filename}: {exc}") from exc
        self._log.info("Fetched %s (%s bytes) to %s", filename, len(response.content), target)
        return target

    def _download_from_hub(self, filename: str) -> Path:
        self._models_dir.mkdir(parents=True, exist_ok=True)
        return Path(
            hf_hub_download(
                repo_id=self._settings.model_repo_id,
                filename=filename,
                local_dir=str(self._models_dir),
            )
        )

    @staticmethod
    def _write_file(target: Path, content: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)

    def _create_session(self, model_path: Path) -> InferenceSession:
        try:
            return InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:
            raise ModelLoadError(f"Could not create inference session: {exc}") from exc

    @staticmethod
    def _run_session(model: LoadedModel, image: Image.Image) -> list[LabelProbability]:
        try:
            tensor = preprocess_for_classification(image, model.image_size)
        except (ValueError, OSError) as exc:
            raise InferenceError("The image could not be decoded into pixel data") from exc

        try:
            outputs = model.session.run(None, {model.input_name: tensor})
        except Exception as exc:
            raise InferenceError(f"Model execution failed: {exc}") from exc

        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if scores.shape[0] != len(model.labels):
            raise InferenceError(f"Model returned {scores.shape[0]} scores for {len(model.labels)} labels")
        return [
            LabelProbability(label=label, probability=float(score))
            for label, score in zip(model.labels, scores, strict=True)
        ]

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
