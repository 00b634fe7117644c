"""Image ingest: one canonical ImageAsset from file, drop or camera input."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

from fishid.errors import UnsupportedMediaError
from fishid.ml.preprocessing import decode_image, to_data_url

if TYPE_CHECKING:
    from PIL import Image

    from fishid.config import Settings
    from fishid.ml.inference import InferencePool

logger = logging.getLogger(__name__)


class ImageSource(StrEnum):
    FILE = "file"
    DROP = "drop"
    SNAPSHOT = "snapshot"


@dataclass(frozen=True)
class ImageBlob:
    """Raw, not yet validated input from a file picker or a drop."""

    data: bytes
    media_type: str
    filename: str | None = None


@dataclass(frozen=True)
class Snapshot:
    """A still frame grabbed from the camera, already decoded."""

    data: bytes
    image: Image.Image
    media_type: str = "image/jpeg"


@dataclass(frozen=True)
class ImageAsset:
    """Canonical, inference-ready candidate image."""

    data: bytes
    media_type: str
    image: Image.Image = field(repr=False)
    preview_url: str = field(repr=False)
    source: ImageSource
    sequence: int

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height


class SupportsStopCapture(Protocol):
    def stop_capture(self) -> None: ...


def _is_image_type(media_type: str | None) -> bool:
    return bool(media_type) and media_type.lower().startswith("image/")


class ImageIngestPipeline:
    """Validates and decodes image inputs and tracks the current ImageAsset.

    Only one asset is current at a time. An ingest that finishes after a newer
    one was committed (or after a reset) does not replace the current asset.
    """

    def __init__(
        self,
        settings: Settings,
        pool: InferencePool,
        log: logging.Logger | None = None,
    ) -> None:
        self._max_file_size = settings.max_file_size
        self._pool = pool
        self._log = log or logger
        self._camera: SupportsStopCapture | None = None
        self._current: ImageAsset | None = None
        self._issued = 0
        self._floor = 1

    # -- Public API ---------------------------------------------------------

    @property
    def current(self) -> ImageAsset | None:
        """The asset most recently committed, or None after a reset."""
        return self._current

    def attach_camera(self, camera: SupportsStopCapture) -> None:
        """Register the capture controller stopped before every ingest."""
        self._camera = camera

    async def from_file(self, blob: ImageBlob) -> ImageAsset:
        return await self._ingest_blob(blob, ImageSource.FILE)

    async def from_drop(self, blob: ImageBlob) -> ImageAsset:
        return await self._ingest_blob(blob, ImageSource.DROP)

    def from_snapshot(self, snapshot: Snapshot) -> ImageAsset:
        self._validate_media_type(snapshot.media_type)
        self._stop_camera()
        asset = ImageAsset(
            data=snapshot.data,
            media_type=snapshot.media_type,
            image=snapshot.image,
            preview_url=to_data_url(snapshot.data, snapshot.media_type),
            source=ImageSource.SNAPSHOT,
            sequence=self._next_sequence(),
        )
        self._commit(asset)
        return asset

    def reset(self) -> None:
        """Stop the camera and drop the current asset."""
        self._stop_camera()
        self._current = None
        self._floor = self._issued + 1
        self._log.info("Image selection reset")

    # -- Internal -----------------------------------------------------------

    async def _ingest_blob(self, blob: ImageBlob, source: ImageSource) -> ImageAsset:
        self._validate_media_type(blob.media_type)
        if len(blob.data) > self._max_file_size:
            raise UnsupportedMediaError(f"Image is too large (limit {self._max_file_size} bytes)")
        if not blob.data:
            raise UnsupportedMediaError("The selected file is empty")

        self._stop_camera()
        sequence = self._next_sequence()
        try:
            image = await self._pool.run(decode_image, blob.data)
        except ValueError as exc:
            self._log.warning("Rejected %s input %s: %s", source, blob.filename, exc)
            raise UnsupportedMediaError("The selected file is not a readable image") from exc

        media_type = blob.media_type.lower()
        asset = ImageAsset(
            data=blob.data,
            media_type=media_type,
            image=image,
            preview_url=to_data_url(blob.data, media_type),
            source=source,
            sequence=sequence,
        )
        self._commit(asset)
        return asset

    def _validate_media_type(self, media_type: str | None) -> None:
        if not _is_image_type(media_type):
            self._log.info("Rejected non-image input (media type %r)", media_type)
            raise UnsupportedMediaError

    def _stop_camera(self) -> None:
        if self._camera is not None:
            self._camera.stop_capture()

    def _next_sequence(self) -> int:
        self._issued += 1
        return self._issued

    def _commit(self, asset: ImageAsset) -> None:
        if asset.sequence < self._floor:
            self._log.debug("Discarding asset #%s ingested before reset", asset.sequence)
            return
        if self._current is not None and self._current.sequence > asset.sequence:
            self._log.debug("Discarding asset #%s superseded by #%s", asset.sequence, self._current.sequence)
            return
        self._current = asset
        self._log.info(
            "Current image is now #%s (%s, %s, %sx%s)",
            asset.sequence,
            asset.source,
            asset.media_type,
            asset.width,
            asset.height,
        )
