"""Camera hardware access.

The controller talks to the camera through ``CameraBackend``; the default
implementation wraps OpenCV ``VideoCapture``. Facing modes map to configured
device indices since OpenCV has no notion of front or rear cameras.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import cv2
from PIL import Image

from fishid.errors import CameraBusyError, CameraError, CameraPermissionError, CameraUnavailableError

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from fishid.config import Settings

logger = logging.getLogger(__name__)


class FacingMode(StrEnum):
    USER = "user"
    ENVIRONMENT = "environment"


@dataclass(frozen=True)
class StreamRequest:
    """Requested stream properties. Resolution is a hint only."""

    facing_mode: FacingMode
    width: int
    height: int


class CameraStream(Protocol):
    """A granted video stream."""

    @property
    def width(self) -> int:
        """Negotiated frame width."""
        ...

    @property
    def height(self) -> int:
        """Negotiated frame height."""
        ...

    def read_frame(self) -> NDArray[np.uint8] | None:
        """Return the latest decoded BGR frame, or None if none is ready."""
        ...

    def release(self) -> None:
        """Release the underlying device."""
        ...


class CameraBackend(Protocol):
    """Protocol for camera hardware access."""

    def is_supported(self) -> bool:
        """Whether this device has any camera capability at all."""
        ...

    def open(self, request: StreamRequest) -> CameraStream:
        """Acquire a stream.

        Raises:
            CameraUnavailableError: No camera on this device.
            CameraPermissionError: Access to the device was denied.
            CameraBusyError: The device is claimed by another consumer.
            CameraError: Any other failure.
        """
        ...


def encode_jpeg(frame: NDArray[np.uint8], quality: int) -> tuple[bytes, Image.Image]:
    """Encode a BGR frame as JPEG and return it with its RGB Pillow image."""
    ok, buffer = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not ok:
        raise CameraError("Could not encode the camera frame")
    rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
    return buffer.tobytes(), Image.fromarray(rgb)


# ---------------------------------------------------------------------------
# OpenCV implementation
# ---------------------------------------------------------------------------


class OpenCvCameraStream:
    """A leased ``cv2.VideoCapture``."""

    def __init__(self, capture: cv2.VideoCapture, index: int) -> None:
        self._capture = capture
        self._index = index
        self._width = int(capture.get(cv2.CAP_PROP_FRAME_WIDTH))
        self._height = int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT))

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    def read_frame(self) -> NDArray[np.uint8] | None:
        ok, frame = self._capture.read()
        if not ok or frame is None or frame.size == 0:
            return None
        return frame

    def release(self) -> None:
        if self._capture.isOpened():
            self._capture.release()
            logger.debug("Released camera %s", self._index)


class OpenCvCameraBackend:
    """Opens cameras by index with OpenCV."""

    def __init__(self, settings: Settings) -> None:
        self._enabled = settings.camera_enabled
        self._indices = {
            FacingMode.ENVIRONMENT: settings.rear_camera_index,
            FacingMode.USER: settings.front_camera_index,
        }

    def is_supported(self) -> bool:
        if not self._enabled:
            return False
        if sys.platform.startswith("linux"):
            return any(Path("/dev").glob("video*"))
        return True

    def open(self, request: StreamRequest) -> CameraStream:
        if not self._enabled:
            raise CameraUnavailableError
        index = self._indices[request.facing_mode]
        device = self._device_path(index)

        if device is not None:
            if not device.exists():
                raise CameraUnavailableError(f"Camera {index} was not found")
            if not os.access(device, os.R_OK | os.W_OK):
                raise CameraPermissionError

        capture: cv2.VideoCapture | None = None
        try:
            capture = cv2.VideoCapture(index)
            if not capture.isOpened():
                capture.release()
                if device is not None:
                    # The node exists and is accessible, so someone else holds it.
                    raise CameraBusyError
                raise CameraError(f"Could not open camera {index}")

            capture.set(cv2.CAP_PROP_FRAME_WIDTH, request.width)
            capture.set(cv2.CAP_PROP_FRAME_HEIGHT, request.height)
            return OpenCvCameraStream(capture, index)
        except cv2.error as exc:
            if capture is not None:
                capture.release()
            raise CameraError(f"Could not open camera {index}: {exc}") from exc

    @staticmethod
    def _device_path(index: int) -> Path | None:
        if sys.platform.startswith("linux"):
            return Path(f"/dev/video{index}")
        return None
