"""Error taxonomy shared by the capture, ingest, inference and cache layers.

Every error carries a user-facing message (shown in the error banner) and the
HTTP status the API renders it with.
"""

from __future__ import annotations

from fastapi import status


class FishIdError(Exception):
    """Base class for all recoverable FishID errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Something went wrong"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ModelLoadError(FishIdError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Could not load the model. Check the model files and try again."


class ModelNotReadyError(FishIdError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "The model is still loading"


class InferenceError(FishIdError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Failed to analyze the image"


class CameraError(FishIdError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Could not start the camera"


class CameraUnavailableError(CameraError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Camera is not supported on this device"


class CameraPermissionError(CameraError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Camera access was denied. Allow camera access and try again."


class CameraBusyError(CameraError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "The camera is already in use by another application"


class CaptureNotActiveError(FishIdError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Camera is not active"


class UnsupportedMediaError(FishIdError):
    status_code = status.HTTP_415_UNSUPPORTED_MEDIA_TYPE
    default_message = "Please choose an image (JPG, PNG, WebP)"


class CacheInstallError(FishIdError):
    default_message = "Failed to precache offline assets"
