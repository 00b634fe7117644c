"""Pydantic request/response schemas for the FishID API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ResultCard(BaseModel):
    """A classification outcome as shown to the user."""

    outcome: str = Field(description="'recognized' or 'low-confidence'")
    label: str | None = Field(description="Display name; None for low-confidence results")
    original_label: str
    percentage: str = Field(description="Top probability in percent, two decimals")
    high_confidence: bool
    message: str
    image_sequence: int


class ImageInfo(BaseModel):
    """The current image selection."""

    sequence: int
    source: str = Field(description="'file', 'drop' or 'snapshot'")
    media_type: str
    width: int
    height: int
    preview_url: str = Field(description="The image as a base64 data: URL, ready for display")


class ClassifyResponse(BaseModel):
    """Response for endpoints that ingest and classify an image."""

    image: ImageInfo
    result: ResultCard
    stale: bool = Field(description="True if a newer classification was requested meanwhile")


class ResultResponse(BaseModel):
    """Latest published result and whether a classification is running."""

    pending: bool
    result: ResultCard | None


class CameraResponse(BaseModel):
    """Camera lease state."""

    supported: bool
    state: str
    facing_mode: str
    width: int | None = None
    height: int | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    model_status: str
    model_error: str | None = None
    camera_supported: bool
    camera_state: str
    cache_generation: str | None
    cache_installed: bool
    cache_serving: bool = Field(default=False, description="True while the offline cache answers requests")
    concurrent_requests: int
    queue_depth: int
    worker_capacity: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    error: str
