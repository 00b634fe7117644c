"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

from fastapi import APIRouter, Depends, Request, Response, UploadFile, status

from fishid.api.middleware import verify_api_key
from fishid.api.schemas import (
    CameraResponse,
    ClassifyResponse,
    ErrorResponse,
    HealthResponse,
    ImageInfo,
    ResultCard,
    ResultResponse,
)
from fishid.errors import ModelNotReadyError, UnsupportedMediaError
from fishid.media.ingest import ImageBlob

if TYPE_CHECKING:
    from fishid.capture.controller import CaptureController
    from fishid.config import Settings
    from fishid.media.ingest import ImageAsset, ImageIngestPipeline
    from fishid.ml.inference import InferencePool
    from fishid.ml.model_manager import OnnxModelManager
    from fishid.ml.orchestrator import ClassificationResult, InferenceOrchestrator
    from fishid.offline.cache_agent import OfflineCacheAgent

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}

RECOGNIZED_MESSAGE = "The picture shows {label}"
LOW_CONFIDENCE_MESSAGE = "I doubt this picture shows a fish I know. Try another picture."


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> OnnxModelManager:
    manager: OnnxModelManager = request.app.state.model_manager
    return manager


def _get_pipeline(request: Request) -> ImageIngestPipeline:
    pipeline: ImageIngestPipeline = request.app.state.ingest_pipeline
    return pipeline


def _get_capture(request: Request) -> CaptureController:
    controller: CaptureController = request.app.state.capture_controller
    return controller


def _get_orchestrator(request: Request) -> InferenceOrchestrator:
    orchestrator: InferenceOrchestrator = request.app.state.orchestrator
    return orchestrator


def _get_cache_agent(request: Request) -> OfflineCacheAgent | None:
    agent: OfflineCacheAgent | None = request.app.state.cache_agent
    return agent


def _result_card(result: ClassificationResult) -> ResultCard:
    if result.recognized:
        return ResultCard(
            outcome=result.outcome,
            label=result.display_label,
            original_label=result.label,
            percentage=result.percentage,
            high_confidence=result.high_confidence,
            message=RECOGNIZED_MESSAGE.format(label=result.display_label),
            image_sequence=result.image_sequence,
        )
    return ResultCard(
        outcome=result.outcome,
        label=None,
        original_label=result.label,
        percentage=result.percentage,
        high_confidence=False,
        message=LOW_CONFIDENCE_MESSAGE,
        image_sequence=result.image_sequence,
    )


def _image_info(asset: ImageAsset) -> ImageInfo:
    return ImageInfo(
        sequence=asset.sequence,
        source=asset.source,
        media_type=asset.media_type,
        width=asset.width,
        height=asset.height,
        preview_url=asset.preview_url,
    )


def _camera_response(controller: CaptureController) -> CameraResponse:
    session = controller.session
    return CameraResponse(
        supported=controller.camera_supported,
        state=controller.state,
        facing_mode=controller.facing_mode,
        width=session.width if session else None,
        height=session.height if session else None,
    )


async def _classify(request: Request, asset: ImageAsset) -> ClassifyResponse:
    manager = _get_model_manager(request)
    orchestrator = _get_orchestrator(request)
    result = await orchestrator.classify(manager.model, asset)
    return ClassifyResponse(
        image=_image_info(asset),
        result=_result_card(result),
        stale=result.sequence != orchestrator.last_issued,
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health, model loading state and camera state."""
    settings = _get_settings(request)
    stats = _get_inference_pool(request).stats()
    manager = _get_model_manager(request)
    controller = _get_capture(request)
    agent = _get_cache_agent(request)
    error = manager.last_error
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        model_status=manager.status,
        model_error=error.message if error else None,
        camera_supported=controller.camera_supported,
        camera_state=controller.state,
        cache_generation=agent.cache_name if agent else None,
        cache_installed=agent.installed if agent else False,
        cache_serving=agent.serving if agent else False,
        concurrent_requests=stats.running,
        queue_depth=stats.waiting,
        worker_capacity=stats.capacity,
    )


@router.post(
    "/model/reload",
    response_model=HealthResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="Retry loading the model",
)
async def reload_model(request: Request) -> HealthResponse:
    """Retry a failed model load. A loaded model is kept as is."""
    await _get_model_manager(request).load()
    return await health(request)


@router.post(
    "/images",
    response_model=ClassifyResponse,
    responses=_ERROR_RESPONSES,
    summary="Select an image and classify it",
)
async def upload_image(
    request: Request,
    file: UploadFile,
    source: Literal["file", "drop"] = "file",
) -> ClassifyResponse:
    """Ingest an uploaded (picked or dropped) image and classify it.

    The image stays selected if the model is not ready yet, so it can be
    classified later through ``/classify``.
    """
    pipeline = _get_pipeline(request)
    blob = ImageBlob(
        data=await file.read(),
        media_type=file.content_type or "",
        filename=file.filename,
    )
    if source == "drop":
        asset = await pipeline.from_drop(blob)
    else:
        asset = await pipeline.from_file(blob)
    return await _classify(request, asset)


@router.post(
    "/classify",
    response_model=ClassifyResponse,
    responses=_ERROR_RESPONSES,
    summary="Classify the current image again",
)
async def classify_current(request: Request) -> ClassifyResponse:
    """Classify the currently selected image, e.g. after a model reload."""
    asset = _get_pipeline(request).current
    if asset is None:
        raise UnsupportedMediaError("No image is selected")
    return await _classify(request, asset)


@router.get(
    "/image",
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Current image preview",
)
async def current_image(request: Request) -> Response:
    """Return the encoded bytes of the current image for display."""
    asset = _get_pipeline(request).current
    if asset is None:
        return Response(status_code=status.HTTP_404_NOT_FOUND)
    return Response(content=asset.data, media_type=asset.media_type)


@router.get(
    "/result",
    response_model=ResultResponse,
    summary="Latest classification result",
)
async def latest_result(request: Request) -> ResultResponse:
    orchestrator = _get_orchestrator(request)
    result = orchestrator.latest_result
    return ResultResponse(
        pending=orchestrator.pending,
        result=_result_card(result) if result else None,
    )


@router.post(
    "/camera/start",
    response_model=CameraResponse,
    responses={
        status.HTTP_403_FORBIDDEN: {"model": ErrorResponse},
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        **_ERROR_RESPONSES,
    },
    summary="Start the camera",
)
async def start_camera(request: Request) -> CameraResponse:
    if not _get_model_manager(request).is_ready:
        raise ModelNotReadyError
    controller = _get_capture(request)
    _get_pipeline(request).reset()
    _get_orchestrator(request).reset()
    await controller.start_capture()
    return _camera_response(controller)


@router.post(
    "/camera/stop",
    response_model=CameraResponse,
    summary="Stop the camera",
)
async def stop_camera(request: Request) -> CameraResponse:
    controller = _get_capture(request)
    controller.stop_capture()
    return _camera_response(controller)


@router.post(
    "/camera/snapshot",
    response_model=ClassifyResponse,
    responses=_ERROR_RESPONSES,
    summary="Take a photo and classify it",
)
async def take_snapshot(request: Request) -> ClassifyResponse:
    asset = await _get_capture(request).take_snapshot()
    return await _classify(request, asset)


@router.post(
    "/reset",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Stop the camera and clear the image and result",
)
async def reset(request: Request) -> Response:
    _get_pipeline(request).reset()
    _get_orchestrator(request).reset()
    return Response(status_code=status.HTTP_204_NO_CONTENT)

