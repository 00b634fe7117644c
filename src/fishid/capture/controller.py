"""Camera lease and still-frame capture.

State machine::

    Idle --start_capture--> Active --take_snapshot--> Capturing --> Idle
      ^                       |
      +------stop_capture-----+

At most one lease exists at a time: ``start_capture`` always stops the
previous one first, and every exit path (cancel, snapshot, ingest, shutdown)
goes through ``stop_capture``, which is idempotent.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from fishid.capture.backend import FacingMode, StreamRequest, encode_jpeg
from fishid.errors import CameraError, CameraUnavailableError, CaptureNotActiveError
from fishid.media.ingest import Snapshot

if TYPE_CHECKING:
    from fishid.capture.backend import CameraBackend, CameraStream
    from fishid.config import Settings
    from fishid.media.ingest import ImageAsset, ImageIngestPipeline
    from fishid.ml.inference import InferencePool

logger = logging.getLogger(__name__)


class CaptureState(StrEnum):
    IDLE = "idle"
    ACTIVE = "active"
    CAPTURING = "capturing"


@dataclass
class CaptureSession:
    """An active camera lease.

    A frame read runs on a worker thread while a stop can arrive on the event
    loop. The stream is never released during a read: a stop that lands
    mid-read only marks the session inactive, and the reader releases the
    stream when its read returns.
    """

    stream: CameraStream
    facing_mode: FacingMode
    width: int
    height: int
    active: bool = True
    reading: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def begin_read(self) -> bool:
        with self._lock:
            if not self.active:
                return False
            self.reading = True
            return True

    def end_read(self) -> None:
        with self._lock:
            self.reading = False
            release = not self.active
        if release:
            self.stream.release()

    def close(self) -> bool:
        """Mark the lease inactive; returns False if the release was deferred to a running read."""
        with self._lock:
            self.active = False
            if self.reading:
                return False
        self.stream.release()
        return True


class CaptureController:
    """Sole owner of the camera lease."""

    def __init__(
        self,
        settings: Settings,
        pool: InferencePool,
        pipeline: ImageIngestPipeline,
        backend: CameraBackend,
        log: logging.Logger | None = None,
    ) -> None:
        self._pool = pool
        self._pipeline = pipeline
        self._backend = backend
        self._log = log or logger

        self._facing_mode = FacingMode.ENVIRONMENT if settings.handheld else FacingMode.USER
        self._preferred_size = (settings.preferred_width, settings.preferred_height)
        self._jpeg_quality = settings.snapshot_jpeg_quality
        self._supported = settings.camera_enabled and backend.is_supported()

        self._state = CaptureState.IDLE
        self._session: CaptureSession | None = None
        self._start_lock = asyncio.Lock()
        self._stops = 0

        pipeline.attach_camera(self)

    # -- Accessors ----------------------------------------------------------

    @property
    def camera_supported(self) -> bool:
        return self._supported

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def session(self) -> CaptureSession | None:
        return self._session

    @property
    def facing_mode(self) -> FacingMode:
        return self._facing_mode

    # -- Transitions --------------------------------------------------------

    async def start_capture(self) -> CaptureSession:
        """Acquire a new lease, releasing any existing one first.

        Raises:
            CameraUnavailableError, CameraPermissionError, CameraBusyError,
            CameraError: The lease could not be acquired; state stays Idle.
        """
        async with self._start_lock:
            self.stop_capture()
            if not self._supported:
                raise CameraUnavailableError

            width, height = self._preferred_size
            request = StreamRequest(facing_mode=self._facing_mode, width=width, height=height)
            stops_before = self._stops
            try:
                stream = await self._pool.run(self._backend.open, request)
            except CameraError as exc:
                self._log.warning("Camera start failed (%s): %s", type(exc).__name__, exc)
                raise

            if self._stops != stops_before:
                # Stopped (ingest, reset or shutdown) while the device was opening.
                stream.release()
                raise CameraError("Camera start was cancelled")

            session = CaptureSession(
                stream=stream,
                facing_mode=request.facing_mode,
                width=stream.width,
                height=stream.height,
            )
            self._session = session
            self._state = CaptureState.ACTIVE
            self._log.info(
                "Camera started (%s facing, requested %sx%s, negotiated %sx%s)",
                session.facing_mode,
                width,
                height,
                session.width,
                session.height,
            )
            return session

    def stop_capture(self) -> None:
        """Release the lease if one is held. Safe to call in any state."""
        self._stops += 1
        session = self._session
        self._session = None
        self._state = CaptureState.IDLE
        if session is None:
            return

        if session.close():
            self._log.info("Camera stopped")
        else:
            self._log.info("Camera stopped; release deferred until the frame read returns")

    async def take_snapshot(self) -> ImageAsset:
        """Grab the current frame, release the lease and ingest the still.

        Raises:
            CaptureNotActiveError: The camera is not active, or no frame has
                been decoded yet (the lease is kept so the user can retry).
            CameraError: The frame could not be encoded.
        """
        session = self._session
        if self._state is not CaptureState.ACTIVE or session is None:
            raise CaptureNotActiveError

        self._state = CaptureState.CAPTURING
        try:
            snapshot = await self._pool.run(self._grab, session)
        except (CaptureNotActiveError, CameraError):
            if self._session is session:
                self._state = CaptureState.ACTIVE
            raise

        if self._session is not session:
            raise CaptureNotActiveError("Camera was stopped during capture")

        self.stop_capture()
        asset = self._pipeline.from_snapshot(snapshot)
        self._log.info("Snapshot captured (%sx%s)", asset.width, asset.height)
        return asset

    # -- Internal -----------------------------------------------------------

    def _grab(self, session: CaptureSession) -> Snapshot:
        if not session.begin_read():
            raise CaptureNotActiveError("Camera was stopped during capture")
        try:
            frame = session.stream.read_frame()
        finally:
            session.end_read()
        if frame is None:
            raise CaptureNotActiveError("No camera frame is available yet")
        data, image = encode_jpeg(frame, self._jpeg_quality)
        return Snapshot(data=data, image=image)
