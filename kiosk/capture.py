"""
Capture + geolocation capabilities used by the terminal.

A capture source hands out a ``CaptureStream``; ``capture_session`` is the
only way the engine acquires one, so the stream is released on success,
failure and cancellation alike.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Iterable, Protocol

import cv2 # type: ignore

from kiosk.config import CAMERA_INDEX, GEOLOCATION_TIMEOUT_SECONDS
from kiosk.errors import CameraPermissionDenied, CameraUnavailable, KioskError, LocationUnavailable

logger = logging.getLogger(__name__)

DEFAULT_CONSTRAINTS = {"width": 640, "height": 480, "facing_mode": "user"}


class CaptureStream:
    def __init__(self, read_frame: Callable[[], Any], *, label: str = "stream", handle: Any = None):
        self._read_frame = read_frame
        self.label = label
        self.handle = handle
        self.released = False

    def read(self):
        if self.released:
            raise CameraUnavailable("Camera stream was already released.")
        return self._read_frame()


class CaptureSource(Protocol):
    def acquire(self, constraints: dict | None = None) -> CaptureStream:
        ...

    def release(self, stream: CaptureStream) -> None:
        ...


class CameraSource:
    """OpenCV webcam source."""

    def __init__(self, index: int = CAMERA_INDEX):
        self.index = index

    def acquire(self, constraints: dict | None = None) -> CaptureStream:
        settings = {**DEFAULT_CONSTRAINTS, **(constraints or {})}
        try:
            cap = cv2.VideoCapture(self.index)
        except PermissionError as exc:
            raise CameraPermissionDenied() from exc
        except (OSError, cv2.error) as exc:
            raise CameraUnavailable() from exc

        if not cap.isOpened():
            cap.release()
            raise CameraUnavailable()

        cap.set(cv2.CAP_PROP_FRAME_WIDTH, settings["width"])
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, settings["height"])
        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)

        def read_frame():
            ret, frame = cap.read()
            if not ret or frame is None:
                return None
            return frame

        stream = CaptureStream(read_frame, label=f"camera:{self.index}", handle=cap)
        logger.info("Camera %s acquired", self.index)
        return stream

    def release(self, stream: CaptureStream) -> None:
        if stream.released:
            return
        stream.released = True
        cap = stream.handle
        if cap is not None:
            cap.release()
        logger.info("Camera %s released", self.index)


class FrameSource:
    """
    In-memory frames (uploaded images, tests). Yields each frame once, then
    ``None``.
    """

    def __init__(self, frames: Iterable[Any]):
        self.frames = list(frames)
        self.acquired = 0
        self.released = 0

    def acquire(self, constraints: dict | None = None) -> CaptureStream:
        pending = iter(self.frames)
        self.acquired += 1
        return CaptureStream(lambda: next(pending, None), label="frames")

    def release(self, stream: CaptureStream) -> None:
        if stream.released:
            return
        stream.released = True
        self.released += 1


@asynccontextmanager
async def capture_session(source: CaptureSource, constraints: dict | None = None) -> AsyncIterator[CaptureStream]:
    stream = await asyncio.to_thread(source.acquire, constraints)
    try:
        yield stream
    finally:
        source.release(stream)


# -----------------------------
# Geolocation
# -----------------------------
@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float
    accuracy: float | None = None


class GeolocationSource(Protocol):
    async def get_current_position(self, timeout: float) -> Coordinates:
        ...


@dataclass
class ProvidedLocation:
    """Coordinates reported by the kiosk client with its request."""

    coordinates: Coordinates | None = None
    calls: int = field(default=0, compare=False)

    async def get_current_position(self, timeout: float) -> Coordinates:
        self.calls += 1
        if self.coordinates is None:
            raise LocationUnavailable()
        return self.coordinates


async def acquire_location(
    source: GeolocationSource | None,
    timeout: float = GEOLOCATION_TIMEOUT_SECONDS,
) -> Coordinates | None:
    """One acquisition attempt; any failure means "no coordinates"."""
    if source is None:
        return None
    try:
        return await asyncio.wait_for(source.get_current_position(timeout), timeout)
    except (asyncio.TimeoutError, KioskError, OSError) as exc:
        logger.info("Geolocation unavailable: %s", exc)
        return None

