import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Callable, Literal, Sequence

import numpy as np # type: ignore

from kiosk.capture import CaptureStream
from kiosk.config import MATCH_ATTEMPT_DELAY_SECONDS, MATCH_MAX_ATTEMPTS, MATCH_THRESHOLD
from kiosk.errors import KioskError, TerminalBusy
from kiosk.recognizer import CascadeEmbeddingExtractor, EmbeddingExtractor, distance
from kiosk.utils import local_now

logger = logging.getLogger(__name__)

Outcome = Literal["no_face", "no_match", "matched"]
Gallery = Sequence[tuple[int, np.ndarray]]


@dataclass(frozen=True)
class DetectionAttempt:
    index: int
    outcome: Outcome
    at: datetime
    staff_id: int | None = None
    distance: float | None = None
    reason: str | None = None


@dataclass(frozen=True)
class Matched:
    staff_id: int
    distance: float
    confidence: float
    attempts: int


@dataclass(frozen=True)
class Exhausted:
    last_reason: Outcome
    detail: str | None
    attempts: int


def confidence_from_distance(value: float) -> float:
    return round(min(1.0, max(0.0, 1.0 - value)), 4)


class BiometricMatcher:
    """
    Bounded retry loop turning frames into a staff identity.

    ``attempts`` yields one ``DetectionAttempt`` per sampled frame and stops
    early on the first match; ``match`` drives it and returns ``Matched`` or
    ``Exhausted``. One ``match`` at a time per matcher.
    """

    def __init__(
        self,
        extractor: EmbeddingExtractor | None = None,
        *,
        threshold: float = MATCH_THRESHOLD,
        max_attempts: int = MATCH_MAX_ATTEMPTS,
        delay: float = MATCH_ATTEMPT_DELAY_SECONDS,
        comparator: Callable[[np.ndarray, np.ndarray], float] = distance,
    ):
        self.extractor = extractor or CascadeEmbeddingExtractor()
        self.threshold = threshold
        self.max_attempts = max_attempts
        self.delay = delay
        self.comparator = comparator
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def _nearest(self, embedding: np.ndarray, gallery: Gallery) -> tuple[int | None, float | None]:
        best_id, best_dist = None, None
        for staff_id, registered in gallery:
            d = self.comparator(embedding, registered)
            if best_dist is None or d < best_dist:
                best_id, best_dist = staff_id, d
        return best_id, best_dist

    def _sample(self, stream: CaptureStream, gallery: Gallery, index: int, threshold: float) -> DetectionAttempt:
        try:
            frame = stream.read()
            embedding, reason = self.extractor.extract(frame)
        except KioskError:
            raise
        except Exception as exc:  # a frame that cannot be processed is a missed attempt
            logger.warning("Detection attempt %s failed: %s", index, exc)
            return DetectionAttempt(index, "no_face", local_now(), reason="extraction_failed")

        now = local_now()
        if embedding is None:
            return DetectionAttempt(index, "no_face", now, reason=reason or "no_face")

        staff_id, best = self._nearest(embedding, gallery)
        if staff_id is not None and best is not None and best <= threshold:
            return DetectionAttempt(index, "matched", now, staff_id=staff_id, distance=best)

        return DetectionAttempt(index, "no_match", now, distance=best, reason="no_match")

    async def attempts(
        self,
        stream: CaptureStream,
        gallery: Gallery,
        *,
        max_attempts: int | None = None,
        delay: float | None = None,
        threshold: float | None = None,
    ) -> AsyncIterator[DetectionAttempt]:
        limit = self.max_attempts if max_attempts is None else max_attempts
        pause = self.delay if delay is None else delay
        cutoff = self.threshold if threshold is None else threshold

        for index in range(1, limit + 1):
            if index > 1 and pause > 0:
                await asyncio.sleep(pause)
            attempt = await asyncio.to_thread(self._sample, stream, gallery, index, cutoff)
            logger.debug("Detection attempt %s/%s: %s", index, limit, attempt.outcome)
            yield attempt
            if attempt.outcome == "matched":
                return

    async def match(
        self,
        stream: CaptureStream,
        gallery: Gallery,
        *,
        max_attempts: int | None = None,
        delay: float | None = None,
        threshold: float | None = None,
    ) -> Matched | Exhausted:
        if self._running:
            raise TerminalBusy("Face detection is already running on this terminal.")

        self._running = True
        try:
            last: DetectionAttempt | None = None
            count = 0
            async for attempt in self.attempts(
                stream,
                gallery,
                max_attempts=max_attempts,
                delay=delay,
                threshold=threshold,
            ):
                last = attempt
                count += 1
                if attempt.outcome == "matched":
                    return Matched(
                        staff_id=int(attempt.staff_id),
                        distance=float(attempt.distance),
                        confidence=confidence_from_distance(float(attempt.distance)),
                        attempts=count,
                    )

            if last is None:
                return Exhausted("no_face", None, 0)
            return Exhausted(last.outcome, last.reason, count)
        finally:
            self._running = False
