import asyncio
import logging
import time
from typing import Callable

from kiosk.capture import CameraSource, CaptureSource, Coordinates, ProvidedLocation
from kiosk.config import TERMINAL_IDLE_TTL_SECONDS
from kiosk.recognizer import CascadeEmbeddingExtractor, EmbeddingExtractor
from kiosk.services.matcher import BiometricMatcher
from kiosk.services.registration import OTPRegistrationFlow
from kiosk.services.sessions import Action
from kiosk.services.terminal import KioskTerminal

logger = logging.getLogger(__name__)


class ClockActionCancelled(Exception):
    pass


class TerminalHub:
    """
    Registry of terminals served over HTTP, keyed by the stable device
    identifier each kiosk sends with its requests.

    Only state-changing routes attach a terminal. Terminals left idle and
    unauthorized for ``idle_ttl_seconds`` are dropped on the next attach.
    """

    def __init__(
        self,
        *,
        source_factory: Callable[[], CaptureSource] | None = None,
        extractor_factory: Callable[[], EmbeddingExtractor] | None = None,
        otp_flow: OTPRegistrationFlow | None = None,
        idle_ttl_seconds: float = TERMINAL_IDLE_TTL_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
        **terminal_options,
    ):
        self.terminals: dict[str, KioskTerminal] = {}
        self.last_seen: dict[str, float] = {}
        self.terminal_options = terminal_options
        self.source_factory = source_factory or CameraSource
        self.extractor_factory = extractor_factory or CascadeEmbeddingExtractor
        self.otp_flow = otp_flow or OTPRegistrationFlow()
        self.idle_ttl_seconds = idle_ttl_seconds
        self.monotonic = monotonic

    def find(self, device_uuid: str) -> KioskTerminal | None:
        """Look up an attached terminal without creating one."""
        terminal = self.terminals.get(device_uuid)
        if terminal is not None:
            self.last_seen[device_uuid] = self.monotonic()
        return terminal

    def get(self, device_uuid: str) -> KioskTerminal:
        self.evict_idle()
        terminal = self.terminals.get(device_uuid)
        if terminal is None:
            terminal = KioskTerminal(
                device_uuid,
                otp_flow=self.otp_flow,
                matcher=BiometricMatcher(self.extractor_factory()),
                **self.terminal_options,
            )
            self.terminals[device_uuid] = terminal
            logger.info("Terminal %s attached", device_uuid)
        self.last_seen[device_uuid] = self.monotonic()
        return terminal

    def evict_idle(self) -> list[str]:
        now = self.monotonic()
        stale = [
            device_uuid
            for device_uuid, terminal in self.terminals.items()
            if terminal.evictable and now - self.last_seen.get(device_uuid, now) >= self.idle_ttl_seconds
        ]
        for device_uuid in stale:
            self.drop(device_uuid)
            logger.info("Terminal %s evicted after idling", device_uuid)
        return stale

    def snapshot(self, device_uuid: str) -> dict:
        terminal = self.find(device_uuid)
        if terminal is None:
            return {
                "device_uuid": device_uuid,
                "state": "idle",
                "authorization": None,
                "branch_id": None,
                "pin_expires_at": None,
                "registration": None,
                "last_error": None,
                "attached": False,
            }
        return {**terminal.snapshot(), "attached": True}

    def set_location(self, terminal: KioskTerminal, latitude: float | None, longitude: float | None, accuracy: float | None = None) -> None:
        coords = None
        if latitude is not None and longitude is not None:
            coords = Coordinates(latitude, longitude, accuracy)
        terminal.geolocation = ProvidedLocation(coords)

    async def clock(
        self,
        terminal: KioskTerminal,
        requested: Action | None = None,
        source: CaptureSource | None = None,
        **options,
    ) -> dict:
        """
        Run the clock action as its own task so ``/terminal/cancel`` can stop
        it without cancelling the waiting request.
        """
        task = asyncio.create_task(
            terminal.attempt_clock_action(requested, source or self.source_factory(), **options)
        )
        await asyncio.wait({task})
        if task.cancelled():
            raise ClockActionCancelled()
        return task.result()

    def drop(self, device_uuid: str) -> None:
        self.last_seen.pop(device_uuid, None)
        terminal = self.terminals.pop(device_uuid, None)
        if terminal is not None:
            terminal.shutdown()

    def shutdown(self) -> None:
        for device_uuid in list(self.terminals):
            self.drop(device_uuid)


terminal_hub = TerminalHub()
