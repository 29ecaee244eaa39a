from dataclasses import dataclass
from datetime import datetime, time
from typing import Literal, Mapping

from kiosk.config import AFTERNOON_END, AFTERNOON_START, MORNING_END, MORNING_START
from kiosk.utils import to_local

Session = Literal["morning", "afternoon"]
Action = Literal["time_in", "time_out"]
ResolutionReason = Literal["outside_window", "morning_complete", "morning_incomplete", "day_complete"]
Stage = Literal["not_started", "morning_in", "morning_out", "afternoon_in", "afternoon_out"]

FIELD_FOR: dict[tuple[Session, Action], str] = {
    ("morning", "time_in"): "morning_in",
    ("morning", "time_out"): "morning_out",
    ("afternoon", "time_in"): "afternoon_in",
    ("afternoon", "time_out"): "afternoon_out",
}


@dataclass(frozen=True)
class SessionWindows:
    morning_start: time = MORNING_START
    morning_end: time = MORNING_END
    afternoon_start: time = AFTERNOON_START
    afternoon_end: time = AFTERNOON_END


@dataclass(frozen=True)
class SessionResolution:
    session: Session | None
    action: Action | None
    valid: bool
    reason: ResolutionReason | None = None
    message: str | None = None

    @property
    def field(self) -> str | None:
        if not self.valid or self.session is None or self.action is None:
            return None
        return FIELD_FOR[(self.session, self.action)]


def _fmt(value: time) -> str:
    return value.strftime("%I:%M %p").lstrip("0")


def stage_of(record: Mapping | None) -> Stage:
    """Position of a day's record on the morning-in -> afternoon-out chain."""
    rec = record or {}
    stage: Stage = "not_started"
    for column in ("morning_in", "morning_out", "afternoon_in", "afternoon_out"):
        if not rec.get(column):
            break
        stage = column  # type: ignore[assignment]
    return stage


def resolve(now: datetime, record: Mapping | None, windows: SessionWindows | None = None) -> SessionResolution:
    """
    Which transition a clock action at ``now`` must perform for ``record``.

    Windows are half-open in organization local time. ``record`` is only read.
    """
    w = windows or SessionWindows()
    rec = record or {}
    clock = to_local(now).time()

    if w.morning_start <= clock < w.morning_end:
        if not rec.get("morning_in"):
            return SessionResolution("morning", "time_in", True)
        if not rec.get("morning_out"):
            return SessionResolution("morning", "time_out", True)
        return SessionResolution(
            "morning",
            None,
            False,
            "morning_complete",
            f"Morning session already completed. Afternoon session starts at {_fmt(w.afternoon_start)}.",
        )

    if w.afternoon_start <= clock < w.afternoon_end:
        if not rec.get("morning_in") or not rec.get("morning_out"):
            return SessionResolution(
                "afternoon",
                None,
                False,
                "morning_incomplete",
                "Please complete the morning session first.",
            )
        if not rec.get("afternoon_in"):
            return SessionResolution("afternoon", "time_in", True)
        if not rec.get("afternoon_out"):
            return SessionResolution("afternoon", "time_out", True)
        return SessionResolution(
            "afternoon",
            None,
            False,
            "day_complete",
            "Attendance for today is already complete.",
        )

    if clock < w.morning_start:
        upcoming = f"Morning session starts at {_fmt(w.morning_start)}."
    elif w.morning_end <= clock < w.afternoon_start:
        upcoming = f"Afternoon session starts at {_fmt(w.afternoon_start)}."
    else:
        upcoming = f"Morning session starts tomorrow at {_fmt(w.morning_start)}."

    return SessionResolution(
        None,
        None,
        False,
        "outside_window",
        f"Outside attendance hours. {upcoming}",
    )
