import logging
from datetime import datetime, timedelta

from kiosk.config import GRACE_MINUTES, STANDARD_WORK_HOURS
from kiosk.errors import SessionAlreadyRecorded
from kiosk.services.sessions import FIELD_FOR, Action, Session, SessionWindows
from kiosk.utils import parse_instant, to_local
from kiosk_db import db

logger = logging.getLogger(__name__)

FIELD_ORDER = db.ATTENDANCE_FIELDS


def _hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600.0


class AttendanceRecorder:
    """
    Applies one transition to a (staff, date) record.

    The store write is a compare-and-set (target NULL, prior fields set), so a
    concurrent second commit for the same field is rejected.
    """

    def __init__(
        self,
        *,
        windows: SessionWindows | None = None,
        grace_minutes: int = GRACE_MINUTES,
        standard_hours: float = STANDARD_WORK_HOURS,
    ):
        self.windows = windows or SessionWindows()
        self.grace_minutes = grace_minutes
        self.standard_hours = standard_hours

    def _check_order(self, record: db.AttendanceRecordRow | None, field: str, at: datetime) -> None:
        rec = record or {}
        if rec.get(field):
            raise SessionAlreadyRecorded(f"{field.replace('_', ' ').title()} is already recorded.")

        prior = FIELD_ORDER[: FIELD_ORDER.index(field)]
        missing = [p for p in prior if not rec.get(p)]
        if missing:
            raise SessionAlreadyRecorded(
                f"Cannot record {field.replace('_', ' ')} before {missing[0].replace('_', ' ')}.",
                guidance="Complete the earlier attendance step first.",
            )

        if prior:
            latest = parse_instant(rec.get(prior[-1]))
            if latest is not None and at <= latest:
                raise SessionAlreadyRecorded(
                    f"{field.replace('_', ' ').title()} must be after the previous entry.",
                )

    def _arrival_status(self, date: str, at: datetime) -> dict:
        start = to_local(datetime.combine(datetime.fromisoformat(date).date(), self.windows.morning_start))
        cutoff = start + timedelta(minutes=self.grace_minutes)
        if at > cutoff:
            late = int((at - start).total_seconds() // 60)
            return {"status": "Late", "late_minutes": late}
        return {"status": "Present", "late_minutes": 0}

    def _totals(self, record: db.AttendanceRecordRow, at: datetime) -> dict:
        mi = parse_instant(record["morning_in"])
        mo = parse_instant(record["morning_out"])
        ai = parse_instant(record["afternoon_in"])
        total = _hours_between(mi, mo) + _hours_between(ai, at)
        total = round(total, 2)
        overtime = round(max(0.0, total - self.standard_hours), 2)
        return {"total_hours": total, "overtime_hours": overtime}

    def commit(
        self,
        staff_id: int,
        date: str,
        session: Session,
        action: Action,
        at: datetime,
        *,
        branch_id: int | None = None,
    ) -> db.AttendanceRecordRow:
        field = FIELD_FOR[(session, action)]
        at = to_local(at)

        record = db.get_attendance_record(staff_id, date)
        self._check_order(record, field, at)

        extra: dict = {}
        if field == "morning_in":
            extra = self._arrival_status(date, at)
        elif field == "afternoon_out":
            extra = self._totals(record, at)

        applied = db.set_attendance_field(
            staff_id=staff_id,
            date=date,
            field=field,
            value=at,
            extra=extra,
            branch_id=branch_id,
        )
        if not applied:
            logger.warning("Concurrent commit rejected: staff=%s date=%s field=%s", staff_id, date, field)
            raise SessionAlreadyRecorded()

        logger.info("Recorded %s for staff=%s date=%s", field, staff_id, date)
        return db.get_attendance_record(staff_id, date)
