from typing import Literal

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, UploadFile

from kiosk.capture import FrameSource
from kiosk.recognizer import decode_image
from kiosk.security import require_session
from kiosk.services.hub import ClockActionCancelled, terminal_hub
from kiosk_db.db import get_attendance_records

router = APIRouter()


@router.get("/attendance")
def attendance(date: str | None = None, _session: dict = Depends(require_session)):
    return get_attendance_records(date)


@router.post("/attendance/recognize")
async def recognize_attendance(
    files: list[UploadFile] = File(...),
    action: Literal["time_in", "time_out"] | None = Form(default=None),
    x_device_id: str | None = Header(default=None),
):
    """
    Clock action from frames captured client-side. Each uploaded image is
    one detection attempt; the terminal must already be authorized.
    """
    device_uuid = (x_device_id or "").strip()
    if not device_uuid:
        raise HTTPException(status_code=400, detail="X-Device-Id header is required.")

    frames = []
    for f in files:
        if f.content_type not in ("image/jpeg", "image/png"):
            raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")
        frame = decode_image(await f.read())
        if frame is None:
            raise HTTPException(status_code=400, detail="Invalid image data.")
        frames.append(frame)

    if not frames:
        raise HTTPException(status_code=400, detail="At least 1 image is required.")

    terminal = terminal_hub.get(device_uuid)
    try:
        return await terminal_hub.clock(
            terminal,
            action,
            FrameSource(frames),
            max_attempts=len(frames),
            delay=0.0,
        )
    except ClockActionCancelled:
        raise HTTPException(status_code=409, detail="Clock action cancelled.")
