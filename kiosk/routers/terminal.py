from typing import Literal

from fastapi import APIRouter, Header, HTTPException
from pydantic import BaseModel

from kiosk.services.hub import ClockActionCancelled, terminal_hub

router = APIRouter(prefix="/terminal")


class AuthorizeRequest(BaseModel):
    branch_id: int | None = None
    latitude: float | None = None
    longitude: float | None = None
    accuracy: float | None = None


class PinRequest(BaseModel):
    pin: str
    branch_id: int | None = None


class OTPRequestBody(BaseModel):
    branch_id: int
    device_name: str | None = None
    device_type: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    browser_info: dict | None = None


class OTPVerifyBody(BaseModel):
    code: str
    branch_id: int | None = None


class ClockRequest(BaseModel):
    action: Literal["time_in", "time_out"] | None = None


def _device_id(value: str | None) -> str:
    clean = (value or "").strip()
    if not clean:
        raise HTTPException(status_code=400, detail="X-Device-Id header is required.")
    return clean


@router.get("/state")
def terminal_state(x_device_id: str | None = Header(default=None)):
    return terminal_hub.snapshot(_device_id(x_device_id))


@router.post("/authorize")
async def authorize(payload: AuthorizeRequest, x_device_id: str | None = Header(default=None)):
    terminal = terminal_hub.get(_device_id(x_device_id))
    terminal_hub.set_location(terminal, payload.latitude, payload.longitude, payload.accuracy)
    outcome = await terminal.check_authorization(payload.branch_id)
    return {**outcome.to_dict(), "state": terminal.state.value}


@router.post("/pin")
async def verify_pin(payload: PinRequest, x_device_id: str | None = Header(default=None)):
    terminal = terminal_hub.get(_device_id(x_device_id))
    outcome = await terminal.verify_pin(payload.pin, payload.branch_id)
    pin = terminal.context.pin
    return {
        **outcome.to_dict(),
        "state": terminal.state.value,
        "pin": pin.to_dict() if pin else None,
    }


@router.post("/otp/request")
async def request_otp(
    payload: OTPRequestBody,
    x_device_id: str | None = Header(default=None),
    user_agent: str | None = Header(default=None),
):
    terminal = terminal_hub.get(_device_id(x_device_id))
    issued = await terminal.request_registration(
        payload.branch_id,
        {
            "device_name": payload.device_name,
            "device_type": payload.device_type,
            "latitude": payload.latitude,
            "longitude": payload.longitude,
            "browser_info": payload.browser_info,
            "user_agent": user_agent,
        },
    )
    return {**issued.to_dict(), "state": terminal.state.value}


@router.post("/otp/verify")
async def verify_otp(payload: OTPVerifyBody, x_device_id: str | None = Header(default=None)):
    terminal = terminal_hub.get(_device_id(x_device_id))
    verified = await terminal.submit_otp(payload.code, payload.branch_id)
    watcher = terminal.context.watcher
    return {
        "verified": True,
        "device": verified.to_dict(),
        "registration": watcher.to_dict() if watcher else None,
        "state": terminal.state.value,
    }


@router.get("/registration")
def registration_status(x_device_id: str | None = Header(default=None)):
    terminal = terminal_hub.find(_device_id(x_device_id))
    watcher = terminal.context.watcher if terminal else None
    if watcher is None:
        raise HTTPException(status_code=404, detail="No registration in progress.")
    decision = terminal.context.decision
    return {
        **watcher.to_dict(),
        "authorization": decision.kind if decision else None,
        "state": terminal.state.value,
    }


@router.delete("/registration")
def cancel_registration(x_device_id: str | None = Header(default=None)):
    terminal = terminal_hub.find(_device_id(x_device_id))
    if terminal is None:
        return {"cancelled": False, "state": "idle"}
    return {"cancelled": terminal.cancel_registration(), "state": terminal.state.value}


@router.post("/clock")
async def clock(payload: ClockRequest | None = None, x_device_id: str | None = Header(default=None)):
    terminal = terminal_hub.get(_device_id(x_device_id))
    try:
        return await terminal_hub.clock(terminal, payload.action if payload else None)
    except ClockActionCancelled:
        raise HTTPException(status_code=409, detail="Clock action cancelled.")


@router.post("/cancel")
def cancel_clock(x_device_id: str | None = Header(default=None)):
    terminal = terminal_hub.find(_device_id(x_device_id))
    if terminal is None:
        return {"cancelled": False, "state": "idle"}
    return {"cancelled": terminal.cancel(), "state": terminal.state.value}
