import logging
import sqlite3
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from kiosk.security import issue_session_token, require_session
from kiosk.utils import iso, local_now, org_timezone
from kiosk_db.db import get_admin_user, record_admin_login, verify_admin_credentials

logger = logging.getLogger(__name__)

router = APIRouter()


def _expiry(exp: int) -> str | None:
    return iso(datetime.fromtimestamp(exp, tz=org_timezone()))


class AdminLogin(BaseModel):
    username: str
    password: str


@router.post("/auth/login")
def admin_login(payload: AdminLogin):
    """
    Sign an administrator in. The session token authorizes device approval,
    staff enrollment and the audit views; ``previous_login_at`` lets the
    console warn about sign-ins the administrator does not recognize.
    """
    username = payload.username.strip()
    password = payload.password.strip()
    if not username or not password:
        raise HTTPException(status_code=400, detail="Username and password are required.")

    try:
        admin = verify_admin_credentials(username, password)
    except sqlite3.OperationalError as exc:
        logger.error("Admin store unavailable during login: %s", exc)
        raise HTTPException(status_code=503, detail="Authentication service unavailable. Please retry.")

    if not admin:
        logger.warning("Failed admin login for %r", username)
        raise HTTPException(status_code=401, detail="Invalid admin credentials.")

    now = local_now()
    try:
        record_admin_login(admin["id"], now)
    except sqlite3.Error as exc:
        logger.warning("Could not record login time for %s: %s", admin["username"], exc)
    logger.info("Admin %s signed in", admin["username"])

    token, claims = issue_session_token(admin["username"], role="admin")
    return {
        "access_token": token,
        "token_type": "bearer",
        "username": claims["sub"],
        "role": claims["role"],
        "email": admin["email"],
        "previous_login_at": admin["last_login_at"],
        "expires_at": _expiry(claims["exp"]),
        "expires_in": max(0, int(claims["exp"] - now.timestamp())),
    }


@router.get("/auth/me")
def auth_me(session: dict = Depends(require_session)):
    admin = get_admin_user(session.get("sub") or "")
    if not admin:
        # Account removed or disabled after the token was issued.
        raise HTTPException(status_code=401, detail="Session is no longer valid.")
    return {
        "username": admin["username"],
        "email": admin["email"],
        "role": session.get("role", "admin"),
        "last_login_at": admin["last_login_at"],
        "expires_at": _expiry(session["exp"]),
    }
