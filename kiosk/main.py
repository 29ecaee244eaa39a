from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from kiosk.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
)
from kiosk.errors import KioskError
from kiosk.logger_helper import create_logging_middleware, setup_logger
from kiosk.routers import admin, attendance, auth, core, staff, terminal
from kiosk.services.hub import terminal_hub
from kiosk_db.db import create_tables

logger = setup_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_tables()
    logger.info("Database ready")
    yield
    terminal_hub.shutdown()
    logger.info("Terminals released")


app = FastAPI(title="Attendance Kiosk API", lifespan=lifespan)


# -----------------------------
# CORS (kiosk web client)
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)

create_logging_middleware(app, logger)


@app.exception_handler(KioskError)
async def kiosk_error_handler(request: Request, exc: KioskError):
    logger.info("%s %s -> %s (%s)", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(core.router)
app.include_router(auth.router)
app.include_router(terminal.router)
app.include_router(attendance.router)
app.include_router(staff.router)
app.include_router(admin.router)
