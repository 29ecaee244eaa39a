import logging
import time
from logging.handlers import TimedRotatingFileHandler

from fastapi import FastAPI, Request

from kiosk.config import LOG_FILE, LOG_LEVEL

LOG_BACKUP_COUNT = 5
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def setup_logger(log_file: str | None = LOG_FILE, level: str = LOG_LEVEL) -> logging.Logger:
    """
    Configure the ``kiosk`` logger once.

    Rotation (file mode): weekly, every Monday at midnight, keeping the last
    ``LOG_BACKUP_COUNT`` files. Without a log file, records go to stderr.
    """
    logger = logging.getLogger("kiosk")
    logger.setLevel(getattr(logging, level, logging.INFO))
    if logger.handlers:
        return logger

    if log_file:
        handler: logging.Handler = TimedRotatingFileHandler(
            log_file,
            when="W0",
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    return logger


def create_logging_middleware(app: FastAPI, logger: logging.Logger) -> FastAPI:
    """Log method, path, status and duration of every request."""

    @app.middleware("http")
    async def log_request_response_time(request: Request, call_next):
        start_time = time.perf_counter()
        client_ip = request.client.host if request.client else "-"

        response = await call_next(request)
        process_time = time.perf_counter() - start_time

        logger.info(
            "IP=%s | %s %s | Status=%s | Time=%.4fs",
            client_ip,
            request.method,
            request.url.path,
            response.status_code,
            process_time,
        )
        response.headers["X-Process-Time"] = str(round(process_time, 4))
        return response

    return app
