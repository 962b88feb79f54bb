import os
import logging
from logging.handlers import RotatingFileHandler
from datetime import datetime
from typing import Optional
from collections import deque

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from gigsync.api import ALL_ROUTERS, get_rules, require_admin
from gigsync.db import init_db
from gigsync.errors import RecordError
from gigsync.trash_purge import get_purger, stop_purger

# ─────────────────────────── VERSION ───────────────────────────
APP_VERSION = "0.3.0"
#
# Changelog:
# 0.3.0 - Expired-trash purge (cron endpoint + background purger), empty trash
# 0.2.0 - Expense roll-up into trip costs, per-user mileage rate settings
# 0.1.0 - Initial release: trips / expenses / mileage with soft delete and restore

APP_TITLE = os.getenv("APP_TITLE", "GigSync")

# ─────────────────────────── LOGGING SETUP ───────────────────────────

# In-memory log buffer for quick access via API
LOG_BUFFER_SIZE = 1000
log_buffer = deque(maxlen=LOG_BUFFER_SIZE)


class BufferHandler(logging.Handler):
    """Custom handler that stores logs in memory buffer"""

    def emit(self, record):
        try:
            msg = self.format(record)
            log_buffer.append({
                "time": datetime.fromtimestamp(record.created).isoformat(),
                "level": record.levelname,
                "module": record.module,
                "name": record.name,
                "message": record.getMessage(),
                "formatted": msg,
            })
        except Exception:
            self.handleError(record)


# Configure logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "/data/gigsync.log")

log_format = logging.Formatter(
    '%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

# Root logger captures everything (uvicorn, fastapi, httpx, gigsync.*)
root_logger = logging.getLogger()
root_logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

logger = logging.getLogger("gigsync")
logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

console_handler = logging.StreamHandler()
console_handler.setFormatter(log_format)
console_handler.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

buffer_handler = BufferHandler()
buffer_handler.setFormatter(log_format)
buffer_handler.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

root_logger.addHandler(console_handler)
root_logger.addHandler(buffer_handler)

# File handler (optional, only if writable)
try:
    os.makedirs(os.path.dirname(LOG_FILE), exist_ok=True)
    file_handler = RotatingFileHandler(
        LOG_FILE, maxBytes=10*1024*1024, backupCount=5  # 10MB per file, keep 5 backups
    )
    file_handler.setFormatter(log_format)
    file_handler.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    root_logger.addHandler(file_handler)
    logger.info(f"File logging enabled: {LOG_FILE}")
except OSError as e:
    logger.warning(f"Could not enable file logging: {e}")


# ─────────────────────────── APP ───────────────────────────

app = FastAPI(title=APP_TITLE, version=APP_VERSION)

for _router in ALL_ROUTERS:
    app.include_router(_router)


@app.exception_handler(RecordError)
async def record_error_handler(request: Request, exc: RecordError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.warning(f"HTTP {exc.status_code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(f"HTTP {exc.status_code} on {request.method} {request.url.path}: {exc.detail}")
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.error(
        f"Unhandled exception on {request.method} {request.url.path}: {exc}",
        exc_info=True
    )
    return JSONResponse({"error": "Internal server error"}, status_code=500)


@app.on_event("startup")
def _startup():
    init_db()
    if os.getenv("TRASH_PURGE_ENABLED", "1") == "1":
        get_purger(get_rules().services).start()
    logger.info(f"{APP_TITLE} v{APP_VERSION} started")


@app.on_event("shutdown")
def _shutdown():
    stop_purger()


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@app.get("/api/logs")
def get_logs(
    level: Optional[str] = None,
    limit: int = 100,
    search: Optional[str] = None,
    _admin: bool = Depends(require_admin),
):
    """
    Recent application logs, most recent first.

    Query params:
    - level: Filter by log level (DEBUG, INFO, WARNING, ERROR)
    - limit: Number of logs to return (max LOG_BUFFER_SIZE)
    - search: Search text in log messages
    """
    limit = min(limit, LOG_BUFFER_SIZE)

    logs = list(log_buffer)
    logs.reverse()

    if level:
        level = level.upper()
        logs = [l for l in logs if l["level"] == level]

    if search:
        search = search.lower()
        logs = [l for l in logs if search in l["message"].lower() or search in l.get("module", "").lower()]

    logs = logs[:limit]

    return {
        "count": len(logs),
        "total_in_buffer": len(log_buffer),
        "logs": logs
    }
