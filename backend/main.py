import logging
import sqlite3
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    LOG_LEVEL,
)
from backend.routers import admin, attendance, auth, core, gyms
from backend.services.auto_checkout import AutoCheckoutWorker
from database.db import create_tables

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

AUTO_CHECKOUT_WORKER = AutoCheckoutWorker()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    create_tables()
    AUTO_CHECKOUT_WORKER.start()
    try:
        yield
    finally:
        AUTO_CHECKOUT_WORKER.stop()


app = FastAPI(title="GymPass Attendance API", lifespan=lifespan)

# -----------------------------
# CORS (React dev server)
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)


# -----------------------------
# Error mapping
# -----------------------------
@app.exception_handler(ValueError)
async def _invalid_input(_request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(sqlite3.Error)
async def _store_unavailable(request: Request, exc: sqlite3.Error):
    logger.exception("Attendance store failure on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=503,
        content={"detail": "Attendance store unavailable. Please retry."},
    )


app.include_router(core.router)
app.include_router(auth.router)
app.include_router(gyms.router)
app.include_router(attendance.router)
app.include_router(admin.router)
