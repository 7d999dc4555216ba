from fastapi import APIRouter, Depends, HTTPException

from backend.config import (
    CHECK_IN_CONFLICT_RETRIES,
    DAY_UTC_OFFSET_MINUTES,
    DB_PATH,
    ENABLE_DEBUG_ENDPOINTS,
    HISTORY_DEFAULT_DAYS,
    HISTORY_MAX_DAYS,
    MAX_DWELL_MINUTES,
    SWEEP_INTERVAL_SECONDS,
)
from backend.security import require_staff

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/debug/dbpath")
def dbpath(_session: dict = Depends(require_staff)):
    if not ENABLE_DEBUG_ENDPOINTS:
        raise HTTPException(status_code=404, detail="Not found.")
    return {"db_path": str(DB_PATH)}


@router.get("/config/attendance")
def attendance_config():
    return {
        "max_dwell_minutes": MAX_DWELL_MINUTES,
        "day_utc_offset_minutes": DAY_UTC_OFFSET_MINUTES,
        "sweep_interval_seconds": SWEEP_INTERVAL_SECONDS,
        "history_default_days": HISTORY_DEFAULT_DAYS,
        "history_max_days": HISTORY_MAX_DAYS,
        "check_in_conflict_retries": CHECK_IN_CONFLICT_RETRIES,
    }
