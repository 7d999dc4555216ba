from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from backend.config import HISTORY_DEFAULT_DAYS, HISTORY_MAX_DAYS
from backend.qr import decode_image_bytes
from backend.security import ensure_gym_access, require_member, require_staff
from backend.services.attendance import (
    AttendanceDecision,
    check_in_manual,
    get_history,
    gym_attendance_stats,
    list_gym_today,
    submit_check_in,
    submit_check_out,
)
from backend.services.today_status import get_today_status
from database.db import get_gym_by_id, get_member_by_id

router = APIRouter()

DECISION_HTTP_STATUS: dict[str, int] = {
    "CHECKED_IN": 200,
    "CHECKED_OUT": 200,
    "ALREADY_IN_GYM": 409,
    "INVALID_CODE": 400,
    "NOT_IN_GYM": 400,
    "NOT_ELIGIBLE": 403,
}


class ScanRequest(BaseModel):
    qr_data: str


class ManualAttendance(BaseModel):
    member_id: int
    action: Literal["check_in", "check_out"]


def serialize_record(record: dict[str, Any] | None) -> dict[str, Any] | None:
    if record is None:
        return None
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in record.items()
    }


def _decision_response(decision: AttendanceDecision) -> JSONResponse:
    code = decision["decision_code"]
    if code == "CHECKED_IN":
        status = "checked_in"
    elif code == "CHECKED_OUT":
        status = "checked_out"
    else:
        status = "error"

    return JSONResponse(
        status_code=DECISION_HTTP_STATUS[code],
        content={
            "status": status,
            "code": code,
            "message": decision["message"],
            "record": serialize_record(decision["record"]),
        },
    )


# -----------------------------
# Member self-service
# -----------------------------
@router.post("/member/attendance/scan")
def scan_check_in(payload: ScanRequest, session: dict = Depends(require_member)):
    decision = submit_check_in(int(session["member_id"]), payload.qr_data)
    return _decision_response(decision)


@router.post("/member/attendance/scan-frame")
async def scan_frame_check_in(
    session: dict = Depends(require_member),
    file: UploadFile = File(...),
):
    if file.content_type not in ("image/jpeg", "image/png"):
        raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")

    text, reason = decode_image_bytes(await file.read())
    if reason == "invalid_image":
        raise HTTPException(status_code=400, detail="Invalid image data.")
    if text is None:
        return JSONResponse(
            status_code=DECISION_HTTP_STATUS["INVALID_CODE"],
            content={
                "status": "error",
                "code": "INVALID_CODE",
                "message": "No QR code found in image.",
                "record": None,
            },
        )

    decision = submit_check_in(int(session["member_id"]), text)
    return _decision_response(decision)


@router.post("/member/attendance/checkout")
def check_out(session: dict = Depends(require_member)):
    decision = submit_check_out(int(session["member_id"]))
    return _decision_response(decision)


@router.get("/member/attendance/today")
def today_status(session: dict = Depends(require_member)):
    status = get_today_status(int(session["member_id"]))
    return {
        "status": status["status"],
        "message": status["message"],
        "auto_closed": status["auto_closed"],
        "record": serialize_record(status["record"]),
    }


@router.get("/member/attendance/history")
def history(
    days: int = Query(default=HISTORY_DEFAULT_DAYS, ge=1, le=HISTORY_MAX_DAYS),
    session: dict = Depends(require_member),
):
    records = get_history(int(session["member_id"]), days)
    return [serialize_record(r) for r in records]


# -----------------------------
# Staff views
# -----------------------------
def _require_gym(gym_id: int, session: dict) -> None:
    ensure_gym_access(session, gym_id)
    if not get_gym_by_id(gym_id):
        raise HTTPException(status_code=404, detail="Gym not found.")


@router.post("/gyms/{gym_id}/attendance/manual")
def manual_attendance(gym_id: int, payload: ManualAttendance, session: dict = Depends(require_staff)):
    _require_gym(gym_id, session)

    if payload.action == "check_in":
        return _decision_response(check_in_manual(payload.member_id, gym_id))

    member = get_member_by_id(payload.member_id)
    if not member or int(member["gym_id"]) != gym_id:
        raise HTTPException(status_code=404, detail="Member not found.")
    return _decision_response(submit_check_out(payload.member_id))


@router.get("/gyms/{gym_id}/attendance/today")
def gym_today(gym_id: int, session: dict = Depends(require_staff)):
    _require_gym(gym_id, session)
    return [serialize_record(r) for r in list_gym_today(gym_id)]


@router.get("/gyms/{gym_id}/attendance/stats")
def gym_stats(
    gym_id: int,
    period: Literal["today", "week", "month"] = "today",
    session: dict = Depends(require_staff),
):
    _require_gym(gym_id, session)
    return gym_attendance_stats(gym_id, period)
