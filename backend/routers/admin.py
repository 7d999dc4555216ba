import sqlite3
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import require_admin
from backend.services.auto_checkout import get_sweep_status, sweep_expired_sessions
from database.db import (
    clear_all_tables,
    clear_attendance,
    create_staff_user,
    get_gym_by_id,
)


def _require_unscoped_admin(session: dict = Depends(require_admin)) -> dict:
    if session.get("gym_id") is not None:
        raise HTTPException(status_code=403, detail="Unscoped admin session required.")
    return session


router = APIRouter(dependencies=[Depends(_require_unscoped_admin)])


class StaffCreate(BaseModel):
    username: str
    password: str
    role: Literal["admin", "trainer"] = "trainer"
    gym_id: int | None = None


@router.post("/admin/staff")
def create_staff(payload: StaffCreate):
    if payload.gym_id is not None and not get_gym_by_id(payload.gym_id):
        raise HTTPException(status_code=404, detail="Gym not found.")
    try:
        staff_id = create_staff_user(
            payload.username,
            payload.password,
            role=payload.role,
            gym_id=payload.gym_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Username already exists.")

    return {
        "id": staff_id,
        "username": payload.username.strip(),
        "role": payload.role,
        "gym_id": payload.gym_id,
    }


@router.post("/admin/attendance/sweep")
def run_attendance_sweep():
    closed = sweep_expired_sessions()
    return {
        "ok": True,
        "message": "Auto-checkout sweep completed.",
        "auto_closed": closed,
    }


@router.get("/admin/attendance/sweep")
def attendance_sweep_status():
    return get_sweep_status()


@router.post("/admin/reset/attendance")
def reset_attendance():
    deleted = clear_attendance()
    return {"ok": True, "deleted": deleted, "message": "Attendance records cleared"}


@router.post("/admin/reset/hard")
def reset_hard():
    clear_all_tables()
    return {"ok": True, "message": "Reset complete: gyms, members and attendance cleared"}
