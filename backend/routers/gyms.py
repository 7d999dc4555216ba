import sqlite3
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, StrictBool

from backend.qr import render_qr_png
from backend.security import ensure_gym_access, require_admin, require_staff
from backend.services.gym_codes import build_qr_payload
from database.db import (
    add_gym,
    add_member,
    get_all_gyms,
    get_gym_by_id,
    get_member_by_id,
    get_members_for_gym,
    get_or_create_qr_config,
    rotate_qr_secret,
    set_member_status,
    set_qr_enabled,
)

router = APIRouter()


class GymCreate(BaseModel):
    name: str


class MemberCreate(BaseModel):
    full_name: str
    email: str
    password: str | None = None


class MemberStatusUpdate(BaseModel):
    status: Literal["active", "inactive"]


class QrToggle(BaseModel):
    is_enabled: StrictBool


def _require_gym(gym_id: int, session: dict):
    ensure_gym_access(session, gym_id)
    row = get_gym_by_id(gym_id)
    if not row:
        raise HTTPException(status_code=404, detail="Gym not found.")
    return row


def _qr_body(config: dict, *, include_payload: bool = True) -> dict:
    body = {
        "gym_id": config["gym_id"],
        "is_enabled": config["is_enabled"],
        "last_rotated_at": config["last_rotated_at"].isoformat() if config["last_rotated_at"] else None,
    }
    if include_payload:
        body["qr_data"] = build_qr_payload(config)
    return body


# -----------------------------
# Gyms
# -----------------------------
@router.post("/gyms")
def create_gym(payload: GymCreate, session: dict = Depends(require_admin)):
    if session.get("gym_id") is not None:
        raise HTTPException(status_code=403, detail="Only unscoped admins can create gyms.")

    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Gym name is required.")

    new_id = add_gym(name)
    return {"id": new_id, "name": name}


@router.get("/gyms")
def gyms(session: dict = Depends(require_staff)):
    scoped_gym = session.get("gym_id")
    return [
        {"id": r[0], "name": r[1], "created_at": r[2]}
        for r in get_all_gyms()
        if scoped_gym is None or int(r[0]) == int(scoped_gym)
    ]


# -----------------------------
# Members
# -----------------------------
@router.post("/gyms/{gym_id}/members")
def create_member(gym_id: int, payload: MemberCreate, session: dict = Depends(require_staff)):
    _require_gym(gym_id, session)

    full_name = payload.full_name.strip()
    email = payload.email.strip()
    if not full_name or not email:
        raise HTTPException(status_code=400, detail="Full name and email are required.")

    try:
        new_id = add_member(gym_id, full_name, email, password=(payload.password or "").strip() or None)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Email already registered.")

    return get_member_by_id(new_id)


@router.get("/gyms/{gym_id}/members")
def gym_members(gym_id: int, session: dict = Depends(require_staff)):
    _require_gym(gym_id, session)
    return get_members_for_gym(gym_id)


@router.patch("/gyms/{gym_id}/members/{member_id}")
def update_member_status(
    gym_id: int,
    member_id: int,
    payload: MemberStatusUpdate,
    session: dict = Depends(require_staff),
):
    _require_gym(gym_id, session)
    member = get_member_by_id(member_id)
    if not member or int(member["gym_id"]) != gym_id:
        raise HTTPException(status_code=404, detail="Member not found.")

    set_member_status(member_id, payload.status)
    return get_member_by_id(member_id)


# -----------------------------
# QR attendance config
# -----------------------------
@router.get("/gyms/{gym_id}/qr")
def qr_config(gym_id: int, session: dict = Depends(require_admin)):
    _require_gym(gym_id, session)
    return _qr_body(get_or_create_qr_config(gym_id))


@router.get("/gyms/{gym_id}/qr.png")
def qr_image(gym_id: int, session: dict = Depends(require_admin)):
    _require_gym(gym_id, session)
    config = get_or_create_qr_config(gym_id)
    return Response(content=render_qr_png(build_qr_payload(config)), media_type="image/png")


@router.post("/gyms/{gym_id}/qr/rotate")
def qr_rotate(gym_id: int, session: dict = Depends(require_admin)):
    _require_gym(gym_id, session)
    return _qr_body(rotate_qr_secret(gym_id))


@router.post("/gyms/{gym_id}/qr/toggle")
def qr_toggle(gym_id: int, payload: QrToggle, session: dict = Depends(require_admin)):
    _require_gym(gym_id, session)
    return _qr_body(set_qr_enabled(gym_id, payload.is_enabled), include_payload=False)
