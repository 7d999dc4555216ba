import logging
import sqlite3
import time

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import issue_session_token, require_session
from database.db import create_tables, verify_member_credentials, verify_staff_credentials

logger = logging.getLogger(__name__)

router = APIRouter()


class StaffLogin(BaseModel):
    username: str
    password: str


class MemberLogin(BaseModel):
    email: str
    password: str


def _token_response(token: str, claims: dict) -> dict:
    now = int(time.time())
    body = {
        "access_token": token,
        "token_type": "bearer",
        "username": claims["sub"],
        "role": claims["role"],
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
    }
    if "member_id" in claims:
        body["member_id"] = claims["member_id"]
    if "gym_id" in claims:
        body["gym_id"] = claims["gym_id"]
    return body


@router.post("/auth/login")
def staff_login(payload: StaffLogin):
    username = payload.username.strip()
    password = payload.password.strip()

    if not username:
        raise HTTPException(status_code=400, detail="Username is required.")
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    try:
        staff = verify_staff_credentials(username, password)
    except sqlite3.OperationalError:
        # Self-heal when DB schema is missing (e.g., startup/lifespan skipped).
        logger.warning("Staff login hit a missing schema; creating tables")
        try:
            create_tables()
            staff = verify_staff_credentials(username, password)
        except sqlite3.OperationalError:
            raise HTTPException(
                status_code=503,
                detail="Authentication service unavailable. Please retry.",
            )

    if not staff:
        raise HTTPException(status_code=401, detail="Invalid staff credentials.")

    token, claims = issue_session_token(
        staff["username"],
        role=staff["role"],
        gym_id=staff["gym_id"],
    )
    return _token_response(token, claims)


@router.post("/auth/member-login")
def member_login(payload: MemberLogin):
    email = payload.email.strip()
    password = payload.password.strip()
    if not email or not password:
        raise HTTPException(status_code=400, detail="Email and password are required.")

    member = verify_member_credentials(email, password)
    if not member:
        raise HTTPException(status_code=401, detail="Invalid member credentials.")

    token, claims = issue_session_token(
        member["email"],
        role="member",
        member_id=member["id"],
        gym_id=member["gym_id"],
    )
    return _token_response(token, claims)


@router.get("/auth/me")
def auth_me(session: dict = Depends(require_session)):
    return {
        "username": session.get("sub"),
        "role": session.get("role"),
        "member_id": session.get("member_id"),
        "gym_id": session.get("gym_id"),
        "expires_at": session.get("exp"),
        "issued_at": session.get("iat"),
    }
