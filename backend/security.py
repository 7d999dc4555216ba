import base64
import hashlib
import hmac
import json
import time
from typing import Any, Literal

from fastapi import Depends, Header, HTTPException

from backend.config import AUTH_TOKEN_TTL_SECONDS, SIGNING_KEY

Role = Literal["member", "admin", "trainer"]
STAFF_ROLES: set[str] = {"admin", "trainer"}


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _sign(payload_b64: str) -> str:
    digest = hmac.new(
        SIGNING_KEY.encode("utf-8"),
        payload_b64.encode("ascii"),
        hashlib.sha256,
    ).digest()
    return _b64url_encode(digest)


def issue_session_token(
    subject: str,
    *,
    role: Role,
    member_id: int | None = None,
    gym_id: int | None = None,
) -> tuple[str, dict[str, Any]]:
    now = int(time.time())
    payload: dict[str, Any] = {
        "sub": subject.strip(),
        "role": role,
        "iat": now,
        "exp": now + AUTH_TOKEN_TTL_SECONDS,
    }
    if member_id is not None:
        payload["member_id"] = int(member_id)
    if gym_id is not None:
        payload["gym_id"] = int(gym_id)

    payload_json = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    payload_b64 = _b64url_encode(payload_json.encode("utf-8"))
    token = f"{payload_b64}.{_sign(payload_b64)}"
    return token, payload


def decode_session_token(token: str) -> dict[str, Any] | None:
    if not token or "." not in token:
        return None

    payload_b64, signature = token.split(".", 1)
    expected = _sign(payload_b64)
    if not hmac.compare_digest(signature, expected):
        return None

    try:
        payload_raw = _b64url_decode(payload_b64).decode("utf-8")
        payload = json.loads(payload_raw)
    except (ValueError, UnicodeDecodeError):
        return None

    if not isinstance(payload, dict):
        return None

    sub = payload.get("sub")
    exp = payload.get("exp")
    role = payload.get("role")
    if not isinstance(sub, str) or not sub.strip():
        return None
    if not isinstance(exp, int):
        return None
    if role not in {"member", *STAFF_ROLES}:
        return None
    if role == "member" and not isinstance(payload.get("member_id"), int):
        return None
    if exp < int(time.time()):
        return None

    return payload


def require_session(authorization: str | None = Header(default=None)) -> dict[str, Any]:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing bearer token.")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization scheme.")

    payload = decode_session_token(token.strip())
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired session token.")

    return payload


def require_member(session: dict = Depends(require_session)) -> dict[str, Any]:
    if session.get("role") != "member":
        raise HTTPException(status_code=403, detail="Member session required.")
    return session


def require_staff(session: dict = Depends(require_session)) -> dict[str, Any]:
    if session.get("role") not in STAFF_ROLES:
        raise HTTPException(status_code=403, detail="Staff session required.")
    return session


def require_admin(session: dict = Depends(require_session)) -> dict[str, Any]:
    if session.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin session required.")
    return session


def ensure_gym_access(session: dict[str, Any], gym_id: int) -> None:
    """Staff tokens without a gym_id claim may manage every gym."""
    scoped_gym = session.get("gym_id")
    if scoped_gym is not None and int(scoped_gym) != int(gym_id):
        raise HTTPException(status_code=403, detail="No access to this gym.")
