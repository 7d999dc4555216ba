import hmac
import json
import logging
from typing import Any, TypedDict

from backend.config import QR_PAYLOAD_TYPE
from database.db import get_qr_config

logger = logging.getLogger(__name__)

# Largest value an sqlite INTEGER column can hold.
MAX_GYM_ID = 2**63 - 1


class CodeResolution(TypedDict):
    ok: bool
    gym_id: int | None
    reason: str | None
    message: str


def build_qr_payload(config: dict[str, Any]) -> str:
    return json.dumps(
        {
            "type": QR_PAYLOAD_TYPE,
            "gym_id": int(config["gym_id"]),
            "secret": config["secret"],
        },
        separators=(",", ":"),
        sort_keys=True,
    )


def _rejected(reason: str, message: str, gym_id: int | None = None) -> CodeResolution:
    logger.warning("Rejected gym code: %s (gym_id=%s)", reason, gym_id)
    return {"ok": False, "gym_id": gym_id, "reason": reason, "message": message}


def resolve_gym_code(decoded_code: str | None) -> CodeResolution:
    """
    Map a decoded QR payload to the gym it was issued for.

    Fails with a reason when the payload is malformed, the gym has no QR
    configuration, the secret does not match the current one, or QR
    attendance is disabled for that gym.
    """
    raw = (decoded_code or "").strip()
    if not raw:
        return _rejected("empty", "QR data is required.")

    try:
        payload = json.loads(raw)
    except (ValueError, RecursionError):
        return _rejected("format", "Invalid QR code format.")

    if not isinstance(payload, dict) or payload.get("type") != QR_PAYLOAD_TYPE:
        return _rejected("type", "Invalid QR code.")

    gym_id = payload.get("gym_id")
    secret = payload.get("secret")
    if isinstance(gym_id, bool) or not isinstance(gym_id, int) or not 0 < gym_id <= MAX_GYM_ID:
        return _rejected("gym", "Invalid QR code.")
    if not isinstance(secret, str) or not secret:
        return _rejected("secret", "Invalid QR code.", gym_id)

    config = get_qr_config(gym_id)
    if not config:
        return _rejected("not_configured", "QR attendance is not configured for this gym.", gym_id)

    if not hmac.compare_digest(secret.encode("utf-8"), str(config["secret"]).encode("utf-8")):
        return _rejected("stale_secret", "Invalid QR code. The code may have been updated.", gym_id)

    if not config["is_enabled"]:
        return _rejected("disabled", "QR attendance is currently disabled for this gym.", gym_id)

    return {"ok": True, "gym_id": gym_id, "reason": None, "message": "QR code accepted."}
