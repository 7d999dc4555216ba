import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Literal, TypedDict

from backend.config import CHECK_IN_CONFLICT_RETRIES, HISTORY_MAX_DAYS
from backend.services.auto_checkout import settle_open_session, sweep_expired_sessions
from backend.services.clock import as_utc, local_day_bounds, utc_now
from backend.services.gym_codes import resolve_gym_code
from database.db import (
    AttendanceRecord,
    CheckInSource,
    OpenSessionConflict,
    close_attendance,
    get_attendance_by_id,
    get_gym_attendance_between,
    get_member_attendance_between,
    get_member_by_id,
    get_open_attendance,
    insert_open_attendance,
)

logger = logging.getLogger(__name__)

DecisionCode = Literal[
    "CHECKED_IN",
    "ALREADY_IN_GYM",
    "INVALID_CODE",
    "NOT_ELIGIBLE",
    "CHECKED_OUT",
    "NOT_IN_GYM",
]
StatsPeriod = Literal["today", "week", "month"]

DEFAULT_MESSAGES: dict[str, str] = {
    "CHECKED_IN": "You're checked in! Have a great workout!",
    "ALREADY_IN_GYM": "You are already checked in. Use the Check Out button to leave.",
    "INVALID_CODE": "Invalid QR code.",
    "NOT_ELIGIBLE": "You are not eligible to check in at this gym.",
    "CHECKED_OUT": "You're checked out. See you again!",
    "NOT_IN_GYM": "You are not currently checked in.",
}


class AttendanceDecision(TypedDict):
    decision_code: DecisionCode
    ok: bool
    message: str
    record: AttendanceRecord | None


def _decision(
    code: DecisionCode,
    record: AttendanceRecord | None = None,
    message: str | None = None,
) -> AttendanceDecision:
    return {
        "decision_code": code,
        "ok": code in {"CHECKED_IN", "CHECKED_OUT"},
        "message": message or DEFAULT_MESSAGES[code],
        "record": record,
    }


def _require_id(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{name} must be a positive integer.")
    return value


def _eligibility_problem(member: dict[str, Any] | None, gym_id: int, *, require_active: bool) -> str | None:
    if member is None:
        return "Member not found."
    if int(member["gym_id"]) != int(gym_id):
        return "You are not a member of this gym."
    if require_active and member["status"] != "active":
        return "Your membership is not active."
    return None


def _open_session(
    member_id: int,
    gym_id: int,
    *,
    source: CheckInSource,
    now: datetime,
) -> AttendanceDecision:
    """
    Check-and-create via the store's open-session constraint. A conflict
    whose record is gone by the time we re-read it (closed concurrently) is
    retried rather than reported.
    """
    for _ in range(CHECK_IN_CONFLICT_RETRIES):
        settle_open_session(member_id, now=now)
        try:
            record = insert_open_attendance(
                member_id=member_id,
                gym_id=gym_id,
                check_in_time=now,
                source=source,
            )
        except OpenSessionConflict:
            existing = get_open_attendance(member_id)
            if existing is not None:
                logger.info("Member %s already in gym (record %s)", member_id, existing["id"])
                return _decision("ALREADY_IN_GYM", existing)
            continue

        logger.info(
            "Member %s checked in at gym %s via %s (record %s)",
            member_id,
            gym_id,
            source,
            record["id"],
        )
        return _decision("CHECKED_IN", record)

    raise sqlite3.OperationalError(
        f"Check-in for member {member_id} kept conflicting with a session that closed concurrently."
    )


def submit_check_in(member_id: int, decoded_code: str, *, now: datetime | None = None) -> AttendanceDecision:
    member_id = _require_id(member_id, "member_id")
    marker = as_utc(now) if now else utc_now()

    resolution = resolve_gym_code(decoded_code)
    if not resolution["ok"]:
        return _decision("INVALID_CODE", message=resolution["message"])
    gym_id = int(resolution["gym_id"])

    problem = _eligibility_problem(get_member_by_id(member_id), gym_id, require_active=True)
    if problem:
        return _decision("NOT_ELIGIBLE", message=problem)

    return _open_session(member_id, gym_id, source="qr_scan", now=marker)


def check_in_manual(member_id: int, gym_id: int, *, now: datetime | None = None) -> AttendanceDecision:
    """Staff-initiated check-in; skips QR resolution and the active-status check."""
    member_id = _require_id(member_id, "member_id")
    gym_id = _require_id(gym_id, "gym_id")
    marker = as_utc(now) if now else utc_now()

    problem = _eligibility_problem(get_member_by_id(member_id), gym_id, require_active=False)
    if problem:
        return _decision("NOT_ELIGIBLE", message=problem)

    return _open_session(member_id, gym_id, source="manual_entry", now=marker)


def submit_check_out(member_id: int, *, now: datetime | None = None) -> AttendanceDecision:
    member_id = _require_id(member_id, "member_id")
    marker = as_utc(now) if now else utc_now()

    # An expired session gets auto-closed here and no longer counts as open.
    record = settle_open_session(member_id, now=marker)
    if record is None:
        return _decision("NOT_IN_GYM")

    check_out_time = max(marker, as_utc(record["check_in_time"]) + timedelta(microseconds=1))
    if not close_attendance(record["id"], check_out_time=check_out_time, exit_type="manual"):
        return _decision("NOT_IN_GYM")

    closed = get_attendance_by_id(record["id"])
    logger.info("Member %s checked out (record %s)", member_id, record["id"])
    return _decision("CHECKED_OUT", closed)


def get_history(member_id: int, range_days: int, *, now: datetime | None = None) -> list[AttendanceRecord]:
    member_id = _require_id(member_id, "member_id")
    if isinstance(range_days, bool) or not isinstance(range_days, int) or not 1 <= range_days <= HISTORY_MAX_DAYS:
        raise ValueError(f"range_days must be between 1 and {HISTORY_MAX_DAYS}.")
    marker = as_utc(now) if now else utc_now()

    settle_open_session(member_id, now=marker)
    return get_member_attendance_between(member_id, start=marker - timedelta(days=range_days))


def list_gym_today(gym_id: int, *, now: datetime | None = None) -> list[dict[str, Any]]:
    gym_id = _require_id(gym_id, "gym_id")
    marker = as_utc(now) if now else utc_now()

    sweep_expired_sessions(now=marker)
    day_start, day_end = local_day_bounds(marker)
    return get_gym_attendance_between(gym_id, start=day_start, end=day_end)


def gym_attendance_stats(gym_id: int, period: StatsPeriod, *, now: datetime | None = None) -> dict[str, Any]:
    gym_id = _require_id(gym_id, "gym_id")
    marker = as_utc(now) if now else utc_now()

    if period == "today":
        start, _ = local_day_bounds(marker)
    elif period == "week":
        start = marker - timedelta(days=7)
    elif period == "month":
        start = marker - timedelta(days=30)
    else:
        raise ValueError("period must be one of: today, week, month.")

    sweep_expired_sessions(now=marker)
    rows = get_gym_attendance_between(gym_id, start=start)
    return {
        "period": period,
        "total_check_ins": len(rows),
        "unique_members": len({r["member_id"] for r in rows}),
        "currently_in_gym": sum(1 for r in rows if r["status"] == "in_gym"),
    }
