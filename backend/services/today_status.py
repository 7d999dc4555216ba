from datetime import datetime
from typing import Iterable, Literal, TypedDict

from backend.config import MAX_DWELL_MINUTES
from backend.services.auto_checkout import settle_open_session
from backend.services.clock import local_day_bounds, utc_now
from database.db import AttendanceRecord, get_member_attendance_between

TodayState = Literal["not_checked_in_today", "in_gym", "checked_out"]


class TodayStatus(TypedDict):
    status: TodayState
    record: AttendanceRecord | None
    auto_closed: bool
    message: str


def _dwell_label() -> str:
    if MAX_DWELL_MINUTES % 60 == 0:
        hours = MAX_DWELL_MINUTES // 60
        return f"{hours} hour{'s' if hours != 1 else ''}"
    return f"{MAX_DWELL_MINUTES} minutes"


def project_today_status(
    open_record: AttendanceRecord | None,
    todays_records: Iterable[AttendanceRecord],
) -> TodayStatus:
    """
    Precedence: an open record always wins; otherwise the most recent
    (by check_in_time) closed record from today; otherwise nothing today.
    """
    if open_record is not None and open_record["status"] == "in_gym":
        return {
            "status": "in_gym",
            "record": open_record,
            "auto_closed": False,
            "message": "You're currently in the gym",
        }

    closed = [r for r in todays_records if r["status"] == "checked_out"]
    if closed:
        latest = max(closed, key=lambda r: r["check_in_time"])
        auto_closed = latest["exit_type"] == "auto"
        return {
            "status": "checked_out",
            "record": latest,
            "auto_closed": auto_closed,
            "message": (
                f"Your session was auto-closed after {_dwell_label()}"
                if auto_closed
                else "You've checked out for the day"
            ),
        }

    return {
        "status": "not_checked_in_today",
        "record": None,
        "auto_closed": False,
        "message": "You have not checked in today",
    }


def get_today_status(member_id: int, *, now: datetime | None = None) -> TodayStatus:
    marker = now or utc_now()
    open_record = settle_open_session(member_id, now=marker)
    day_start, day_end = local_day_bounds(marker)
    todays = get_member_attendance_between(member_id, start=day_start, end=day_end)
    return project_today_status(open_record, todays)
