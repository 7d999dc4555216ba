from datetime import datetime, timedelta, timezone

from backend.services.attendance import submit_check_in, submit_check_out
from backend.services.clock import local_day_bounds
from backend.services.today_status import get_today_status, project_today_status

T0 = datetime(2026, 3, 2, 4, 0, tzinfo=timezone.utc)


def _record(check_in_time, *, status="checked_out", exit_type="manual"):
    return {
        "id": f"rec-{check_in_time.isoformat()}",
        "member_id": 1,
        "gym_id": 1,
        "check_in_time": check_in_time,
        "check_out_time": None if status == "in_gym" else check_in_time + timedelta(hours=1),
        "status": status,
        "exit_type": None if status == "in_gym" else exit_type,
        "source": "qr_scan",
        "created_at": check_in_time,
    }


def test_local_day_bounds_follow_gym_offset():
    start, end = local_day_bounds(T0, offset_minutes=330)
    assert start == datetime(2026, 3, 1, 18, 30, tzinfo=timezone.utc)
    assert end == datetime(2026, 3, 2, 18, 30, tzinfo=timezone.utc)

    # 00:30 at the gym already belongs to the next day.
    start, _ = local_day_bounds(datetime(2026, 3, 2, 19, 0, tzinfo=timezone.utc), offset_minutes=330)
    assert start == datetime(2026, 3, 2, 18, 30, tzinfo=timezone.utc)


def test_projection_without_records():
    status = project_today_status(None, [])
    assert status["status"] == "not_checked_in_today"
    assert status["record"] is None
    assert status["message"] == "You have not checked in today"


def test_open_record_wins_over_closed_ones():
    open_record = _record(T0 + timedelta(hours=2), status="in_gym")
    status = project_today_status(open_record, [_record(T0)])

    assert status["status"] == "in_gym"
    assert status["record"] is open_record
    assert status["message"] == "You're currently in the gym"


def test_latest_closed_record_is_reported():
    earlier = _record(T0, exit_type="auto")
    later = _record(T0 + timedelta(hours=4), exit_type="manual")

    status = project_today_status(None, [earlier, later])
    assert status["record"] is later
    assert status["auto_closed"] is False
    assert status["message"] == "You've checked out for the day"


def test_auto_closed_record_is_flagged():
    status = project_today_status(None, [_record(T0, exit_type="auto")])
    assert status["status"] == "checked_out"
    assert status["auto_closed"] is True
    assert status["message"] == "Your session was auto-closed after 3 hours"


def test_today_status_lifecycle(member, gym):
    member_id = member["id"]
    assert get_today_status(member_id, now=T0)["status"] == "not_checked_in_today"

    submit_check_in(member_id, gym["qr_data"], now=T0)
    assert get_today_status(member_id, now=T0 + timedelta(minutes=30))["status"] == "in_gym"

    submit_check_out(member_id, now=T0 + timedelta(hours=1))
    status = get_today_status(member_id, now=T0 + timedelta(hours=2))
    assert status["status"] == "checked_out"
    assert status["auto_closed"] is False


def test_expired_session_reads_as_auto_closed(member, gym):
    submit_check_in(member["id"], gym["qr_data"], now=T0)

    status = get_today_status(member["id"], now=T0 + timedelta(hours=3, minutes=5))
    assert status["status"] == "checked_out"
    assert status["auto_closed"] is True
    assert status["record"]["check_out_time"] == T0 + timedelta(hours=3)


def test_yesterdays_visit_does_not_count(member, gym):
    # 23:30 at the gym on the previous day.
    late_visit = datetime(2026, 3, 1, 18, 0, tzinfo=timezone.utc)
    submit_check_in(member["id"], gym["qr_data"], now=late_visit)
    submit_check_out(member["id"], now=late_visit + timedelta(minutes=20))

    assert get_today_status(member["id"], now=T0)["status"] == "not_checked_in_today"
