import logging
import threading
from datetime import datetime, timedelta

from backend.config import MAX_DWELL_MINUTES, SWEEP_INTERVAL_SECONDS
from backend.services.clock import as_utc, utc_now
from database.db import (
    AttendanceRecord,
    close_attendance,
    get_open_attendance,
    get_open_attendance_before,
)

logger = logging.getLogger(__name__)

# -----------------------------
# Sweep status (in-memory)
# -----------------------------
STATUS_LOCK = threading.Lock()

SWEEP_STATUS = {
    "state": "idle",          # idle | running | stopped
    "last_run_at": None,      # ISO string
    "last_closed": 0,
    "total_closed": 0,
    "message": "",
}


def max_dwell() -> timedelta:
    return timedelta(minutes=MAX_DWELL_MINUTES)


def close_if_expired(
    record: AttendanceRecord,
    now: datetime,
    dwell: timedelta | None = None,
) -> AttendanceRecord:
    """
    Pure auto-checkout rule.

    An open record whose age has reached the dwell limit comes back closed at
    check_in_time + dwell with exit_type "auto". Anything else is returned
    unchanged, so applying it twice equals applying it once.
    """
    limit = dwell or max_dwell()
    if record["status"] != "in_gym":
        return record
    check_in = as_utc(record["check_in_time"])
    if as_utc(now) - check_in < limit:
        return record

    closed = dict(record)
    closed["check_out_time"] = check_in + limit
    closed["status"] = "checked_out"
    closed["exit_type"] = "auto"
    return closed  # type: ignore[return-value]


def _persist_auto_close(record: AttendanceRecord, closed: AttendanceRecord) -> bool:
    changed = close_attendance(
        record["id"],
        check_out_time=closed["check_out_time"],
        exit_type="auto",
    )
    if changed:
        logger.info(
            "Auto-closed attendance %s for member %s at %s",
            record["id"],
            record["member_id"],
            closed["check_out_time"].isoformat(),
        )
    return changed


def settle_open_session(member_id: int, *, now: datetime | None = None) -> AttendanceRecord | None:
    """
    Read-path correction for one member: closes the open record if it has
    outlived the dwell limit and returns whatever is still open.
    """
    marker = now or utc_now()
    record = get_open_attendance(member_id)
    if record is None:
        return None

    closed = close_if_expired(record, marker)
    if closed is record:
        return record

    _persist_auto_close(record, closed)
    # Whoever won the conditional update, this record is no longer open.
    return get_open_attendance(member_id)


def sweep_expired_sessions(*, now: datetime | None = None) -> int:
    marker = now or utc_now()
    candidates = get_open_attendance_before(marker - max_dwell())

    changed = 0
    for record in candidates:
        closed = close_if_expired(record, marker)
        if closed is record:
            continue
        if _persist_auto_close(record, closed):
            changed += 1

    with STATUS_LOCK:
        SWEEP_STATUS["last_run_at"] = as_utc(marker).isoformat(timespec="seconds")
        SWEEP_STATUS["last_closed"] = changed
        SWEEP_STATUS["total_closed"] = int(SWEEP_STATUS["total_closed"]) + changed
        SWEEP_STATUS["message"] = f"Closed {changed} expired session(s)."
    return changed


def get_sweep_status() -> dict:
    with STATUS_LOCK:
        return dict(SWEEP_STATUS)


class AutoCheckoutWorker:
    """Runs sweep_expired_sessions every `interval_seconds` on a daemon thread."""

    def __init__(self, interval_seconds: int | None = None):
        self.interval_seconds = SWEEP_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        if self.interval_seconds <= 0:
            logger.info("Auto-checkout worker disabled (interval=%s)", self.interval_seconds)
            return False
        with self._lock:
            if self.running:
                return False
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run,
                name="auto-checkout-sweeper",
                daemon=True,
            )
            self._thread.start()
        with STATUS_LOCK:
            SWEEP_STATUS["state"] = "running"
            SWEEP_STATUS["message"] = "Sweeper started."
        return True

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._stop_event.set()
            self._thread = None
        if thread is not None:
            thread.join(timeout=timeout)
        with STATUS_LOCK:
            SWEEP_STATUS["state"] = "stopped"

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                sweep_expired_sessions()
            except Exception:
                logger.exception("Auto-checkout sweep failed; retrying next interval")
