import hashlib
import hmac
import secrets
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Literal, TypedDict

from backend.config import (
    ADMIN_PASSWORD,
    ADMIN_USERNAME,
    DB_PATH,
    DB_TIMEOUT_SECONDS,
)


PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"
OPEN_SESSION_INDEX = "attendance_one_open_session"

AttendanceStatus = Literal["in_gym", "checked_out"]
ExitType = Literal["manual", "auto"]
CheckInSource = Literal["qr_scan", "manual_entry"]
MemberStatus = Literal["active", "inactive"]
StaffRole = Literal["admin", "trainer"]


class AttendanceRecord(TypedDict):
    id: str
    member_id: int
    gym_id: int
    check_in_time: datetime
    check_out_time: datetime | None
    status: AttendanceStatus
    exit_type: ExitType | None
    source: CheckInSource
    created_at: datetime


class OpenSessionConflict(Exception):
    """The member already has an attendance record with status ``in_gym``."""

    def __init__(self, member_id: int):
        super().__init__(f"Member {member_id} already has an open attendance session.")
        self.member_id = member_id


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str | None) -> bool:
    if not password_hash:
        return False
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def to_db_timestamp(value: datetime) -> str:
    """Naive datetimes are taken to be UTC already."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime(TIMESTAMP_FORMAT)


def from_db_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(str(value), TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), timeout=DB_TIMEOUT_SECONDS, check_same_thread=False)
    # recommended with FK tables
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _ensure_default_admin(cursor: sqlite3.Cursor) -> None:
    username = (ADMIN_USERNAME or "").strip()
    password = (ADMIN_PASSWORD or "").strip()
    if not username or not password:
        return

    cursor.execute(
        """
        SELECT id
        FROM staff_users
        WHERE username = ? COLLATE NOCASE
        """,
        (username,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO staff_users (username, password_hash, role, gym_id)
        VALUES (?, ?, 'admin', NULL)
        """,
        (username, _hash_password(password)),
    )


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS gyms (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS members (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        gym_id INTEGER NOT NULL,
        full_name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE COLLATE NOCASE,
        status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'inactive')),
        password_hash TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (gym_id) REFERENCES gyms(id) ON DELETE CASCADE
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS staff_users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'admin' CHECK (role IN ('admin', 'trainer')),
        gym_id INTEGER,                  -- NULL = every gym
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (gym_id) REFERENCES gyms(id) ON DELETE CASCADE
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS gym_qr_config (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        gym_id INTEGER NOT NULL UNIQUE,
        secret TEXT NOT NULL,
        is_enabled INTEGER NOT NULL DEFAULT 1,
        last_rotated_at TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (gym_id) REFERENCES gyms(id) ON DELETE CASCADE
    )
    """)

    # Timestamps are UTC text in TIMESTAMP_FORMAT so they sort as strings.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance (
        id TEXT PRIMARY KEY,
        member_id INTEGER NOT NULL,
        gym_id INTEGER NOT NULL,
        check_in_time TEXT NOT NULL,
        check_out_time TEXT,
        status TEXT NOT NULL DEFAULT 'in_gym' CHECK (status IN ('in_gym', 'checked_out')),
        exit_type TEXT CHECK (exit_type IS NULL OR exit_type IN ('manual', 'auto')),
        source TEXT NOT NULL CHECK (source IN ('qr_scan', 'manual_entry')),
        created_at TEXT NOT NULL,
        CHECK (
            (status = 'in_gym' AND check_out_time IS NULL AND exit_type IS NULL)
            OR (status = 'checked_out' AND check_out_time IS NOT NULL AND exit_type IS NOT NULL)
        ),
        CHECK (check_out_time IS NULL OR check_out_time > check_in_time),
        FOREIGN KEY (member_id) REFERENCES members(id) ON DELETE CASCADE,
        FOREIGN KEY (gym_id) REFERENCES gyms(id) ON DELETE CASCADE
    )
    """)

    # Single active session per member, across every gym.
    cursor.execute(f"""
    CREATE UNIQUE INDEX IF NOT EXISTS {OPEN_SESSION_INDEX}
    ON attendance (member_id)
    WHERE status = 'in_gym'
    """)
    cursor.execute("""
    CREATE INDEX IF NOT EXISTS attendance_member_check_in
    ON attendance (member_id, check_in_time)
    """)
    cursor.execute("""
    CREATE INDEX IF NOT EXISTS attendance_gym_check_in
    ON attendance (gym_id, check_in_time)
    """)

    _ensure_default_admin(cursor)

    conn.commit()
    conn.close()


# -----------------------------
# Gyms
# -----------------------------
def add_gym(name: str) -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        INSERT INTO gyms (name)
        VALUES (?)
    """, (name,))
    gym_id = int(cur.lastrowid)
    conn.commit()
    conn.close()
    return gym_id


def get_all_gyms():
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, name, created_at
        FROM gyms
        ORDER BY name
    """)
    rows = cur.fetchall()
    conn.close()
    return rows


def get_gym_by_id(gym_id: int):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, name, created_at
        FROM gyms
        WHERE id = ?
    """, (gym_id,))
    row = cur.fetchone()
    conn.close()
    return row


# -----------------------------
# Members
# -----------------------------
def _member_from_row(row) -> dict[str, Any]:
    return {
        "id": int(row[0]),
        "gym_id": int(row[1]),
        "full_name": row[2],
        "email": row[3],
        "status": row[4],
        "created_at": row[5],
    }


def add_member(
    gym_id: int,
    full_name: str,
    email: str,
    *,
    password: str | None = None,
    status: MemberStatus = "active",
) -> int:
    password_hash = _hash_password(password) if password else None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        INSERT INTO members (gym_id, full_name, email, status, password_hash)
        VALUES (?, ?, ?, ?, ?)
    """, (gym_id, full_name, email, status, password_hash))
    member_id = int(cur.lastrowid)
    conn.commit()
    conn.close()
    return member_id


def get_member_by_id(member_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, gym_id, full_name, email, status, created_at
        FROM members
        WHERE id = ?
    """, (member_id,))
    row = cur.fetchone()
    conn.close()
    return _member_from_row(row) if row else None


def get_members_for_gym(gym_id: int) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, gym_id, full_name, email, status, created_at
        FROM members
        WHERE gym_id = ?
        ORDER BY full_name
    """, (gym_id,))
    rows = cur.fetchall()
    conn.close()
    return [_member_from_row(r) for r in rows]


def set_member_status(member_id: int, status: MemberStatus) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        UPDATE members
        SET status = ?
        WHERE id = ?
    """, (status, member_id))
    changed = cur.rowcount == 1
    conn.commit()
    conn.close()
    return changed


def verify_member_credentials(email: str, password: str) -> dict[str, Any] | None:
    clean_email = email.strip()
    clean_password = password.strip()
    if not clean_email or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, gym_id, full_name, email, status, created_at, password_hash
        FROM members
        WHERE email = ? COLLATE NOCASE
        """,
        (clean_email,),
    )
    row = cur.fetchone()
    conn.close()

    if not row or not _verify_password(clean_password, row[6]):
        return None
    return _member_from_row(row)


# -----------------------------
# Staff users
# -----------------------------
def create_staff_user(
    username: str,
    password: str,
    *,
    role: StaffRole = "admin",
    gym_id: int | None = None,
) -> int:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        raise ValueError("Username and password are required.")

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO staff_users (username, password_hash, role, gym_id)
        VALUES (?, ?, ?, ?)
        """,
        (clean_username, _hash_password(clean_password), role, gym_id),
    )
    staff_id = int(cur.lastrowid)
    conn.commit()
    conn.close()
    return staff_id


def verify_staff_credentials(username: str, password: str) -> dict | None:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, username, password_hash, role, gym_id
        FROM staff_users
        WHERE username = ? COLLATE NOCASE
        """,
        (clean_username,),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None

    staff_id, saved_username, password_hash, role, gym_id = row
    if not _verify_password(clean_password, password_hash):
        return None

    return {"id": staff_id, "username": saved_username, "role": role, "gym_id": gym_id}


# -----------------------------
# Gym QR config
# -----------------------------
def _qr_config_from_row(row) -> dict[str, Any]:
    return {
        "gym_id": int(row[0]),
        "secret": row[1],
        "is_enabled": bool(row[2]),
        "last_rotated_at": from_db_timestamp(row[3]),
    }


def generate_qr_secret() -> str:
    return secrets.token_urlsafe(24)


def get_qr_config(gym_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT gym_id, secret, is_enabled, last_rotated_at
        FROM gym_qr_config
        WHERE gym_id = ?
    """, (gym_id,))
    row = cur.fetchone()
    conn.close()
    return _qr_config_from_row(row) if row else None


def get_or_create_qr_config(gym_id: int) -> dict[str, Any]:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute("""
            INSERT OR IGNORE INTO gym_qr_config (gym_id, secret, is_enabled, last_rotated_at)
            VALUES (?, ?, 1, ?)
        """, (gym_id, generate_qr_secret(), to_db_timestamp(datetime.now(timezone.utc))))
        conn.commit()
        cur.execute("""
            SELECT gym_id, secret, is_enabled, last_rotated_at
            FROM gym_qr_config
            WHERE gym_id = ?
        """, (gym_id,))
        return _qr_config_from_row(cur.fetchone())
    finally:
        conn.close()


def rotate_qr_secret(gym_id: int) -> dict[str, Any]:
    """New secret; rotating also re-enables QR attendance."""
    get_or_create_qr_config(gym_id)
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute("""
            UPDATE gym_qr_config
            SET secret = ?, is_enabled = 1, last_rotated_at = ?
            WHERE gym_id = ?
        """, (generate_qr_secret(), to_db_timestamp(datetime.now(timezone.utc)), gym_id))
        conn.commit()
    finally:
        conn.close()
    return get_qr_config(gym_id)


def set_qr_enabled(gym_id: int, enabled: bool) -> dict[str, Any]:
    get_or_create_qr_config(gym_id)
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute("""
            UPDATE gym_qr_config
            SET is_enabled = ?
            WHERE gym_id = ?
        """, (1 if enabled else 0, gym_id))
        conn.commit()
    finally:
        conn.close()
    return get_qr_config(gym_id)


# -----------------------------
# Attendance
# -----------------------------
ATTENDANCE_COLUMNS = """
    id, member_id, gym_id, check_in_time, check_out_time,
    status, exit_type, source, created_at
"""


def _record_from_row(row) -> AttendanceRecord:
    return {
        "id": str(row[0]),
        "member_id": int(row[1]),
        "gym_id": int(row[2]),
        "check_in_time": from_db_timestamp(row[3]),
        "check_out_time": from_db_timestamp(row[4]),
        "status": row[5],
        "exit_type": row[6],
        "source": row[7],
        "created_at": from_db_timestamp(row[8]),
    }


def _is_open_session_violation(exc: sqlite3.IntegrityError) -> bool:
    # sqlite names the indexed column(s), not the partial index itself.
    message = str(exc)
    return "UNIQUE constraint failed" in message and "attendance.member_id" in message


def insert_open_attendance(
    *,
    member_id: int,
    gym_id: int,
    check_in_time: datetime,
    source: CheckInSource,
) -> AttendanceRecord:
    """
    Insert a new ``in_gym`` record.

    The partial unique index makes this the atomic check-and-create: a second
    open record for the same member raises OpenSessionConflict instead.
    """
    record_id = str(uuid.uuid4())
    created_at = to_db_timestamp(datetime.now(timezone.utc))

    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO attendance (
                id, member_id, gym_id, check_in_time, check_out_time,
                status, exit_type, source, created_at
            )
            VALUES (?, ?, ?, ?, NULL, 'in_gym', NULL, ?, ?)
            """,
            (record_id, member_id, gym_id, to_db_timestamp(check_in_time), source, created_at),
        )
        conn.commit()
    except sqlite3.IntegrityError as exc:
        conn.rollback()
        if _is_open_session_violation(exc):
            raise OpenSessionConflict(member_id) from exc
        raise
    finally:
        conn.close()

    record = get_attendance_by_id(record_id)
    if record is None:
        raise sqlite3.DatabaseError(f"Attendance record {record_id} vanished after insert.")
    return record


def get_attendance_by_id(record_id: str) -> AttendanceRecord | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {ATTENDANCE_COLUMNS}
        FROM attendance
        WHERE id = ?
        """,
        (record_id,),
    )
    row = cur.fetchone()
    conn.close()
    return _record_from_row(row) if row else None


def get_open_attendance(member_id: int) -> AttendanceRecord | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {ATTENDANCE_COLUMNS}
        FROM attendance
        WHERE member_id = ? AND status = 'in_gym'
        LIMIT 1
        """,
        (member_id,),
    )
    row = cur.fetchone()
    conn.close()
    return _record_from_row(row) if row else None


def close_attendance(record_id: str, *, check_out_time: datetime, exit_type: ExitType) -> bool:
    """
    Conditional close. Returns False when the record was no longer open, so
    concurrent manual/auto closures resolve to a single winner.
    """
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            UPDATE attendance
            SET check_out_time = ?,
                status = 'checked_out',
                exit_type = ?
            WHERE id = ? AND status = 'in_gym'
            """,
            (to_db_timestamp(check_out_time), exit_type, record_id),
        )
        changed = cur.rowcount == 1
        conn.commit()
        return changed
    finally:
        conn.close()


def get_member_attendance_between(
    member_id: int,
    *,
    start: datetime,
    end: datetime | None = None,
) -> list[AttendanceRecord]:
    """Records with start <= check_in_time < end, most recent first."""
    where = ["member_id = ?", "check_in_time >= ?"]
    params: list[Any] = [member_id, to_db_timestamp(start)]
    if end is not None:
        where.append("check_in_time < ?")
        params.append(to_db_timestamp(end))

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {ATTENDANCE_COLUMNS}
        FROM attendance
        WHERE {" AND ".join(where)}
        ORDER BY check_in_time DESC, created_at DESC
        """,
        params,
    )
    rows = cur.fetchall()
    conn.close()
    return [_record_from_row(r) for r in rows]


def get_gym_attendance_between(
    gym_id: int,
    *,
    start: datetime,
    end: datetime | None = None,
) -> list[dict[str, Any]]:
    where = ["a.gym_id = ?", "a.check_in_time >= ?"]
    params: list[Any] = [gym_id, to_db_timestamp(start)]
    if end is not None:
        where.append("a.check_in_time < ?")
        params.append(to_db_timestamp(end))

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT
            a.id, a.member_id, a.gym_id, a.check_in_time, a.check_out_time,
            a.status, a.exit_type, a.source, a.created_at,
            m.full_name
        FROM attendance a
        LEFT JOIN members m ON m.id = a.member_id
        WHERE {" AND ".join(where)}
        ORDER BY a.check_in_time DESC
        """,
        params,
    )
    rows = cur.fetchall()
    conn.close()

    out: list[dict[str, Any]] = []
    for row in rows:
        entry: dict[str, Any] = dict(_record_from_row(row[:9]))
        entry["member_name"] = row[9] or "Unknown Member"
        out.append(entry)
    return out


def get_open_attendance_before(cutoff: datetime) -> list[AttendanceRecord]:
    """Open records whose check_in_time <= cutoff (sweep candidates)."""
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {ATTENDANCE_COLUMNS}
        FROM attendance
        WHERE status = 'in_gym' AND check_in_time <= ?
        ORDER BY check_in_time ASC
        """,
        (to_db_timestamp(cutoff),),
    )
    rows = cur.fetchall()
    conn.close()
    return [_record_from_row(r) for r in rows]


def clear_attendance() -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM attendance")
    deleted = cur.rowcount
    conn.commit()
    conn.close()
    return deleted


def clear_all_tables():
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM attendance")
    cur.execute("DELETE FROM gym_qr_config")
    cur.execute("DELETE FROM members")
    cur.execute("DELETE FROM staff_users WHERE gym_id IS NOT NULL")
    cur.execute("DELETE FROM gyms")
    conn.commit()
    conn.close()
