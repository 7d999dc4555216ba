import pytest

import backend.config as config
import database.db as db
from backend.services.gym_codes import build_qr_payload


@pytest.fixture()
def store(tmp_path, monkeypatch):
    test_db = tmp_path / "gympass_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    return test_db


@pytest.fixture()
def gym(store):
    gym_id = db.add_gym("Iron Temple")
    qr_config = db.get_or_create_qr_config(gym_id)
    return {"id": gym_id, "qr_data": build_qr_payload(qr_config)}


@pytest.fixture()
def member(gym):
    member_id = db.add_member(gym["id"], "Asha Rao", "asha@example.com", password="lift-heavy")
    return db.get_member_by_id(member_id)


def _count_open_sessions(member_id: int) -> int:
    conn = db.connect_db()
    cur = conn.cursor()
    cur.execute(
        "SELECT COUNT(*) FROM attendance WHERE member_id = ? AND status = 'in_gym'",
        (member_id,),
    )
    (count,) = cur.fetchone()
    conn.close()
    return int(count)


@pytest.fixture()
def open_sessions(store):
    return _count_open_sessions
