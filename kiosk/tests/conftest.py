import pytest

import kiosk.config as config
from kiosk_db import db


@pytest.fixture()
def store(tmp_path, monkeypatch):
    test_db = tmp_path / "kiosk_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    return test_db
