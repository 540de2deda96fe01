"""Shared fixtures: a throwaway SQLite database per test and seeding helpers."""

import pandas as pd
import pytest

from laundry_backend.config import get_settings
from laundry_backend.models import Actor, Role
from laundry_backend.services import data_layer

SUN_ID = "hotel-sun"
MOON_ID = "hotel-moon"


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "laundry.db"
    monkeypatch.setenv("LAUNDRY_DATABASE_PATH", str(path))
    get_settings.cache_clear()
    yield path
    get_settings.cache_clear()


@pytest.fixture
def con(db_path):
    connection = data_layer.get_connection(db_path)
    data_layer.init_db(connection)
    yield connection
    connection.close()


@pytest.fixture
def seed(con):
    """Append plain dict rows to a table: ``seed("email_sends", {...}, {...})``."""

    def _seed(table, *rows):
        return data_layer.append_rows(con, table, pd.DataFrame(list(rows)))

    return _seed


@pytest.fixture
def hotels(seed):
    seed(
        "hotels",
        {"id": SUN_ID, "hotel_name": "Hotel Sun", "type": "PHYSICAL", "user_id": "user-sun"},
        {"id": MOON_ID, "hotel_name": "Hotel Moon", "type": "PHYSICAL", "user_id": "user-moon"},
        {"id": "hotel-legal", "hotel_name": "Legal Corp", "type": "LEGAL", "user_id": None},
    )


@pytest.fixture
def sun_tenant():
    return Actor(user_id="user-sun", role=Role.TENANT, hotel_id=SUN_ID)


@pytest.fixture
def moon_tenant():
    return Actor(user_id="user-moon", role=Role.TENANT, hotel_id=MOON_ID)


@pytest.fixture
def admin():
    return Actor(user_id="admin-1", role=Role.ADMIN)


@pytest.fixture
def manager():
    return Actor(user_id="manager-1", role=Role.MANAGER)


def send_row(send_id, date, amount, weight=0.0, protectors=0.0, hotel="Hotel Sun", sent_at=None, **extra):
    row = {
        "id": send_id,
        "hotel_name": hotel,
        "date": date,
        "total_amount": amount,
        "total_weight": weight,
        "protectors_amount": protectors,
        "sent_at": sent_at or f"{date}T18:00:00",
    }
    row.update(extra)
    return row
