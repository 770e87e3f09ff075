from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import generate_api_key, hash_api_key
from config import AppConfig
from database import Database
from main import app


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_api_key(database: Database, user_id: str, name: str = "dial") -> str:
    raw = generate_api_key()
    database.create_document(
        "apikey", {"user_id": user_id, "key_name": name, "key_hash": hash_api_key(raw), "last_used_at": None}
    )
    return raw


@pytest.fixture
def database():
    db = Database(mongomock.MongoClient(), "focusdial_test")
    db.ensure_indexes()
    return db


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 6, 10, 14, 0, tzinfo=timezone.utc))


@pytest.fixture
def app_config():
    return AppConfig(admin_token="admin-secret")


@pytest.fixture
def client(database, clock, app_config):
    app.state.config = app_config
    app.state.database = database
    app.state.clock = clock
    with TestClient(app) as test_client:
        yield test_client
    for name in ("config", "database", "clock"):
        delattr(app.state, name)


@pytest.fixture
def api_key(database):
    return make_api_key(database, "user-1")


@pytest.fixture
def auth_headers(api_key):
    return {"Authorization": f"Bearer {api_key}"}


@pytest.fixture
def key_factory(database):
    def factory(user_id: str, name: str = "dial") -> str:
        return make_api_key(database, user_id, name)
    return factory
