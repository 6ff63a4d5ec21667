"""
Pytest configuration and shared fixtures.

Settings are reloaded with test env vars before any app import.
"""

import os
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import create_engine, text

os.environ.setdefault("LOG_LEVEL", "DEBUG")

from mdmbridge.config import get_settings  # noqa: E402
from mdmbridge.models import Device, PushRegistration, User  # noqa: E402
from mdmbridge.storage import SourceBase, make_session_factory, sqlite_url  # noqa: E402

get_settings.cache_clear()


class StubRemote:
    """Records every request and answers with a fixed status and body."""

    def __init__(self, status_code: int = 200, body: bytes = b""):
        self.status_code = status_code
        self.body = body
        self.requests = []
        self.transport = httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, content=self.body)

    @property
    def bodies(self) -> list:
        return [r.content for r in self.requests]


@pytest.fixture
def remote():
    """Remote endpoint answering 200 to everything."""
    return StubRemote()


def days_ago(days: int) -> datetime:
    return (datetime.now(timezone.utc) - timedelta(days=days)).replace(tzinfo=None)


@pytest.fixture
def make_source_db(tmp_path):
    """
    Factory writing a source store file.

    Usage: make_source_db(devices=[{...}], users=[{...}], push=[{...}])
    Dicts hold ORM column values.
    """
    def _make(devices=(), users=(), push=(), name="source.db"):
        path = tmp_path / name
        engine = create_engine(sqlite_url(str(path)))
        SourceBase.metadata.create_all(bind=engine)
        with make_session_factory(engine)() as db:
            db.add_all([Device(**d) for d in devices])
            db.add_all([User(**u) for u in users])
            db.add_all([PushRegistration(**p) for p in push])
            db.commit()
        engine.dispose()
        return str(path)

    return _make


@pytest.fixture
def d1_source_db(make_source_db):
    """One device D1 with a push registration, last seen today."""
    return make_source_db(
        devices=[{"udid": "D1", "serial_number": "SN1", "last_seen": days_ago(0)}],
        push=[{
            "id": "D1",
            "mdm_topic": "com.example.push",
            "token": "aabbcc",
            "push_magic": "magic1",
        }],
    )


def insert_raw(path: str, table: str, **values):
    """Write a row as-is, bypassing ORM type processing."""
    engine = create_engine(sqlite_url(path))
    columns = ", ".join(values)
    params = ", ".join(f":{name}" for name in values)
    with engine.begin() as conn:
        conn.execute(text(f"INSERT INTO {table} ({columns}) VALUES ({params})"), values)
    engine.dispose()
