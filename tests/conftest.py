"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
import logging
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

from notepages.app import App
from notepages.interactors import UploadInteractor, UserInteractor
from notepages.models import Ident, UploadInfo
from notepages.sqlite_repo import SqliteRepository, connect
from notepages.sqlite_repo import init_db as init_schema
from notepages.webapp import app, init_db

ADMIN_IDENTITY = "admin@example.org"


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    db_file = tmp_path_factory.mktemp("data") / "test.sqlite3"
    return db_file


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        SESSION_COOKIE_SECURE=False,
        ADMIN_IDENTITIES={ADMIN_IDENTITY},
        R2_ACCOUNT_ID="acct",
        R2_ACCESS_KEY_ID="key",
        R2_SECRET_ACCESS_KEY="secret",
        R2_BUCKET="bucket",
        R2_PUBLIC_BASE="https://img.example.org",
    )
    with app.app_context():
        init_db()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch notepages.app.utc_now for the whole test session so every call
    returns an ever-increasing timestamp.  No need for time.sleep().
    """
    from notepages import app as app_module  # import here to avoid early import

    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(app_module, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end


# ───────────────────────── use-case fixtures ──────────────────────────
class FakeUsers(UserInteractor):
    """Whoever the test says is connected."""

    def __init__(self):
        self.ident = Ident()
        self.admin = False

    def login_as(self, identity: str, *, admin: bool = False) -> None:
        self.ident = Ident("test", identity)
        self.admin = admin

    def logout(self) -> None:
        self.ident = Ident()
        self.admin = False

    def current_identity(self) -> Ident:
        return self.ident

    def current_user_is_admin(self) -> bool:
        return self.admin

    def login_url(self, dest_url: str) -> str:
        return f"/login?next={dest_url}"

    def logout_url(self, dest_url: str) -> str:
        return f"/logout?next={dest_url}"


class FakeUploads(UploadInteractor):
    """Keeps blobs in a dict; ``request`` is the UploadInfo to return."""

    def __init__(self):
        self.blobs: dict[str, UploadInfo] = {}
        self.deleted: list[str] = []
        self.max_upload_bytes = 0

    def upload_url(self, dest_url: str, max_upload_bytes: int) -> str:
        self.max_upload_bytes = max_upload_bytes
        return f"/upload?next={dest_url}"

    def upload_info(self, request, name: str) -> UploadInfo:
        self.blobs[request.key] = request
        return request

    def image_url(self, key: str, secure: bool, size: int) -> str:
        scheme = "https" if secure else "http"
        return f"{scheme}://img.test/{key}" + (f"?width={size}" if size else "")

    def delete(self, key: str) -> None:
        self.deleted.append(key)
        self.blobs.pop(key, None)


@pytest.fixture
def db(tmp_path: Path):
    """A fresh, empty database file per test."""
    conn = connect(str(tmp_path / "notes.sqlite3"))
    init_schema(conn)
    yield conn
    conn.close()


@pytest.fixture
def repo(db) -> SqliteRepository:
    return SqliteRepository(db)


@pytest.fixture
def users() -> FakeUsers:
    return FakeUsers()


@pytest.fixture
def uploads() -> FakeUploads:
    return FakeUploads()


@pytest.fixture
def notes(repo, users, uploads) -> App:
    return App(repo, users, logging.getLogger("notepages.tests"), uploads)
