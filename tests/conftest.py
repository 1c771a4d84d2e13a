"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
import uuid
from pathlib import Path
from typing import Callable, Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from fukubun.app import app, create_user, get_db, init_db

CSRF = "test-token"          # shared constant so the token matches the session


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
        SITE_PASS=None,
        TIMEZONE="Asia/Tokyo",
    )
    with app.app_context():
        init_db()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def make_member(client: FlaskClient) -> Callable[..., dict]:
    """
    Factory for accounts.  The database lives for the whole session, so
    every member gets a unique username unless one is passed in.
    """
    def _make(username: str | None = None, *, password: str = "pw") -> dict:
        username = username or f"m{uuid.uuid4().hex[:12]}"
        db = get_db()
        uid = create_user(db, username=username, name=username.title(), password=password)
        return dict(db.execute("SELECT * FROM user WHERE id=?", (uid,)).fetchone())

    return _make


def login_as(client: FlaskClient, member: dict) -> None:
    """Simulate a log-in by writing the session keys directly."""
    with client.session_transaction() as sess:
        sess["user_id"] = member["id"]
        sess["csrf"] = CSRF


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch fukubun.app.utc_now for the whole test session so every call
    returns an ever-increasing timestamp.  No need for time.sleep().
    """
    from fukubun import app as fukubun_app  # import here to avoid early import

    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(fukubun_app, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end
