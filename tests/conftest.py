"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Callable, Generator

import pytest
from flask.testing import FlaskClient

# The single-file app lives here:
from connector import hub
from connector.hub import app, get_db, init_db, login_or_register, register_party

CSRF = "test-token"  # shared constant so the token matches the session

_ip_counter = itertools.count(1)


@pytest.fixture(autouse=True)
def _fresh_db(tmp_path: Path) -> Path:
    """A brand-new database file for every test."""
    db_file = tmp_path / "test.sqlite3"
    app.config.update(
        TESTING=True,
        DATABASE=str(db_file),
        SESSION_COOKIE_SECURE=False,
        GEMINI_API_KEY="",
        RETRY_DELAY_SEC=0,
    )
    with app.app_context():
        init_db()
    return db_file


@pytest.fixture(autouse=True)
def _fast_clock(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Patch connector.hub.utc_now so every call returns an ever-increasing
    timestamp – "newest first" orderings never tie.
    """
    counter = itertools.count()  # 0, 1, 2, …
    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)

    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    monkeypatch.setattr(hub, "utc_now", _fake_now)


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Test client with a unique REMOTE_ADDR, so the per-IP rate limit never
    bleeds between tests.
    """
    with app.test_client() as c, app.app_context():
        c.environ_base["REMOTE_ADDR"] = f"10.0.0.{next(_ip_counter)}"
        yield c


@pytest.fixture
def party() -> dict:
    """Hub #12 “Biz High Ranker” with admin code Hamstar121."""
    with app.app_context():
        return register_party("Biz High Ranker", "Hamstar121", db=get_db())


@pytest.fixture
def make_member(party) -> Callable[..., dict]:
    """Register (or sign in) a regular member of *party*; returns a plain dict."""

    def _make(name: str, password: str = "pw") -> dict:
        with app.app_context():
            row, _ = login_or_register(party["name"], name, password, db=get_db())
            return dict(row)

    return _make


@pytest.fixture
def sign_in() -> Callable[[FlaskClient, str], None]:
    """Put *user_id* into the client's session together with the CSRF token."""

    def _sign_in(client: FlaskClient, user_id: str, **extra) -> None:
        with client.session_transaction() as sess:
            sess.clear()
            sess["uid"] = user_id
            sess["csrf"] = CSRF
            sess.update(extra)

    return _sign_in
