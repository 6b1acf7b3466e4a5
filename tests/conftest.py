"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import fakeredis
import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from isuda.wiki import (  # noqa: WPS433
    app,
    connect_db,
    get_cache,
    get_db,
    init_db,
    install_cache,
)


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    db_file = tmp_path_factory.mktemp("data") / "test.sqlite3"
    return db_file


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    Development mode → the spam classifier is never called unless a test
    switches the mode back.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        ENV_MODE="development",
        SPAM_ORIGIN="http://isupam.test/",
        SECRET_KEY="test-secret",
    )
    install_cache(fakeredis.FakeRedis(decode_responses=True))
    with app.app_context():
        init_db()


@pytest.fixture(autouse=True)
def _clean_state() -> None:
    """
    Keywords link into *every* description, so entries left behind by one
    test would change another test's HTML. Start each test empty.
    """
    with app.app_context():
        db = get_db()
        db.execute("DELETE FROM entry")
        db.execute("DELETE FROM user")
        db.commit()
    get_cache().flushall()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test its own test client. Every request pushes (and tears
    down) its own application context, so nothing is shared through `g`.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        yield client


@pytest.fixture
def db():
    """
    A store connection owned by the test, outside any app context, so it
    can sit next to `client` without stacking contexts.
    """
    conn = connect_db(app.config["DATABASE"])
    yield conn
    conn.close()


@pytest.fixture
def cache():
    return get_cache()


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch isuda.wiki.utc_now for the whole test session so every call
    returns an ever-increasing timestamp. `updated_at` ordering is then
    deterministic without time.sleep().
    """
    from isuda import wiki  # import here to avoid early import

    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(wiki, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end
