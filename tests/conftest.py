"""
tests/conftest.py
"""
from __future__ import annotations

import uuid
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient

# The single-file app lives here:
from highlights.app import app, build_highlights, get_db, ingest, init_db


@pytest.fixture(scope="session")
def _tmp_dir(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp dir for the whole test session (faster than per-test)."""
    return tmp_path_factory.mktemp("data")


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_dir: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_dir / "test.sqlite3"),
        BACKUP_DIR=str(_tmp_dir / "backups"),
        # the test client talks plain http
        SESSION_COOKIE_SECURE=False,
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


@pytest.fixture
def admin(client: FlaskClient) -> FlaskClient:
    """The same client, already signed in (CSRF token = ``"t0k"``)."""
    with client.session_transaction() as sess:
        sess["logged_in"] = True
        sess["csrf"] = "t0k"
    return client


@pytest.fixture
def fresh_db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the app at an empty database + backup dir for one test."""
    db_file = tmp_path / "fresh.sqlite3"
    monkeypatch.setitem(app.config, "DATABASE", str(db_file))
    monkeypatch.setitem(app.config, "BACKUP_DIR", str(tmp_path / "backups"))
    return db_file


def unique(prefix: str) -> str:
    """Collision-free source names for the shared session DB."""
    return f"{prefix} {uuid.uuid4().hex[:8]}"


def add_source(source: str, lines: list[str], *, source_type: str = "book") -> int:
    """Dual-write *lines* straight into the DB (needs an app context)."""
    return ingest(build_highlights(lines, source, source_type), source, db=get_db())
