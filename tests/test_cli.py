"""
tests/test_cli.py – `flask init | token | index | flush | reindex`
"""
from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest
from flask.testing import FlaskCliRunner

from highlights.app import app


@pytest.fixture
def runner(fresh_db) -> FlaskCliRunner:
    return app.test_cli_runner()


def _count(db_file: Path, table: str) -> int:
    with sqlite3.connect(db_file) as conn:
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def _seed_backups(name: str = "podcast") -> None:
    folder = Path(app.config["BACKUP_DIR"]) / name
    folder.mkdir(parents=True)
    (folder / "Huberman_highlights.txt").write_text("sleep\nlight\n", encoding="utf-8")
    (folder / "Ferriss_highlights.txt").write_text("tools\n", encoding="utf-8")


# ───────────────────────── init / token ───────────────────────────
def test_init_creates_admin_and_prints_token(runner, fresh_db):
    res = runner.invoke(args=["init", "--username", "  me  "])
    assert res.exit_code == 0, res.output
    assert "One-time login token" in res.output

    with sqlite3.connect(fresh_db) as conn:
        assert conn.execute("SELECT username FROM user").fetchone()[0] == "me"


def test_init_twice_is_refused(runner):
    runner.invoke(args=["init", "--username", "me"])
    res = runner.invoke(args=["init", "--username", "again"])
    assert res.exit_code == 1
    assert "Admin already exists" in res.output


def test_token_requires_admin(runner):
    runner.invoke(args=["reindex"])          # creates the schema
    res = runner.invoke(args=["token"])
    assert res.exit_code == 1
    assert "flask init" in res.output


def test_token_rotates(runner, fresh_db):
    runner.invoke(args=["init", "--username", "me"])
    with sqlite3.connect(fresh_db) as conn:
        before = conn.execute("SELECT token_hash FROM user").fetchone()[0]

    res = runner.invoke(args=["token"])
    assert res.exit_code == 0
    assert "Fresh login token" in res.output
    with sqlite3.connect(fresh_db) as conn:
        assert conn.execute("SELECT token_hash FROM user").fetchone()[0] != before


# ───────────────────────── index ──────────────────────────────────
def test_index_command(runner, fresh_db):
    _seed_backups()
    res = runner.invoke(args=["index", "podcast"])

    assert res.exit_code == 0, res.output
    assert "Indexed folder podcast: 3 highlights from 2 file(s), 0 failed." in res.output
    assert _count(fresh_db, "highlights") == 3
    assert _count(fresh_db, "highlights_fts") == 3


def test_index_missing_folder_is_usage_error(runner):
    res = runner.invoke(args=["index", "nowhere"])
    assert res.exit_code == 2
    assert "Backup folder not found" in res.output


# ───────────────────────── flush / reindex ────────────────────────
def test_flush_needs_confirmation(runner, fresh_db):
    _seed_backups()
    runner.invoke(args=["index", "podcast"])

    res = runner.invoke(args=["flush"], input="n\n")
    assert res.exit_code == 1                  # aborted
    assert _count(fresh_db, "highlights") == 3


def test_flush_all_tables(runner, fresh_db):
    _seed_backups()
    runner.invoke(args=["index", "podcast"])

    res = runner.invoke(args=["flush", "--yes"])
    assert res.exit_code == 0, res.output
    assert "Flushed tables: highlights, highlights_fts" in res.output
    assert _count(fresh_db, "highlights") == 0
    assert _count(fresh_db, "highlights_fts") == 0


def test_flush_single_table_then_reindex(runner, fresh_db):
    _seed_backups()
    runner.invoke(args=["index", "podcast"])

    runner.invoke(args=["flush", "--yes", "highlights_fts"])
    assert _count(fresh_db, "highlights") == 3
    assert _count(fresh_db, "highlights_fts") == 0

    res = runner.invoke(args=["reindex"])
    assert res.exit_code == 0
    assert "Rebuilt search index: 3 rows." in res.output
    assert _count(fresh_db, "highlights_fts") == 3


def test_flush_rejects_unknown_table(runner, fresh_db):
    res = runner.invoke(args=["flush", "--yes", "user"])
    assert res.exit_code == 2
    assert "Invalid value" in res.output


def test_flush_tables_guard():
    from highlights.app import flush_tables

    with pytest.raises(ValueError, match="unknown table"):
        flush_tables(["highlights", "user; DROP TABLE x"], db=None)
