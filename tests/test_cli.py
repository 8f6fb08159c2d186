"""
tests/test_cli.py
"""
from __future__ import annotations

import re
import sqlite3
from pathlib import Path

from connector.hub import DEV_USER_ID, app, get_db, validate_token


# ───────────────────────── helpers ────────────────────────────────────
def _token_from(output: str) -> str:
    match = re.search(r"^(\S+\.\S+\.\S+)$", output, re.M)
    assert match, output
    return match.group(1)


def _old_backup(tmp_path: Path) -> Path:
    """A database from an older release: fewer columns, no boxes table."""
    path = tmp_path / "old.sqlite3"
    con = sqlite3.connect(path)
    con.executescript(
        """
        CREATE TABLE party (id TEXT PRIMARY KEY, name TEXT, created_at TEXT);
        CREATE TABLE user  (id TEXT PRIMARY KEY, name TEXT, password_hash TEXT,
                            role TEXT, party_id TEXT);
        CREATE TABLE folder (id TEXT PRIMARY KEY, name TEXT, icon TEXT,
                             party_id TEXT, legacy_flag INTEGER);
        INSERT INTO party VALUES ('00', 'Old Global', '2020-01-01'),
                                 ('56', 'Veterans', '2020-01-01');
        INSERT INTO user VALUES ('u1', 'zoe', 'hash', 'REGULAR', '56');
        INSERT INTO folder VALUES ('f1', 'Twitter', 'Folder', '56', 1);
        """
    )
    con.commit()
    con.close()
    return path


# ───────────────────────── tests ──────────────────────────────────────
def test_init_prints_working_token():
    runner = app.test_cli_runner()
    result = runner.invoke(args=["init"])
    assert result.exit_code == 0, result.output
    assert "Database ready." in result.output

    token = _token_from(result.output)
    with app.app_context():
        assert validate_token(token)
        row = get_db().execute("SELECT * FROM user WHERE id=?", (DEV_USER_ID,)).fetchone()
        assert row["role"] == "DEV"
        assert row["party_id"] == "00"


def test_token_rotation_invalidates_previous():
    runner = app.test_cli_runner()
    first = _token_from(runner.invoke(args=["init"]).output)
    second = _token_from(runner.invoke(args=["token"]).output)
    with app.app_context():
        assert not validate_token(first)
        assert validate_token(second)


def test_create_hub_command():
    runner = app.test_cli_runner()
    result = runner.invoke(args=["create-hub", "Night Owls", "Hamstar783"])
    assert result.exit_code == 0, result.output
    assert "Hub #78" in result.output

    result = runner.invoke(args=["create-hub", "Night Owls", "Hamstar793"])
    assert result.exit_code != 0
    assert "already taken" in result.output


def test_migrate_backup_copies_common_columns(tmp_path):
    backup = _old_backup(tmp_path)
    runner = app.test_cli_runner()
    result = runner.invoke(args=["migrate-backup", str(backup)])
    assert result.exit_code == 0, result.output
    assert "Migration finished." in result.output

    with app.app_context():
        db = get_db()
        # the seeded system hub wins over the backup's copy
        assert db.execute("SELECT name FROM party WHERE id='00'").fetchone()["name"] == "Global"
        assert db.execute("SELECT name FROM party WHERE id='56'").fetchone()["name"] == "Veterans"
        zoe = db.execute("SELECT * FROM user WHERE id='u1'").fetchone()
        assert zoe["profile_link"] is None
        assert db.execute("SELECT icon FROM folder WHERE id='f1'").fetchone()["icon"] == "Folder"
