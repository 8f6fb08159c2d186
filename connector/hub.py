#!/usr/bin/env python3
"""
A single-file community directory: hubs, folders, profile cards and
follow-for-follow notifications.
"""

import os
import re
import secrets
import sqlite3
import uuid
from collections import defaultdict, deque
from datetime import datetime, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import sleep, time
from typing import DefaultDict
from urllib.parse import unquote, urlparse

import click
import markdown
import requests
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash as verify_secret
from werkzeug.security import generate_password_hash as hash_secret

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("CONNECTOR_DB", str(ROOT / "hub.sqlite3")))

SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)
TOKEN_LEN = 48
signer = TimestampSigner(SECRET_KEY, salt="dev-token")

ADMIN_CODE_PREFIX = os.environ.get("ADMIN_CODE_PREFIX", "Hamstar")
ADMIN_USERNAME = "Admin"

SYSTEM_PARTY_ID = "00"
SYSTEM_PARTY_NAME = os.environ.get("SYSTEM_PARTY_NAME", "Global")
DEV_USER_ID = "dev"
DEV_USERNAME = "Dev"

ROLE_REGULAR = "REGULAR"
ROLE_ADMIN = "ADMIN"
ROLE_DEV = "DEV"

FOLLOW = "FOLLOW"
FOLLOW_BACK = "FOLLOW_BACK"

SYNC_POLL_MS = int(os.environ.get("SYNC_POLL_MS", "30000"))
SYNC_DEBOUNCE_MS = int(os.environ.get("SYNC_DEBOUNCE_MS", "2000"))
RETRY_DELAY_SEC = float(os.environ.get("RETRY_DELAY_SEC", "2"))
LOGIN_RATE_LIMIT = int(os.environ.get("LOGIN_RATE_LIMIT", "10"))

GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY", "")
GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-2.0-flash")
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
GEMINI_TIMEOUT = 15
IDENTITY_MAX_LEN = 20
SUGGESTION_COUNT = 3

DEFAULT_FOLDER_ICON = "Folder"
AI_FOLDER_ICON = "Sparkles"
FOLDER_ICONS = {
    "Folder": "📁",
    "Sparkles": "✨",
    "Globe": "🌐",
    "Star": "⭐",
    "Rocket": "🚀",
}

BOX_DEFAULTS = {"x": 50, "y": 50, "width": 320, "height": 200}
BOX_DEFAULT_CONTENT = (
    "## System Instructions\n"
    "1. Connect with **Key Members**\n"
    "2. Maintain **Engagement**\n"
    "3. Grow Universally"
)

# Parents before children so foreign keys hold while copying.
TABLES_IN_ORDER = (
    "settings",
    "party",
    "user",
    "folder",
    "card",
    "instruction_box",
    "follow",
    "notification",
    "revision",
)
AUTHORITY_TABLES = ("party", "user", "folder", "card")

try:
    __version__ = version("community-connector")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


class ConnectorError(ValueError):
    """A user-facing rule was violated; the message is shown as a toast."""


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(SECRET_KEY=SECRET_KEY, DATABASE=str(DB_FILE))
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=os.environ.get("SESSION_COOKIE_SECURE", "1") != "0",
    ADMIN_CODE_PREFIX=ADMIN_CODE_PREFIX,
    GEMINI_API_KEY=GEMINI_API_KEY,
    GEMINI_MODEL=GEMINI_MODEL,
    SYNC_POLL_MS=SYNC_POLL_MS,
    SYNC_DEBOUNCE_MS=SYNC_DEBOUNCE_MS,
    RETRY_DELAY_SEC=RETRY_DELAY_SEC,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

md = markdown.Markdown(extensions=["sane_lists", "nl2br"])


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    """Render an instruction box body."""
    md.reset()
    return Markup(md.convert(text or ""))


@app.template_filter("hm")
def hm_filter(ms: int | None) -> str:
    """Millisecond epoch → 'HH:MM' (UTC)."""
    if not ms:
        return ""
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%H:%M")


@app.template_filter("host")
def link_host(url: str | None) -> str:
    if not url:
        return ""
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        return ""
    return host[4:] if host.startswith("www.") else host


@app.template_filter("icon")
def folder_icon(name: str | None) -> str:
    return FOLDER_ICONS.get(name or "", FOLDER_ICONS[DEFAULT_FOLDER_ICON])


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.execute("PRAGMA foreign_keys = ON;")
        g.db.row_factory = sqlite3.Row
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(
        """
        ------------------------------------------------------------
        -- 1.  Hubs ("parties")
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS party (
            id          TEXT PRIMARY KEY,            -- two-digit code
            name        TEXT UNIQUE NOT NULL COLLATE NOCASE,
            created_at  TEXT NOT NULL
        );

        ------------------------------------------------------------
        -- 2.  Accounts (one namespace per hub)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS user (
            id            TEXT PRIMARY KEY,
            name          TEXT NOT NULL,
            password_hash TEXT NOT NULL,
            role          TEXT NOT NULL,             -- REGULAR | ADMIN | DEV
            party_id      TEXT NOT NULL,
            profile_link  TEXT,
            UNIQUE (name, party_id),
            FOREIGN KEY (party_id) REFERENCES party(id) ON DELETE CASCADE
        );

        ------------------------------------------------------------
        -- 3.  Folders, cards, instruction boxes
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS folder (
            id        TEXT PRIMARY KEY,
            name      TEXT NOT NULL,
            icon      TEXT NOT NULL DEFAULT 'Folder',
            party_id  TEXT NOT NULL,
            FOREIGN KEY (party_id) REFERENCES party(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS card (
            id             TEXT PRIMARY KEY,
            user_id        TEXT NOT NULL,
            folder_id      TEXT NOT NULL,
            party_id       TEXT NOT NULL,
            display_name   TEXT NOT NULL,
            external_link  TEXT NOT NULL,
            timestamp      INTEGER NOT NULL,         -- ms since epoch
            x              INTEGER,
            y              INTEGER,
            FOREIGN KEY (user_id)   REFERENCES user(id)   ON DELETE CASCADE,
            FOREIGN KEY (folder_id) REFERENCES folder(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_card_folder ON card(folder_id);
        CREATE INDEX IF NOT EXISTS idx_card_user   ON card(user_id);

        CREATE TABLE IF NOT EXISTS instruction_box (
            id         TEXT PRIMARY KEY,
            folder_id  TEXT NOT NULL,
            party_id   TEXT NOT NULL,
            content    TEXT NOT NULL,
            x          INTEGER NOT NULL,
            y          INTEGER NOT NULL,
            width      INTEGER NOT NULL,
            height     INTEGER NOT NULL,
            FOREIGN KEY (folder_id) REFERENCES folder(id) ON DELETE CASCADE
        );

        ------------------------------------------------------------
        -- 4.  Follows + notifications
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS follow (
            id              TEXT PRIMARY KEY,
            follower_id     TEXT NOT NULL,
            target_card_id  TEXT NOT NULL,
            party_id        TEXT NOT NULL,
            timestamp       INTEGER NOT NULL,
            UNIQUE (follower_id, target_card_id),
            FOREIGN KEY (follower_id)    REFERENCES user(id) ON DELETE CASCADE,
            FOREIGN KEY (target_card_id) REFERENCES card(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS notification (
            id               TEXT PRIMARY KEY,
            recipient_id     TEXT NOT NULL,
            sender_id        TEXT NOT NULL,
            sender_name      TEXT NOT NULL,
            type             TEXT NOT NULL,          -- FOLLOW | FOLLOW_BACK
            related_card_id  TEXT NOT NULL DEFAULT '',
            party_id         TEXT NOT NULL,
            timestamp        INTEGER NOT NULL,
            read             INTEGER NOT NULL DEFAULT 0,
            FOREIGN KEY (recipient_id) REFERENCES user(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_notification_recipient
            ON notification(recipient_id, read);

        ------------------------------------------------------------
        -- 5.  Change counters polled by /sync
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS revision (
            party_id  TEXT PRIMARY KEY,
            rev       INTEGER NOT NULL
        );

        ------------------------------------------------------------
        -- 6.  Site-wide key/value settings
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS settings (
            key   TEXT PRIMARY KEY,
            value TEXT
        );
        INSERT OR IGNORE INTO settings (key, value)
            VALUES ('site_name', 'Community Connector'),
                   ('site_tagline', 'Follow, get followed back, grow.');
        """
    )
    db.execute(
        "INSERT OR IGNORE INTO party (id, name, created_at) VALUES (?,?,?)",
        (SYSTEM_PARTY_ID, SYSTEM_PARTY_NAME, utc_now().isoformat(timespec="seconds")),
    )
    db.commit()


# -------------------------------------------------------------------------
# Time + id helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(utc_now().timestamp() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex[:12]


# -------------------------------------------------------------------------
# Revisions
# -------------------------------------------------------------------------
def bump_revision(*party_ids: str, db) -> None:
    """Mark hubs as changed; the caller commits."""
    for pid in set(party_ids):
        db.execute(
            "INSERT INTO revision (party_id, rev) VALUES (?, 1) "
            "ON CONFLICT(party_id) DO UPDATE SET rev = rev + 1",
            (pid,),
        )


def revision_of(party_id: str, *, db) -> str:
    """Combined revision of a hub and the system hub it also shows."""
    rows = {
        r["party_id"]: r["rev"]
        for r in db.execute(
            "SELECT party_id, rev FROM revision WHERE party_id IN (?,?)",
            (party_id, SYSTEM_PARTY_ID),
        )
    }
    return f"{rows.get(party_id, 0)}.{rows.get(SYSTEM_PARTY_ID, 0)}"


###############################################################################
# CLI – developer account, hubs, backups
###############################################################################
def _create_dev(db) -> str:
    handle = secrets.token_urlsafe(TOKEN_LEN)
    token = signer.sign(handle).decode()
    db.execute(
        "INSERT INTO user (id, name, password_hash, role, party_id) VALUES (?,?,?,?,?)",
        (DEV_USER_ID, DEV_USERNAME, hash_secret(handle), ROLE_DEV, SYSTEM_PARTY_ID),
    )
    db.commit()
    return token


def _rotate_token(db) -> str:
    """Generate + store a *new* one-time token, return it for display."""
    handle = secrets.token_urlsafe(TOKEN_LEN)
    token = signer.sign(handle).decode()
    db.execute(
        "UPDATE user SET password_hash=? WHERE id=?", (hash_secret(handle), DEV_USER_ID)
    )
    db.commit()
    return token


def migrate_from_backup(src_path: Path, *, db) -> dict[str, int]:
    """
    Copy every column the current schema still knows from an older
    database.  Rows that already exist (seeded hub, settings) are kept.
    """
    src = sqlite3.connect(f"file:{src_path}?mode=ro", uri=True)
    src.row_factory = sqlite3.Row
    copied: dict[str, int] = {}
    try:
        db.execute("PRAGMA foreign_keys=OFF;")
        for table in TABLES_IN_ORDER:
            src_cols = {c["name"] for c in src.execute(f"PRAGMA table_info({table})")}
            if not src_cols:
                continue
            common = [
                c["name"]
                for c in db.execute(f"PRAGMA table_info({table})")
                if c["name"] in src_cols
            ]
            if not common:
                continue
            col_list = ",".join(common)
            qms = ",".join("?" * len(common))
            rows = src.execute(f"SELECT {col_list} FROM {table}").fetchall()
            db.executemany(
                f"INSERT OR IGNORE INTO {table} ({col_list}) VALUES ({qms})",
                (tuple(r[c] for c in common) for r in rows),
            )
            copied[table] = len(rows)
        db.commit()
    finally:
        db.execute("PRAGMA foreign_keys=ON;")
        src.close()
    return copied


@app.cli.command("init")
def cli_init():
    """Initialise the DB, the system hub *and* the developer account."""
    init_db()  # no-op if already there
    db = get_db()
    if db.execute("SELECT 1 FROM user WHERE id=?", (DEV_USER_ID,)).fetchone():
        token = _rotate_token(db)
    else:
        token = _create_dev(db)

    click.secho("\n✅  Database ready.", fg="green")
    click.echo(f"\nOne-time developer token:\n\n{token}\n")
    click.echo("Paste it into the form at /dev/login within 1 minute.")


@app.cli.command("token")
def cli_token():
    """Rotate the developer's one-time login token."""
    token = _rotate_token(get_db())

    click.secho("\n🔑  Fresh developer token generated.\n", fg="yellow")
    click.echo(f"{token}\n")
    click.echo("Paste it into the form at /dev/login within 1 minute.")


@app.cli.command("create-hub")
@click.argument("name")
@click.argument("admin_code")
def cli_create_hub(name: str, admin_code: str):
    """Register a hub and its admin account."""
    init_db()
    try:
        party = register_party(name, admin_code, db=get_db())
    except ConnectorError as exc:
        raise click.ClickException(str(exc)) from None
    click.secho(f"\n✅  Hub #{party['id']} “{party['name']}” created.", fg="green")


@app.cli.command("migrate-backup")
@click.argument(
    "backup", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
def cli_migrate_backup(backup: Path):
    """Copy compatible rows from an older database file."""
    init_db()
    for table, count in migrate_from_backup(backup, db=get_db()).items():
        click.echo(f"  • {table:16} ({count} rows)")
    click.secho("\n✔  Migration finished.", fg="green")


###############################################################################
# Settings + session helpers
###############################################################################
def get_setting(key, default=None):
    row = get_db().execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
    return row["value"] if row else default


def set_setting(key, value):
    db = get_db()
    db.execute(
        "INSERT INTO settings (key,value) VALUES (?,?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
        (key, value),
    )
    db.commit()


def site_name() -> str:
    return get_setting("site_name", "Community Connector")


def current_user():
    """The signed-in account row, or None (a deleted account signs out)."""
    uid = session.get("uid")
    if not uid:
        return None
    row = get_db().execute("SELECT * FROM user WHERE id=?", (uid,)).fetchone()
    if row is None:
        session.clear()
    return row


def active_party_id(user) -> str:
    if user["role"] == ROLE_DEV:
        return session.get("dev_party", SYSTEM_PARTY_ID)
    return user["party_id"]


def theme() -> str:
    user = current_user()
    default = "dark" if user is not None and user["role"] == ROLE_DEV else "light"
    return session.get("theme", default)


def unread_count() -> int:
    user = current_user()
    if user is None:
        return 0
    return get_db().execute(
        "SELECT COUNT(*) FROM notification WHERE recipient_id=? AND read=0",
        (user["id"],),
    ).fetchone()[0]


def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


def party_slug(name: str) -> str:
    return re.sub(r"\s+", "-", name.strip())


app.jinja_env.globals.update(
    csrf_token=_csrf_token,
    current_user=current_user,
    get_setting=get_setting,
    site_name=site_name,
    theme=theme,
    unread_count=unread_count,
    party_slug=party_slug,
    version=__version__,
    ROLE_ADMIN=ROLE_ADMIN,
    ROLE_DEV=ROLE_DEV,
    FOLLOW_BACK=FOLLOW_BACK,
    SYSTEM_PARTY_ID=SYSTEM_PARTY_ID,
)


###############################################################################
# Hubs + accounts
###############################################################################
def parse_admin_code(code: str | None) -> tuple[str, str] | None:
    """'Hamstar121' → ('12', '1'); anything else → None."""
    prefix = re.escape(app.config.get("ADMIN_CODE_PREFIX", ADMIN_CODE_PREFIX))
    m = re.fullmatch(rf"{prefix}([1-9]{{2}})([1-9])", (code or "").strip())
    if not m:
        return None
    return m.group(1), m.group(2)


def find_party(party_id: str, *, db):
    return db.execute("SELECT * FROM party WHERE id=?", (party_id,)).fetchone()


def find_party_by_name(name: str, *, db):
    name = (name or "").strip()
    if not name:
        return None
    return db.execute("SELECT * FROM party WHERE name=?", (name,)).fetchone()


def list_parties(*, db):
    return db.execute(
        "SELECT * FROM party WHERE id != ? ORDER BY name COLLATE NOCASE",
        (SYSTEM_PARTY_ID,),
    ).fetchall()


def register_party(name: str, admin_code: str, *, db) -> dict:
    clean_name = (name or "").strip()
    if not clean_name:
        raise ConnectorError("Please enter a community name.")

    info = parse_admin_code(admin_code)
    if not info:
        prefix = app.config.get("ADMIN_CODE_PREFIX", ADMIN_CODE_PREFIX)
        raise ConnectorError(
            f"Invalid password format. Use {prefix}XXY (XX=Community ID, Y=Admin ID)."
        )
    party_id, admin_id = info

    if find_party_by_name(clean_name, db=db):
        raise ConnectorError(f'Community name "{clean_name}" is already taken.')
    if find_party(party_id, db=db):
        raise ConnectorError(f'Community Code "{party_id}" is already in use.')

    db.execute(
        "INSERT INTO party (id, name, created_at) VALUES (?,?,?)",
        (party_id, clean_name, utc_now().isoformat(timespec="seconds")),
    )
    db.execute(
        "INSERT INTO user (id, name, password_hash, role, party_id) VALUES (?,?,?,?,?)",
        (
            f"admin-{party_id}-{admin_id}",
            ADMIN_USERNAME,
            hash_secret(admin_code.strip()),
            ROLE_ADMIN,
            party_id,
        ),
    )
    bump_revision(party_id, db=db)
    db.commit()
    app.logger.info("Hub %s (%s) created", party_id, clean_name)
    return {"id": party_id, "name": clean_name}


def login_or_register(party_name: str, username: str, password: str, *, db):
    """
    Sign a member into a hub, registering them on first visit.

    Returns ``(user_row, created)``.  Raises ConnectorError with the
    message the gate shows.
    """
    clean_party = (party_name or "").strip()
    clean_user = (username or "").strip()
    clean_pw = (password or "").strip()
    if not clean_party:
        raise ConnectorError("Please enter a Membership name.")
    if not clean_user or not clean_pw:
        raise ConnectorError("Name and password are required.")

    party = find_party_by_name(clean_party, db=db)
    if party is None or party["id"] == SYSTEM_PARTY_ID:
        raise ConnectorError(f'Membership "{clean_party}" not found.')

    row = db.execute(
        "SELECT * FROM user WHERE name=? AND party_id=?", (clean_user, party["id"])
    ).fetchone()
    if row is not None and verify_secret(row["password_hash"], clean_pw):
        return row, False

    if parse_admin_code(clean_pw):
        raise ConnectorError("Invalid admin credentials for this community.")
    if row is not None:
        raise ConnectorError("Invalid credentials.")

    uid = new_id()
    db.execute(
        "INSERT INTO user (id, name, password_hash, role, party_id) VALUES (?,?,?,?,?)",
        (uid, clean_user, hash_secret(clean_pw), ROLE_REGULAR, party["id"]),
    )
    bump_revision(party["id"], db=db)
    db.commit()
    app.logger.info("Member %s joined hub %s", clean_user, party["id"])
    return db.execute("SELECT * FROM user WHERE id=?", (uid,)).fetchone(), True


###############################################################################
# Folders, cards, boxes
###############################################################################
def party_folders(party_id: str, *, db):
    """Folders of a hub plus the global ones, ordered by name."""
    return db.execute(
        "SELECT * FROM folder WHERE party_id IN (?,?) ORDER BY name COLLATE NOCASE",
        (party_id, SYSTEM_PARTY_ID),
    ).fetchall()


def party_cards(party_id: str, *, db):
    return db.execute(
        """SELECT c.*, u.party_id AS owner_party
             FROM card c JOIN user u ON u.id = c.user_id
            WHERE c.party_id IN (?,?)
            ORDER BY c.timestamp DESC""",
        (party_id, SYSTEM_PARTY_ID),
    ).fetchall()


def party_follows(party_id: str, *, db):
    return db.execute("SELECT * FROM follow WHERE party_id=?", (party_id,)).fetchall()


def can_manage_folder(user, folder) -> bool:
    if user["role"] == ROLE_DEV:
        return True
    return user["role"] == ROLE_ADMIN and folder["party_id"] == user["party_id"]


def can_edit_card(user, card) -> bool:
    if user["role"] == ROLE_DEV or card["user_id"] == user["id"]:
        return True
    owner_party = card["owner_party"] if "owner_party" in card.keys() else card["party_id"]
    return user["role"] == ROLE_ADMIN and owner_party == user["party_id"]


def add_folder(name: str, party_id: str, *, icon: str = DEFAULT_FOLDER_ICON, db) -> str:
    clean = (name or "").strip().strip('"').strip()
    if not clean:
        raise ConnectorError("Folder name is required.")
    fid = new_id()
    db.execute(
        "INSERT INTO folder (id, name, icon, party_id) VALUES (?,?,?,?)",
        (fid, clean, icon, party_id),
    )
    bump_revision(party_id, db=db)
    db.commit()
    return fid


def rename_folder(folder, name: str, *, db) -> bool:
    clean = (name or "").strip()
    if not clean:
        return False
    db.execute("UPDATE folder SET name=? WHERE id=?", (clean, folder["id"]))
    bump_revision(folder["party_id"], db=db)
    db.commit()
    return True


def delete_folder(folder, *, db) -> None:
    db.execute("DELETE FROM folder WHERE id=?", (folder["id"],))
    bump_revision(folder["party_id"], db=db)
    db.commit()
    app.logger.info("Folder %s deleted from hub %s", folder["id"], folder["party_id"])


def normalize_link(link: str | None) -> str:
    clean = (link or "").strip()
    if clean and not clean.startswith(("http://", "https://")):
        clean = f"https://{clean}"
    return clean


def create_card(user, folder, display_name: str, link: str, *, party_id: str, db) -> str:
    name = (display_name or "").strip()
    url = normalize_link(link)
    if not name or not url:
        raise ConnectorError("Name and link are required.")

    if user["role"] == ROLE_REGULAR and db.execute(
        "SELECT 1 FROM card WHERE user_id=? AND folder_id=?", (user["id"], folder["id"])
    ).fetchone():
        raise ConnectorError("Profile exists already.")

    target = SYSTEM_PARTY_ID if folder["party_id"] == SYSTEM_PARTY_ID else party_id
    cid = new_id()
    db.execute(
        """INSERT INTO card (id, user_id, folder_id, party_id,
                             display_name, external_link, timestamp)
           VALUES (?,?,?,?,?,?,?)""",
        (cid, user["id"], folder["id"], target, name, url, now_ms()),
    )
    bump_revision(target, db=db)
    db.commit()
    return cid


def update_card(card, display_name: str, link: str, *, db) -> None:
    name = (display_name or "").strip()
    url = normalize_link(link)
    if not name or not url:
        raise ConnectorError("Name and link are required.")
    db.execute(
        "UPDATE card SET display_name=?, external_link=? WHERE id=?",
        (name, url, card["id"]),
    )
    bump_revision(card["party_id"], db=db)
    db.commit()


def delete_card(card, *, db) -> None:
    db.execute("DELETE FROM card WHERE id=?", (card["id"],))
    bump_revision(card["party_id"], db=db)
    db.commit()


def move_card(card, x: int, y: int, *, db) -> None:
    db.execute("UPDATE card SET x=?, y=? WHERE id=?", (x, y, card["id"]))
    bump_revision(card["party_id"], db=db)
    db.commit()


def filter_cards(cards, folder_id: str | None, query: str = "") -> list:
    """Cards of one folder matching *query* on name or link, newest first."""
    if not folder_id:
        return []
    q = (query or "").lower()
    hits = [
        c
        for c in cards
        if c["folder_id"] == folder_id
        and (q in c["display_name"].lower() or q in c["external_link"].lower())
    ]
    return sorted(hits, key=lambda c: c["timestamp"], reverse=True)


def add_box(folder, *, party_id: str, db) -> str:
    target = SYSTEM_PARTY_ID if folder["party_id"] == SYSTEM_PARTY_ID else party_id
    bid = f"box-{new_id()}"
    db.execute(
        """INSERT INTO instruction_box
                  (id, folder_id, party_id, content, x, y, width, height)
           VALUES (?,?,?,?,?,?,?,?)""",
        (
            bid,
            folder["id"],
            target,
            BOX_DEFAULT_CONTENT,
            BOX_DEFAULTS["x"],
            BOX_DEFAULTS["y"],
            BOX_DEFAULTS["width"],
            BOX_DEFAULTS["height"],
        ),
    )
    bump_revision(target, db=db)
    db.commit()
    return bid


def update_box(box, *, db, **fields) -> None:
    allowed = {k: v for k, v in fields.items() if k in {"content", *BOX_DEFAULTS}}
    if not allowed:
        return
    cols = ", ".join(f"{k}=?" for k in allowed)
    db.execute(
        f"UPDATE instruction_box SET {cols} WHERE id=?", (*allowed.values(), box["id"])
    )
    bump_revision(box["party_id"], db=db)
    db.commit()


def delete_box(box, *, db) -> None:
    db.execute("DELETE FROM instruction_box WHERE id=?", (box["id"],))
    bump_revision(box["party_id"], db=db)
    db.commit()


###############################################################################
# Follows + reciprocity
###############################################################################
def follow_state(viewer_id: str, card, *, follows, cards) -> dict:
    """
    How *viewer_id* relates to the owner of *card*:
    • is_followed – the viewer follows this card
    • follows_me  – the card owner follows any card of the viewer
    • is_mutual   – both
    """
    my_cards = {c["id"] for c in cards if c["user_id"] == viewer_id}
    is_followed = any(
        f["follower_id"] == viewer_id and f["target_card_id"] == card["id"]
        for f in follows
    )
    follows_me = any(
        f["follower_id"] == card["user_id"] and f["target_card_id"] in my_cards
        for f in follows
    )
    return {
        "is_followed": is_followed,
        "follows_me": follows_me,
        "is_mutual": is_followed and follows_me,
    }


def card_stats(owner_id: str, party_id: str, *, follows, cards) -> dict:
    """Distinct followers / followed members of a card owner inside one hub."""
    owner_cards = {c["id"] for c in cards if c["user_id"] == owner_id}
    card_owner = {c["id"]: c["user_id"] for c in cards}
    in_party = [f for f in follows if f["party_id"] == party_id]
    followers = {f["follower_id"] for f in in_party if f["target_card_id"] in owner_cards}
    following = {
        card_owner[f["target_card_id"]]
        for f in in_party
        if f["follower_id"] == owner_id and f["target_card_id"] in card_owner
    }
    return {"followers": len(followers), "following": len(following)}


def add_notification(
    *,
    recipient_id: str,
    sender,
    ntype: str,
    related_card_id: str,
    party_id: str,
    db,
) -> str:
    nid = new_id()
    db.execute(
        """INSERT INTO notification
                  (id, recipient_id, sender_id, sender_name, type,
                   related_card_id, party_id, timestamp, read)
           VALUES (?,?,?,?,?,?,?,?,0)""",
        (
            nid,
            recipient_id,
            sender["id"],
            sender["name"],
            ntype,
            related_card_id,
            party_id,
            now_ms(),
        ),
    )
    return nid


def toggle_follow(user, card, *, party_id: str, db) -> tuple[bool, str | None]:
    """
    Follow *card* or, if already followed, unfollow it.

    Returns ``(now_following, notification_type)``; the type is None when
    nothing was sent (unfollow, or following your own card).
    """
    existing = db.execute(
        "SELECT id FROM follow WHERE follower_id=? AND target_card_id=?",
        (user["id"], card["id"]),
    ).fetchone()
    if existing:
        db.execute(
            "DELETE FROM follow WHERE follower_id=? AND target_card_id=?",
            (user["id"], card["id"]),
        )
        bump_revision(party_id, db=db)
        db.commit()
        return False, None

    db.execute(
        """INSERT INTO follow (id, follower_id, target_card_id, party_id, timestamp)
           VALUES (?,?,?,?,?)""",
        (new_id(), user["id"], card["id"], party_id, now_ms()),
    )

    ntype = None
    if card["user_id"] != user["id"]:
        follows_back = db.execute(
            """SELECT 1 FROM follow f JOIN card c ON c.id = f.target_card_id
                WHERE f.follower_id=? AND c.user_id=? AND f.party_id=? LIMIT 1""",
            (card["user_id"], user["id"], party_id),
        ).fetchone()
        sender_card = db.execute(
            """SELECT id FROM card WHERE user_id=? AND party_id=?
                ORDER BY timestamp DESC LIMIT 1""",
            (user["id"], party_id),
        ).fetchone()
        ntype = FOLLOW_BACK if follows_back else FOLLOW
        add_notification(
            recipient_id=card["user_id"],
            sender=user,
            ntype=ntype,
            related_card_id=sender_card["id"] if sender_card else "",
            party_id=party_id,
            db=db,
        )
    bump_revision(party_id, card["party_id"], db=db)
    db.commit()
    return True, ntype


###############################################################################
# Notifications
###############################################################################
def sort_notifications(rows, recipient_id: str) -> list:
    """The recipient's notifications: unread first, then newest first."""
    mine = [n for n in rows if n["recipient_id"] == recipient_id]
    return sorted(mine, key=lambda n: (bool(n["read"]), -n["timestamp"]))


def user_notifications(user, *, db) -> list:
    rows = db.execute(
        "SELECT * FROM notification WHERE recipient_id=?", (user["id"],)
    ).fetchall()
    return sort_notifications(rows, user["id"])


def mark_read(notification, *, db) -> None:
    db.execute("UPDATE notification SET read=1 WHERE id=?", (notification["id"],))
    bump_revision(notification["party_id"], db=db)
    db.commit()


def mark_all_read(user, *, db) -> int:
    cur = db.execute(
        "UPDATE notification SET read=1 WHERE recipient_id=? AND read=0", (user["id"],)
    )
    db.commit()
    return cur.rowcount


###############################################################################
# Authority console
###############################################################################
def authority_snapshot(*, db) -> dict:
    return {
        "party": db.execute("SELECT * FROM party ORDER BY id").fetchall(),
        "user": db.execute(
            "SELECT * FROM user ORDER BY party_id, role, name COLLATE NOCASE"
        ).fetchall(),
        "folder": db.execute(
            "SELECT * FROM folder ORDER BY party_id, name COLLATE NOCASE"
        ).fetchall(),
        "card": db.execute(
            "SELECT * FROM card ORDER BY party_id, timestamp DESC"
        ).fetchall(),
    }


def authority_row(table: str, row_id: str, *, db):
    if table not in AUTHORITY_TABLES:
        return None
    return db.execute(f"SELECT * FROM {table} WHERE id=?", (row_id,)).fetchone()


def authority_delete(table: str, row_id: str, *, db) -> None:
    if table not in AUTHORITY_TABLES:
        raise ConnectorError(f"Unknown table {table!r}.")
    if (table, row_id) in {("party", SYSTEM_PARTY_ID), ("user", DEV_USER_ID)}:
        raise ConnectorError("The system hub and developer account are protected.")
    row = authority_row(table, row_id, db=db)
    if row is None:
        raise ConnectorError("Row not found.")

    db.execute(f"DELETE FROM {table} WHERE id=?", (row_id,))
    if table == "party":
        db.execute("DELETE FROM revision WHERE party_id=?", (row_id,))
    else:
        bump_revision(row["party_id"], db=db)
    db.commit()
    app.logger.info("Authority deleted %s %s", table, row_id)


###############################################################################
# AI helpers (Gemini REST)
###############################################################################
def with_retry(fn, *args, delay: float | None = None, **kwargs):
    """Call *fn*; on a network error wait once and try one more time."""
    try:
        return fn(*args, **kwargs)
    except requests.RequestException as exc:
        wait = app.config.get("RETRY_DELAY_SEC", RETRY_DELAY_SEC) if delay is None else delay
        app.logger.warning("%s failed (%s) – retrying in %ss", fn.__name__, exc, wait)
        sleep(wait)
        return fn(*args, **kwargs)


def ai_enabled() -> bool:
    return bool(app.config.get("GEMINI_API_KEY"))


def _gemini_generate(prompt: str) -> str:
    resp = requests.post(
        GEMINI_URL.format(model=app.config.get("GEMINI_MODEL", GEMINI_MODEL)),
        params={"key": app.config["GEMINI_API_KEY"]},
        json={"contents": [{"parts": [{"text": prompt}]}]},
        timeout=GEMINI_TIMEOUT,
    )
    resp.raise_for_status()
    try:
        return resp.json()["candidates"][0]["content"]["parts"][0]["text"]
    except (requests.JSONDecodeError, KeyError, IndexError, TypeError):
        raise ValueError("Unexpected model response") from None


def suggest_folders(current: list[str]) -> list[str]:
    if not ai_enabled():
        return []
    prompt = (
        f"Based on these existing folders: {', '.join(current)}, suggest "
        f"{SUGGESTION_COUNT} new relevant social platforms or communities for a "
        '"follow-for-follow" app. Return only comma-separated values.'
    )
    try:
        text = with_retry(_gemini_generate, prompt)
    except (requests.RequestException, ValueError):
        app.logger.exception("Folder suggestion failed")
        return []

    names: list[str] = []
    for raw in text.split(","):
        name = raw.strip().strip('"').strip()
        if name and name not in names and name not in current:
            names.append(name)
    return names[:SUGGESTION_COUNT]


def optimize_identity(name: str, link: str) -> str:
    if not ai_enabled():
        return name
    prompt = (
        f'Transform this username "{name}" and link "{link}" into a professional '
        "social identity for a community hub. If it's an X/Twitter profile, make "
        "it sound like an influencer. If it's LinkedIn, make it professional. "
        f"Return ONLY the optimized name (max {IDENTITY_MAX_LEN} characters)."
    )
    try:
        text = with_retry(_gemini_generate, prompt)
    except (requests.RequestException, ValueError):
        app.logger.exception("Identity optimisation failed")
        return name
    clean = text.strip().strip('"').strip()
    return clean[:IDENTITY_MAX_LEN] if clean else name


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en" data-theme="{{ theme() }}">
<title>{{ title or site_name() }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<link rel="icon" type="image/svg+xml" href="/favicon.svg">
<style>
:root{--bg:#f8fafc;--fg:#0f172a;--muted:#64748b;--panel:#fff;--line:#e2e8f0;--accent:#4f46e5;--ok:#10b981;--warn:#f59e0b;--bad:#dc2626}
[data-theme=dark]{--bg:#020617;--fg:#e2e8f0;--muted:#94a3b8;--panel:#0f172a;--line:#1e293b}
html{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif}
body{margin:0;background:var(--bg);color:var(--fg);line-height:1.5}
a{color:var(--accent)}
input,textarea,select{font:inherit;padding:.45rem .7rem;border:1px solid var(--line);border-radius:.6rem;background:var(--panel);color:var(--fg);box-sizing:border-box}
button,.button{font:inherit;font-weight:700;padding:.45rem .9rem;border:0;border-radius:.6rem;background:var(--accent);color:#fff;cursor:pointer;text-decoration:none;display:inline-block}
button.ghost{background:transparent;color:var(--muted);border:1px solid var(--line)}
button.danger{background:var(--bad)}
.inline{display:inline}
.shell{display:grid;grid-template-columns:16rem 1fr;min-height:100vh}
.sidebar{border-right:1px solid var(--line);padding:1.25rem;background:var(--panel)}
.sidebar h2{margin:0 0 1rem;font-size:1.1rem}
.folder{display:flex;align-items:center;gap:.4rem;margin:.15rem 0}
.folder a{flex:1;padding:.35rem .6rem;border-radius:.5rem;text-decoration:none;color:var(--fg)}
.folder a[aria-current=page]{background:var(--accent);color:#fff}
.main{padding:1.25rem 2rem}
header.top{display:flex;align-items:center;gap:1rem;flex-wrap:wrap;margin-bottom:1.5rem}
header.top h1{margin:0;font-size:1.5rem;flex:1}
.badge{display:inline-block;min-width:1.2rem;padding:0 .35rem;border-radius:1rem;background:var(--bad);color:#fff;font-size:.75rem;text-align:center}
.grid{display:grid;grid-template-columns:repeat(auto-fill,minmax(15rem,1fr));gap:1rem}
.card{background:var(--panel);border:1px solid var(--line);border-radius:1.25rem;padding:1rem;scroll-margin:6rem}
.card.followed{border-color:var(--accent)}
.card.hl{outline:4px solid var(--ok);outline-offset:4px;animation:pulse 3s ease-out}
@keyframes pulse{from{transform:scale(1.05)}to{transform:scale(1)}}
.avatar{width:2.5rem;height:2.5rem;border-radius:.8rem;display:inline-flex;align-items:center;justify-content:center;font-weight:900;background:var(--line)}
.avatar.mutual{background:var(--ok);color:#fff}
.pill{font-size:.7rem;font-weight:800;text-transform:uppercase;padding:.05rem .45rem;border-radius:1rem;background:var(--line)}
.pill.mutual{background:var(--ok);color:#fff}
.stats{display:flex;gap:1rem;color:var(--muted);font-size:.8rem;margin:.6rem 0}
.empty{color:var(--muted);text-align:center;padding:4rem 1rem}
.panel{background:var(--panel);border:1px solid var(--line);border-radius:1.25rem;padding:1.5rem;max-width:32rem;margin:3rem auto}
.panel label{display:block;font-weight:700;margin:.75rem 0 .25rem}
.panel input{width:100%}
.notif{display:flex;gap:.75rem;align-items:center;padding:.75rem;border-bottom:1px solid var(--line)}
.notif.read{opacity:.6}
table{width:100%;border-collapse:collapse;margin-bottom:2rem}
td,th{padding:.4rem;border-bottom:1px solid var(--line);text-align:left;font-size:.85rem}
.canvas{position:relative;min-height:70vh;border:2px dashed var(--line);border-radius:1rem}
.canvas .placed{position:absolute;width:15rem}
.box{position:absolute;background:var(--panel);border:1px solid var(--warn);border-radius:1rem;padding:.75rem;overflow:auto}
.toast{position:fixed;top:1rem;right:1rem;padding:.75rem 1rem;border-radius:.6rem;color:#fff;max-width:24rem;z-index:999;background:var(--ok)}
.toast.error{background:var(--bad)}
@media (max-width:720px){.shell{grid-template-columns:1fr}.sidebar{border-right:0;border-bottom:1px solid var(--line)}}
</style>
<body>
{% with msgs = get_flashed_messages(with_categories=true) %}
{% if msgs %}
    {% for cat, msg in msgs %}
    <div role="status" aria-live="polite" class="toast {{ 'error' if cat == 'error' else '' }}"
         style="top:{{ 1 + loop.index0 * 3.5 }}rem">{{ msg }}</div>
    {% endfor %}
{% endif %}
{% endwith %}
"""

TEMPL_EPILOG = """
{% if live and current_user() %}
<script>
(() => {
  const POLL = {{ config.SYNC_POLL_MS }}, DEBOUNCE = {{ config.SYNC_DEBOUNCE_MS }};
  const rev = {{ rev|tojson }};
  let pending = null;
  const busy = () => ['INPUT', 'TEXTAREA'].includes(document.activeElement?.tagName);
  const reload = () => { if (busy()) { pending = setTimeout(reload, DEBOUNCE); } else { location.reload(); } };
  const check = async () => {
    if (document.visibilityState !== 'visible' || pending) return;
    try {
      const res = await fetch("{{ url_for('sync') }}", {headers: {"Accept": "application/json"}});
      if (!res.ok) return;
      const data = await res.json();
      if (data.rev !== rev) pending = setTimeout(reload, DEBOUNCE);
    } catch (err) {
      console.log("sync failed", err);
    }
  };
  setInterval(check, POLL);
  document.addEventListener('visibilitychange', check);
})();
</script>
{% endif %}
<script>
setTimeout(() => document.querySelectorAll('.toast').forEach(t => t.remove()), 4000);
</script>
</body>
</html>
"""


###############################################################################
# Authentication
###############################################################################
def validate_token(token: str, max_age: int = 60) -> bool:
    """
    • Unsign + age-check in *one* step (`max_age` seconds).
    • Compare the payload (“handle”) against the developer's hashed copy.
    """
    try:
        handle = signer.unsign(token, max_age=max_age).decode()
    except SignatureExpired:
        return False  # too old ➜ invalid
    except BadSignature:
        return False  # forged ➜ invalid

    row = get_db().execute(
        "SELECT password_hash FROM user WHERE id=?", (DEV_USER_ID,)
    ).fetchone()
    return bool(row) and verify_secret(row["password_hash"], handle)


def login_required():
    user = current_user()
    if user is None:
        abort(403)
    return user


def dev_required():
    user = login_required()
    if user["role"] != ROLE_DEV:
        abort(403)
    return user


def _start_session(user) -> None:
    session.clear()
    session.permanent = True
    session["uid"] = user["id"]
    session["csrf"] = secrets.token_hex(16)


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if request.method != "POST":
                return view(*args, **kwargs)
            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                app.logger.warning("Rate limit hit for %s on %s", ip, request.path)
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@app.before_request
def csrf_protect():
    # read-only verbs ⇒ always allowed
    if request.method in SAFE_METHODS:
        return

    # not signed in yet ⇒ allow (covers the gate forms)
    if not session.get("uid"):
        return

    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Permissions-Policy": "interest-cohort=()",
        }
    )
    return resp


###############################################################################
# Gate: landing, hub signup, member join, developer login
###############################################################################
@app.route("/")
def index():
    if current_user() is not None:
        return redirect(url_for("hub"))
    return render_template_string(
        TEMPL_LANDING, parties=list_parties(db=get_db()), title=site_name()
    )


TEMPL_LANDING = wrap("""
<div class="panel" style="max-width:46rem">
  <h1 style="margin-top:0">{{ site_name() }}</h1>
  <p>{{ get_setting('site_tagline', '') }}</p>
  <p>A visual, card-based dashboard for follow-for-follow communities.
     Every member gets a visible profile card, one click follows, and
     notifications trace people back so you can follow them in return.</p>
  <ol>
    <li><strong>Setup Hub</strong> – admins launch a hub in a minute.</li>
    <li><strong>Join Folders</strong> – every member gets a visible card.</li>
    <li><strong>1-Click Follow</strong> – click a member to follow.</li>
    <li><strong>Smart Trace</strong> – notifications lead you back.</li>
  </ol>
  <p>
    <a class="button" href="{{ url_for('create_hub') }}">Launch a Community</a>
    <a class="button" href="{{ url_for('join') }}" style="background:var(--ok)">Join a Membership</a>
  </p>
  {% if parties %}
  <h3>Communities</h3>
  <ul>
    {% for p in parties %}
    <li><a href="{{ url_for('invite', party_id=p['id'], name_slug=party_slug(p['name'])) }}">{{ p['name'] }}</a></li>
    {% endfor %}
  </ul>
  {% endif %}
  <p style="color:var(--muted);font-size:.8em">
    <a href="{{ url_for('docs') }}">Member guide</a> ·
    <a href="{{ url_for('docs', audience='admin') }}">Admin blueprint</a> ·
    v{{ version }}
  </p>
</div>
""")


@app.route("/create", methods=["GET", "POST"])
@rate_limit(max_requests=LOGIN_RATE_LIMIT, window=60)
def create_hub():
    party_name = request.form.get("party", "").strip()
    if request.method == "POST":
        username = request.form.get("username", "").strip()
        try:
            if username != ADMIN_USERNAME:
                raise ConnectorError(f"Admin username must be '{ADMIN_USERNAME}'.")
            party = register_party(
                party_name, request.form.get("password", ""), db=get_db()
            )
        except ConnectorError as exc:
            app.logger.warning("Hub signup rejected: %s", exc)
            flash(str(exc), "error")
        else:
            flash(f"“{party['name']}” is live. Sign in as Admin to set it up.")
            return redirect(url_for("join", party=party["name"]))

    return render_template_string(
        TEMPL_GATE, mode="create", party_name=party_name, title="Setup Your Hub"
    )


@app.route("/join", methods=["GET", "POST"])
@rate_limit(max_requests=LOGIN_RATE_LIMIT, window=60)
def join():
    party_name = request.values.get("party", "").strip()
    if request.method == "POST":
        try:
            user, created = login_or_register(
                party_name,
                request.form.get("username", ""),
                request.form.get("password", ""),
                db=get_db(),
            )
        except ConnectorError as exc:
            app.logger.warning("Join rejected for %r: %s", party_name, exc)
            flash(str(exc), "error")
        else:
            _start_session(user)
            flash("Welcome aboard!" if created else f"Welcome back, {user['name']}.")
            return redirect(url_for("hub"))

    return render_template_string(
        TEMPL_GATE,
        mode="join",
        party_name=party_name,
        parties=list_parties(db=get_db()),
        title="Identity Membership",
    )


TEMPL_GATE = wrap("""
<form method="post" class="panel">
  <h2 style="margin-top:0">{{ title }}</h2>
  <p style="color:var(--muted)">
    {% if mode == 'create' %}Create a unique name for your community.
    {% else %}Enter the name of the community you want to join.{% endif %}
  </p>
  <label for="party">Membership Name</label>
  <input id="party" name="party" required placeholder="e.g. Biz High Ranker"
         value="{{ party_name }}" list="party-list">
  {% if parties %}
  <datalist id="party-list">
    {% for p in parties %}<option value="{{ p['name'] }}">{% endfor %}
  </datalist>
  {% endif %}
  <label for="username">Name</label>
  <input id="username" name="username" required
         placeholder="{{ 'Admin' if mode == 'create' else 'Your name' }}">
  <label for="password">Password</label>
  <input id="password" name="password" type="password" required placeholder="Your password">
  <p style="margin-top:1.25rem">
    <button type="submit">{{ 'Establish Membership' if mode == 'create' else 'Verify & Enter' }}</button>
    <a href="{{ url_for('index') }}" style="margin-left:1rem">Back</a>
  </p>
</form>
""")


@app.route("/party/<party_id>", defaults={"name_slug": ""})
@app.route("/party/<party_id>/<name_slug>")
def invite(party_id, name_slug):
    """Invite links pre-fill the join form with the hub's name."""
    party = find_party(party_id, db=get_db())
    if party is not None and party["id"] != SYSTEM_PARTY_ID:
        name = party["name"]
    else:
        name = unquote(name_slug).replace("-", " ")
    return redirect(url_for("join", party=name))


@app.route("/dev/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def dev_login():
    token = request.form.get("token", "").strip()

    if request.method == "POST" and token and validate_token(token):
        # ── token matched → burn it right away ─────────────────────
        db = get_db()
        db.execute(
            "UPDATE user SET password_hash=? WHERE id=?",
            (hash_secret(secrets.token_hex(16)), DEV_USER_ID),
        )
        db.commit()
        _start_session(
            db.execute("SELECT * FROM user WHERE id=?", (DEV_USER_ID,)).fetchone()
        )
        session["theme"] = "dark"
        return redirect(url_for("hub"))

    if request.method == "POST":
        app.logger.warning("Developer token rejected")
        flash("Invalid or expired token.", "error")
    return render_template_string(TEMPL_DEV_LOGIN, title="System Architect")


TEMPL_DEV_LOGIN = wrap("""
<form method="post" class="panel">
  <h2 style="margin-top:0">System Architect</h2>
  <label for="token">One-time token</label>
  <input id="token" name="token" type="password" autocomplete="current-password">
  <p><button type="submit">Sign in with Token</button></p>
</form>
""")


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("index"))


###############################################################################
# Hub view
###############################################################################
@app.route("/hub")
def hub():
    user = login_required()
    db = get_db()
    pid = active_party_id(user)
    party = find_party(pid, db=db)
    if party is None:  # hub deleted under the developer
        session.pop("dev_party", None)
        return redirect(url_for("hub"))

    folders = party_folders(pid, db=db)
    folder_id = request.args.get("f") or None
    if folder_id is None and folders and user["role"] != ROLE_DEV:
        folder_id = folders[0]["id"]
    folder = next((f for f in folders if f["id"] == folder_id), None)
    if folder_id and folder is None:
        abort(404)

    query = request.args.get("q", "").strip()
    all_cards = party_cards(pid, db=db)
    follows = party_follows(pid, db=db)
    workflow = request.args.get("mode") == "workflow" and user["role"] == ROLE_DEV

    shown = (
        [c for c in all_cards if c["folder_id"] == folder_id]
        if workflow
        else filter_cards(all_cards, folder_id, query)
    )
    views = [
        {
            "card": c,
            "own": c["user_id"] == user["id"],
            "can_edit": can_edit_card(user, c),
            "stats": card_stats(c["user_id"], pid, follows=follows, cards=all_cards),
            **follow_state(user["id"], c, follows=follows, cards=all_cards),
        }
        for c in shown
    ]
    boxes = db.execute(
        "SELECT * FROM instruction_box WHERE folder_id=?", (folder_id,)
    ).fetchall()

    return render_template_string(
        TEMPL_HUB,
        title=f"{folder['name'] if folder else 'Communities'} · {party['name']}",
        party=party,
        folders=folders,
        folder=folder,
        views=views,
        boxes=boxes,
        query=query,
        workflow=workflow,
        highlight=request.args.get("hl", ""),
        can_manage=bool(folder) and can_manage_folder(user, folder),
        is_manager=user["role"] in (ROLE_ADMIN, ROLE_DEV),
        ai_enabled=ai_enabled(),
        live=True,
        rev=revision_of(pid, db=db),
    )


TEMPL_HUB = wrap("""
{% set me = current_user() %}
<div class="shell">
  <aside class="sidebar">
    <h2>{{ party['name'] }}</h2>
    {% if me['role'] == ROLE_ADMIN %}
    <p style="font-size:.8em">Invite link:
      <input readonly style="width:100%" onclick="this.select()"
             value="{{ url_for('invite', party_id=party['id'], name_slug=party_slug(party['name']), _external=True) }}">
    </p>
    {% endif %}
    <nav aria-label="Folders">
      {% for f in folders %}
      <div class="folder">
        <a href="{{ url_for('hub', f=f['id']) }}" {% if folder and folder['id'] == f['id'] %}aria-current="page"{% endif %}>
          {{ f['icon']|icon }} {{ f['name'] }}{% if f['party_id'] == SYSTEM_PARTY_ID %} <small>(global)</small>{% endif %}
        </a>
      </div>
      {% else %}
      <p style="color:var(--muted)">No folders yet.</p>
      {% endfor %}
    </nav>
    {% if is_manager %}
    <form method="post" action="{{ url_for('folder_add') }}" style="margin-top:1rem">
      <input type="hidden" name="csrf" value="{{ csrf_token() }}">
      <input name="name" placeholder="Community Name" required style="width:100%">
      <button type="submit" style="width:100%;margin-top:.4rem">+ New Community</button>
    </form>
    {% if ai_enabled %}
    <form method="post" action="{{ url_for('folder_suggest') }}" style="margin-top:.4rem">
      <input type="hidden" name="csrf" value="{{ csrf_token() }}">
      <button type="submit" class="ghost" style="width:100%">✨ AI Suggest</button>
    </form>
    {% endif %}
    {% endif %}
    <hr style="border:0;border-top:1px solid var(--line);margin:1.5rem 0">
    <p><span class="avatar">{{ me['name'][:1] }}</span> {{ me['name'] }}<br>
       <small style="color:var(--muted)">{{ {'ADMIN': 'Master Admin', 'DEV': 'System Architect'}.get(me['role'], 'Active User') }}</small></p>
    {% if me['role'] == ROLE_DEV %}
      <p><a href="{{ url_for('authority') }}">Authority table</a> · <a href="{{ url_for('settings') }}">Settings</a></p>
    {% endif %}
    <p><a href="{{ url_for('docs', audience='admin' if is_manager else None) }}">Guide</a> · <a href="{{ url_for('logout') }}">Sign Out</a></p>
  </aside>

  <section class="main">
    <header class="top">
      <h1>{{ folder['name'] if folder else 'Communities' }} <small style="color:var(--muted);font-size:.6em">{{ party['name'] }}</small></h1>
      <form method="get" action="{{ url_for('hub') }}" class="inline">
        {% if folder %}<input type="hidden" name="f" value="{{ folder['id'] }}">{% endif %}
        <input type="search" name="q" value="{{ query }}" placeholder="Search community..." aria-label="Search cards">
      </form>
      <form method="post" action="{{ url_for('toggle_theme') }}" class="inline">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <input type="hidden" name="next" value="{{ request.full_path }}">
        <button type="submit" class="ghost" title="Toggle theme">{{ '☀️' if theme() == 'dark' else '🌙' }}</button>
      </form>
      <a class="button ghost" href="{{ url_for('notifications') }}" style="background:transparent;color:var(--fg);border:1px solid var(--line)">
        🔔 {% if unread_count() %}<span class="badge">{{ unread_count() }}</span>{% endif %}
      </a>
      {% if me['role'] == ROLE_DEV and folder %}
        <a class="button ghost" style="background:transparent;color:var(--fg);border:1px solid var(--line)"
           href="{{ url_for('hub', f=folder['id'], mode=None if workflow else 'workflow') }}">{{ 'Grid' if workflow else 'Workflow' }}</a>
      {% endif %}
    </header>

    {% if folder and can_manage %}
    <details style="margin-bottom:1rem">
      <summary style="cursor:pointer;color:var(--muted)">Manage folder</summary>
      <form method="post" action="{{ url_for('folder_rename', folder_id=folder['id']) }}" class="inline">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <input name="name" value="{{ folder['name'] }}">
        <button type="submit">Rename</button>
      </form>
      <form method="post" action="{{ url_for('folder_delete', folder_id=folder['id']) }}" class="inline"
            onsubmit="return confirm('Delete community and all associated cards?')">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button type="submit" class="danger">Delete</button>
      </form>
    </details>
    {% endif %}

    {% if folder %}
    <details style="margin-bottom:1.5rem" {% if not views and not query %}open{% endif %}>
      <summary style="cursor:pointer;font-weight:700">+ Join Community</summary>
      <form method="post" action="{{ url_for('card_add') }}" style="display:flex;gap:.5rem;flex-wrap:wrap;margin-top:.5rem">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <input type="hidden" name="folder_id" value="{{ folder['id'] }}">
        <input name="display_name" required value="{{ me['name'] }}" placeholder="Ex: Vitalik B.">
        <input name="external_link" required placeholder="https://x.com/username" style="flex:1">
        {% if ai_enabled %}<label><input type="checkbox" name="polish" value="1"> ✨ polish name</label>{% endif %}
        <button type="submit">Add Profile</button>
      </form>
    </details>
    {% endif %}

    {% macro card_body(v) %}
      {% set c = v.card %}
      <div style="display:flex;gap:.6rem;align-items:center">
        <span class="avatar {{ 'mutual' if v.is_mutual }}">{{ c['display_name'][:1] }}</span>
        <div style="flex:1;min-width:0">
          <strong>{{ c['display_name'] }}</strong><br>
          {% if v.is_mutual %}<span class="pill mutual">Mutual</span>
          {% elif v.follows_me %}<span class="pill">Follows You</span>{% endif %}
        </div>
        {% if v.can_edit %}<a href="{{ url_for('card_edit', card_id=c['id']) }}" title="Edit">✏️</a>{% endif %}
      </div>
      <div class="stats">
        <span><strong>{{ v.stats.followers }}</strong> followers</span>
        <span><strong>{{ v.stats.following }}</strong> following</span>
      </div>
      <p style="margin:.25rem 0"><a href="{{ c['external_link'] }}" target="_blank" rel="noopener noreferrer">Open Profile</a>
         <small style="color:var(--muted)">{{ c['external_link']|host }}</small></p>
      {% if v.own %}
        <p style="color:var(--muted);font-size:.8em;margin:0">Your Identity</p>
      {% else %}
      <form method="post" action="{{ url_for('card_follow', card_id=c['id']) }}"
            {% if v.is_followed %}onsubmit='return confirm({{ ("Are you sure you want to unfollow " ~ c["display_name"] ~ "?")|tojson }})'{% endif %}>
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <input type="hidden" name="next" value="{{ request.full_path }}">
        <button type="submit" style="width:100%;{% if v.is_followed %}background:var(--ok){% endif %}">
          {% if v.is_followed %}{{ 'Mutual Connection' if v.is_mutual else 'Followed' }}
          {% else %}{{ 'Follow Back' if v.follows_me else 'Connect Now' }}{% endif %}
        </button>
      </form>
      {% if v.is_followed and not v.is_mutual %}
        <p style="color:var(--warn);font-size:.75em;margin:.4rem 0 0">Waiting for follow back</p>
      {% endif %}
      {% endif %}
    {% endmacro %}

    {% if not folder %}
      <p class="empty">Select a community folder to view members.</p>
    {% elif workflow %}
      <form method="post" action="{{ url_for('box_add') }}" style="margin-bottom:1rem">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <input type="hidden" name="folder_id" value="{{ folder['id'] }}">
        <button type="submit">+ Instruction Window</button>
      </form>
      <div class="canvas" id="canvas">
        {% for b in boxes %}
        <div class="box" draggable="true" data-move="{{ url_for('box_update', box_id=b['id']) }}"
             style="left:{{ b['x'] }}px;top:{{ b['y'] }}px;width:{{ b['width'] }}px;height:{{ b['height'] }}px">
          {{ b['content']|md }}
          <details><summary style="cursor:pointer;font-size:.8em">Edit</summary>
            <form method="post" action="{{ url_for('box_update', box_id=b['id']) }}">
              <input type="hidden" name="csrf" value="{{ csrf_token() }}">
              <textarea name="content" rows="5" style="width:100%">{{ b['content'] }}</textarea>
              <button type="submit">Save</button>
            </form>
            <form method="post" action="{{ url_for('box_delete', box_id=b['id']) }}">
              <input type="hidden" name="csrf" value="{{ csrf_token() }}">
              <button type="submit" class="danger">Remove</button>
            </form>
          </details>
        </div>
        {% endfor %}
        {% for v in views %}
        <div class="card placed" id="card-{{ v.card['id'] }}" draggable="true"
             data-move="{{ url_for('card_move', card_id=v.card['id']) }}"
             style="left:{{ v.card['x'] or (20 + loop.index0 % 3 * 260) }}px;top:{{ v.card['y'] or (260 + loop.index0 // 3 * 240) }}px">
          {{ card_body(v) }}
        </div>
        {% endfor %}
      </div>
      <script>
      (() => {
        const canvas = document.getElementById('canvas');
        let dragged = null;
        canvas.querySelectorAll('[data-move]').forEach(el => {
          el.addEventListener('dragstart', () => { dragged = el; });
        });
        canvas.addEventListener('dragover', e => e.preventDefault());
        canvas.addEventListener('drop', async e => {
          e.preventDefault();
          if (!dragged) return;
          const rect = canvas.getBoundingClientRect();
          const body = new URLSearchParams({
            x: Math.round(e.clientX - rect.left),
            y: Math.round(e.clientY - rect.top),
          });
          await fetch(dragged.dataset.move, {
            method: "POST",
            headers: {"X-CSRFToken": {{ csrf_token()|tojson }}},
            body,
          });
          location.reload();
        });
      })();
      </script>
    {% else %}
      {% for b in boxes %}
        <div class="card" style="border-color:var(--warn);margin-bottom:1rem">{{ b['content']|md }}</div>
      {% endfor %}
      {% if views %}
      <div class="grid">
        {% for v in views %}
        <div class="card {{ 'followed' if v.is_followed }} {{ 'hl' if highlight == v.card['id'] }}" id="card-{{ v.card['id'] }}">
          {{ card_body(v) }}
        </div>
        {% endfor %}
      </div>
      {% elif query %}
        <p class="empty">No results for "{{ query }}" in this folder.</p>
      {% else %}
        <p class="empty">This folder is currently empty. Click 'Join Community' to be the first!</p>
      {% endif %}
    {% endif %}
  </section>
</div>
{% if highlight %}
<script>document.getElementById({{ ('card-' ~ highlight)|tojson }})?.scrollIntoView({behavior: 'smooth', block: 'center'});</script>
{% endif %}
""")


def _back_to_hub(folder_id: str | None = None, **params):
    nxt = request.form.get("next", "")
    if nxt.startswith("/") and not nxt.startswith("//"):
        return redirect(nxt)
    return redirect(url_for("hub", f=folder_id, **params))


def _load_folder(folder_id: str, user):
    folder = get_db().execute(
        "SELECT * FROM folder WHERE id=?", (folder_id,)
    ).fetchone()
    if folder is None:
        abort(404)
    if folder["party_id"] not in (active_party_id(user), SYSTEM_PARTY_ID):
        abort(404)
    return folder


def _load_card(card_id: str, user):
    card = get_db().execute(
        """SELECT c.*, u.party_id AS owner_party
             FROM card c JOIN user u ON u.id = c.user_id WHERE c.id=?""",
        (card_id,),
    ).fetchone()
    if card is None:
        abort(404)
    if card["party_id"] not in (active_party_id(user), SYSTEM_PARTY_ID):
        abort(404)
    return card


###############################################################################
# Folders
###############################################################################
@app.route("/folders", methods=["POST"])
def folder_add():
    user = login_required()
    if user["role"] not in (ROLE_ADMIN, ROLE_DEV):
        abort(403)
    try:
        fid = add_folder(request.form.get("name", ""), active_party_id(user), db=get_db())
    except ConnectorError as exc:
        flash(str(exc), "error")
        return redirect(url_for("hub"))
    return redirect(url_for("hub", f=fid))


@app.route("/folders/suggest", methods=["POST"])
def folder_suggest():
    user = login_required()
    if user["role"] not in (ROLE_ADMIN, ROLE_DEV):
        abort(403)
    db = get_db()
    pid = active_party_id(user)
    current = [f["name"] for f in party_folders(pid, db=db)]
    added = 0
    for name in suggest_folders(current):
        try:
            add_folder(name, pid, icon=AI_FOLDER_ICON, db=db)
        except ConnectorError:
            continue
        added += 1
    if added:
        flash(f"Added {added} suggested folder{'s' if added != 1 else ''}.")
    else:
        flash("No suggestions right now.", "error")
    return redirect(url_for("hub"))


@app.route("/folders/<folder_id>/rename", methods=["POST"])
def folder_rename(folder_id):
    user = login_required()
    folder = _load_folder(folder_id, user)
    if not can_manage_folder(user, folder):
        abort(403)
    rename_folder(folder, request.form.get("name", ""), db=get_db())
    return redirect(url_for("hub", f=folder_id))


@app.route("/folders/<folder_id>/delete", methods=["POST"])
def folder_delete(folder_id):
    user = login_required()
    folder = _load_folder(folder_id, user)
    if not can_manage_folder(user, folder):
        abort(403)
    delete_folder(folder, db=get_db())
    flash(f"“{folder['name']}” deleted.")
    return redirect(url_for("hub"))


###############################################################################
# Cards + follows
###############################################################################
@app.route("/cards", methods=["POST"])
def card_add():
    user = login_required()
    folder_id = request.form.get("folder_id", "")
    if not folder_id:
        flash("Please select a community folder first.", "error")
        return redirect(url_for("hub"))
    folder = _load_folder(folder_id, user)

    name = request.form.get("display_name", "")
    link = request.form.get("external_link", "")
    if request.form.get("polish") and name.strip():
        name = optimize_identity(name.strip(), link.strip())

    try:
        cid = create_card(
            user, folder, name, link, party_id=active_party_id(user), db=get_db()
        )
    except ConnectorError as exc:
        flash(str(exc), "error")
        return redirect(url_for("hub", f=folder_id))
    flash("Profile added successfully!")
    return redirect(url_for("hub", f=folder_id, hl=cid, _anchor=f"card-{cid}"))


@app.route("/cards/<card_id>/edit", methods=["GET", "POST"])
def card_edit(card_id):
    user = login_required()
    card = _load_card(card_id, user)
    if not can_edit_card(user, card):
        abort(403)

    if request.method == "POST":
        try:
            update_card(
                card,
                request.form.get("display_name", ""),
                request.form.get("external_link", ""),
                db=get_db(),
            )
        except ConnectorError as exc:
            flash(str(exc), "error")
            return redirect(url_for("card_edit", card_id=card_id))
        flash("Profile updated.")
        return redirect(url_for("hub", f=card["folder_id"]))

    return render_template_string(
        TEMPL_CARD_EDIT,
        card=card,
        own=card["user_id"] == user["id"],
        title="Updating Identity",
    )


TEMPL_CARD_EDIT = wrap("""
<div class="panel">
  <h2 style="margin-top:0">{{ 'Edit Your Card' if own else 'Admin: Management' }}</h2>
  <form method="post">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <label for="display_name">Display name</label>
    <input id="display_name" name="display_name" value="{{ card['display_name'] }}" required>
    <label for="external_link">Profile link</label>
    <input id="external_link" name="external_link" value="{{ card['external_link'] }}" required>
    <p><button type="submit">Save Changes</button>
       <a href="{{ url_for('hub', f=card['folder_id']) }}" style="margin-left:1rem">Cancel</a></p>
  </form>
  <form method="post" action="{{ url_for('card_delete', card_id=card['id']) }}"
        onsubmit="return confirm('Delete this profile?')">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <button type="submit" class="danger">Delete Profile</button>
  </form>
</div>
""")


@app.route("/cards/<card_id>/delete", methods=["POST"])
def card_delete(card_id):
    user = login_required()
    card = _load_card(card_id, user)
    if not can_edit_card(user, card):
        abort(403)
    delete_card(card, db=get_db())
    flash("Profile removed.")
    return redirect(url_for("hub", f=card["folder_id"]))


@app.route("/cards/<card_id>/follow", methods=["POST"])
def card_follow(card_id):
    user = login_required()
    card = _load_card(card_id, user)
    following, _ = toggle_follow(
        user, card, party_id=active_party_id(user), db=get_db()
    )
    if not following:
        flash(f"Unfollowed {card['display_name']}.")
    return _back_to_hub(card["folder_id"])


@app.route("/cards/<card_id>/move", methods=["POST"])
def card_move(card_id):
    user = dev_required()
    card = _load_card(card_id, user)
    try:
        x, y = int(request.form["x"]), int(request.form["y"])
    except (KeyError, ValueError):
        abort(400)
    move_card(card, x, y, db=get_db())
    return ("", 204)


###############################################################################
# Instruction boxes
###############################################################################
def _load_box(box_id: str, user):
    box = get_db().execute(
        "SELECT * FROM instruction_box WHERE id=?", (box_id,)
    ).fetchone()
    if box is None or box["party_id"] not in (active_party_id(user), SYSTEM_PARTY_ID):
        abort(404)
    return box


@app.route("/boxes", methods=["POST"])
def box_add():
    user = dev_required()
    folder = _load_folder(request.form.get("folder_id", ""), user)
    add_box(folder, party_id=active_party_id(user), db=get_db())
    flash("Instruction Window Added")
    return redirect(url_for("hub", f=folder["id"], mode="workflow"))


@app.route("/boxes/<box_id>", methods=["POST"])
def box_update(box_id):
    user = dev_required()
    box = _load_box(box_id, user)
    fields = {}
    if "content" in request.form:
        fields["content"] = request.form["content"]
    for key in BOX_DEFAULTS:
        if key in request.form:
            try:
                fields[key] = int(request.form[key])
            except ValueError:
                abort(400)
    update_box(box, db=get_db(), **fields)
    if "content" in fields:
        return redirect(url_for("hub", f=box["folder_id"], mode="workflow"))
    return ("", 204)


@app.route("/boxes/<box_id>/delete", methods=["POST"])
def box_delete(box_id):
    user = dev_required()
    box = _load_box(box_id, user)
    delete_box(box, db=get_db())
    return redirect(url_for("hub", f=box["folder_id"], mode="workflow"))


###############################################################################
# Notifications
###############################################################################
@app.route("/notifications")
def notifications():
    user = login_required()
    db = get_db()
    rows = user_notifications(user, db=db)
    return render_template_string(
        TEMPL_NOTIFICATIONS,
        notifications=rows,
        unread=sum(1 for n in rows if not n["read"]),
        title="Activity Hub",
        live=True,
        rev=revision_of(active_party_id(user), db=db),
    )


TEMPL_NOTIFICATIONS = wrap("""
<div class="panel" style="max-width:40rem">
  <h2 style="margin-top:0">Activity Hub
    {% if unread %}<span class="badge">{{ unread }} NEW</span>{% endif %}</h2>
  <p><a href="{{ url_for('hub') }}">← Back to hub</a></p>
  {% for n in notifications %}
  <form method="post" action="{{ url_for('notification_trace', nid=n['id']) }}"
        class="notif {{ 'read' if n['read'] }}">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <span class="avatar {{ 'mutual' if n['type'] == FOLLOW_BACK }}">{{ '🤝' if n['type'] == FOLLOW_BACK else '👋' }}</span>
    <div style="flex:1">
      <strong>{{ n['sender_name'] }}</strong>
      {% if n['type'] == FOLLOW_BACK %}followed you back.
      {% else %}just followed you. Kindly follow them back.{% endif %}
      <br><small style="color:var(--muted)">{{ n['timestamp']|hm }}</small>
    </div>
    <button type="submit" class="ghost">Trace Member</button>
  </form>
  {% else %}
  <p class="empty">No activity yet.</p>
  {% endfor %}
  {% if unread %}
  <form method="post" action="{{ url_for('notifications_read_all') }}" style="margin-top:1rem">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <button type="submit">Mark all as read</button>
  </form>
  {% endif %}
</div>
""")


@app.route("/notifications/<nid>/trace", methods=["POST"])
def notification_trace(nid):
    """Mark one notification read and jump to the sender's card."""
    user = login_required()
    db = get_db()
    notif = db.execute(
        "SELECT * FROM notification WHERE id=? AND recipient_id=?", (nid, user["id"])
    ).fetchone()
    if notif is None:
        abort(404)
    mark_read(notif, db=db)

    card = None
    if notif["related_card_id"]:
        card = db.execute(
            "SELECT * FROM card WHERE id=?", (notif["related_card_id"],)
        ).fetchone()
    if card is None or card["party_id"] not in (active_party_id(user), SYSTEM_PARTY_ID):
        return redirect(url_for("hub"))
    return redirect(
        url_for("hub", f=card["folder_id"], hl=card["id"], _anchor=f"card-{card['id']}")
    )


@app.route("/notifications/read-all", methods=["POST"])
def notifications_read_all():
    user = login_required()
    db = get_db()
    if mark_all_read(user, db=db):
        bump_revision(active_party_id(user), db=db)
        db.commit()
    return redirect(url_for("notifications"))


###############################################################################
# Sync + presentation
###############################################################################
@app.route("/sync")
def sync():
    user = login_required()
    db = get_db()
    return {
        "rev": revision_of(active_party_id(user), db=db),
        "unread": unread_count(),
    }


@app.route("/theme", methods=["POST"])
def toggle_theme():
    session["theme"] = "light" if theme() == "dark" else "dark"
    nxt = request.form.get("next", "")
    if nxt.startswith("/") and not nxt.startswith("//"):
        return redirect(nxt)
    return redirect(url_for("index"))


@app.route("/docs", defaults={"audience": "member"})
@app.route("/docs/<audience>")
def docs(audience):
    if audience not in ("member", "admin"):
        abort(404)
    return render_template_string(
        TEMPL_DOCS,
        audience=audience,
        prefix=app.config.get("ADMIN_CODE_PREFIX", ADMIN_CODE_PREFIX),
        title="Admin Blueprint" if audience == "admin" else "Member Guide",
    )


TEMPL_DOCS = wrap("""
<div class="panel" style="max-width:44rem">
  <h2 style="margin-top:0">{{ title }}</h2>
  {% if audience == 'admin' %}
    <h3>The password algorithm</h3>
    <p>Every admin code follows one pattern: <code>{{ prefix }}[XX][Y]</code>.</p>
    <ul>
      <li><strong>XX</strong> – your 2-digit community code (11–99, no zeros).</li>
      <li><strong>Y</strong> – your 1-digit admin ID (1–9).</li>
    </ul>
    <p>Example: <code>{{ prefix }}121</code> creates community #12 for admin #1.</p>
    <h3>Running the hub</h3>
    <ol>
      <li>Create folders for each platform or pod.</li>
      <li>Share the invite link from the sidebar.</li>
      <li>Edit or remove any member card that breaks the rules.</li>
    </ol>
  {% else %}
    <ol>
      <li>Join with your community's name, your name and a password you pick.
          The same name and password sign you back in later.</li>
      <li>Pick a folder and add your profile card – one per folder.</li>
      <li>Click <em>Connect Now</em> on other cards. They get a notification.</li>
      <li>When someone follows you, the bell lights up. <em>Trace Member</em>
          jumps to their card so you can follow back.</li>
    </ol>
  {% endif %}
  <p><a href="{{ url_for('index') }}">← Back</a></p>
</div>
""")


@app.route("/settings", methods=["GET", "POST"])
def settings():
    dev_required()

    if request.method == "POST":
        name = request.form.get("site_name", "").strip()
        if name:
            set_setting("site_name", name)
        set_setting("site_tagline", request.form.get("site_tagline", "").strip())
        flash("Settings saved.")
        return redirect(url_for("settings"))

    return render_template_string(
        TEMPL_SETTINGS,
        site_tagline=get_setting("site_tagline", ""),
        title="Settings",
    )


TEMPL_SETTINGS = wrap("""
<form method="post" class="panel">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <h2 style="margin-top:0">Site Settings</h2>
  <label for="site_name">Site name</label>
  <input id="site_name" name="site_name" value="{{ site_name() }}">
  <label for="site_tagline">Tagline</label>
  <input id="site_tagline" name="site_tagline" value="{{ site_tagline }}">
  <p><button type="submit">Save</button>
     <a href="{{ url_for('hub') }}" style="margin-left:1rem">Back</a></p>
</form>
""")


###############################################################################
# Authority console
###############################################################################
@app.route("/authority")
def authority():
    dev_required()
    return render_template_string(
        TEMPL_AUTHORITY,
        data=authority_snapshot(db=get_db()),
        active=session.get("dev_party", SYSTEM_PARTY_ID),
        title="Authority Tables",
    )


TEMPL_AUTHORITY = wrap("""
<div class="main">
  <h1>Authority Tables</h1>
  <p><a href="{{ url_for('hub') }}">← Back to hub</a></p>

  <h3>Parties ({{ data.party|length }})</h3>
  <table>
    <tr><th>Code</th><th>Name</th><th>Created</th><th></th></tr>
    {% for p in data.party %}
    <tr>
      <td>{{ p['id'] }}</td><td>{{ p['name'] }}{% if p['id'] == active %} <strong>(active)</strong>{% endif %}</td>
      <td>{{ p['created_at'] }}</td>
      <td>
        <form method="post" action="{{ url_for('authority_enter', party_id=p['id']) }}" class="inline">
          <input type="hidden" name="csrf" value="{{ csrf_token() }}">
          <button type="submit" class="ghost">Enter</button>
        </form>
        {% if p['id'] != SYSTEM_PARTY_ID %}
        <a href="{{ url_for('authority_delete_view', table='party', row_id=p['id']) }}">Delete</a>
        {% endif %}
      </td>
    </tr>
    {% endfor %}
  </table>

  <h3>Users ({{ data.user|length }})</h3>
  <table>
    <tr><th>Name</th><th>Role</th><th>Party</th><th></th></tr>
    {% for u in data.user %}
    <tr>
      <td>{{ u['name'] }}</td><td><span class="pill">{{ u['role'] }}</span></td><td>{{ u['party_id'] }}</td>
      <td>{% if u['role'] != ROLE_DEV %}<a href="{{ url_for('authority_delete_view', table='user', row_id=u['id']) }}">Delete</a>{% endif %}</td>
    </tr>
    {% endfor %}
  </table>

  <h3>Folders ({{ data.folder|length }})</h3>
  <table>
    <tr><th>Name</th><th>Party</th><th></th></tr>
    {% for f in data.folder %}
    <tr>
      <td>{{ f['icon']|icon }} {{ f['name'] }}</td><td>{{ f['party_id'] }}</td>
      <td><a href="{{ url_for('authority_delete_view', table='folder', row_id=f['id']) }}">Delete</a></td>
    </tr>
    {% endfor %}
  </table>

  <h3>Cards ({{ data.card|length }})</h3>
  <table>
    <tr><th>Name</th><th>Link</th><th>Party</th><th></th></tr>
    {% for c in data.card %}
    <tr>
      <td>{{ c['display_name'] }}</td><td>{{ c['external_link']|host }}</td><td>{{ c['party_id'] }}</td>
      <td><a href="{{ url_for('authority_delete_view', table='card', row_id=c['id']) }}">Delete</a></td>
    </tr>
    {% endfor %}
  </table>
</div>
""")


@app.route("/authority/<table>/<row_id>/delete", methods=["GET", "POST"])
def authority_delete_view(table, row_id):
    dev_required()
    db = get_db()
    row = authority_row(table, row_id, db=db)
    if row is None:
        abort(404)

    if request.method == "POST":
        try:
            authority_delete(table, row_id, db=db)
        except ConnectorError as exc:
            flash(str(exc), "error")
        else:
            flash(f"{table.capitalize()} removed.")
        return redirect(url_for("authority"))

    label = row["display_name"] if table == "card" else row["name"]
    return render_template_string(
        TEMPL_CONFIRM_DELETE, table=table, row=row, label=label, title="Confirm delete"
    )


TEMPL_CONFIRM_DELETE = wrap("""
<div class="panel" style="border-left:4px solid var(--bad)">
  <h2 style="margin-top:0">Delete {{ table }}?</h2>
  <p><strong>{{ label }}</strong> <small style="color:var(--muted)">({{ row['id'] }})</small></p>
  {% if table == 'party' %}<p>Every member, folder, card and follow of this hub goes with it.</p>{% endif %}
  {% if table == 'folder' %}<p>All cards in this folder are removed too.</p>{% endif %}
  <form method="post">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <button type="submit" class="danger">Yes – delete it</button>
    <a href="{{ url_for('authority') }}" style="margin-left:1rem">Cancel</a>
  </form>
</div>
""")


@app.route("/authority/party/<party_id>/enter", methods=["POST"])
def authority_enter(party_id):
    dev_required()
    if find_party(party_id, db=get_db()) is None:
        abort(404)
    session["dev_party"] = party_id
    return redirect(url_for("hub"))


###############################################################################
# Resources
###############################################################################
@app.route("/favicon.svg")
def favicon():
    """64 px SVG favicon with the site's initial."""
    letter = (site_name() or "C")[0].upper()
    svg = f'''<svg xmlns="http://www.w3.org/2000/svg"
                    width="64" height="64" viewBox="0 0 64 64">
      <rect width="64" height="64" rx="14" ry="14" fill="#4f46e5"/>
      <text x="32" y="46" text-anchor="middle"
            font-family="Arial,Helvetica,sans-serif"
            font-size="42" font-weight="800"
            fill="#FFFFFF">{letter}</text>
    </svg>'''
    return Response(
        svg,
        mimetype="image/svg+xml",
        headers={"Cache-Control": "public, max-age=86400"},
    )


@app.route("/robots.txt")
def robots():
    """Hubs are private spaces; keep crawlers on the landing page."""
    rules = "User-agent: *\nAllow: /$\nDisallow: /\n"
    return (
        Response(rules, mimetype="text/plain", direct_passthrough=True),
        200,
        {"Cache-Control": "public, max-age=86400"},
    )


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(403)
def forbidden(exc):
    return render_template_string(TEMPL_403, title=site_name()), 403


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render_template_string(TEMPL_404, title=site_name()), 404


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 page for production.  With debug on, Flask bypasses this
    handler and the Werkzeug debugger shows the traceback instead.
    """
    app.logger.error("Unhandled error on %s: %s", request.path, exc)
    return render_template_string(TEMPL_500, title=site_name()), 500


TEMPL_403 = wrap("""
<div class="panel">
  <h2 style="margin-top:0">Not allowed</h2>
  <p>You need to be signed in with the right role for that.
     <a href="{{ url_for('index') }}">Back to the front page</a></p>
</div>
""")

TEMPL_404 = wrap("""
<div class="panel">
  <h2 style="margin-top:0">Page not found</h2>
  <p>The URL you asked for doesn’t exist.
     <a href="{{ url_for('index') }}">Back to the front page</a></p>
</div>
""")

TEMPL_500 = wrap("""
<div class="panel">
  <h2 style="margin-top:0">Internal Server Error</h2>
  <p>Our fault, not yours. Please try again in a minute.</p>
</div>
""")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    import sys

    if len(sys.argv) > 1 and sys.argv[1] == "init":
        with app.app_context():
            cli_init()
    else:
        app.run(debug=True)
