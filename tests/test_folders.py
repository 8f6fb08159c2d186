"""
tests/test_folders.py
"""
from __future__ import annotations

import re

from connector.hub import (
    DEV_USER_ID,
    SYSTEM_PARTY_ID,
    _create_dev,
    add_folder,
    get_db,
    party_folders,
    rename_folder,
)

CSRF = "test-token"
ADMIN_ID = "admin-12-1"


# ───────────────────────── helpers ────────────────────────────────────
def _folder(fid: str):
    return get_db().execute("SELECT * FROM folder WHERE id=?", (fid,)).fetchone()


def _folder_id_from(location: str) -> str:
    match = re.search(r"[?&]f=([0-9a-f]+)", location)
    assert match, location
    return match.group(1)


# ───────────────────────── operations ─────────────────────────────────
def test_party_folders_include_global_sorted(client, party):
    db = get_db()
    add_folder("zeta", "12", db=db)
    add_folder("Alpha", "12", db=db)
    add_folder("Middle", SYSTEM_PARTY_ID, db=db)
    db.execute("INSERT INTO party (id, name, created_at) VALUES ('34', 'Other', 'x')")
    add_folder("Elsewhere", "34", db=db)

    names = [f["name"] for f in party_folders("12", db=db)]
    assert names == ["Alpha", "Middle", "zeta"]


def test_rename_with_blank_name_is_noop(client, party):
    db = get_db()
    fid = add_folder("Twitter", "12", db=db)
    assert rename_folder(_folder(fid), "   ", db=db) is False
    assert _folder(fid)["name"] == "Twitter"
    assert rename_folder(_folder(fid), " X ", db=db) is True
    assert _folder(fid)["name"] == "X"


# ───────────────────────── HTTP ───────────────────────────────────────
def test_admin_adds_folder(client, party, sign_in):
    sign_in(client, ADMIN_ID)
    rv = client.post("/folders", data={"name": "LinkedIn", "csrf": CSRF})
    assert rv.status_code == 302
    fid = _folder_id_from(rv.headers["Location"])
    row = _folder(fid)
    assert row["name"] == "LinkedIn"
    assert row["party_id"] == "12"
    assert row["icon"] == "Folder"


def test_blank_folder_name_flashes_error(client, party, sign_in):
    sign_in(client, ADMIN_ID)
    rv = client.post("/folders", data={"name": " ", "csrf": CSRF}, follow_redirects=True)
    assert b"Folder name is required." in rv.data


def test_member_cannot_manage_folders(client, party, make_member, sign_in):
    fid = add_folder("Twitter", "12", db=get_db())
    alice = make_member("alice")
    sign_in(client, alice["id"])
    assert client.post("/folders", data={"name": "X", "csrf": CSRF}).status_code == 403
    assert (
        client.post(f"/folders/{fid}/rename", data={"name": "Y", "csrf": CSRF}).status_code
        == 403
    )
    assert client.post(f"/folders/{fid}/delete", data={"csrf": CSRF}).status_code == 403


def test_admin_cannot_touch_global_folder(client, party, sign_in):
    fid = add_folder("Everyone", SYSTEM_PARTY_ID, db=get_db())
    sign_in(client, ADMIN_ID)
    rv = client.post(f"/folders/{fid}/rename", data={"name": "Mine", "csrf": CSRF})
    assert rv.status_code == 403
    assert _folder(fid)["name"] == "Everyone"


def test_admin_rename_and_delete(client, party, make_member, sign_in):
    db = get_db()
    fid = add_folder("Twitter", "12", db=db)
    alice = make_member("alice")
    db.execute(
        """INSERT INTO card (id, user_id, folder_id, party_id, display_name,
                             external_link, timestamp)
           VALUES ('c1', ?, ?, '12', 'alice', 'https://x.com/alice', 1)""",
        (alice["id"], fid),
    )
    db.commit()

    sign_in(client, ADMIN_ID)
    client.post(f"/folders/{fid}/rename", data={"name": "X", "csrf": CSRF})
    assert _folder(fid)["name"] == "X"

    rv = client.post(f"/folders/{fid}/delete", data={"csrf": CSRF})
    assert rv.status_code == 302
    assert _folder(fid) is None
    assert db.execute("SELECT 1 FROM card WHERE id='c1'").fetchone() is None


def test_folder_of_other_hub_is_404(client, party, sign_in):
    db = get_db()
    db.execute("INSERT INTO party (id, name, created_at) VALUES ('34', 'Other', 'x')")
    fid = add_folder("Private", "34", db=db)
    sign_in(client, ADMIN_ID)
    rv = client.post(f"/folders/{fid}/delete", data={"csrf": CSRF})
    assert rv.status_code == 404


def test_dev_manages_global_folders(client, sign_in):
    db = get_db()
    _create_dev(db)
    fid = add_folder("Everyone", SYSTEM_PARTY_ID, db=db)

    sign_in(client, DEV_USER_ID)
    client.post(f"/folders/{fid}/rename", data={"name": "World", "csrf": CSRF})
    assert _folder(fid)["name"] == "World"

    rv = client.post("/folders", data={"name": "Announcements", "csrf": CSRF})
    new_id = _folder_id_from(rv.headers["Location"])
    assert _folder(new_id)["party_id"] == SYSTEM_PARTY_ID
