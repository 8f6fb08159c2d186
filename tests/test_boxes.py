"""
tests/test_boxes.py
"""
from __future__ import annotations

from connector.hub import (
    BOX_DEFAULT_CONTENT,
    DEV_USER_ID,
    _create_dev,
    add_folder,
    create_card,
    get_db,
)

CSRF = "test-token"


# ───────────────────────── helpers ────────────────────────────────────
def _dev_in_hub(client, sign_in) -> str:
    """Sign the developer in, entered into hub #12; return a folder id."""
    db = get_db()
    _create_dev(db)
    fid = add_folder("Twitter", "12", db=db)
    sign_in(client, DEV_USER_ID, dev_party="12")
    return fid


def _box(bid: str):
    return get_db().execute(
        "SELECT * FROM instruction_box WHERE id=?", (bid,)
    ).fetchone()


def _only_box():
    return get_db().execute("SELECT * FROM instruction_box").fetchone()


# ───────────────────────── tests ──────────────────────────────────────
def test_add_box_with_defaults(client, party, sign_in):
    fid = _dev_in_hub(client, sign_in)
    rv = client.post("/boxes", data={"folder_id": fid, "csrf": CSRF})
    assert rv.status_code == 302
    assert "mode=workflow" in rv.headers["Location"]

    box = _only_box()
    assert box["id"].startswith("box-")
    assert box["content"] == BOX_DEFAULT_CONTENT
    assert (box["x"], box["y"], box["width"], box["height"]) == (50, 50, 320, 200)
    assert box["party_id"] == "12"


def test_box_renders_markdown(client, party, sign_in):
    fid = _dev_in_hub(client, sign_in)
    client.post("/boxes", data={"folder_id": fid, "csrf": CSRF})
    rv = client.get(f"/hub?f={fid}&mode=workflow")
    assert b"<h2>System Instructions</h2>" in rv.data
    assert b"<strong>Key Members</strong>" in rv.data


def test_edit_move_delete_box(client, party, sign_in):
    fid = _dev_in_hub(client, sign_in)
    client.post("/boxes", data={"folder_id": fid, "csrf": CSRF})
    bid = _only_box()["id"]

    rv = client.post(f"/boxes/{bid}", data={"content": "Be *kind*", "csrf": CSRF})
    assert rv.status_code == 302
    assert _box(bid)["content"] == "Be *kind*"

    rv = client.post(f"/boxes/{bid}", data={"x": "140", "y": "75", "csrf": CSRF})
    assert rv.status_code == 204
    assert (_box(bid)["x"], _box(bid)["y"]) == (140, 75)

    assert client.post(f"/boxes/{bid}", data={"x": "far", "csrf": CSRF}).status_code == 400

    client.post(f"/boxes/{bid}/delete", data={"csrf": CSRF})
    assert _box(bid) is None


def test_move_card_on_canvas(client, party, sign_in):
    fid = _dev_in_hub(client, sign_in)
    db = get_db()
    admin = db.execute("SELECT * FROM user WHERE id='admin-12-1'").fetchone()
    folder = db.execute("SELECT * FROM folder WHERE id=?", (fid,)).fetchone()
    cid = create_card(admin, folder, "Admin", "x.com/admin", party_id="12", db=db)

    rv = client.post(
        f"/cards/{cid}/move", headers={"X-CSRFToken": CSRF}, data={"x": "10", "y": "20"}
    )
    assert rv.status_code == 204
    card = db.execute("SELECT x, y FROM card WHERE id=?", (cid,)).fetchone()
    assert (card["x"], card["y"]) == (10, 20)

    rv = client.get(f"/hub?f={fid}&mode=workflow")
    assert b"left:10px;top:20px" in rv.data


def test_deleting_folder_removes_boxes(client, party, sign_in):
    fid = _dev_in_hub(client, sign_in)
    client.post("/boxes", data={"folder_id": fid, "csrf": CSRF})
    client.post(f"/folders/{fid}/delete", data={"csrf": CSRF})
    assert _only_box() is None


def test_boxes_are_developer_only(client, party, sign_in):
    fid = add_folder("Twitter", "12", db=get_db())
    sign_in(client, "admin-12-1")
    assert client.post("/boxes", data={"folder_id": fid, "csrf": CSRF}).status_code == 403
    assert client.get(f"/hub?f={fid}&mode=workflow").status_code == 200
    assert b'id="canvas"' not in client.get(f"/hub?f={fid}&mode=workflow").data
