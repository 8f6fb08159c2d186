"""
tests/test_cards.py
"""
from __future__ import annotations

import pytest

from connector import hub
from connector.hub import (
    SYSTEM_PARTY_ID,
    ConnectorError,
    add_folder,
    create_card,
    filter_cards,
    get_db,
    normalize_link,
)

CSRF = "test-token"
ADMIN_ID = "admin-12-1"


# ───────────────────────── helpers ────────────────────────────────────
def _user(uid: str):
    return get_db().execute("SELECT * FROM user WHERE id=?", (uid,)).fetchone()


def _folder(fid: str):
    return get_db().execute("SELECT * FROM folder WHERE id=?", (fid,)).fetchone()


def _card(cid: str):
    return get_db().execute("SELECT * FROM card WHERE id=?", (cid,)).fetchone()


def _add_card(client, folder_id: str, name: str, link: str, **extra):
    return client.post(
        "/cards",
        data={
            "folder_id": folder_id,
            "display_name": name,
            "external_link": link,
            "csrf": CSRF,
            **extra,
        },
        follow_redirects=True,
    )


# ───────────────────────── pure helpers ───────────────────────────────
@pytest.mark.parametrize(
    "raw,expected",
    [
        ("x.com/alice", "https://x.com/alice"),
        ("  https://x.com/a ", "https://x.com/a"),
        ("http://old.site", "http://old.site"),
        ("", ""),
    ],
)
def test_normalize_link(raw, expected):
    assert normalize_link(raw) == expected


def test_filter_cards_by_folder_and_query():
    cards = [
        {"id": "a", "folder_id": "f1", "display_name": "Alice", "external_link": "https://x.com/al", "timestamp": 1},
        {"id": "b", "folder_id": "f1", "display_name": "Bob", "external_link": "https://linkedin.com/in/bob", "timestamp": 3},
        {"id": "c", "folder_id": "f2", "display_name": "Alina", "external_link": "https://x.com/alina", "timestamp": 2},
    ]
    assert [c["id"] for c in filter_cards(cards, "f1")] == ["b", "a"]
    assert [c["id"] for c in filter_cards(cards, "f1", "ALI")] == ["a"]
    assert [c["id"] for c in filter_cards(cards, "f1", "linkedin")] == ["b"]
    assert filter_cards(cards, None, "") == []


# ───────────────────────── create_card ────────────────────────────────
def test_member_has_one_card_per_folder(client, party, make_member):
    db = get_db()
    fid = add_folder("Twitter", "12", db=db)
    alice = _user(make_member("alice")["id"])

    create_card(alice, _folder(fid), "Alice", "x.com/alice", party_id="12", db=db)
    with pytest.raises(ConnectorError, match="Profile exists already."):
        create_card(alice, _folder(fid), "Alice 2", "x.com/alice2", party_id="12", db=db)


def test_admin_may_hold_several_cards(client, party):
    db = get_db()
    fid = add_folder("Twitter", "12", db=db)
    admin = _user(ADMIN_ID)
    create_card(admin, _folder(fid), "One", "x.com/1", party_id="12", db=db)
    create_card(admin, _folder(fid), "Two", "x.com/2", party_id="12", db=db)
    assert db.execute("SELECT COUNT(*) FROM card").fetchone()[0] == 2


def test_card_in_global_folder_belongs_to_system_hub(client, party, make_member):
    db = get_db()
    fid = add_folder("Everyone", SYSTEM_PARTY_ID, db=db)
    alice = _user(make_member("alice")["id"])
    cid = create_card(alice, _folder(fid), "Alice", "x.com/alice", party_id="12", db=db)
    assert _card(cid)["party_id"] == SYSTEM_PARTY_ID


@pytest.mark.parametrize("name,link", [("", "x.com/a"), ("Alice", "  ")])
def test_card_requires_name_and_link(client, party, name, link):
    db = get_db()
    fid = add_folder("Twitter", "12", db=db)
    with pytest.raises(ConnectorError, match="Name and link are required."):
        create_card(_user(ADMIN_ID), _folder(fid), name, link, party_id="12", db=db)


# ───────────────────────── HTTP ───────────────────────────────────────
def test_add_card_shows_in_grid(client, party, make_member, sign_in):
    fid = add_folder("Twitter", "12", db=get_db())
    alice = make_member("alice")
    sign_in(client, alice["id"])

    rv = _add_card(client, fid, "Alice", "x.com/alice")
    assert rv.status_code == 200
    assert b"Profile added successfully!" in rv.data
    assert b'href="https://x.com/alice"' in rv.data
    assert b"Your Identity" in rv.data

    rv = _add_card(client, fid, "Alice again", "x.com/alice2")
    assert b"Profile exists already." in rv.data


def test_add_card_without_folder(client, party, sign_in):
    sign_in(client, ADMIN_ID)
    rv = client.post("/cards", data={"csrf": CSRF}, follow_redirects=True)
    assert b"Please select a community folder first." in rv.data


def test_search_filters_grid(client, party, sign_in):
    db = get_db()
    fid = add_folder("Twitter", "12", db=db)
    admin = _user(ADMIN_ID)
    create_card(admin, _folder(fid), "Alice", "x.com/alice", party_id="12", db=db)
    create_card(admin, _folder(fid), "Bob", "x.com/bob", party_id="12", db=db)
    sign_in(client, ADMIN_ID)

    rv = client.get(f"/hub?f={fid}&q=bob")
    assert b"x.com/bob" in rv.data
    assert b"x.com/alice" not in rv.data

    rv = client.get(f"/hub?f={fid}&q=zzz")
    assert b"No results for" in rv.data


def test_owner_edits_card(client, party, make_member, sign_in):
    db = get_db()
    fid = add_folder("Twitter", "12", db=db)
    alice = make_member("alice")
    cid = create_card(_user(alice["id"]), _folder(fid), "Alice", "x.com/a", party_id="12", db=db)
    sign_in(client, alice["id"])

    assert client.get(f"/cards/{cid}/edit").status_code == 200
    rv = client.post(
        f"/cards/{cid}/edit",
        data={"display_name": "Alice B.", "external_link": "bsky.app/alice", "csrf": CSRF},
    )
    assert rv.status_code == 302
    row = _card(cid)
    assert row["display_name"] == "Alice B."
    assert row["external_link"] == "https://bsky.app/alice"


def test_other_member_cannot_edit(client, party, make_member, sign_in):
    db = get_db()
    fid = add_folder("Twitter", "12", db=db)
    alice = make_member("alice")
    bob = make_member("bob")
    cid = create_card(_user(alice["id"]), _folder(fid), "Alice", "x.com/a", party_id="12", db=db)

    sign_in(client, bob["id"])
    assert client.get(f"/cards/{cid}/edit").status_code == 403
    assert client.post(f"/cards/{cid}/delete", data={"csrf": CSRF}).status_code == 403

    sign_in(client, ADMIN_ID)
    assert client.post(f"/cards/{cid}/delete", data={"csrf": CSRF}).status_code == 302
    assert _card(cid) is None


def test_polish_uses_optimized_name(client, party, sign_in, monkeypatch):
    fid = add_folder("Twitter", "12", db=get_db())
    monkeypatch.setattr(hub, "optimize_identity", lambda name, link: "Growth Guru")
    sign_in(client, ADMIN_ID)
    _add_card(client, fid, "bob", "x.com/bob", polish="1")
    row = get_db().execute("SELECT * FROM card").fetchone()
    assert row["display_name"] == "Growth Guru"


def test_new_card_is_highlighted(client, party, sign_in):
    fid = add_folder("Twitter", "12", db=get_db())
    sign_in(client, ADMIN_ID)
    rv = client.post(
        "/cards",
        data={"folder_id": fid, "display_name": "A", "external_link": "x.com/a", "csrf": CSRF},
    )
    cid = get_db().execute("SELECT id FROM card").fetchone()["id"]
    assert f"hl={cid}" in rv.headers["Location"]
    assert rv.headers["Location"].endswith(f"#card-{cid}")
