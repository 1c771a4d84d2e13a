"""
tests/test_timeline.py
"""
from __future__ import annotations

import re

from conftest import CSRF, login_as
from fukubun.app import create_post, get_db, list_visible


def _post(client, message: str, **extra):
    return client.post("/post", data={"message": message, "csrf": CSRF, **extra})


def _newest_id(member) -> int:
    return get_db().execute(
        "SELECT MAX(id) FROM post WHERE owner_id=?", (member["id"],)
    ).fetchone()[0]


# ───────────────────────── posting ────────────────────────────────────
def test_post_shows_up_on_timeline(client, make_member):
    alice = make_member()
    login_as(client, alice)
    rv = _post(client, "hello timeline")
    assert rv.status_code == 302
    assert rv.headers["Location"].endswith("/timeline")

    rv = client.get("/timeline")
    assert b"hello timeline" in rv.data
    assert f"@{alice['username']}".encode() in rv.data


def test_empty_post_without_image_is_rejected(client, make_member):
    login_as(client, make_member())
    rv = _post(client, "   ")
    assert rv.status_code == 400
    assert b"Write something first" in rv.data


def test_post_from_profile_returns_to_profile(client, make_member):
    login_as(client, make_member())
    rv = _post(client, "from my profile", redirect="profile")
    assert rv.headers["Location"].endswith("/profile")


def test_timeline_is_newest_first(client, make_member):
    alice = make_member()
    db = get_db()
    first = create_post(db, alice, kind="timeline", message="older")
    second = create_post(db, alice, kind="timeline", message="newer")
    ids = [p["id"] for p in list_visible(db, alice, "timeline")]
    assert ids.index(second) < ids.index(first)


def test_post_detail_and_missing_post(client, make_member):
    alice = make_member()
    login_as(client, alice)
    _post(client, "look at me")
    post_id = _newest_id(alice)
    assert b"look at me" in client.get(f"/timeline/post/{post_id}").data
    assert client.get("/timeline/post/999999").status_code == 404


# ───────────────────────── deletion ───────────────────────────────────
def test_owner_deletes_post(client, make_member):
    alice = make_member()
    login_as(client, alice)
    _post(client, "short lived")
    post_id = _newest_id(alice)

    rv = client.post(f"/delete/{post_id}", data={"csrf": CSRF})
    assert rv.status_code == 302
    assert client.get(f"/timeline/post/{post_id}").status_code == 404


def test_delete_speaks_json_when_asked(client, make_member):
    alice, bob = make_member(), make_member()
    post_id = create_post(get_db(), alice, kind="timeline", message="mine")
    headers = {"Accept": "application/json", "X-CSRFToken": CSRF}

    login_as(client, bob)
    rv = client.post(f"/delete/{post_id}", headers=headers)
    assert rv.status_code == 403
    assert rv.get_json() == {"success": False}

    login_as(client, alice)
    rv = client.post(f"/delete/{post_id}", headers=headers)
    assert rv.status_code == 200
    assert rv.get_json() == {"success": True}

    rv = client.post(f"/delete/{post_id}", headers=headers)
    assert rv.status_code == 404


def test_delete_requires_login(client):
    rv = client.post("/delete/1", headers={"Accept": "application/json"})
    assert rv.status_code == 401


def test_other_member_cannot_delete(client, make_member):
    alice, bob = make_member(), make_member()
    post_id = create_post(get_db(), alice, kind="timeline", message="not yours")
    login_as(client, bob)
    rv = client.post(f"/delete/{post_id}", data={"csrf": CSRF})
    assert rv.status_code == 403


# ───────────────────────── comments ───────────────────────────────────
def _comments(post_id: int) -> list[str]:
    return [
        r["username"]
        for r in get_db().execute("SELECT username FROM comment WHERE post_id=?", (post_id,))
    ]


def test_one_comment_per_member(client, make_member):
    alice, bob = make_member(), make_member()
    post_id = create_post(get_db(), alice, kind="timeline", message="talk to me")
    login_as(client, bob)

    client.post(f"/comment/{post_id}", data={"message": "first!", "csrf": CSRF})
    client.post(f"/comment/{post_id}", data={"message": "second?", "csrf": CSRF})
    assert _comments(post_id) == [bob["username"]]

    rv = client.get(f"/timeline/post/{post_id}")
    assert b"first!" in rv.data
    assert b"second?" not in rv.data
    # the form disappears once you have commented
    assert f'action="/comment/{post_id}"'.encode() not in rv.data


def test_blank_comment_is_ignored(client, make_member):
    alice = make_member()
    post_id = create_post(get_db(), alice, kind="timeline", message="quiet")
    login_as(client, alice)
    client.post(f"/comment/{post_id}", data={"message": "  \n ", "csrf": CSRF})
    assert _comments(post_id) == []


def test_comment_author_removes_comment(client, make_member):
    alice, bob = make_member(), make_member()
    post_id = create_post(get_db(), alice, kind="timeline", message="hi")
    login_as(client, bob)
    client.post(f"/comment/{post_id}", data={"message": "  oops", "csrf": CSRF})
    row = get_db().execute(
        "SELECT id, message FROM comment WHERE post_id=?", (post_id,)
    ).fetchone()
    assert row["message"] == "oops"           # leading whitespace trimmed

    login_as(client, alice)                    # not the author
    client.post(f"/comment/delete/{post_id}/{row['id']}", data={"csrf": CSRF})
    assert _comments(post_id) == [bob["username"]]

    login_as(client, bob)
    client.post(f"/comment/delete/{post_id}/{row['id']}", data={"csrf": CSRF})
    assert _comments(post_id) == []


def test_comment_on_missing_post_is_404(client, make_member):
    login_as(client, make_member())
    rv = client.post("/comment/999999", data={"message": "hello?", "csrf": CSRF})
    assert rv.status_code == 404


# ───────────────────────── profiles + follows ─────────────────────────
def test_follow_and_unfollow(client, make_member):
    alice, bob = make_member(), make_member()
    login_as(client, alice)

    client.post(f"/follow/{bob['username']}", data={"csrf": CSRF})
    client.post(f"/follow/{bob['username']}", data={"csrf": CSRF})
    rv = client.get(f"/profile/{bob['username']}")
    assert b"1 followers" in rv.data
    assert b"Unfollow" in rv.data

    client.post(f"/unfollow/{bob['username']}", data={"csrf": CSRF})
    rv = client.get(f"/profile/{bob['username']}")
    assert b"0 followers" in rv.data


def test_own_profile_redirects_and_unknown_profile_404(client, make_member):
    alice = make_member()
    login_as(client, alice)
    rv = client.get(f"/profile/{alice['username']}")
    assert rv.status_code == 302
    assert rv.headers["Location"].endswith("/profile")
    assert client.get("/profile/nobody-here-at-all").status_code == 404


def test_profile_edit(client, make_member):
    alice = make_member()
    login_as(client, alice)
    rv = client.post(
        "/profile/edit",
        data={"name": "Alice Liddell", "bio": "down the rabbit hole", "csrf": CSRF},
    )
    assert rv.status_code == 302
    html = client.get("/profile").data.decode()
    assert "Alice Liddell" in html
    assert "down the rabbit hole" in html


def test_profile_lists_only_own_posts(client, make_member):
    alice, bob = make_member(), make_member()
    db = get_db()
    create_post(db, alice, kind="timeline", message="alice was here")
    create_post(db, bob, kind="timeline", message="bob was here")
    login_as(client, alice)
    html = client.get("/profile").data.decode()
    assert "alice was here" in html
    assert "bob was here" not in html
    assert re.search(r"just now|seconds? ago|minutes? ago", html)


def test_comments_only_on_timeline_posts(client, make_member):
    author, reader = make_member(), make_member()
    db = get_db()
    anon_id = create_post(db, author, kind="anonymous", message="no replies here")
    novel_id = create_post(db, author, kind="novel", message="nor here")
    login_as(client, reader)
    for post_id in (anon_id, novel_id):
        rv = client.post(f"/comment/{post_id}", data={"message": "hello", "csrf": CSRF})
        assert rv.status_code == 404
        assert _comments(post_id) == []
