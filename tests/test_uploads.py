"""
tests/test_uploads.py – image uploads to R2 for posts and profile icons.
"""
from __future__ import annotations

import io
from typing import Any

import pytest
from botocore.exceptions import ClientError

import fukubun.app as fukubun_app
from conftest import CSRF, login_as
from fukubun.app import get_db

PUBLIC_BASE = "https://img.example"


# ───────────────────────── helpers ────────────────────────────────────
class _FakeS3:
    """Stands in for the boto3 S3 client; records every upload."""

    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.uploads: list[dict[str, Any]] = []

    def upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None):
        if self.fail:
            raise ClientError(
                {"Error": {"Code": "InternalError", "Message": "bucket on fire"}},
                "PutObject",
            )
        self.uploads.append(
            {"bucket": bucket, "key": key, "body": fileobj.read(), "extra": ExtraArgs}
        )


@pytest.fixture
def r2(monkeypatch):
    """Configure R2 through the environment and swap in a fake client."""
    for key, value in {
        "R2_ACCOUNT_ID": "acct",
        "R2_ACCESS_KEY_ID": "key-id",
        "R2_SECRET_ACCESS_KEY": "shh",
        "R2_BUCKET": "fukubun-test",
        "R2_PUBLIC_BASE": PUBLIC_BASE,
    }.items():
        monkeypatch.setenv(key, value)
    monkeypatch.delenv("R2_ENDPOINT", raising=False)

    fake = _FakeS3()
    created: list[dict] = []

    def _client(service, **kw):
        created.append({"service": service, **kw})
        return fake

    monkeypatch.setattr(fukubun_app.boto3, "client", _client)
    fake.created = created
    return fake


def _png(name: str = "cat.png", mime: str = "image/png"):
    return (io.BytesIO(b"\x89PNG fake bytes"), name, mime)


def _newest_post(member) -> dict:
    return dict(get_db().execute(
        "SELECT * FROM post WHERE owner_id=? ORDER BY id DESC LIMIT 1", (member["id"],)
    ).fetchone())


# ───────────────────────── posts ──────────────────────────────────────
def test_post_image_lands_in_r2(client, make_member, r2):
    member = make_member()
    login_as(client, member)
    rv = client.post(
        "/post",
        data={"message": "look", "image": _png(), "csrf": CSRF},
        content_type="multipart/form-data",
    )
    assert rv.status_code == 302

    upload = r2.uploads[0]
    assert upload["bucket"] == "fukubun-test"
    assert upload["key"].startswith("posts/timeline/")
    assert upload["key"].endswith(".png")
    assert upload["extra"] == {"ContentType": "image/png"}
    assert upload["body"] == b"\x89PNG fake bytes"
    assert r2.created[0]["endpoint_url"] == "https://acct.r2.cloudflarestorage.com"

    post = _newest_post(member)
    assert post["image"] == f"{PUBLIC_BASE}/{upload['key']}"
    assert post["image"].encode() in client.get("/timeline").data


def test_image_alone_is_enough_for_a_post(client, make_member, r2):
    member = make_member()
    login_as(client, member)
    rv = client.post(
        "/tokumei_post",
        data={"message": "", "image": _png("pic.webp", "image/webp"), "csrf": CSRF},
        content_type="multipart/form-data",
    )
    assert rv.status_code == 302
    post = _newest_post(member)
    assert post["kind"] == "anonymous"
    assert post["image"].startswith(f"{PUBLIC_BASE}/posts/anonymous/")


def test_non_image_upload_is_rejected(client, make_member, r2):
    member = make_member()
    login_as(client, member)
    rv = client.post(
        "/post",
        data={
            "message": "keep my words",
            "image": (io.BytesIO(b"hello"), "notes.txt", "text/plain"),
            "csrf": CSRF,
        },
        content_type="multipart/form-data",
    )
    assert rv.status_code == 400
    assert b"Only PNG, JPEG, WebP or GIF images are allowed" in rv.data
    assert b"keep my words" in rv.data
    assert r2.uploads == []
    assert get_db().execute(
        "SELECT COUNT(*) FROM post WHERE owner_id=?", (member["id"],)
    ).fetchone()[0] == 0


def test_r2_failure_is_logged_and_flashed(client, make_member, r2, caplog):
    r2.fail = True
    member = make_member()
    login_as(client, member)
    rv = client.post(
        "/post",
        data={"message": "doomed", "image": _png(), "csrf": CSRF},
        content_type="multipart/form-data",
    )
    assert rv.status_code == 400
    assert b"Upload failed" in rv.data
    assert "R2 upload failed" in caplog.text
    assert get_db().execute(
        "SELECT COUNT(*) FROM post WHERE owner_id=?", (member["id"],)
    ).fetchone()[0] == 0


def test_upload_without_r2_settings(client, make_member, monkeypatch):
    for key in fukubun_app.R2_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    login_as(client, make_member())
    rv = client.post(
        "/post",
        data={"message": "x", "image": _png(), "csrf": CSRF},
        content_type="multipart/form-data",
    )
    assert rv.status_code == 400
    assert b"Image uploads are not configured" in rv.data


# ───────────────────────── profile icons ──────────────────────────────
def _icon(member) -> str | None:
    return get_db().execute(
        "SELECT icon FROM user WHERE id=?", (member["id"],)
    ).fetchone()["icon"]


def test_profile_icon_upload_and_reset(client, make_member, r2):
    member = make_member()
    login_as(client, member)

    rv = client.post(
        "/profile/edit",
        data={"name": "Icon Owner", "bio": "", "icon": _png("me.jpg", "image/jpeg"), "csrf": CSRF},
        content_type="multipart/form-data",
    )
    assert rv.status_code == 302
    icon = _icon(member)
    assert icon.startswith(f"{PUBLIC_BASE}/icons/")
    assert icon.endswith(".jpg")
    assert icon.encode() in client.get("/profile").data

    # saving again without a file keeps the icon
    client.post("/profile/edit", data={"name": "Icon Owner", "csrf": CSRF})
    assert _icon(member) == icon

    client.post("/profile/edit", data={"name": "Icon Owner", "reset_icon": "true", "csrf": CSRF})
    assert _icon(member) is None


def test_profile_icon_failure_keeps_old_icon(client, make_member, r2):
    member = make_member()
    login_as(client, member)
    client.post(
        "/profile/edit",
        data={"name": "A", "icon": _png(), "csrf": CSRF},
        content_type="multipart/form-data",
    )
    before = _icon(member)

    r2.fail = True
    rv = client.post(
        "/profile/edit",
        data={"name": "B", "icon": _png(), "csrf": CSRF},
        content_type="multipart/form-data",
    )
    assert rv.status_code == 400
    assert b"Upload failed" in rv.data
    assert _icon(member) == before
