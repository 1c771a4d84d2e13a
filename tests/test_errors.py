"""
tests/test_errors.py
"""
from __future__ import annotations

import sqlite3

from fukubun.app import app


def test_404_custom_page(client):
    """
    Any unknown URL yields the themed “Page not found” template.
    """
    resp = client.get("/this/route/does/not/exist")
    assert resp.status_code == 404
    # sanity-check that we really rendered *our* template, not Werkzeug’s
    assert b"Page not found" in resp.data
    assert b"fukubun" in resp.data


def test_500_handler_renders_friendly_page(client, monkeypatch):
    """
    Temporarily replace ``login`` with a view that crashes, but disable
    exception propagation so the global 500-handler can render the page.
    """
    def _boom():
        raise RuntimeError("kaboom!")

    # ➊ monkey-patch the failing view
    monkeypatch.setitem(app.view_functions, "login", _boom)

    # ➋ turn *off* propagation just for this test
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)

    resp = client.get("/login")            # handled by our 500-handler
    assert resp.status_code == 500
    assert b"Internal Server Error" in resp.data


def test_database_errors_are_logged_and_answered_with_500(client, monkeypatch, caplog):
    def _locked():
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setitem(app.view_functions, "login", _locked)

    resp = client.get("/login")
    assert resp.status_code == 500
    assert b"Internal Server Error" in resp.data
    assert "Database error on GET /login" in caplog.text
