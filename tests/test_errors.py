"""
tests/test_errors.py
"""
from __future__ import annotations

from jebchit.dashboard import LANGUAGE_KEY


def test_not_found(client):
    """Completely unknown URL → 404 page."""
    rv = client.get("/does/not/exist")
    assert rv.status_code == 404
    assert "الصفحة غير موجودة" in rv.get_data(as_text=True)


def test_not_found_in_english(client):
    client.set_cookie(LANGUAGE_KEY, "en")
    rv = client.get("/does/not/exist")
    assert b"Page not found" in rv.data


def test_forbidden_offers_login(client):
    rv = client.get("/dashboard")
    assert rv.status_code == 403
    html = rv.get_data(as_text=True)
    assert "الدخول مرفوض" in html
    assert 'href="/login"' in html


def test_forbidden_page_for_signed_in_csrf_failure(admin):
    rv = admin.post("/settings", data={})
    assert rv.status_code == 403
    assert 'href="/login"' not in rv.get_data(as_text=True)
