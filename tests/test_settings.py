"""
tests/test_settings.py
"""
import os

import pytest

import jebchit.dashboard as dash
from jebchit.dashboard import SETTINGS_ENV_KEYS, get_setting, sign_in

from conftest import ADMIN_EMAIL, ADMIN_PASSWORD, CSRF


@pytest.fixture
def env_file(tmp_path, monkeypatch):
    """A private .env per test; whatever merge_env puts in os.environ is undone."""
    path = tmp_path / ".env"
    monkeypatch.setattr(dash, "ENV_FILE", path)
    for key in SETTINGS_ENV_KEYS:
        monkeypatch.setenv(key, "")
    return path


# ────────────────────────────────────────────────────────────────
def test_settings_requires_login(client):
    rv = client.get("/settings")
    assert rv.status_code == 403

def test_settings_get_ok(admin):
    rv = admin.get("/settings")
    assert rv.status_code == 200
    assert b"name=\"csrf\"" in rv.data    # token present in form

def test_settings_csrf_rejects(admin):
    rv = admin.post("/settings", data={}, follow_redirects=False)
    assert rv.status_code == 403          # missing token → blocked

def test_settings_update_site_name_and_timezone(admin, env_file):
    rv = admin.post(
        "/settings",
        data={"site_name": "Jebchit Admin", "timezone": "Europe/Berlin", "csrf": CSRF},
        follow_redirects=True,
    )
    assert rv.status_code == 200
    assert get_setting("site_name") == "Jebchit Admin"
    assert get_setting("timezone") == "Europe/Berlin"
    assert "Jebchit Admin" in rv.get_data(as_text=True)

def test_unknown_timezone_ignored(admin, env_file):
    admin.post("/settings", data={"timezone": "Mars/Olympus", "csrf": CSRF})
    assert get_setting("timezone") != "Mars/Olympus"

def test_storage_keys_saved_to_env(admin, env_file):
    admin.post(
        "/settings",
        data={
            "csrf": CSRF,
            "R2_ACCOUNT_ID": "acct",
            "R2_BUCKET": "media",
            "VIDEO_UPLOAD_URL": "https://videos.example.org/upload",
        },
    )
    text = env_file.read_text()
    assert "R2_ACCOUNT_ID=acct" in text
    assert "VIDEO_UPLOAD_URL=https://videos.example.org/upload" in text
    assert "R2_SECRET_ACCESS_KEY" not in text      # empty fields are skipped
    assert os.environ["R2_BUCKET"] == "media"
    assert dash.VideoUploader().endpoint == "https://videos.example.org/upload"

    # saved secrets are never echoed back into the form
    html = admin.get("/settings").get_data(as_text=True)
    assert 'value="acct"' not in html

def test_change_password(admin):
    rv = admin.post(
        "/settings",
        data={"csrf": CSRF, "action": "password",
              "current_password": "wrong-one", "new_password": "whatever-new"},
        follow_redirects=True,
    )
    assert "غير صحيحة" in rv.get_data(as_text=True)

    admin.post(
        "/settings",
        data={"csrf": CSRF, "action": "password",
              "current_password": ADMIN_PASSWORD, "new_password": "another-pass"},
    )
    assert sign_in(ADMIN_EMAIL, "another-pass", db=dash.get_db())

    # put it back for the rest of the session
    admin.post(
        "/settings",
        data={"csrf": CSRF, "action": "password",
              "current_password": "another-pass", "new_password": ADMIN_PASSWORD},
    )
    assert sign_in(ADMIN_EMAIL, ADMIN_PASSWORD, db=dash.get_db())
