"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from botocore.exceptions import ClientError
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from jebchit.dashboard import app, create_user, get_db, init_db

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "secret-pass"
CSRF = "test-token"

R2_TEST_CFG = {
    "R2_ACCOUNT_ID": "acct",
    "R2_ACCESS_KEY_ID": "key",
    "R2_SECRET_ACCESS_KEY": "secret",
    "R2_BUCKET": "media",
    "R2_PUBLIC_BASE": "https://cdn.example.org",
}


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    db_file = tmp_path_factory.mktemp("data") / "test.sqlite3"
    return db_file


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path, tmp_path_factory: pytest.TempPathFactory):
    """
    Configure the Flask app *once* before the first test is collected,
    and seed the admin account every login helper relies on.
    """
    from jebchit import dashboard

    mp = MonkeyPatch()
    # settings writes must never touch the real jebchit/.env
    mp.setattr(dashboard, "ENV_FILE", tmp_path_factory.mktemp("env") / ".env")
    for key in (*dashboard.R2_ENV_KEYS, dashboard.VIDEO_ENV_KEY):
        mp.delenv(key, raising=False)

    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        SESSION_COOKIE_SECURE=False,
    )
    with app.app_context():
        init_db()
        create_user(ADMIN_EMAIL, ADMIN_PASSWORD, db=get_db())

    yield

    mp.undo()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def admin(client: FlaskClient) -> FlaskClient:
    """The same client, already signed in as the seeded admin."""
    row = get_db().execute("SELECT id FROM user WHERE email=?", (ADMIN_EMAIL,)).fetchone()
    with client.session_transaction() as s:
        s["uid"] = row["id"]
        s["email"] = ADMIN_EMAIL
        s["role"] = "admin"
        s["csrf"] = CSRF
    return client


@pytest.fixture(autouse=True, scope="session")
def _fake_clock():
    """
    Patch jebchit.dashboard.utc_now for the whole test session so every
    call returns an ever-increasing timestamp.  No need for time.sleep().
    """
    from jebchit import dashboard  # import here to avoid early import

    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(dashboard, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end


# ───────────────────────── fake bucket ────────────────────────────────
class FakeBucket:
    """Stands in for the boto3 S3 client; records every call."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}
        self.deleted: list[str] = []
        self.fail_upload = False
        self.fail_delete = False

    def upload_fileobj(self, stream, bucket, key, ExtraArgs=None):
        if self.fail_upload:
            raise ClientError({"Error": {"Code": "500", "Message": "boom"}}, "PutObject")
        self.objects[key] = stream.read()
        self.content_types[key] = (ExtraArgs or {}).get("ContentType", "")

    def delete_object(self, Bucket, Key):
        self.deleted.append(Key)
        if self.fail_delete:
            raise ClientError({"Error": {"Code": "500", "Message": "boom"}}, "DeleteObject")
        self.objects.pop(Key, None)


@pytest.fixture
def bucket(monkeypatch) -> FakeBucket:
    """Configured R2 whose client is a `FakeBucket`."""
    from jebchit import dashboard

    fake = FakeBucket()
    monkeypatch.setattr(dashboard, "r2_config", lambda: dict(R2_TEST_CFG))
    monkeypatch.setattr(dashboard, "_r2_client", lambda cfg: fake)
    return fake
