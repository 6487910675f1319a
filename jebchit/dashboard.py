#!/usr/bin/env python3
"""
A single-file admin dashboard for the Jebchit community content.
"""

import hashlib
import json
import os
import queue
import re
import secrets
import sqlite3
import threading
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from functools import lru_cache, wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import Callable, DefaultDict, Iterable
from urllib.parse import quote, unquote, urlparse
from zoneinfo import ZoneInfo, available_timezones

import boto3
import click
import markdown
import requests
from botocore.exceptions import BotoCoreError, ClientError
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    has_request_context,
    jsonify,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from markupsafe import Markup
from werkzeug.datastructures import FileStorage
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash, generate_password_hash

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = ROOT / "dashboard.sqlite3"
LOCALES_DIR = ROOT / "locales"

ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)

R2_ENV_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_PUBLIC_BASE",
    "R2_ENDPOINT",
)
R2_REQUIRED_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
)
VIDEO_ENV_KEY = "VIDEO_UPLOAD_URL"

MB = 1024 * 1024
IMAGE_MAX_BYTES = int(os.environ.get("IMAGE_MAX_MB", "5")) * MB
VIDEO_MAX_BYTES = int(os.environ.get("VIDEO_MAX_MB", "100")) * MB
VIDEO_UPLOAD_TIMEOUT = int(os.environ.get("VIDEO_UPLOAD_TIMEOUT", "600"))
FEED_KEEPALIVE_SEC = int(os.environ.get("FEED_KEEPALIVE_SEC", "15"))
UPLOAD_STAGES = (0, 50, 80, 100)  # queued → sent → stored → url resolved
FILENAME_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9.-]")
VIDEO_EXTENSIONS = (".mp4", ".mov", ".webm", ".ogg", ".quicktime")

LANGUAGES = ("ar", "en")
LANG_DFLT = "ar"
LANGUAGE_KEY = "jebchit_language"
LANGUAGE_MAX_AGE = 365 * 24 * 3600

STATUSES = ("draft", "published")
JOB_TYPES = ("full-time", "part-time", "temporary")
AUDIT_FIELDS = ("id", "createdAt", "updatedAt")
LIST_KINDS = ("images", "videos", "media")

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PASSWORD_MIN_LEN = 6
SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}
TZ_DFLT = "Asia/Beirut"

try:
    __version__ = version("jebchit")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(SECRET_KEY=SECRET_KEY, DATABASE=str(DB_FILE))
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",  # blocks most CSRF on simple links
    SESSION_COOKIE_HTTPONLY=True,  # mitigate XSS → cookie theft
    SESSION_COOKIE_SECURE=True,  # only if you serve over HTTPS
    IMAGE_MAX_BYTES=IMAGE_MAX_BYTES,
    VIDEO_MAX_BYTES=VIDEO_MAX_BYTES,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

MD_EXTENSIONS = [
    "pymdownx.extra",
    "pymdownx.magiclink",
    "pymdownx.tilde",
    "pymdownx.betterem",
    "pymdownx.saneheaders",
]
md = markdown.Markdown(extensions=MD_EXTENSIONS)


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    """Render the long text fields (content, biography) as Markdown."""
    if not text:
        return Markup("")
    return Markup(md.reset().convert(text))


@app.template_filter("ts")
def ts_filter(iso: str | None) -> str:
    if not iso:
        return ""
    dt = _parse_datetime(iso)
    if dt is None:
        return iso
    return dt.astimezone(ZoneInfo(tz_name())).strftime("%Y.%m.%d %H:%M")


@app.template_filter("excerpt")
def excerpt_filter(text: str | None, limit: int = 140) -> str:
    text = " ".join((text or "").split())
    return text if len(text) <= limit else text[: limit - 1].rstrip() + "…"


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
        -- 1.  Accounts
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS user (
            id            TEXT PRIMARY KEY,
            email         TEXT UNIQUE NOT NULL COLLATE NOCASE,
            password_hash TEXT NOT NULL,
            role          TEXT NOT NULL DEFAULT 'admin',
            disabled      INTEGER NOT NULL DEFAULT 0,
            created_at    TEXT NOT NULL
        );

        ------------------------------------------------------------
        -- 2.  Site settings
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS settings (
            key   TEXT PRIMARY KEY,
            value TEXT
        );
        INSERT OR IGNORE INTO settings (key, value) VALUES ('site_name', 'Jebchit');

        ------------------------------------------------------------
        -- 3.  Content documents (one JSON body per record)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS document (
            collection TEXT NOT NULL,
            id         TEXT NOT NULL,
            data       TEXT NOT NULL,
            PRIMARY KEY (collection, id)
        );
        """
    )
    db.commit()


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
    return get_setting("site_name") or t("common.appName")


@lru_cache(maxsize=1)
def known_timezones() -> frozenset:
    return frozenset(available_timezones())


def tz_name() -> str:
    tz = get_setting("timezone", TZ_DFLT)
    return tz if tz in known_timezones() else TZ_DFLT


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True, order=True)
class Timestamp:
    """
    The document store's native instant: whole seconds plus nanoseconds
    since the Unix epoch, always UTC.
    """

    seconds: int
    nanos: int = 0

    @classmethod
    def now(cls) -> "Timestamp":
        return cls.from_datetime(utc_now())

    @classmethod
    def from_datetime(cls, dt: datetime) -> "Timestamp":
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        delta = dt.astimezone(timezone.utc) - EPOCH
        return cls(delta.days * 86400 + delta.seconds, delta.microseconds * 1000)

    def to_datetime(self) -> datetime:
        return EPOCH + timedelta(seconds=self.seconds, microseconds=self.nanos // 1000)

    def isoformat(self) -> str:
        """``2024-05-01T08:30:00.000Z``"""
        iso = self.to_datetime().isoformat(timespec="milliseconds")
        return iso.replace("+00:00", "Z")


def _parse_datetime(value: str) -> datetime | None:
    """ISO date or datetime → aware datetime (naive input is taken as UTC)."""
    s = (value or "").strip()
    if not s:
        return None
    if s[-1] in "Zz":
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def to_store_timestamp(value) -> Timestamp | None:
    """
    Calendar string (``YYYY-MM-DD``), ISO datetime, ``date`` or ``datetime``
    → ``Timestamp``.  Empty values and garbage give ``None``; a date-only
    string lands on midnight UTC.
    """
    if not value:
        return None
    if isinstance(value, Timestamp):
        return value
    if isinstance(value, datetime):
        return Timestamp.from_datetime(value)
    if isinstance(value, date):
        return Timestamp.from_datetime(datetime(value.year, value.month, value.day))
    if isinstance(value, str):
        dt = _parse_datetime(value)
        if dt is not None:
            return Timestamp.from_datetime(dt)
    app.logger.warning("Invalid date for timestamp conversion: %r", value)
    return None


def from_store_timestamp(value) -> str:
    """``Timestamp`` (or ISO string) → ``YYYY-MM-DD``; falsy → ``''``."""
    if not value:
        return ""
    if isinstance(value, Timestamp):
        return value.to_datetime().date().isoformat()
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        dt = _parse_datetime(value)
        return dt.astimezone(timezone.utc).date().isoformat() if dt else value
    return ""


def timestamp_to_iso(value) -> str:
    """``Timestamp`` → full ISO instant; strings pass through untouched."""
    if not value:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, Timestamp):
        return value.isoformat()
    return ""


def is_valid_date(value: str | None) -> bool:
    return bool(value) and _parse_datetime(value) is not None


def today_str() -> str:
    return utc_now().date().isoformat()


###############################################################################
# Errors
###############################################################################
class DashboardError(Exception):
    """Base class for every failure the dashboard reports back to a user."""


class ValidationError(DashboardError):
    """One or more required form fields are empty or malformed."""

    def __init__(self, errors: dict[str, str]):
        self.errors = errors
        super().__init__("; ".join(f"{k}: {v}" for k, v in errors.items()))


class WriteFailure(DashboardError):
    """The document store refused a create / update / delete."""


class DocumentNotFound(WriteFailure):
    pass


class UploadRejected(DashboardError):
    """A file was refused before any network call (type, size or slot limit)."""

    def __init__(self, reason: str, filename: str = "", limit: int | None = None):
        self.reason = reason  # invalid_type | too_large | limit
        self.filename = filename or ""
        self.limit = limit
        super().__init__(f"{reason}: {filename}" if filename else reason)


class UploadFailure(DashboardError):
    """Storage or the video endpoint failed while taking a file."""

    def __init__(self, message: str, filename: str = ""):
        self.filename = filename or ""
        super().__init__(message)


class AuthFailure(DashboardError):
    def __init__(self, code: str):
        self.code = code
        super().__init__(code)


###############################################################################
# Document store
###############################################################################
_TS_TAG = "__timestamp__"


def _encode_value(obj):
    if isinstance(obj, Timestamp):
        return {_TS_TAG: [obj.seconds, obj.nanos]}
    raise TypeError(f"{type(obj).__name__} is not JSON serializable")


def _decode_object(obj: dict):
    if len(obj) == 1 and _TS_TAG in obj:
        seconds, nanos = obj[_TS_TAG]
        return Timestamp(seconds, nanos)
    return obj


def dump_document(data: dict) -> str:
    return json.dumps(data, default=_encode_value, ensure_ascii=False)


def load_document(raw: str) -> dict:
    return json.loads(raw, object_hook=_decode_object)


def _order_key(value):
    """Sort values of mixed types the way the store does: by type, then value."""
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, value)
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, Timestamp):
        return (3, value)
    if isinstance(value, str):
        return (4, value)
    return (5, dump_document({"v": value}))


_listeners: DefaultDict[str, list] = defaultdict(list)
_listeners_lock = threading.Lock()


def _notify(collection: str, *, db) -> None:
    """Push a fresh snapshot to every live subscription on *collection*."""
    with _listeners_lock:
        subs = list(_listeners[collection])
    for sub in subs:
        sub.deliver(db=db)


def listener_count(collection: str) -> int:
    with _listeners_lock:
        return len(_listeners[collection])


@dataclass(frozen=True)
class SyncState:
    status: str = "loading"  # loading | ready | errored
    data: tuple = ()
    error: str | None = None

    @property
    def is_loading(self) -> bool:
        return self.status == "loading"


class Subscription:
    """
    Live view on one collection.

    The current ordered list is delivered right away and again after every
    write to the collection.  Call ``close()`` (or use it as a context
    manager) when done; closing twice is harmless.
    """

    def __init__(self, sync: "EntitySync", callback: Callable | None = None):
        self.sync = sync
        self.callback = callback
        self.state = SyncState()
        self.closed = False

    @property
    def data(self) -> list[dict]:
        return list(self.state.data)

    @property
    def error(self) -> str | None:
        return self.state.error

    def deliver(self, *, db) -> None:
        if self.closed:
            return
        try:
            records = self.sync.fetch(db=db)
        except (sqlite3.Error, ValueError) as exc:
            app.logger.exception("Snapshot of %s failed", self.sync.collection)
            self.state = SyncState("errored", (), str(exc))
            self.close()
        else:
            self.state = SyncState("ready", tuple(records), None)
        if self.callback is None:
            return
        try:
            self.callback(self.state)
        except Exception:
            # listeners never fail the write that notified them
            app.logger.exception("Listener on %s failed", self.sync.collection)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        with _listeners_lock:
            subs = _listeners.get(self.sync.collection, [])
            if self in subs:
                subs.remove(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class EntitySync:
    """
    Binds one collection to an ordered live list plus add / update /
    remove.  Date fields named by the schema are coerced to ``Timestamp``
    on the way in and come back as ``YYYY-MM-DD`` strings; the audit
    fields come back as full ISO instants.
    """

    def __init__(
        self,
        schema: "EntitySchema",
        *,
        order_by: str = "createdAt",
        direction: str = "desc",
        db=None,
    ):
        if direction not in ("asc", "desc"):
            raise ValueError(f"direction must be 'asc' or 'desc', not {direction!r}")
        self.schema = schema
        self.collection = schema.collection
        self.order_by = order_by
        self.direction = direction
        self._db = db

    @property
    def db(self):
        return self._db if self._db is not None else get_db()

    # ── reads ───────────────────────────────────────────────────────────
    def _to_record(self, doc_id: str, data: dict) -> dict:
        record = {}
        for k, v in data.items():
            if isinstance(v, Timestamp):
                v = (
                    from_store_timestamp(v)
                    if k in self.schema.date_fields
                    else timestamp_to_iso(v)
                )
            record[k] = v
        record["id"] = doc_id
        return record

    def fetch(self, *, db=None) -> list[dict]:
        db = db if db is not None else self.db
        rows = db.execute(
            "SELECT id, data FROM document WHERE collection=?", (self.collection,)
        ).fetchall()
        docs = [(doc_id, load_document(raw)) for doc_id, raw in rows]
        # a document without the ordering field is not part of the ordered view
        docs = [(doc_id, data) for doc_id, data in docs if self.order_by in data]
        docs.sort(
            key=lambda d: (_order_key(d[1][self.order_by]), d[0]),
            reverse=self.direction == "desc",
        )
        return [self._to_record(doc_id, data) for doc_id, data in docs]

    def get(self, doc_id: str) -> dict | None:
        row = self.db.execute(
            "SELECT data FROM document WHERE collection=? AND id=?",
            (self.collection, doc_id),
        ).fetchone()
        return self._to_record(doc_id, load_document(row[0])) if row else None

    def subscribe(self, callback: Callable | None = None) -> Subscription:
        sub = Subscription(self, callback)
        with _listeners_lock:
            _listeners[self.collection].append(sub)
        sub.deliver(db=self.db)
        return sub

    # ── writes ──────────────────────────────────────────────────────────
    def _coerce_dates(self, values: dict) -> tuple[dict, list[str]]:
        """Return (values with Timestamps, names of date fields left empty)."""
        out, cleared = {}, []
        for k, v in values.items():
            if k in AUDIT_FIELDS:
                continue
            if k in self.schema.date_fields:
                ts = to_store_timestamp(v)
                if ts is None:
                    if v not in (None, ""):
                        raise ValidationError({k: t("form.invalidDate", field=k)})
                    cleared.append(k)
                    continue
                v = ts
            out[k] = v
        return out, cleared

    def _write(self, sql: str, params: tuple, *, action: str) -> None:
        db = self.db
        try:
            db.execute(sql, params)
            db.commit()
        except sqlite3.Error as exc:
            db.rollback()
            app.logger.exception("%s on %s failed", action, self.collection)
            raise WriteFailure(str(exc)) from exc
        _notify(self.collection, db=db)

    def add(self, record: dict) -> str:
        data, _ = self._coerce_dates(record)
        data.setdefault("status", "draft")
        now = Timestamp.now()
        data["createdAt"] = now
        data["updatedAt"] = now
        doc_id = uuid.uuid4().hex
        self._write(
            "INSERT INTO document (collection, id, data) VALUES (?,?,?)",
            (self.collection, doc_id, dump_document(data)),
            action="add",
        )
        return doc_id

    def update(self, doc_id: str, changes: dict) -> None:
        try:
            row = self.db.execute(
                "SELECT data FROM document WHERE collection=? AND id=?",
                (self.collection, doc_id),
            ).fetchone()
        except sqlite3.Error as exc:
            raise WriteFailure(str(exc)) from exc
        if row is None:
            raise DocumentNotFound(f"No document {doc_id!r} in {self.collection}")

        data = load_document(row[0])
        coerced, cleared = self._coerce_dates(changes)
        data.update(coerced)
        for k in cleared:
            data.pop(k, None)

        now = Timestamp.now()
        prev = data.get("updatedAt")
        data["updatedAt"] = max(now, prev) if isinstance(prev, Timestamp) else now
        self._write(
            "UPDATE document SET data=? WHERE collection=? AND id=?",
            (dump_document(data), self.collection, doc_id),
            action="update",
        )

    def remove(self, doc_id: str) -> None:
        """Delete *doc_id*; an id that is already gone is not an error."""
        self._write(
            "DELETE FROM document WHERE collection=? AND id=?",
            (self.collection, doc_id),
            action="remove",
        )


def filter_records(records: Iterable[dict], query: str, fields: Iterable[str]) -> list:
    """Case-insensitive substring match over *fields*, order preserved."""
    needle = (query or "").strip().lower()
    if not needle:
        return list(records)
    fields = tuple(fields)
    return [
        r
        for r in records
        if any(needle in str(r.get(f) or "").lower() for f in fields)
    ]


def snapshot_rev(records: Iterable[dict]) -> str:
    """Short fingerprint of a snapshot so a page can tell it is stale."""
    sig = json.dumps([(r.get("id"), r.get("updatedAt")) for r in records])
    return hashlib.sha1(sig.encode()).hexdigest()[:12]


################################################################################
# Entity schemas
################################################################################
@dataclass(frozen=True)
class Field:
    name: str
    kind: str = "text"  # text textarea date flag choice image images videos media
    required: bool = False
    choices: tuple = ()
    limit: int | None = None
    default: object = None
    default_today: bool = False
    markdown: bool = False

    @property
    def is_media(self) -> bool:
        return self.kind == "image" or self.kind in LIST_KINDS


@dataclass(frozen=True)
class EntitySchema:
    """Everything the store, the uploaders and the editor pages need to know."""

    collection: str
    slug: str
    fields: tuple
    search_fields: tuple = ("title",)
    title_field: str = "title"
    subtitle_fields: tuple = ()
    date_field: str | None = None

    def field(self, name: str) -> Field:
        for f in self.fields:
            if f.name == name:
                return f
        raise KeyError(name)

    @property
    def date_fields(self) -> tuple:
        return tuple(f.name for f in self.fields if f.kind == "date")

    @property
    def required_fields(self) -> tuple:
        return tuple(f.name for f in self.fields if f.required)

    @property
    def media_fields(self) -> tuple:
        return tuple(f for f in self.fields if f.is_media)

    @property
    def list_fields(self) -> tuple:
        return tuple(f.name for f in self.fields if f.kind in LIST_KINDS)

    @property
    def blob_fields(self) -> tuple:
        """Fields whose references live in our bucket (hosted videos do not)."""
        return tuple(f.name for f in self.fields if f.kind in ("image", "images", "media"))

    @property
    def video_fields(self) -> tuple:
        return tuple(f.name for f in self.fields if f.kind == "videos")

    def blank(self) -> dict:
        values = {}
        for f in self.fields:
            if f.kind in LIST_KINDS:
                values[f.name] = []
            elif f.kind == "flag":
                values[f.name] = bool(f.default)
            elif f.default_today:
                values[f.name] = today_str()
            else:
                values[f.name] = f.default or ""
        return values


SCHEMAS = (
    EntitySchema(
        "news",
        "news",
        (
            Field("title", required=True),
            Field("description", "textarea", required=True),
            Field("content", "textarea", markdown=True),
            Field("date", "date", default_today=True),
            Field("isUrgent", "flag"),
            Field("mediaUrls", "media", limit=10),
        ),
        search_fields=("title", "description"),
        subtitle_fields=("description",),
        date_field="date",
    ),
    EntitySchema(
        "martyrs",
        "martyrs",
        (
            Field("name", required=True),
            Field("photo", "image", limit=1),
            Field("dateOfMartyrdom", "date"),
            Field("biography", "textarea", required=True, markdown=True),
        ),
        search_fields=("name",),
        title_field="name",
        subtitle_fields=("biography",),
        date_field="dateOfMartyrdom",
    ),
    EntitySchema(
        "stories",
        "sheikh-stories",
        (
            Field("title", required=True),
            Field("content", "textarea", required=True, markdown=True),
            Field("images", "images", limit=4),
            Field("videos", "videos", limit=3),
        ),
        search_fields=("title", "content"),
        subtitle_fields=("content",),
    ),
    EntitySchema(
        "activities",
        "mosque-activities",
        (
            Field("title", required=True),
            Field("description", "textarea", required=True),
            Field("content", "textarea", markdown=True),
            Field("date", "date", default_today=True),
            Field("images", "images", limit=6),
        ),
        search_fields=("title", "description"),
        subtitle_fields=("description",),
        date_field="date",
    ),
    EntitySchema(
        "topics",
        "religious-topics",
        (
            Field("title", required=True),
            Field("description", "textarea", required=True),
            Field("content", "textarea", markdown=True),
            Field("publishDate", "date", default_today=True),
            Field("images", "images", limit=6),
            Field("videos", "videos", limit=3),
        ),
        search_fields=("title", "description"),
        subtitle_fields=("description",),
        date_field="publishDate",
    ),
    EntitySchema(
        "jobs",
        "jobs",
        (
            Field("title", required=True),
            Field("description", "textarea", required=True),
            Field("jobType", "choice", required=True, choices=JOB_TYPES, default="full-time"),
            Field("location", required=True),
            Field("contactInfo", required=True),
            Field("content", "textarea", markdown=True),
            Field("publishDate", "date", default_today=True),
            Field("expiryDate", "date"),
        ),
        search_fields=("title", "location"),
        subtitle_fields=("location", "jobType"),
        date_field="publishDate",
    ),
    EntitySchema(
        "memories",
        "village-memories",
        (
            Field("title", required=True),
            Field("description", "textarea", required=True),
            Field("content", "textarea", markdown=True),
            Field("memoryDate", "date"),
            Field("images", "images", limit=6),
            Field("videos", "videos", limit=4),
        ),
        search_fields=("title", "description"),
        subtitle_fields=("description",),
        date_field="memoryDate",
    ),
)
SCHEMA_BY_SLUG = {s.slug: s for s in SCHEMAS}
SCHEMA_BY_COLLECTION = {s.collection: s for s in SCHEMAS}


def schema_or_404(slug: str) -> EntitySchema:
    schema = SCHEMA_BY_SLUG.get(slug)
    if schema is None:
        abort(404)
    return schema


################################################################################
# Media uploads
################################################################################
def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def _write_env_file(env: dict[str, str]) -> None:
    lines = [f"{k}={v}" for k, v in sorted(env.items()) if v]
    ENV_FILE.write_text("\n".join(lines) + "\n" if lines else "")
    try:
        ENV_FILE.chmod(0o600)
    except OSError:
        pass


def merge_env(updates: dict[str, str]) -> dict[str, str]:
    """Merge non-empty *updates* into both the process env and the .env file."""
    env = _read_env_file()
    changed = False
    for k, v in updates.items():
        if not v:
            continue
        if env.get(k) != v:
            env[k] = v
            changed = True
        os.environ[k] = v
    if changed:
        _write_env_file(env)
    return env


def env_value(key: str) -> str:
    return (os.environ.get(key) or _read_env_file().get(key) or "").strip()


def r2_config() -> dict[str, str]:
    env_file = _read_env_file()
    cfg = {k: (os.environ.get(k) or env_file.get(k) or "").strip() for k in R2_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def r2_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or r2_config()
    return all(cfg.get(k) for k in R2_REQUIRED_KEYS)


def _r2_client(cfg: dict[str, str]):
    endpoint = (
        cfg.get("R2_ENDPOINT")
        or f"https://{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name="auto",
        aws_access_key_id=cfg["R2_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["R2_SECRET_ACCESS_KEY"],
    )


def _bucket_host(cfg: dict[str, str]) -> str:
    return f"{cfg.get('R2_BUCKET')}.{cfg.get('R2_ACCOUNT_ID')}.r2.cloudflarestorage.com"


def r2_object_url(cfg: dict[str, str], key: str) -> str:
    key = quote(key.lstrip("/"), safe="/")
    base = cfg.get("R2_PUBLIC_BASE")
    if base:
        return f"{base.rstrip('/')}/{key}"
    return f"https://{_bucket_host(cfg)}/{key}"


def storage_key_from_url(cfg: dict[str, str], url: str | None) -> str | None:
    """Object key behind one of our public URLs, or ``None`` for foreign links."""
    if not url:
        return None
    base = (cfg.get("R2_PUBLIC_BASE") or "").rstrip("/")
    if base and url.startswith(base + "/"):
        key = url[len(base) + 1 :]
    else:
        parts = urlparse(url)
        if parts.netloc != _bucket_host(cfg):
            return None
        key = parts.path
    key = unquote(key.split("?", 1)[0].split("#", 1)[0]).lstrip("/")
    return key or None


def storage_key(path: str, filename: str) -> str:
    """``{path}/{unix-millis}-{name}`` with the name reduced to ``[A-Za-z0-9.-]``."""
    millis = int(utc_now().timestamp() * 1000)
    name = FILENAME_UNSAFE_RE.sub("_", filename or "file")
    return f"{path.strip('/')}/{millis}-{name}"


def file_size(f: FileStorage) -> int:
    stream = f.stream
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(0)
    return size


def media_kind(f: FileStorage) -> str | None:
    mime = (f.mimetype or "").lower()
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("video/"):
        return "video"
    return None


def is_video_ref(ref: str) -> bool:
    return urlparse(ref or "").path.lower().endswith(VIDEO_EXTENSIONS)


class _Uploader:
    accept: tuple = ()
    max_bytes: int = 0

    def __init__(self, on_progress: Callable | None = None):
        self.on_progress = on_progress
        self.is_uploading = False
        self.progress = 0
        self.error: str | None = None

    def _stage(self, pct: int) -> None:
        self.progress = pct
        if self.on_progress is not None:
            self.on_progress(pct)

    def check(self, f: FileStorage) -> None:
        """Refuse wrong types and oversized files before touching the network."""
        mime = (f.mimetype or "").lower()
        try:
            if not mime.startswith(self.accept):
                raise UploadRejected("invalid_type", f.filename)
            if file_size(f) > self.max_bytes:
                raise UploadRejected("too_large", f.filename, self.max_bytes)
        except UploadRejected as exc:
            self.error = str(exc)
            raise

    def _fail(self, exc: UploadFailure) -> UploadFailure:
        self.error = str(exc)
        self.progress = 0
        return exc


class BlobUploader(_Uploader):
    """Puts files into the R2 bucket and hands back their public URL."""

    def __init__(
        self,
        *,
        accept: tuple = ("image/",),
        max_bytes: int | None = None,
        cfg: dict[str, str] | None = None,
        on_progress: Callable | None = None,
    ):
        super().__init__(on_progress)
        self.accept = tuple(accept)
        self.max_bytes = (
            max_bytes if max_bytes is not None else app.config["IMAGE_MAX_BYTES"]
        )
        self.cfg = cfg

    def config(self) -> dict[str, str]:
        return self.cfg if self.cfg is not None else r2_config()

    def upload(self, f: FileStorage, path: str = "images") -> str:
        self.check(f)
        cfg = self.config()
        if not r2_is_configured(cfg):
            raise self._fail(UploadFailure("Image storage is not configured.", f.filename))

        key = storage_key(path, f.filename)
        mime = (f.mimetype or "application/octet-stream").lower()
        self.is_uploading, self.error = True, None
        self._stage(UPLOAD_STAGES[0])
        try:
            client = _r2_client(cfg)
            self._stage(UPLOAD_STAGES[1])
            f.stream.seek(0)
            client.upload_fileobj(
                f.stream, cfg["R2_BUCKET"], key, ExtraArgs={"ContentType": mime}
            )
            self._stage(UPLOAD_STAGES[2])
            url = r2_object_url(cfg, key)
            self._stage(UPLOAD_STAGES[3])
        except (BotoCoreError, ClientError) as exc:
            app.logger.exception("R2 upload failed for %s", key)
            raise self._fail(UploadFailure(str(exc), f.filename)) from exc
        finally:
            self.is_uploading = False
        return url

    def delete(self, ref: str) -> bool:
        """Best effort: every failure is logged and swallowed."""
        cfg = self.config()
        try:
            key = storage_key_from_url(cfg, ref) if r2_is_configured(cfg) else None
            if not key:
                app.logger.warning("Skipping delete of non-bucket reference %r", ref)
                return False
            _r2_client(cfg).delete_object(Bucket=cfg["R2_BUCKET"], Key=key)
        except (ValueError, TypeError, BotoCoreError, ClientError):
            app.logger.warning("R2 delete failed for %r", ref, exc_info=True)
            return False
        return True


def discard_blobs(refs: Iterable[str], uploader: BlobUploader | None = None) -> int:
    """Try to delete every blob in *refs*; returns how many went away."""
    uploader = uploader or BlobUploader()
    return sum(1 for ref in refs if uploader.delete(ref))


class VideoUploader(_Uploader):
    """Sends videos to the hosting endpoint; the stored reference is the video id."""

    accept = ("video/",)

    def __init__(
        self,
        *,
        endpoint: str | None = None,
        max_bytes: int | None = None,
        timeout: int = VIDEO_UPLOAD_TIMEOUT,
        on_progress: Callable | None = None,
    ):
        super().__init__(on_progress)
        self._endpoint = endpoint
        self.max_bytes = (
            max_bytes if max_bytes is not None else app.config["VIDEO_MAX_BYTES"]
        )
        self.timeout = timeout

    @property
    def endpoint(self) -> str:
        return self._endpoint or env_value(VIDEO_ENV_KEY)

    def upload(self, f: FileStorage, title: str, description: str | None = None) -> str:
        self.check(f)
        endpoint = self.endpoint
        if not endpoint:
            raise self._fail(UploadFailure("Video uploads are not configured.", f.filename))

        data = {"title": title}
        if description:
            data["description"] = description
        self.is_uploading, self.error = True, None
        self._stage(UPLOAD_STAGES[0])
        try:
            f.stream.seek(0)
            resp = requests.post(
                endpoint,
                files={"file": (f.filename, f.stream, f.mimetype)},
                data=data,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            app.logger.exception("Video upload to %s failed", endpoint)
            raise self._fail(UploadFailure(str(exc), f.filename)) from exc
        finally:
            self.is_uploading = False
        self._stage(UPLOAD_STAGES[2])

        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        if not resp.ok:
            message = payload.get("message") or f"Upload failed with status {resp.status_code}"
            raise self._fail(UploadFailure(message, f.filename))
        youtube_id = payload.get("youtubeId")
        if not youtube_id:
            raise self._fail(UploadFailure("No youtubeId returned from upload", f.filename))
        self._stage(UPLOAD_STAGES[3])
        return youtube_id


@dataclass
class BatchResult:
    references: list = field(default_factory=list)
    errors: list = field(default_factory=list)
    dropped: int = 0

    @property
    def success_count(self) -> int:
        return len(self.references)


def upload_batch(
    files: Iterable[FileStorage],
    *,
    current_count: int,
    max_files: int,
    path: str,
    images: BlobUploader | None = None,
    videos: "BlobUploader | VideoUploader | None" = None,
    title: str = "",
    description: str | None = None,
) -> BatchResult:
    """
    Upload as many of *files* as the remaining slots allow.

    Images go to *images* under ``{path}/images``; videos go to *videos*,
    which is either the hosting endpoint or the bucket (``{path}/videos``).
    A failing file is recorded in ``errors`` and the rest carry on.
    """
    files = [f for f in files if f and f.filename]
    remaining = max_files - current_count
    if remaining <= 0:
        raise UploadRejected("limit", limit=max_files)

    result = BatchResult(dropped=max(0, len(files) - remaining))
    accepted = files[:remaining]
    image_files = [f for f in accepted if media_kind(f) == "image"]
    video_files = [f for f in accepted if media_kind(f) == "video"]
    for f in accepted:
        if f not in image_files and f not in video_files:
            result.errors.append(UploadRejected("invalid_type", f.filename))

    for f in image_files:
        if images is None:
            result.errors.append(UploadRejected("invalid_type", f.filename))
            continue
        try:
            result.references.append(images.upload(f, f"{path}/images"))
        except (UploadRejected, UploadFailure) as exc:
            result.errors.append(exc)

    for f in video_files:
        if videos is None:
            result.errors.append(UploadRejected("invalid_type", f.filename))
            continue
        try:
            if isinstance(videos, VideoUploader):
                ref = videos.upload(f, title or f.filename, description)
            else:
                ref = videos.upload(f, f"{path}/videos")
            result.references.append(ref)
        except (UploadRejected, UploadFailure) as exc:
            result.errors.append(exc)
    return result


def remove_at(refs: list, index: int) -> list:
    if not 0 <= index < len(refs):
        return list(refs)
    return refs[:index] + refs[index + 1 :]


def move_item(refs: list, index: int, direction: str) -> list:
    """Swap entry *index* with its neighbour; out-of-range moves are no-ops."""
    target = index - 1 if direction == "up" else index + 1
    if not (0 <= index < len(refs) and 0 <= target < len(refs)):
        return list(refs)
    out = list(refs)
    out[index], out[target] = out[target], out[index]
    return out


def _refs(record: dict, name: str) -> list:
    value = record.get(name)
    if isinstance(value, list):
        return [v for v in value if v]
    return [value] if value else []


def owned_blob_refs(schema: EntitySchema, record: dict) -> list:
    return [ref for name in schema.blob_fields for ref in _refs(record, name)]


def stale_blob_refs(schema: EntitySchema, old: dict, new: dict) -> list:
    """Blobs *old* pointed at that *new* no longer mentions."""
    keep = set(owned_blob_refs(schema, new))
    return [ref for ref in owned_blob_refs(schema, old) if ref not in keep]


def upload_error_message(exc: DashboardError) -> str:
    if isinstance(exc, UploadRejected):
        if exc.reason == "limit":
            return t("media.limitReached", limit=exc.limit)
        if exc.reason == "too_large":
            return t("media.tooLarge", name=exc.filename, size=(exc.limit or 0) // MB)
        return t("media.invalidType", name=exc.filename)
    if isinstance(exc, UploadFailure):
        return t("media.uploadFailed", name=exc.filename, error=str(exc))
    return t("errors.generic")


###############################################################################
# Localization
###############################################################################
_catalogs: dict[str, dict] = {}


def catalog(lang: str) -> dict:
    if lang not in _catalogs:
        path = LOCALES_DIR / f"{lang}.json"
        _catalogs[lang] = json.loads(path.read_text(encoding="utf-8"))
    return _catalogs[lang]


def _lookup(cat: dict, key: str) -> str | None:
    node = cat
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node if isinstance(node, str) else None


def current_lang() -> str:
    if has_request_context():
        lang = g.get("lang") or request.cookies.get(LANGUAGE_KEY)
        if lang in LANGUAGES:
            return lang
    return LANG_DFLT


def text_dir(lang: str | None = None) -> str:
    return "rtl" if (lang or current_lang()) == "ar" else "ltr"


def t(key: str, lang: str | None = None, **params) -> str:
    """
    Translate a dotted *key*: current language first, then English,
    then the key itself.  ``{name}`` placeholders are filled from *params*.
    """
    lang = lang if lang in LANGUAGES else current_lang()
    text = _lookup(catalog(lang), key)
    if text is None and lang != "en":
        text = _lookup(catalog("en"), key)
    if text is None:
        return key
    return text.format(**params) if params else text


def field_label(schema: EntitySchema, name: str) -> str:
    return t(f"{schema.collection}.fields.{name}")


def choice_label(schema: EntitySchema, name: str, value: str) -> str:
    return t(f"{schema.collection}.{name}Options.{value}") if value else ""


@app.before_request
def apply_language():
    lang = request.cookies.get(LANGUAGE_KEY)
    g.lang = lang if lang in LANGUAGES else LANG_DFLT


@app.route("/language", methods=["POST"])
def set_language():
    lang = request.form.get("lang", "")
    if lang not in LANGUAGES:
        abort(400)
    nxt = request.form.get("next") or ""
    if not nxt.startswith("/") or nxt.startswith("//"):
        nxt = url_for("index")
    resp = redirect(nxt, code=303)
    resp.set_cookie(
        LANGUAGE_KEY, lang, max_age=LANGUAGE_MAX_AGE, samesite="Lax", httponly=True
    )
    return resp


###############################################################################
# CLI – accounts
###############################################################################
def credential_problem(email: str, password: str) -> str | None:
    """The checks a sign-in form does before asking the server."""
    if not EMAIL_RE.match(email or ""):
        return "auth/invalid-email"
    if len(password or "") < PASSWORD_MIN_LEN:
        return "auth/weak-password"
    return None


def create_user(email: str, password: str, *, db) -> str:
    uid = uuid.uuid4().hex
    db.execute(
        "INSERT INTO user (id, email, password_hash, role, created_at) VALUES (?,?,?,?,?)",
        (
            uid,
            email.strip(),
            generate_password_hash(password),
            "admin",
            utc_now().isoformat(timespec="seconds"),
        ),
    )
    db.commit()
    return uid


def set_password(email: str, password: str, *, db) -> bool:
    cur = db.execute(
        "UPDATE user SET password_hash=? WHERE email=?",
        (generate_password_hash(password), email.strip()),
    )
    db.commit()
    return cur.rowcount > 0


def set_disabled(email: str, disabled: bool, *, db) -> bool:
    cur = db.execute(
        "UPDATE user SET disabled=? WHERE email=?", (int(disabled), email.strip())
    )
    db.commit()
    return cur.rowcount > 0


def _check_credentials(email: str, password: str) -> None:
    problem = credential_problem(email, password)
    if problem == "auth/invalid-email":
        raise click.BadParameter(f"{email!r} is not an e-mail address.")
    if problem:
        raise click.BadParameter(
            f"Passwords need at least {PASSWORD_MIN_LEN} characters."
        )


@app.cli.command("init")
@click.option("--email", prompt=True, help="E-mail of the first admin account")
@click.password_option()
def cli_init(email: str, password: str):
    """Initialise DB *and* create the first admin account."""
    _check_credentials(email, password)
    init_db()  # no-op if already there
    db = get_db()
    try:
        create_user(email, password, db=db)
    except sqlite3.IntegrityError:
        click.secho(f"\n⚠️  {email} already exists; use `passwd` instead.", fg="yellow")
        return
    click.secho("\n✅  Admin created.", fg="green")
    click.echo("Sign in at /login with this e-mail and password.")


@app.cli.command("passwd")
@click.option("--email", prompt=True)
@click.password_option()
def cli_passwd(email: str, password: str):
    """Reset an account's password."""
    _check_credentials(email, password)
    if not set_password(email, password, db=get_db()):
        raise click.ClickException(f"No account for {email}.")
    click.secho("\n🔑  Password updated.", fg="green")


@app.cli.command("disable")
@click.argument("email")
@click.option("--enable", is_flag=True, help="Re-enable instead of disabling")
def cli_disable(email: str, enable: bool):
    """Disable (or re-enable) an account; its sessions end on the next request."""
    if not set_disabled(email, not enable, db=get_db()):
        raise click.ClickException(f"No account for {email}.")
    click.secho(f"\n{email} {'enabled' if enable else 'disabled'}.", fg="yellow")


###############################################################################
# Authentication
###############################################################################
AUTH_MESSAGES = {
    "auth/invalid-email": "auth.errors.invalidEmail",
    "auth/weak-password": "auth.errors.passwordTooShort",
    "auth/user-not-found": "auth.errors.wrongPassword",
    "auth/wrong-password": "auth.errors.wrongPassword",
    "auth/user-disabled": "auth.errors.userDisabled",
    "auth/too-many-requests": "auth.errors.tooManyAttempts",
}


@dataclass(frozen=True)
class Identity:
    id: str
    email: str
    role: str = "admin"


def sign_in(email: str, password: str, *, db) -> Identity:
    """Check a credential pair against the account table."""
    email = (email or "").strip()
    if not EMAIL_RE.match(email):
        raise AuthFailure("auth/invalid-email")
    row = db.execute(
        "SELECT id, email, password_hash, role, disabled FROM user WHERE email=?",
        (email,),
    ).fetchone()
    if row is None:
        raise AuthFailure("auth/user-not-found")
    if not check_password_hash(row["password_hash"], password or ""):
        raise AuthFailure("auth/wrong-password")
    if row["disabled"]:
        raise AuthFailure("auth/user-disabled")
    return Identity(row["id"], row["email"], row["role"])


def auth_error_message(code: str) -> str:
    return t(AUTH_MESSAGES.get(code, "auth.errors.generic"))


def current_identity() -> Identity | None:
    return g.get("identity")


def login_required() -> None:
    if current_identity() is None:
        abort(403)


def rate_limit(
    max_requests: int,
    window: int = 60,
    *,
    methods: tuple = ("POST",),
    on_limit: Callable | None = None,
):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if request.method not in methods:
                return view(*args, **kwargs)
            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            for key, q in list(hits.items()):
                if not q or now - q[-1] > window:
                    hits.pop(key, None)
            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = max(1, int(window - (now - dq[0])))
                if on_limit is not None:
                    return on_limit(retry_after)
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        wrapped.hits = hits
        return wrapped

    return decorator


@app.before_request
def load_identity():
    g.identity = None
    uid = session.get("uid")
    if not uid:
        return
    row = (
        get_db()
        .execute("SELECT id, email, role, disabled FROM user WHERE id=?", (uid,))
        .fetchone()
    )
    if row is None or row["disabled"]:
        session.clear()
        return
    g.identity = Identity(row["id"], row["email"], row["role"])


@app.before_request
def csrf_protect():
    # ➊ read-only verbs ⇒ always allowed
    if request.method in SAFE_METHODS:
        return

    # ➋ nobody signed in ⇒ allow (covers /login POST)
    if not session.get("uid"):
        return

    # ➌ for authenticated users we REQUIRE a valid token
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


def _login_throttled(retry_after: int):
    return (
        render_template_string(
            TEMPL_LOGIN,
            title=t("auth.title"),
            email=request.form.get("email", ""),
            error=auth_error_message("auth/too-many-requests"),
        ),
        429,
        {"Retry-After": str(retry_after)},
    )


def _safe_next(target: str | None) -> str:
    if target and target.startswith("/") and not target.startswith("//"):
        return target
    return url_for("dashboard")


@app.route("/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60, on_limit=_login_throttled)
def login():
    if current_identity() is not None and request.method == "GET":
        return redirect(url_for("dashboard"))

    email = request.form.get("email", "").strip()
    error = None
    if request.method == "POST":
        password = request.form.get("password", "")
        problem = credential_problem(email, password)
        try:
            if problem:
                raise AuthFailure(problem)
            identity = sign_in(email, password, db=get_db())
        except AuthFailure as exc:
            app.logger.info("Sign-in refused for %s: %s", email, exc.code)
            error = auth_error_message(exc.code)
        else:
            session.clear()
            session.permanent = True
            session["uid"] = identity.id
            session["email"] = identity.email
            session["role"] = identity.role
            session["csrf"] = secrets.token_hex(16)
            return redirect(_safe_next(request.args.get("next")), code=303)

    return render_template_string(
        TEMPL_LOGIN, title=t("auth.title"), email=email, error=error
    )


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("login"))


def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


@app.context_processor
def inject_identity():
    lang = current_lang()
    return {
        "identity": current_identity(),
        "lang": lang,
        "text_dir": text_dir(lang),
    }


# Expose helpers to templates
app.jinja_env.globals.update(
    t=t,
    csrf_token=_csrf_token,
    field_label=field_label,
    choice_label=choice_label,
    is_video_ref=is_video_ref,
    site_name=site_name,
    schemas=SCHEMAS,
    languages=LANGUAGES,
    version=__version__,
)


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="{{ lang }}" dir="{{ text_dir }}">
<title>{{ title or site_name() }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1, shrink-to-fit=no">
<meta charset="utf-8">
<style>
html{font-size:62.5%;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Noto Sans Arabic","Noto Sans",sans-serif}body{font-size:1.7rem;line-height:1.6;max-width:64em;margin:auto;color:#c9c9c9;background-color:#222222;padding:13px}
h1,h2,h3{line-height:1.15;font-weight:700;margin-top:2.5rem;margin-bottom:1.25rem}h1{font-size:2.1em}h2{font-size:1.6em}h3{font-size:1.25em}
a{color:#ffffff;text-decoration:underline;text-decoration-color:transparent;text-decoration-thickness:2px;text-underline-offset:.18em}a:hover{color:#c9c9c9;text-decoration-color:#c9c9c9}
img,video{height:auto;max-width:100%}table{width:100%;border-collapse:collapse;margin-bottom:2rem}td,th{padding:.5em;border-bottom:1px solid #4a4a4a;text-align:start}
textarea,select,input{color:#c9c9c9;padding:6px 10px;margin-bottom:10px;background-color:#2b2b2b;border:1px solid #555;border-radius:6px;box-sizing:border-box;font:inherit}textarea{width:100%;min-height:8rem;resize:vertical}input[type=text],input[type=email],input[type=password],input[type=url],input[type=search]{width:100%}
textarea:focus,select:focus,input:focus{border:1px solid #ffffff;outline:0}
.button,button,input[type=submit],input[type=file]::file-selector-button{display:inline-block;padding:5px 12px;text-align:center;text-decoration:none;white-space:nowrap;background-color:#ffffff;color:#222222;border-radius:4px;border:1px solid #ffffff;cursor:pointer;font:inherit;font-size:.9em}
.button:hover,button:hover{background-color:#c9c9c9;color:#222222}button[disabled],.button[aria-disabled=true]{opacity:.5;cursor:default;pointer-events:none}
.button.ghost,button.ghost{background:transparent;color:#c9c9c9;border-color:#555}.button.danger,button.danger{background:#b33;border-color:#b33;color:#fff}
label{display:block;margin-bottom:.35rem;font-weight:600}.field{margin-bottom:1.5rem}.field-error{color:#f08c8c;font-size:.85em;margin:-.4rem 0 .6rem}
.hint{color:#999;font-size:.8em}.badge{display:inline-block;padding:.05em .6em;border-radius:1em;font-size:.7em;background:#444;color:#fff;vertical-align:middle}
.badge.published{background:#2f6f3e}.badge.draft{background:#6b5a1e}.badge.urgent{background:#b33}
.nav{display:flex;flex-wrap:wrap;gap:.4rem 1.1rem;align-items:center;font-size:.85em;margin-bottom:1.5rem;border-bottom:1px solid #444;padding-bottom:.75rem}
.nav a[aria-current=page]{text-decoration-color:currentColor}.nav .end{margin-inline-start:auto;display:flex;gap:.6rem;align-items:center}
.nav form{margin:0}.nav button{padding:2px 8px;font-size:.8em}
.record{border:1px solid #444;border-radius:8px;padding:1rem 1.2rem;margin-bottom:1rem;background:#262626}
.record h3{margin:0 0 .4rem}.record .meta{color:#999;font-size:.8em;display:flex;gap:.8rem;flex-wrap:wrap}
.actions{display:flex;gap:.5rem;flex-wrap:wrap;align-items:center;margin-top:.6rem}.actions form{margin:0}
.media-list{list-style:none;padding:0;display:grid;grid-template-columns:repeat(auto-fill,minmax(14rem,1fr));gap:.75rem}
.media-list li{border:1px solid #444;border-radius:6px;padding:.5rem;font-size:.8em}.media-list img,.media-list video{display:block;margin-bottom:.4rem;max-height:12rem;object-fit:cover}
.toast{position:fixed;top:1rem;inset-inline-end:1rem;background:#323232;color:#fff;padding:.75rem 1rem;border-radius:.4rem;font-size:.85em;line-height:1.35;box-shadow:0 2px 6px rgba(0,0,0,.4);max-width:26rem;z-index:999}
.preview{border-inline-start:4px solid #555;padding-inline-start:1rem;margin:.5rem 0 1rem}
</style>
<body>
<div class="container" style="margin:2rem auto;">
    <div style="margin-bottom:1rem;">
        <h1 style="display:inline;margin:0;">
            <a href="{{ url_for('index') }}" style="text-decoration:none;">{{ site_name() }}</a>
        </h1>
        <span class="hint" style="margin-inline-start:.5rem;">{{ t('common.tagline') }}</span>
    </div>
    <nav class="nav" aria-label="Primary">
        {% if identity %}
            <a href="{{ url_for('dashboard') }}"
               {% if request.endpoint=='dashboard' %}aria-current="page"{% endif %}>{{ t('dashboard.title') }}</a>
            {% for s in schemas %}
            <a href="{{ url_for('entity_list', slug=s.slug) }}"
               {% if request.view_args and request.view_args.get('slug')==s.slug %}aria-current="page"{% endif %}>
               {{ t(s.collection ~ '.title') }}</a>
            {% endfor %}
        {% endif %}
        <span class="end">
            {% if identity %}
                <a href="{{ url_for('settings') }}">{{ t('settings.title') }}</a>
                <a href="{{ url_for('logout') }}">{{ t('auth.logout') }}</a>
            {% endif %}
            <form method="post" action="{{ url_for('set_language') }}">
                {% if csrf_token() %}<input type="hidden" name="csrf" value="{{ csrf_token() }}">{% endif %}
                <input type="hidden" name="next" value="{{ request.full_path }}">
                {% for l in languages if l != lang %}
                <button type="submit" name="lang" value="{{ l }}" class="ghost">{{ t('common.language.' ~ l) }}</button>
                {% endfor %}
            </form>
        </span>
    </nav>
    {% with msgs = get_flashed_messages() %}
    {% if msgs %}
        <div class="toast" role="status" aria-live="polite" aria-atomic="true">
        {% for m in msgs %}{{ m }}{% if not loop.last %}<br>{% endif %}{% endfor %}
        </div>
    {% endif %}
    {% endwith %}
    <main id="main-content" role="main" tabindex="-1">
"""

TEMPL_EPILOG = """
    </main>
    <footer style="margin-top:2rem;padding-top:1rem;font-size:.75em;color:#888;border-top:1px solid #444;">
        {{ site_name() }} · {{ t('common.footer') }} · v{{ version }}
    </footer>
</div>
</body>
</html>
"""

TEMPL_LOGIN = wrap("""
{% block body %}
<h2>{{ t('auth.title') }}</h2>
<p class="hint">{{ t('auth.subtitle') }}</p>
{% if error %}<p class="field-error" role="alert" style="margin:0 0 1rem;">{{ error }}</p>{% endif %}
<form method="post" style="max-width:28rem;">
  <div class="field">
    <label for="email">{{ t('auth.email') }}</label>
    <input id="email" name="email" type="email" value="{{ email or '' }}" autocomplete="username" dir="ltr" required>
  </div>
  <div class="field">
    <label for="password">{{ t('auth.password') }}</label>
    <input id="password" name="password" type="password" autocomplete="current-password" minlength="6" dir="ltr" required>
  </div>
  <button type="submit">{{ t('auth.signIn') }}</button>
</form>
{% endblock %}
""")


###############################################################################
# Dashboard
###############################################################################
@app.route("/")
def index():
    if current_identity() is None:
        return redirect(url_for("login"))
    return redirect(url_for("dashboard"))


def collection_counts() -> list[dict]:
    rows = []
    for schema in SCHEMAS:
        records = EntitySync(schema).fetch()
        rows.append(
            {
                "schema": schema,
                "total": len(records),
                "published": sum(1 for r in records if r.get("status") == "published"),
            }
        )
    return rows


@app.route("/dashboard")
def dashboard():
    login_required()
    return render_template_string(
        TEMPL_DASHBOARD, title=t("dashboard.title"), counts=collection_counts()
    )


TEMPL_DASHBOARD = wrap("""
{% block body %}
<h2>{{ t('dashboard.title') }}</h2>
<p class="hint">{{ t('dashboard.welcome', email=identity.email) }}</p>
<table>
  <thead>
    <tr>
      <th>{{ t('dashboard.section') }}</th>
      <th>{{ t('dashboard.total') }}</th>
      <th>{{ t('dashboard.published') }}</th>
      <th></th>
    </tr>
  </thead>
  <tbody>
  {% for row in counts %}
    <tr>
      <td><a href="{{ url_for('entity_list', slug=row.schema.slug) }}">{{ t(row.schema.collection ~ '.title') }}</a></td>
      <td>{{ row.total }}</td>
      <td>{{ row.published }}</td>
      <td><a class="button ghost" href="{{ url_for('entity_new', slug=row.schema.slug) }}">{{ t(row.schema.collection ~ '.add') }}</a></td>
    </tr>
  {% endfor %}
  </tbody>
</table>
{% endblock %}
""")


###############################################################################
# Entity editors
###############################################################################
def read_form(schema: EntitySchema, form, *, apply_removals: bool = True) -> dict:
    """Form fields → record values (existing media refs come from hidden inputs)."""
    values = {}
    for f in schema.fields:
        if f.kind == "flag":
            values[f.name] = form.get(f.name) in ("on", "1", "true")
        elif f.kind in LIST_KINDS:
            refs = [r.strip() for r in form.getlist(f.name) if r.strip()]
            if apply_removals:
                drop = {int(i) for i in form.getlist(f"remove_{f.name}") if i.isdigit()}
                for i in sorted(drop, reverse=True):
                    refs = remove_at(refs, i)
            values[f.name] = refs
        elif f.kind == "image":
            ref = (form.get(f.name) or "").strip()
            if apply_removals and form.get(f"remove_{f.name}"):
                ref = ""
            values[f.name] = ref
        else:
            values[f.name] = (form.get(f.name) or "").strip()
    return values


def _pending_move(schema: EntitySchema, form) -> tuple[str, int, str] | None:
    """``move=images:2:up`` → ("images", 2, "up")"""
    raw = form.get("move") or ""
    parts = raw.split(":")
    if len(parts) != 3:
        return None
    name, idx, direction = parts
    if name not in schema.list_fields or not idx.isdigit() or direction not in ("up", "down"):
        return None
    return name, int(idx), direction


def validate_record(schema: EntitySchema, values: dict) -> None:
    errors = {}
    for f in schema.fields:
        value = values.get(f.name)
        label = field_label(schema, f.name)
        if f.required and not (value.strip() if isinstance(value, str) else value):
            errors[f.name] = t("form.required", field=label)
        elif f.kind == "choice" and value and value not in f.choices:
            errors[f.name] = t("form.invalidChoice", field=label)
        elif f.kind == "date" and value and not is_valid_date(value):
            errors[f.name] = t("form.invalidDate", field=label)
    if errors:
        raise ValidationError(errors)


def _field_sinks(f: Field) -> tuple:
    """(image sink, video sink) for one media field."""
    if f.kind == "videos":
        return None, VideoUploader()
    if f.kind == "media":
        return BlobUploader(), BlobUploader(
            accept=("video/",), max_bytes=app.config["VIDEO_MAX_BYTES"]
        )
    return BlobUploader(), None


def resolve_uploads(schema: EntitySchema, values: dict, files) -> list[str]:
    """
    Upload the files picked in the form and append their references to
    *values*.  Returns one message per file that did not make it.
    """
    messages = []
    title = values.get(schema.title_field) or ""
    description = values.get("description") or None
    for f in schema.media_fields:
        if f.kind == "image":
            upload = files.get(f"{f.name}_file")
            if upload is None or not upload.filename:
                continue
            try:
                values[f.name] = BlobUploader().upload(
                    upload, f"{schema.collection}/images"
                )
            except (UploadRejected, UploadFailure) as exc:
                messages.append(upload_error_message(exc))
            continue

        uploads = [u for u in files.getlist(f"{f.name}_files") if u and u.filename]
        if not uploads:
            continue
        images, videos = _field_sinks(f)
        try:
            result = upload_batch(
                uploads,
                current_count=len(values[f.name]),
                max_files=f.limit,
                path=schema.collection,
                images=images,
                videos=videos,
                title=title,
                description=description,
            )
        except UploadRejected as exc:
            messages.append(upload_error_message(exc))
            continue
        values[f.name] = values[f.name] + result.references
        messages.extend(upload_error_message(e) for e in result.errors)
        if result.dropped:
            messages.append(t("media.dropped", count=result.dropped, limit=f.limit))
    return messages


def _render_editor(schema, values, *, record=None, errors=None, status=200):
    return (
        render_template_string(
            TEMPL_EDIT,
            title=t(f"{schema.collection}.{'edit' if record else 'add'}"),
            schema=schema,
            values=values,
            record=record,
            errors=errors or {},
            video_max=app.config["VIDEO_MAX_BYTES"] // MB,
            image_max=app.config["IMAGE_MAX_BYTES"] // MB,
        ),
        status,
    )


def _editor(schema: EntitySchema, record: dict | None = None):
    sync = EntitySync(schema)
    if request.method == "GET":
        values = {**schema.blank(), **(record or {})}
        return _render_editor(schema, values, record=record)

    values = read_form(schema, request.form)
    move = _pending_move(schema, request.form)
    if move:
        name, idx, direction = move
        values[name] = move_item(values[name], idx, direction)
        return _render_editor(schema, values, record=record)

    try:
        validate_record(schema, values)
    except ValidationError as exc:
        return _render_editor(schema, values, record=record, errors=exc.errors, status=400)

    for msg in resolve_uploads(schema, values, request.files):
        flash(msg)

    try:
        if record is None:
            sync.add(values)
        else:
            sync.update(record["id"], values)
    except WriteFailure:
        flash(t("form.saveFailed"))
        return _render_editor(schema, values, record=record)

    if record is not None:
        discard_blobs(stale_blob_refs(schema, record, values))
    flash(t("form.saved"))
    return redirect(url_for("entity_list", slug=schema.slug), code=303)


def _record_or_404(schema: EntitySchema, doc_id: str) -> dict:
    record = EntitySync(schema).get(doc_id)
    if record is None:
        abort(404)
    return record


@app.route("/<slug>")
def entity_list(slug):
    login_required()
    schema = schema_or_404(slug)
    q = request.args.get("q", "").strip()
    with EntitySync(schema).subscribe() as sub:
        state = sub.state
    records = filter_records(state.data, q, schema.search_fields)
    return render_template_string(
        TEMPL_LIST,
        title=t(f"{schema.collection}.title"),
        schema=schema,
        records=records,
        total=len(state.data),
        state=state,
        q=q,
        rev=snapshot_rev(state.data),
    )


@app.route("/<slug>/new", methods=["GET", "POST"])
def entity_new(slug):
    login_required()
    return _editor(schema_or_404(slug))


@app.route("/<slug>/<doc_id>/edit", methods=["GET", "POST"])
def entity_edit(slug, doc_id):
    login_required()
    schema = schema_or_404(slug)
    return _editor(schema, _record_or_404(schema, doc_id))


@app.route("/<slug>/<doc_id>/publish", methods=["POST"])
def entity_publish(slug, doc_id):
    login_required()
    schema = schema_or_404(slug)
    record = _record_or_404(schema, doc_id)
    status = "draft" if record.get("status") == "published" else "published"
    try:
        EntitySync(schema).update(doc_id, {"status": status})
    except WriteFailure:
        flash(t("form.saveFailed"))
    else:
        flash(t(f"status.now.{status}"))
    return redirect(url_for("entity_list", slug=slug), code=303)


@app.route("/<slug>/<doc_id>/delete", methods=["GET", "POST"])
def entity_delete(slug, doc_id):
    login_required()
    schema = schema_or_404(slug)
    record = _record_or_404(schema, doc_id)

    if request.method == "POST":
        discard_blobs(owned_blob_refs(schema, record))
        try:
            EntitySync(schema).remove(doc_id)
        except WriteFailure:
            flash(t("form.deleteFailed"))
            return redirect(url_for("entity_list", slug=slug), code=303)
        flash(t("form.deleted"))
        return redirect(url_for("entity_list", slug=slug), code=303)

    return render_template_string(
        TEMPL_DELETE,
        title=t("form.confirmDelete"),
        schema=schema,
        record=record,
        media_count=len(owned_blob_refs(schema, record)),
    )


@app.route("/<slug>/records.json")
def entity_records_json(slug):
    login_required()
    schema = schema_or_404(slug)
    return jsonify(EntitySync(schema).fetch())


TEMPL_LIST = wrap("""
{% block body %}
<div style="display:flex;align-items:baseline;gap:1rem;flex-wrap:wrap;">
  <h2 style="margin-bottom:.25rem;">{{ t(schema.collection ~ '.title') }}</h2>
  <a class="button" href="{{ url_for('entity_new', slug=schema.slug) }}" style="margin-inline-start:auto;">{{ t(schema.collection ~ '.add') }}</a>
</div>
<p class="hint">{{ t(schema.collection ~ '.subtitle') }}</p>
<form method="get" role="search">
  <input type="search" name="q" value="{{ q }}" placeholder="{{ t(schema.collection ~ '.search') }}" aria-label="{{ t('common.search') }}">
</form>

<section id="records" data-rev="{{ rev }}" data-feed="{{ url_for('entity_feed', slug=schema.slug) }}">
{% if state.status == 'errored' %}
  <p class="field-error" role="alert">{{ t('errors.loadFailed') }}</p>
{% elif not records %}
  <p class="hint">{{ t('common.noMatch') if q else t('common.empty') }}</p>
{% else %}
  <p class="hint">{{ t('common.showing', shown=records|length, total=total) }}</p>
  {% for r in records %}
  <article class="record">
    <h3>
      {{ r[schema.title_field] }}
      <span class="badge {{ r.status }}">{{ t('status.' ~ r.status) }}</span>
      {% if r.isUrgent %}<span class="badge urgent">{{ t('news.urgent') }}</span>{% endif %}
    </h3>
    <div class="meta">
      {% if schema.date_field and r[schema.date_field] %}<span>{{ r[schema.date_field] }}</span>{% endif %}
      {% for name in schema.subtitle_fields %}
        {% if r[name] %}
        <span>{{ choice_label(schema, name, r[name]) if schema.field(name).kind == 'choice' else r[name]|excerpt }}</span>
        {% endif %}
      {% endfor %}
      {% for f in schema.media_fields %}
        {% set n = (r[f.name]|length) if r[f.name] is not string else (1 if r[f.name] else 0) %}
        {% if n %}<span>{{ field_label(schema, f.name) }}: {{ n }}</span>{% endif %}
      {% endfor %}
      <span>{{ t('common.updated') }} {{ r.updatedAt|ts }}</span>
    </div>
    <div class="actions">
      <a class="button ghost" href="{{ url_for('entity_edit', slug=schema.slug, doc_id=r.id) }}">{{ t('common.edit') }}</a>
      <form method="post" action="{{ url_for('entity_publish', slug=schema.slug, doc_id=r.id) }}">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button type="submit" class="ghost">{{ t('status.toggle.' ~ r.status) }}</button>
      </form>
      <a class="button danger" href="{{ url_for('entity_delete', slug=schema.slug, doc_id=r.id) }}">{{ t('common.delete') }}</a>
    </div>
  </article>
  {% endfor %}
{% endif %}
</section>
<script>
(() => {
  const box = document.getElementById('records');
  if (!('EventSource' in window) || !box) return;
  const feed = new EventSource(box.dataset.feed);
  feed.onmessage = ev => {
    const snap = JSON.parse(ev.data);
    if (snap.rev && snap.rev !== box.dataset.rev) location.reload();
  };
  window.addEventListener('beforeunload', () => feed.close());
})();
</script>
{% endblock %}
""")

TEMPL_EDIT = wrap("""
{% block body %}
{% macro media_preview(f, ref) -%}
  {% if f.kind == 'videos' %}
    <a href="https://www.youtube.com/watch?v={{ ref }}" target="_blank" rel="noopener" dir="ltr">▶ {{ ref }}</a>
  {% elif is_video_ref(ref) %}
    <video src="{{ ref }}" controls preload="metadata"></video>
  {% else %}
    <img src="{{ ref }}" alt="" loading="lazy">
  {% endif %}
{%- endmacro %}
<h2>{{ title }}</h2>
<form method="post" enctype="multipart/form-data" id="entity-form" novalidate>
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  {% for f in schema.fields %}
  {% set label = field_label(schema, f.name) %}
  {% set value = values.get(f.name) %}
  <div class="field">
    {% if f.kind == 'flag' %}
      <label><input type="checkbox" name="{{ f.name }}" {% if value %}checked{% endif %}> {{ label }}</label>
    {% else %}
      <label for="f-{{ f.name }}">{{ label }}{% if f.required %} *{% endif %}</label>
    {% endif %}
    {% if errors.get(f.name) %}<p class="field-error" role="alert">{{ errors[f.name] }}</p>{% endif %}

    {% if f.kind == 'text' %}
      <input id="f-{{ f.name }}" type="text" name="{{ f.name }}" value="{{ value or '' }}" {% if f.required %}required{% endif %}>
    {% elif f.kind == 'textarea' %}
      <textarea id="f-{{ f.name }}" name="{{ f.name }}" rows="{{ 10 if f.markdown else 4 }}" {% if f.required %}required{% endif %}>{{ value or '' }}</textarea>
      {% if f.markdown %}
        <span class="hint">{{ t('form.markdownHint') }}</span>
        {% if value %}
        <details><summary class="hint">{{ t('form.preview') }}</summary><div class="preview">{{ value|md }}</div></details>
        {% endif %}
      {% endif %}
    {% elif f.kind == 'date' %}
      <input id="f-{{ f.name }}" type="date" name="{{ f.name }}" value="{{ value or '' }}" dir="ltr">
    {% elif f.kind == 'choice' %}
      <select id="f-{{ f.name }}" name="{{ f.name }}">
        {% for c in f.choices %}
        <option value="{{ c }}" {% if c == value %}selected{% endif %}>{{ choice_label(schema, f.name, c) }}</option>
        {% endfor %}
      </select>
    {% elif f.kind == 'image' %}
      {% if value %}
        <ul class="media-list"><li>
          <img src="{{ value }}" alt="">
          <input type="hidden" name="{{ f.name }}" value="{{ value }}">
          <label class="hint"><input type="checkbox" name="remove_{{ f.name }}" value="1"> {{ t('media.remove') }}</label>
        </li></ul>
      {% endif %}
      <input id="f-{{ f.name }}" type="file" name="{{ f.name }}_file" accept="image/*">
      <span class="hint">{{ t('media.imageHint', size=image_max) }}</span>
    {% else %}
      {% set refs = value or [] %}
      {% if refs %}
      <ol class="media-list">
        {% for ref in refs %}
        <li>
          {{ media_preview(f, ref) }}
          <input type="hidden" name="{{ f.name }}" value="{{ ref }}">
          <div class="actions">
            <button type="submit" name="move" value="{{ f.name }}:{{ loop.index0 }}:up" class="ghost" formnovalidate {% if loop.first %}disabled{% endif %} aria-label="{{ t('media.moveUp') }}">↑</button>
            <button type="submit" name="move" value="{{ f.name }}:{{ loop.index0 }}:down" class="ghost" formnovalidate {% if loop.last %}disabled{% endif %} aria-label="{{ t('media.moveDown') }}">↓</button>
            <label class="hint" style="margin:0;"><input type="checkbox" name="remove_{{ f.name }}" value="{{ loop.index0 }}"> {{ t('media.remove') }}</label>
          </div>
        </li>
        {% endfor %}
      </ol>
      {% endif %}
      {% set left = f.limit - refs|length %}
      <input id="f-{{ f.name }}" type="file" name="{{ f.name }}_files" multiple
             accept="{{ 'video/*' if f.kind == 'videos' else ('image/*,video/*' if f.kind == 'media' else 'image/*') }}"
             {% if left <= 0 %}disabled{% endif %}>
      <span class="hint">
        {{ t('media.slots', count=refs|length, limit=f.limit) }} ·
        {% if f.kind == 'videos' %}{{ t('media.videoHint', size=video_max) }}
        {% elif f.kind == 'media' %}{{ t('media.mediaHint', image=image_max, video=video_max) }}
        {% else %}{{ t('media.imageHint', size=image_max) }}{% endif %}
      </span>
    {% endif %}
  </div>
  {% endfor %}

  <div class="actions">
    <button type="submit" data-busy>{{ t('common.save') }}</button>
    <a class="button ghost" href="{{ url_for('entity_list', slug=schema.slug) }}" data-busy>{{ t('common.cancel') }}</a>
  </div>
</form>
<script>
document.getElementById('entity-form').addEventListener('submit', ev => {
  if (ev.submitter && ev.submitter.name === 'move') return;
  document.querySelectorAll('[data-busy]').forEach(el => {
    el.setAttribute('aria-disabled', 'true');
    if (el.tagName === 'BUTTON') setTimeout(() => { el.disabled = true; }, 0);
  });
});
</script>
{% endblock %}
""")

TEMPL_DELETE = wrap("""
{% block body %}
<h2>{{ t('form.confirmDelete') }}</h2>
<article class="record">
  <h3>{{ record[schema.title_field] }} <span class="badge {{ record.status }}">{{ t('status.' ~ record.status) }}</span></h3>
  {% for f in schema.fields if f.markdown and record[f.name] %}
    <div class="preview">{{ record[f.name]|md }}</div>
  {% endfor %}
  {% if media_count %}<p class="hint">{{ t('form.deleteMedia', count=media_count) }}</p>{% endif %}
</article>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <div class="actions">
    <button type="submit" class="danger">{{ t('common.delete') }}</button>
    <a class="button ghost" href="{{ url_for('entity_list', slug=schema.slug) }}">{{ t('common.cancel') }}</a>
  </div>
</form>
{% endblock %}
""")


###############################################################################
# Uploads
###############################################################################
def _upload_path(raw: str | None) -> str:
    return raw if raw in SCHEMA_BY_COLLECTION else "images"


def _rejection_status(exc: UploadRejected) -> int:
    return 413 if exc.reason == "too_large" else 415


@app.route("/upload/image", methods=["POST"])
def upload_image():
    login_required()
    f = request.files.get("file")
    if f is None or not f.filename:
        return {"error": t("media.noFile")}, 400
    try:
        url = BlobUploader().upload(f, _upload_path(request.form.get("path")))
    except UploadRejected as exc:
        return {"error": upload_error_message(exc)}, _rejection_status(exc)
    except UploadFailure as exc:
        return {"error": upload_error_message(exc)}, 502
    return {"url": url}, 201


@app.route("/upload/video", methods=["POST"])
def upload_video():
    login_required()
    f = request.files.get("file")
    if f is None or not f.filename:
        return {"error": t("media.noFile")}, 400
    title = request.form.get("title", "").strip()
    if not title:
        return {"error": t("form.required", field=t("media.videoTitle"))}, 400
    try:
        youtube_id = VideoUploader().upload(
            f, title, request.form.get("description", "").strip() or None
        )
    except UploadRejected as exc:
        return {"error": upload_error_message(exc)}, _rejection_status(exc)
    except UploadFailure as exc:
        return {"error": upload_error_message(exc)}, 502
    return {"youtubeId": youtube_id}, 201


###############################################################################
# Live feed
###############################################################################
def _feed_event(state: SyncState) -> str:
    payload = {
        "status": state.status,
        "rev": snapshot_rev(state.data),
        "count": len(state.data),
        "error": state.error,
    }
    return f"data: {json.dumps(payload)}\n\n"


@app.route("/<slug>/feed")
def entity_feed(slug):
    """Server-sent events: one message per snapshot of the collection."""
    login_required()
    schema = schema_or_404(slug)
    inbox: queue.Queue = queue.Queue()
    sub = EntitySync(schema).subscribe(inbox.put)

    def stream():
        try:
            while True:
                try:
                    state = inbox.get(timeout=FEED_KEEPALIVE_SEC)
                except queue.Empty:
                    yield ": keep-alive\n\n"
                    continue
                yield _feed_event(state)
                if state.status == "errored":
                    return
        finally:
            sub.close()

    return Response(
        stream(),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


###############################################################################
# Settings
###############################################################################
SETTINGS_ENV_KEYS = R2_ENV_KEYS + (VIDEO_ENV_KEY,)


def _change_password(form) -> None:
    identity = current_identity()
    current = form.get("current_password", "")
    new = form.get("new_password", "")
    try:
        sign_in(identity.email, current, db=get_db())
    except AuthFailure as exc:
        flash(auth_error_message(exc.code))
        return
    if len(new) < PASSWORD_MIN_LEN:
        flash(auth_error_message("auth/weak-password"))
        return
    set_password(identity.email, new, db=get_db())
    flash(t("settings.passwordChanged"))


@app.route("/settings", methods=["GET", "POST"])
def settings():
    login_required()

    if request.method == "POST" and request.form.get("action") == "password":
        _change_password(request.form)
        return redirect(url_for("settings"), code=303)

    if request.method == "POST":
        name = request.form.get("site_name", "").strip()
        if name:
            set_setting("site_name", name)
        tz = request.form.get("timezone", "").strip()
        if tz in known_timezones():
            set_setting("timezone", tz)
        merge_env({k: request.form.get(k, "").strip() for k in SETTINGS_ENV_KEYS})
        flash(t("settings.saved"))
        return redirect(url_for("settings"), code=303)

    cfg = r2_config()
    return render_template_string(
        TEMPL_SETTINGS,
        title=t("settings.title"),
        current_name=get_setting("site_name", ""),
        current_tz=tz_name(),
        timezones=sorted(known_timezones()),
        env_status={k: bool(cfg.get(k) or env_value(k)) for k in SETTINGS_ENV_KEYS},
        r2_configured=r2_is_configured(cfg),
        video_configured=bool(env_value(VIDEO_ENV_KEY)),
    )


TEMPL_SETTINGS = wrap("""
{% block body %}
<h2>{{ t('settings.title') }}</h2>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <div class="field">
    <label for="site_name">{{ t('settings.siteName') }}</label>
    <input id="site_name" type="text" name="site_name" value="{{ current_name }}">
  </div>
  <div class="field">
    <label for="timezone">{{ t('settings.timezone') }}</label>
    <select id="timezone" name="timezone" dir="ltr">
      {% for tz in timezones %}<option value="{{ tz }}" {% if tz == current_tz %}selected{% endif %}>{{ tz }}</option>{% endfor %}
    </select>
  </div>

  <h3>{{ t('settings.storage') }}</h3>
  <p class="hint">{{ t('settings.configured') if r2_configured else t('settings.notConfigured') }}</p>
  {% for key in ('R2_ACCOUNT_ID','R2_ACCESS_KEY_ID','R2_SECRET_ACCESS_KEY','R2_BUCKET','R2_PUBLIC_BASE','R2_ENDPOINT') %}
  <div class="field">
    <label for="{{ key }}" dir="ltr">{{ key }}</label>
    <input id="{{ key }}" name="{{ key }}" dir="ltr"
           type="{{ 'password' if 'SECRET' in key or 'KEY_ID' in key else 'text' }}"
           placeholder="{{ t('settings.keep') if env_status[key] else '' }}" autocomplete="off">
  </div>
  {% endfor %}

  <h3>{{ t('settings.video') }}</h3>
  <p class="hint">{{ t('settings.configured') if video_configured else t('settings.notConfigured') }}</p>
  <div class="field">
    <label for="VIDEO_UPLOAD_URL" dir="ltr">VIDEO_UPLOAD_URL</label>
    <input id="VIDEO_UPLOAD_URL" name="VIDEO_UPLOAD_URL" type="url" dir="ltr"
           placeholder="{{ t('settings.keep') if env_status['VIDEO_UPLOAD_URL'] else 'https://' }}">
  </div>
  <button type="submit">{{ t('common.save') }}</button>
</form>

<h3>{{ t('settings.password') }}</h3>
<form method="post" style="max-width:28rem;">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input type="hidden" name="action" value="password">
  <div class="field">
    <label for="current_password">{{ t('settings.currentPassword') }}</label>
    <input id="current_password" name="current_password" type="password" autocomplete="current-password">
  </div>
  <div class="field">
    <label for="new_password">{{ t('settings.newPassword') }}</label>
    <input id="new_password" name="new_password" type="password" autocomplete="new-password" minlength="6">
  </div>
  <button type="submit">{{ t('settings.changePassword') }}</button>
</form>
{% endblock %}
""")


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(403)
def forbidden(exc):
    return render_template_string(TEMPL_403, title=t("errors.forbiddenTitle")), 403


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render_template_string(TEMPL_404, title=t("errors.notFoundTitle")), 404


@app.errorhandler(500)
def internal_error(exc):
    return render_template_string(TEMPL_500, title=t("errors.serverTitle")), 500


TEMPL_403 = wrap("""
{% block body %}
  <h2>{{ t('errors.forbiddenTitle') }}</h2>
  <p>{{ t('errors.forbidden') }}
  {% if not identity %}<a href="{{ url_for('login') }}">{{ t('auth.signIn') }}</a>{% endif %}</p>
{% endblock %}
""")

TEMPL_404 = wrap("""
{% block body %}
  <h2>{{ t('errors.notFoundTitle') }}</h2>
  <p>{{ t('errors.notFound') }} <a href="{{ url_for('index') }}">{{ t('errors.backHome') }}</a></p>
{% endblock %}
""")

TEMPL_500 = wrap("""
{% block body %}
  <h2>{{ t('errors.serverTitle') }}</h2>
  <p>{{ t('errors.server') }}</p>
{% endblock %}
""")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)
