"""
tests/test_store.py
"""
from __future__ import annotations

import sqlite3
import uuid

import pytest

from jebchit.dashboard import (
    SCHEMA_BY_COLLECTION,
    DocumentNotFound,
    EntitySync,
    Timestamp,
    ValidationError,
    WriteFailure,
    dump_document,
    filter_records,
    get_db,
    listener_count,
    load_document,
    snapshot_rev,
)

JOBS = SCHEMA_BY_COLLECTION["jobs"]
MARTYRS = SCHEMA_BY_COLLECTION["martyrs"]
NEWS = SCHEMA_BY_COLLECTION["news"]


# ───────────────────────── helpers ────────────────────────────────────
def _tag() -> str:
    return uuid.uuid4().hex[:8]


def _raw(collection: str, doc_id: str) -> dict:
    row = get_db().execute(
        "SELECT data FROM document WHERE collection=? AND id=?", (collection, doc_id)
    ).fetchone()
    return load_document(row[0])


def _job(title: str, **extra) -> dict:
    return {
        "title": title,
        "description": "Help with the harvest",
        "jobType": "temporary",
        "location": "Jebchit",
        "contactInfo": "03 000 000",
        "publishDate": "2024-05-01",
        **extra,
    }


# ───────────────────────── tests ──────────────────────────────────────
def test_add_then_subscribe_sees_one_draft(client):
    title = f"Driver {_tag()}"
    sync = EntitySync(JOBS)
    with sync.subscribe() as sub:
        doc_id = sync.add(_job(title, location="Nabatieh"))
        mine = [r for r in sub.data if r["title"] == title]

    assert len(mine) == 1
    rec = mine[0]
    assert rec["id"] == doc_id
    assert rec["location"] == "Nabatieh"
    assert rec["status"] == "draft"
    assert rec["createdAt"] == rec["updatedAt"]
    assert rec["publishDate"] == "2024-05-01"


def test_subscription_starts_ready_with_current_list(client):
    sync = EntitySync(JOBS)
    sync.add(_job(f"Cook {_tag()}"))
    sub = sync.subscribe()
    try:
        assert sub.state.status == "ready"
        assert sub.data == sync.fetch()
    finally:
        sub.close()


def test_callback_gets_every_snapshot_in_write_order(client):
    seen = []
    sync = EntitySync(NEWS)
    with sync.subscribe(seen.append):
        a = sync.add({"title": f"A {_tag()}", "description": "x"})
        sync.update(a, {"isUrgent": True})
        sync.remove(a)
    assert [s.status for s in seen] == ["ready"] * 4
    assert a in [r["id"] for r in seen[1].data]
    assert next(r for r in seen[2].data if r["id"] == a)["isUrgent"] is True
    assert a not in [r["id"] for r in seen[3].data]


def test_close_is_idempotent_and_stops_delivery(client):
    seen = []
    sync = EntitySync(NEWS)
    before = listener_count("news")
    sub = sync.subscribe(seen.append)
    assert listener_count("news") == before + 1
    sub.close()
    sub.close()
    assert listener_count("news") == before
    sync.add({"title": f"After close {_tag()}", "description": "x"})
    assert len(seen) == 1


def test_add_ignores_audit_fields_from_caller(client):
    sync = EntitySync(NEWS)
    doc_id = sync.add(
        {
            "id": "forged",
            "createdAt": "1990-01-01",
            "updatedAt": "1990-01-01",
            "title": f"Audit {_tag()}",
            "description": "x",
        }
    )
    assert doc_id != "forged"
    rec = sync.get(doc_id)
    assert rec["id"] == doc_id
    assert rec["createdAt"].startswith("2099-")


def test_dates_stored_as_timestamps_and_empty_ones_omitted(client):
    sync = EntitySync(JOBS)
    doc_id = sync.add(_job(f"Guard {_tag()}", expiryDate=""))
    raw = _raw("jobs", doc_id)
    assert isinstance(raw["publishDate"], Timestamp)
    assert "expiryDate" not in raw
    assert isinstance(raw["createdAt"], Timestamp)


def test_update_keeps_created_and_never_moves_updated_back(client):
    sync = EntitySync(MARTYRS)
    doc_id = sync.add({"name": f"Ali {_tag()}", "biography": "..."})
    first = _raw("martyrs", doc_id)

    # pretend the stored updatedAt came from a clock ahead of ours
    future = Timestamp(first["updatedAt"].seconds + 10_000)
    get_db().execute(
        "UPDATE document SET data=? WHERE collection='martyrs' AND id=?",
        (dump_document({**first, "updatedAt": future}), doc_id),
    )
    get_db().commit()

    sync.update(doc_id, {"biography": "Longer biography"})
    after = _raw("martyrs", doc_id)
    assert after["createdAt"] == first["createdAt"]
    assert after["updatedAt"] == future
    assert after["biography"] == "Longer biography"


def test_publish_changes_only_status_and_updated(client):
    sync = EntitySync(MARTYRS)
    doc_id = sync.add(
        {"name": f"Hassan {_tag()}", "biography": "b", "dateOfMartyrdom": "2006-07-20"}
    )
    before = sync.get(doc_id)
    sync.update(doc_id, {"status": "published"})
    after = sync.get(doc_id)

    assert after["status"] == "published"
    assert after["updatedAt"] > before["updatedAt"]
    changed = {k for k in after if after[k] != before.get(k)}
    assert changed == {"status", "updatedAt"}


def test_update_can_clear_a_date(client):
    sync = EntitySync(JOBS)
    doc_id = sync.add(_job(f"Teacher {_tag()}", expiryDate="2024-06-01"))
    sync.update(doc_id, {"expiryDate": ""})
    assert "expiryDate" not in _raw("jobs", doc_id)
    assert "expiryDate" not in sync.get(doc_id)


def test_update_unknown_id(client):
    with pytest.raises(DocumentNotFound):
        EntitySync(NEWS).update("nope", {"title": "x"})
    assert issubclass(DocumentNotFound, WriteFailure)


def test_remove_missing_id_is_fine(client):
    EntitySync(NEWS).remove("never-existed")


def test_default_order_is_newest_first(client):
    sync = EntitySync(NEWS)
    tag = _tag()
    ids = [sync.add({"title": f"{tag} {i}", "description": "x"}) for i in range(3)]
    mine = [r["id"] for r in sync.fetch() if r["title"].startswith(tag)]
    assert mine == ids[::-1]


def test_custom_order_and_missing_field_left_out(client):
    sync = EntitySync(JOBS, order_by="expiryDate", direction="asc")
    tag = _tag()
    late = EntitySync(JOBS).add(_job(f"{tag} late", expiryDate="2024-09-01"))
    early = EntitySync(JOBS).add(_job(f"{tag} early", expiryDate="2024-03-01"))
    EntitySync(JOBS).add(_job(f"{tag} open-ended"))
    mine = [r["id"] for r in sync.fetch() if r["title"].startswith(tag)]
    assert mine == [early, late]


def test_bad_direction():
    with pytest.raises(ValueError):
        EntitySync(NEWS, direction="sideways")


def test_store_failure_errors_the_subscription(client):
    broken = sqlite3.connect(":memory:")  # no document table
    before = listener_count("news")
    sub = EntitySync(NEWS, db=broken).subscribe()
    assert sub.state.status == "errored"
    assert sub.data == []
    assert "document" in sub.error
    assert listener_count("news") == before


def test_write_failure(client):
    broken = sqlite3.connect(":memory:")
    with pytest.raises(WriteFailure):
        EntitySync(NEWS, db=broken).add({"title": "x", "description": "y"})


def test_filter_keeps_matches_in_order():
    records = [
        {"title": "Olive harvest", "location": "Jebchit"},
        {"title": "Driver", "location": "Nabatieh"},
        {"title": "Harvest helper", "location": "Kfar"},
        {"title": "Baker", "location": None},
    ]
    assert filter_records(records, "HARVEST", ("title", "location")) == [
        records[0],
        records[2],
    ]
    assert filter_records(records, "nabat", ("title", "location")) == [records[1]]
    assert filter_records(records, "  ", ("title",)) == records


def test_snapshot_rev_tracks_updates():
    a = [{"id": "1", "updatedAt": "2024-01-01T00:00:00.000Z"}]
    b = [{"id": "1", "updatedAt": "2024-01-01T00:00:01.000Z"}]
    assert snapshot_rev(a) == snapshot_rev(list(a))
    assert snapshot_rev(a) != snapshot_rev(b)


def test_failing_listener_does_not_fail_the_write(client):
    def explode(state):
        raise RuntimeError("listener bug")

    sync = EntitySync(NEWS)
    with sync.subscribe(explode):
        doc_id = sync.add({"title": f"Loud {_tag()}", "description": "x"})
        sync.update(doc_id, {"isUrgent": True})
    assert sync.get(doc_id)["isUrgent"] is True


def test_update_refuses_unparseable_date(client):
    sync = EntitySync(JOBS)
    doc_id = sync.add(_job(f"Clerk {_tag()}", expiryDate="2024-06-01"))
    with pytest.raises(ValidationError) as exc:
        sync.update(doc_id, {"expiryDate": "bogus"})
    assert "expiryDate" in exc.value.errors
    assert sync.get(doc_id)["expiryDate"] == "2024-06-01"
