"""
tests/test_migrate.py
"""
from __future__ import annotations

import json
import uuid

from jebchit.dashboard import SCHEMA_BY_COLLECTION, EntitySync, Timestamp, get_db, load_document

import migrate


def _dump(tag: str) -> dict:
    """Records shaped the way the old browser app kept them."""
    return {
        "jebshit_news": [
            {
                "id": f"news-{tag}",
                "title": f"Old news {tag}",
                "content": "from the browser",
                "image": "https://cdn.example.org/news/images/1-a.png",
                "publishDate": "2023-03-01",
                "status": "published",
                "createdAt": "2023-03-01T10:00:00.000Z",
                "updatedAt": "2023-03-02T10:00:00.000Z",
                "legacyField": "dropped",
            }
        ],
        "jebshit_martyrs": [
            {"id": f"m-{tag}", "name": f"Martyr {tag}", "biography": "b",
             "photo": "https://cdn.example.org/martyrs/images/1-p.png",
             "dateOfMartyrdom": "garbage", "createdAt": "2022-01-01T00:00:00Z"}
        ],
        "jebshit_stories": [
            {"id": f"s-{tag}", "title": f"Story {tag}", "content": "c",
             "images": ["https://cdn.example.org/stories/images/1-s.png"],
             "publishDate": "2021-06-01", "status": "draft",
             "createdAt": "2021-06-01T08:00:00.000Z",
             "updatedAt": "2021-06-01T08:00:00.000Z"},
            "not a record",
        ],
    }


def test_import_keeps_audit_times_and_known_fields(client):
    tag = uuid.uuid4().hex[:8]
    counts = migrate.import_dump(_dump(tag), db=get_db())
    assert counts == {"news": 1, "martyrs": 1, "stories": 1}

    news = EntitySync(SCHEMA_BY_COLLECTION["news"]).get(f"news-{tag}")
    assert news["createdAt"] == "2023-03-01T10:00:00.000Z"
    assert news["updatedAt"] == "2023-03-02T10:00:00.000Z"
    assert news["content"] == "from the browser"
    assert news["status"] == "published"
    assert "legacyField" not in news
    assert "image" not in news and "publishDate" not in news


def test_old_news_image_and_date_are_renamed(client):
    tag = uuid.uuid4().hex[:8]
    migrate.import_dump(_dump(tag), db=get_db())
    news = EntitySync(SCHEMA_BY_COLLECTION["news"]).get(f"news-{tag}")
    assert news["mediaUrls"] == ["https://cdn.example.org/news/images/1-a.png"]
    assert news["date"] == "2023-03-01"


def test_martyrs_and_stories_keep_their_fields(client):
    tag = uuid.uuid4().hex[:8]
    migrate.import_dump(_dump(tag), db=get_db())

    row = get_db().execute(
        "SELECT data FROM document WHERE collection='martyrs' AND id=?", (f"m-{tag}",)
    ).fetchone()
    martyr = load_document(row[0])
    assert martyr["photo"] == "https://cdn.example.org/martyrs/images/1-p.png"
    assert "dateOfMartyrdom" not in martyr
    assert martyr["status"] == "draft"
    assert martyr["updatedAt"] == martyr["createdAt"]
    assert isinstance(martyr["createdAt"], Timestamp)

    story = EntitySync(SCHEMA_BY_COLLECTION["stories"]).get(f"s-{tag}")
    assert story["images"] == ["https://cdn.example.org/stories/images/1-s.png"]
    assert story["createdAt"] == "2021-06-01T08:00:00.000Z"


def test_import_twice_adds_nothing(client):
    tag = uuid.uuid4().hex[:8]
    migrate.import_dump(_dump(tag), db=get_db())
    assert migrate.import_dump(_dump(tag), db=get_db()) == {"news": 0, "martyrs": 0, "stories": 0}


def test_main_reads_file(client, tmp_path, capsys):
    tag = uuid.uuid4().hex[:8]
    src = tmp_path / "backup.json"
    src.write_text(json.dumps(_dump(tag)), encoding="utf-8")
    assert migrate.main([str(src)]) == 0
    assert "Migration finished" in capsys.readouterr().out

    assert migrate.main([str(tmp_path / "missing.json")]) == 1
    assert migrate.main([]) == 2
