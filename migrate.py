#!/usr/bin/env python3
"""
migrate.py  –  load a JSON dump of the old browser-storage collections.

• Expects one JSON file shaped like the old ``localStorage``:

      {"jebshit_news": [...], "jebshit_martyrs": [...], "jebshit_stories": [...]}

• Old news `image` / `publishDate` land in `mediaUrls` / `date`; other
  fields the dashboard does not know are dropped; dates become store
  timestamps and the original ``createdAt`` / ``updatedAt`` survive.
• Records whose id is already in the store are skipped, so running it
  twice is harmless.

    python migrate.py backup.json
"""

import json
import sqlite3
import sys
import uuid
from pathlib import Path

from jebchit import dashboard as dash

LEGACY_KEYS = {
    "jebshit_news": "news",
    "jebshit_martyrs": "martyrs",
    "jebshit_stories": "stories",
}

# old field name → current one; a single old value fills a list field
LEGACY_RENAMES = {
    "news": {"image": "mediaUrls", "publishDate": "date"},
}


def legacy_document(schema: dash.EntitySchema, item: dict) -> tuple[str, dict]:
    """One old record → (id, store document)."""
    item = dict(item)
    for old, new in LEGACY_RENAMES.get(schema.collection, {}).items():
        if old in item and item.get(new) in (None, "", []):
            item[new] = item.pop(old)

    data = {}
    for f in schema.fields:
        value = item.get(f.name)
        if value in (None, "", []):
            continue
        if f.kind == "date":
            value = dash.to_store_timestamp(value)
            if value is None:
                continue
        elif f.kind in dash.LIST_KINDS and isinstance(value, str):
            value = [value]
        elif f.kind == "flag":
            value = bool(value)
        data[f.name] = value

    data["status"] = item.get("status") if item.get("status") in dash.STATUSES else "draft"
    created = dash.to_store_timestamp(item.get("createdAt")) or dash.Timestamp.now()
    updated = dash.to_store_timestamp(item.get("updatedAt")) or created
    data["createdAt"] = created
    data["updatedAt"] = max(created, updated)
    doc_id = str(item.get("id") or uuid.uuid4().hex)
    return doc_id, data


def import_dump(dump: dict, *, db) -> dict[str, int]:
    """Insert every legacy record; returns new-row counts per collection."""
    counts = {}
    for key, collection in LEGACY_KEYS.items():
        schema = dash.SCHEMA_BY_COLLECTION[collection]
        added = 0
        for item in dump.get(key) or []:
            if not isinstance(item, dict):
                continue
            doc_id, data = legacy_document(schema, item)
            cur = db.execute(
                "INSERT OR IGNORE INTO document (collection, id, data) VALUES (?,?,?)",
                (collection, doc_id, dash.dump_document(data)),
            )
            added += cur.rowcount
        counts[collection] = added
    db.commit()
    return counts


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 1:
        print(__doc__)
        return 2

    # ------------------------------------------------------------------
    # 0.  read the dump
    # ------------------------------------------------------------------
    source = Path(argv[0])
    if not source.exists():
        print(f"❌  {source} not found – aborting.")
        return 1
    try:
        dump = json.loads(source.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        print(f"❌  {source} is not valid JSON: {exc}")
        return 1

    # ------------------------------------------------------------------
    # 1.  make sure the schema exists, then copy
    # ------------------------------------------------------------------
    with dash.app.app_context():
        dash.init_db()
        try:
            counts = import_dump(dump, db=dash.get_db())
        except sqlite3.Error as exc:
            print(f"❌  import failed: {exc}")
            return 1

    print("→ imported")
    for collection, n in counts.items():
        print(f"  • {collection:12}  ({n} rows)")
    print("\n✔  Migration finished – start the dashboard as usual.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
