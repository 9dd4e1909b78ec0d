#!/usr/bin/env python3
"""
migrate.py  –  copy highlights from an existing database into a fresh one.

• Usage:
      python migrate.py OLD.db [NEW.db]

  OLD.db  ← any SQLite file with a `highlights(source, source_type, content)`
            table, e.g. one produced by an earlier deployment (opened ro)
  NEW.db  ← **must not exist**; defaults to the app's configured DATABASE

• Only the highlight rows are copied; the search index is rebuilt
  from them afterwards, so a stale or missing FTS table in OLD.db
  does not matter.
"""

import sqlite3
import sys
from pathlib import Path

import highlights.app as web

# ----------------------------------------------------------------------
# 0.  locations + sanity checks
# ----------------------------------------------------------------------
if len(sys.argv) < 2:
    sys.exit(__doc__)

SOURCE = Path(sys.argv[1])
TARGET = Path(sys.argv[2]) if len(sys.argv) > 2 else Path(web.app.config["DATABASE"])

if not SOURCE.exists():
    sys.exit(f"❌  source DB not found: {SOURCE}")
if TARGET.exists():
    sys.exit(f"❌  {TARGET} already exists – move it away first.")

print("• old →", SOURCE)
print("• new →", TARGET)

src = sqlite3.connect(f"file:{SOURCE}?mode=ro", uri=True)
src.row_factory = sqlite3.Row

cols = {c["name"] for c in src.execute("PRAGMA table_info(highlights)")}
missing = {"source", "source_type", "content"} - cols
if missing:
    src.close()
    sys.exit(f"❌  {SOURCE} has no usable highlights table (missing {sorted(missing)})")

# ----------------------------------------------------------------------
# 1.  create an empty brand-new DB
# ----------------------------------------------------------------------
web.app.config["DATABASE"] = str(TARGET)
with web.app.app_context():
    web.init_db()
print("  schema created")

# ----------------------------------------------------------------------
# 2.  copy the rows (ids preserved so source order survives)
# ----------------------------------------------------------------------
with web.app.app_context():
    dst = web.get_db()
    id_col = "id, " if "id" in cols else ""
    rows = src.execute(
        f"SELECT {id_col}source, source_type, content FROM highlights ORDER BY rowid"
    )
    dst.executemany(
        f"INSERT INTO highlights ({id_col}source, source_type, content)"
        f" VALUES ({'?,' if id_col else ''}?,?,?)",
        (tuple(r) for r in rows),
    )
    dst.commit()
    print(f"  • highlights   ({web.count_highlights(db=dst)} rows)")

    # ------------------------------------------------------------------
    # 3.  rebuild the FTS5 index from the copied rows
    # ------------------------------------------------------------------
    print("→ rebuilding highlights_fts")
    n = web.rebuild_index(db=dst)
    print(f"  • highlights_fts ({n} rows)")

src.close()
print("\n✔  Migration finished – start the app with the new database.")
