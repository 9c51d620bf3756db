# scripts/init_db.py
# Run: python -m scripts.init_db [path]
import sys

from cineverse.repo import SqliteRepo

DB = sys.argv[1] if len(sys.argv) > 1 else "data/cineverse.db"
SqliteRepo(DB).init_schema()
print("initialized db at", DB)
