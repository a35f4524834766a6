"""Simple migration runner for SQLite using the SQL files in migrations/.

Usage: python run_migrations.py [--db PATH]
"""
import argparse
import os
from pathlib import Path
import sqlite3
from typing import List, Optional

BASE = Path(__file__).parent
DB_PATH = BASE / "app.db"
MIGRATIONS_DIR = BASE / "migrations"


def _db_path_from_env() -> Path:
    """Resolve the SQLite file from DATABASE_URL, falling back to `app.db`."""
    url = os.getenv("DATABASE_URL", "")
    if not url:
        return DB_PATH
    if not url.startswith("sqlite:///"):
        raise SystemExit(f"run_migrations only supports sqlite URLs, got {url!r}")
    return Path(url[len("sqlite:///"):])


def run(db_path: Optional[Path] = None, migrations_dir: Path = MIGRATIONS_DIR) -> List[str]:
    """Apply pending `migrations/*.sql` files in lexical order.

    Applied file names are recorded in `schema_migrations`, so running
    again only applies new files. Returns the names applied by this run.
    """
    db_path = db_path or _db_path_from_env()
    print("Using database:", db_path)
    applied = []
    conn = sqlite3.connect(db_path)
    try:
        conn.execute("CREATE TABLE IF NOT EXISTS schema_migrations (name TEXT PRIMARY KEY, applied_at TEXT NOT NULL)")
        done = {row[0] for row in conn.execute("SELECT name FROM schema_migrations")}
        for m in sorted(migrations_dir.glob("*.sql")):
            if m.name in done:
                continue
            print("Applying:", m.name)
            # one transaction per file: a failing statement leaves neither its DDL nor the record behind
            name = m.name.replace("'", "''")
            conn.executescript(
                "BEGIN;\n"
                f"{m.read_text(encoding='utf-8')}\n;\n"
                f"INSERT INTO schema_migrations (name, applied_at) VALUES ('{name}', datetime('now'));\n"
                "COMMIT;"
            )
            applied.append(m.name)
    finally:
        conn.close()
    print("Migrations applied:", len(applied))
    return applied


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('--db', type=Path, help='SQLite database file (defaults to DATABASE_URL or app.db)')
    args = parser.parse_args()
    run(args.db)
