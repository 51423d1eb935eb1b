"""SQLite database connection management and the key-value store."""

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any

SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS task_index (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    key TEXT NOT NULL UNIQUE,
    content TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    updated_at TEXT DEFAULT (datetime('now'))
);
"""

FTS_SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS task_index_fts USING fts5(
    key, content, content=task_index, content_rowid=id
);

CREATE TRIGGER IF NOT EXISTS task_index_ai AFTER INSERT ON task_index BEGIN
    INSERT INTO task_index_fts(rowid, key, content)
    VALUES (new.id, new.key, new.content);
END;

CREATE TRIGGER IF NOT EXISTS task_index_ad AFTER DELETE ON task_index BEGIN
    INSERT INTO task_index_fts(task_index_fts, rowid, key, content)
    VALUES ('delete', old.id, old.key, old.content);
END;

CREATE TRIGGER IF NOT EXISTS task_index_au AFTER UPDATE ON task_index BEGIN
    INSERT INTO task_index_fts(task_index_fts, rowid, key, content)
    VALUES ('delete', old.id, old.key, old.content);
    INSERT INTO task_index_fts(rowid, key, content)
    VALUES (new.id, new.key, new.content);
END;
"""


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    # Execution and scheduler threads report back through the same connection.
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.executescript(SCHEMA)
    conn.executescript(FTS_SCHEMA)
    conn.commit()
    return conn


class SqliteKeyValueStore:
    """Key-value store holding JSON values in the ``kv`` table."""

    def __init__(self, db: sqlite3.Connection):
        self.db = db
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            row = self.db.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        if not row:
            return None
        return json.loads(row["value"])

    def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value)
        with self._lock:
            self.db.execute(
                """INSERT INTO kv (key, value) VALUES (?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                   updated_at = datetime('now')""",
                (key, payload),
            )
            self.db.commit()

    def delete(self, key: str) -> None:
        with self._lock:
            self.db.execute("DELETE FROM kv WHERE key = ?", (key,))
            self.db.commit()
