"""Full-text task index used as the semantic search backend."""

import json
import re
import sqlite3
import threading


class FtsTaskIndex:
    """Stores task summaries in an FTS5 table and searches them by relevance."""

    def __init__(self, db: sqlite3.Connection):
        self.db = db
        self._lock = threading.Lock()

    def index(self, key: str, content: str, metadata: dict) -> None:
        """Store or update an index entry."""
        with self._lock:
            self.db.execute(
                """INSERT INTO task_index (key, content, metadata) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET content = excluded.content,
                   metadata = excluded.metadata, updated_at = datetime('now')""",
                (key, content, json.dumps(metadata)),
            )
            self.db.commit()

    def remove_prefix(self, prefix: str) -> int:
        """Delete every entry whose key starts with prefix."""
        with self._lock:
            result = self.db.execute(
                "DELETE FROM task_index WHERE key LIKE ?", (f"{prefix}%",)
            )
            self.db.commit()
        return result.rowcount

    def search(self, query: str, limit: int = 20) -> list[dict]:
        """Full-text search across indexed tasks, returning entry metadata."""
        match = _to_match_expression(query)
        if not match:
            return []
        with self._lock:
            rows = self.db.execute(
                """SELECT t.metadata FROM task_index t
                   JOIN task_index_fts fts ON t.id = fts.rowid
                   WHERE task_index_fts MATCH ?
                   ORDER BY rank LIMIT ?""",
                (match, limit),
            ).fetchall()
        return [json.loads(r["metadata"]) for r in rows]


def _to_match_expression(query: str) -> str:
    # Quote each word so user input never reaches the FTS query syntax.
    words = re.findall(r"\w+", query)
    return " OR ".join(f'"{w}"' for w in words)
