from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from ..utils.timestamps import isoformat, parse_timestamp, utcnow
from .events import ChangeEvent


class LocalSyncStore:
    """SQLite persistence for entities, the change log, checkpoints and identity state."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._is_memory = str(path) == ":memory:"
        if not self._is_memory:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._shared_conn: sqlite3.Connection | None = None
        self._ensure_schema()

    # ------------------------------------------------------------------
    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        if self._is_memory:
            if self._shared_conn is None:
                self._shared_conn = sqlite3.connect(":memory:")
                self._shared_conn.row_factory = sqlite3.Row
            yield self._shared_conn
        else:
            conn = sqlite3.connect(self.path)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
            finally:
                conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connection() as conn:
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    def _ensure_schema(self) -> None:
        with self._transaction() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS entities (
                    workspace_id TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (workspace_id, entity_type, entity_id)
                );

                CREATE TABLE IF NOT EXISTS change_log (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_id TEXT NOT NULL UNIQUE,
                    workspace_id TEXT NOT NULL,
                    device_id TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    occurred_at TEXT NOT NULL,
                    pushed INTEGER NOT NULL DEFAULT 0,
                    pushed_at TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_attempt_ts TEXT
                );

                CREATE INDEX IF NOT EXISTS change_log_pending
                    ON change_log (workspace_id, device_id, pushed, seq);

                CREATE TABLE IF NOT EXISTS inbox_events (
                    event_id TEXT PRIMARY KEY,
                    workspace_id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    after_seq INTEGER NOT NULL DEFAULT 0,
                    applied_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS sync_cursors (
                    stream TEXT PRIMARY KEY,
                    cursor TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS kv_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )

    # ------------------------------------------------------------------
    def load_entities(self, workspace_id: str) -> list[tuple[str, dict[str, Any]]]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT entity_type, payload FROM entities WHERE workspace_id = ? ORDER BY entity_type, entity_id",
                (workspace_id,),
            ).fetchall()
        return [(row["entity_type"], json.loads(row["payload"])) for row in rows]

    def commit_mutation(
        self,
        workspace_id: str,
        entity_type: str,
        entity_id: str,
        payload: Mapping[str, Any] | None,
        event: ChangeEvent | None = None,
    ) -> int | None:
        """Write (or delete, when ``payload`` is ``None``) an entity and log ``event`` atomically.

        Returns the change log sequence number when an event was appended.
        """

        with self._transaction() as conn:
            if payload is None:
                conn.execute(
                    "DELETE FROM entities WHERE workspace_id = ? AND entity_type = ? AND entity_id = ?",
                    (workspace_id, entity_type, entity_id),
                )
            else:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO entities(workspace_id, entity_type, entity_id, payload, updated_at)
                    VALUES(?, ?, ?, ?, ?)
                    """,
                    (
                        workspace_id,
                        entity_type,
                        entity_id,
                        json.dumps(payload, separators=(",", ":")),
                        str(payload.get("updated_at") or isoformat(utcnow())),
                    ),
                )
            if event is None:
                return None
            return self._insert_change(conn, event)

    def clear_entities(self, workspace_id: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM entities WHERE workspace_id = ?", (workspace_id,))

    # ------------------------------------------------------------------
    def append_change(self, event: ChangeEvent) -> int:
        with self._transaction() as conn:
            return self._insert_change(conn, event)

    def _insert_change(self, conn: sqlite3.Connection, event: ChangeEvent) -> int:
        cursor = conn.execute(
            """
            INSERT INTO change_log(event_id, workspace_id, device_id, entity_type, entity_id,
                                   operation, payload, occurred_at)
            VALUES(?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.workspace_id,
                event.device_id,
                event.entity_type.value,
                event.entity_id,
                event.operation.value,
                event.to_json(),
                isoformat(event.occurred_at),
            ),
        )
        return int(cursor.lastrowid)

    def list_changes(
        self,
        workspace_id: str,
        *,
        device_id: str | None = None,
        pushed: bool | None = None,
        limit: int | None = None,
    ) -> list[ChangeEvent]:
        query = "SELECT payload FROM change_log WHERE workspace_id = ?"
        params: list[Any] = [workspace_id]
        if device_id is not None:
            query += " AND device_id = ?"
            params.append(device_id)
        if pushed is not None:
            query += " AND pushed = ?"
            params.append(1 if pushed else 0)
        query += " ORDER BY seq ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._connection() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [ChangeEvent.from_json(row["payload"]) for row in rows]

    def mark_changes_pushed(self, event_ids: Iterable[str]) -> int:
        now = isoformat(utcnow())
        with self._transaction() as conn:
            cursor = conn.executemany(
                "UPDATE change_log SET pushed = 1, pushed_at = ? WHERE event_id = ? AND pushed = 0",
                ((now, event_id) for event_id in event_ids),
            )
            return max(cursor.rowcount, 0)

    def mark_change_attempt(self, event_ids: Iterable[str]) -> None:
        now = isoformat(utcnow())
        with self._transaction() as conn:
            conn.executemany(
                """
                UPDATE change_log
                   SET attempts = attempts + 1, last_attempt_ts = ?
                 WHERE event_id = ?
                """,
                ((now, event_id) for event_id in event_ids),
            )

    def change_attempts(self, event_id: str) -> int:
        with self._connection() as conn:
            row = conn.execute("SELECT attempts FROM change_log WHERE event_id = ?", (event_id,)).fetchone()
        return int(row["attempts"]) if row else 0

    def count_changes(self, workspace_id: str, *, device_id: str | None = None, pushed: bool | None = None) -> int:
        query = "SELECT COUNT(*) AS total FROM change_log WHERE workspace_id = ?"
        params: list[Any] = [workspace_id]
        if device_id is not None:
            query += " AND device_id = ?"
            params.append(device_id)
        if pushed is not None:
            query += " AND pushed = ?"
            params.append(1 if pushed else 0)
        with self._connection() as conn:
            row = conn.execute(query, tuple(params)).fetchone()
        if not row or row["total"] is None:
            return 0
        return int(row["total"])

    def prune_changes(self, workspace_id: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM change_log WHERE workspace_id = ?", (workspace_id,))

    def requeue_changes(self, device_id: str) -> int:
        """Mark every pushed event of ``device_id`` as unpushed again."""

        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE change_log SET pushed = 0, pushed_at = NULL WHERE device_id = ? AND pushed = 1",
                (device_id,),
            )
            return max(cursor.rowcount, 0)

    # ------------------------------------------------------------------
    def record_incoming(self, event: ChangeEvent) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO inbox_events(event_id, workspace_id, payload, after_seq, applied_at)
                VALUES(?, ?, ?, (SELECT COALESCE(MAX(seq), 0) FROM change_log), ?)
                """,
                (event.id, event.workspace_id, event.to_json(), isoformat(utcnow())),
            )

    def has_incoming(self, event_id: str) -> bool:
        with self._connection() as conn:
            row = conn.execute("SELECT 1 FROM inbox_events WHERE event_id = ?", (event_id,)).fetchone()
        return row is not None

    def list_incoming(self, workspace_id: str) -> list[tuple[int, ChangeEvent]]:
        """Remote events recorded for ``workspace_id`` in the order they were applied.

        Each event comes with the number of the workspace's change log entries
        that preceded it, so a replay can interleave both streams.
        """

        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT i.payload,
                       (SELECT COUNT(*) FROM change_log c
                         WHERE c.workspace_id = i.workspace_id AND c.seq <= i.after_seq) AS position
                  FROM inbox_events i
                 WHERE i.workspace_id = ?
                 ORDER BY position ASC, i.rowid ASC
                """,
                (workspace_id,),
            ).fetchall()
        return [(int(row["position"]), ChangeEvent.from_json(row["payload"])) for row in rows]

    def clear_incoming(self, workspace_id: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM inbox_events WHERE workspace_id = ?", (workspace_id,))

    # ------------------------------------------------------------------
    def get_cursor(self, stream: str) -> str | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT cursor FROM sync_cursors WHERE stream = ?",
                (stream,),
            ).fetchone()
        if not row:
            return None
        return row["cursor"]

    def set_cursor(self, stream: str, cursor: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO sync_cursors(stream, cursor, updated_at)
                VALUES(?, ?, ?)
                """,
                (stream, cursor, isoformat(utcnow())),
            )

    def clear_cursors(self, prefix: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_cursors WHERE substr(stream, 1, ?) = ?",
                (len(prefix), prefix),
            )
            return max(cursor.rowcount, 0)

    def cursor_updated_at(self, stream: str) -> datetime | None:
        with self._connection() as conn:
            row = conn.execute("SELECT updated_at FROM sync_cursors WHERE stream = ?", (stream,)).fetchone()
        return parse_timestamp(row["updated_at"]) if row else None

    # ------------------------------------------------------------------
    def get_value(self, key: str, default: Any = None) -> Any:
        with self._connection() as conn:
            row = conn.execute("SELECT value FROM kv_state WHERE key = ?", (key,)).fetchone()
        if not row:
            return default
        return json.loads(row["value"])

    def set_value(self, key: str, value: Any) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv_state(key, value, updated_at) VALUES(?, ?, ?)",
                (key, json.dumps(value, separators=(",", ":")), isoformat(utcnow())),
            )

    def delete_value(self, key: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM kv_state WHERE key = ?", (key,))

    # ------------------------------------------------------------------
    def reset_workspace(self, workspace_id: str, *, cursor_stream: str | None = None) -> None:
        """Drop every local trace of ``workspace_id``: entities, log, inbox and checkpoint."""

        with self._transaction() as conn:
            conn.execute("DELETE FROM entities WHERE workspace_id = ?", (workspace_id,))
            conn.execute("DELETE FROM change_log WHERE workspace_id = ?", (workspace_id,))
            conn.execute("DELETE FROM inbox_events WHERE workspace_id = ?", (workspace_id,))
            conn.execute("DELETE FROM sync_cursors WHERE stream = ?", (cursor_stream or workspace_id,))

    def close(self) -> None:
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None
