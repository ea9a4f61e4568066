from __future__ import annotations

import os
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol, cast

from channel_sync.common import now
from channel_sync.models import Cursor, CursorKind

SCHEMA_VERSION = "1"

CURSOR_KINDS: tuple[CursorKind, ...] = ("message", "deletion")


class DBBusyError(RuntimeError):
    pass


class SchemaMismatchError(RuntimeError):
    pass


class CursorStore(Protocol):
    """Per (channel, server) high-water marks of processed server IDs.

    ``advance_*`` is a compare-and-set: the stored value only moves when the
    proposed ID is greater, and the return value tells whether it moved.
    """

    def get_last_message_server_id(self, channel: int, server: str) -> int | None: ...

    def advance_last_message_server_id(self, channel: int, server: str, server_id: int) -> bool: ...

    def get_last_deletion_server_id(self, channel: int, server: str) -> int | None: ...

    def advance_last_deletion_server_id(
        self, channel: int, server: str, server_id: int
    ) -> bool: ...


class MemoryCursorStore:
    def __init__(self) -> None:
        self._cursors: dict[tuple[str, int, CursorKind], int] = {}
        self._lock = threading.Lock()

    def _get(self, kind: CursorKind, channel: int, server: str) -> int | None:
        return self._cursors.get((server, channel, kind))

    def _advance(self, kind: CursorKind, channel: int, server: str, server_id: int) -> bool:
        key = (server, channel, kind)
        with self._lock:
            current = self._cursors.get(key)
            if current is not None and server_id <= current:
                return False
            self._cursors[key] = server_id
            return True

    def get_last_message_server_id(self, channel: int, server: str) -> int | None:
        return self._get("message", channel, server)

    def advance_last_message_server_id(self, channel: int, server: str, server_id: int) -> bool:
        return self._advance("message", channel, server, server_id)

    def get_last_deletion_server_id(self, channel: int, server: str) -> int | None:
        return self._get("deletion", channel, server)

    def advance_last_deletion_server_id(self, channel: int, server: str, server_id: int) -> bool:
        return self._advance("deletion", channel, server, server_id)


def _default_db_path() -> str:
    return str(Path("~/.channel_sync/channel_sync.sqlite").expanduser())


def _ensure_parent_dir(path: str) -> None:
    p = Path(path)
    if p.name == ":memory:":
        return
    p.parent.mkdir(parents=True, exist_ok=True)


class SQLiteCursorStore:
    def __init__(self, *, path: str | None = None) -> None:
        raw_path = path or os.environ.get("CHANNEL_SYNC_DB") or _default_db_path()
        if raw_path != ":memory:":
            raw_path = str(Path(raw_path).expanduser())
        self.path = raw_path
        self._schema_ready = False

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        _ensure_parent_dir(self.path)
        try:
            conn = sqlite3.connect(self.path, timeout=2.0)
        except sqlite3.OperationalError as e:  # pragma: no cover
            msg = str(e).lower()
            if "locked" in msg or "busy" in msg:
                raise DBBusyError(str(e)) from e
            raise
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA busy_timeout=2000;")
        try:
            if not self._schema_ready:
                self._ensure_schema(conn)
                # each :memory: connection is a fresh database
                self._schema_ready = self.path != ":memory:"
            yield conn
        finally:
            conn.close()

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        tables = {
            cast(str, r["name"])
            for r in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'",
            ).fetchall()
        }
        if "meta" not in tables:
            if tables:
                raise SchemaMismatchError(
                    "Database schema is outdated (missing schema version). "
                    "Wipe it with `channel-sync cli db wipe --yes` or delete the file at "
                    "$CHANNEL_SYNC_DB."
                )
            conn.executescript(
                f"""
                CREATE TABLE meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );

                INSERT INTO meta(key, value)
                VALUES ('schema_version', '{SCHEMA_VERSION}');
                """
            )
        else:
            row = conn.execute(
                "SELECT value FROM meta WHERE key = 'schema_version'",
            ).fetchone()
            if row is None or cast(str, row["value"]) != SCHEMA_VERSION:
                raise SchemaMismatchError(
                    "Database schema version mismatch. "
                    "Wipe it with `channel-sync cli db wipe --yes` or delete the file at "
                    "$CHANNEL_SYNC_DB."
                )

        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS cursors (
              server TEXT NOT NULL,
              channel INTEGER NOT NULL,
              kind TEXT NOT NULL,
              last_id INTEGER NOT NULL,
              updated_at REAL NOT NULL,
              PRIMARY KEY(server, channel, kind)
            );
            """
        )

    def _get(self, kind: CursorKind, channel: int, server: str) -> int | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT last_id FROM cursors WHERE server = ? AND channel = ? AND kind = ?",
                (server, channel, kind),
            ).fetchone()
        return None if row is None else cast(int, row["last_id"])

    def _advance(self, kind: CursorKind, channel: int, server: str, server_id: int) -> bool:
        with self.connect() as conn, conn:
            cur = conn.execute(
                """
                INSERT INTO cursors(server, channel, kind, last_id, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(server, channel, kind) DO UPDATE
                SET last_id = excluded.last_id, updated_at = excluded.updated_at
                WHERE excluded.last_id > cursors.last_id
                """,
                (server, channel, kind, server_id, now()),
            )
            return cur.rowcount > 0

    def get_last_message_server_id(self, channel: int, server: str) -> int | None:
        return self._get("message", channel, server)

    def advance_last_message_server_id(self, channel: int, server: str, server_id: int) -> bool:
        return self._advance("message", channel, server, server_id)

    def get_last_deletion_server_id(self, channel: int, server: str) -> int | None:
        return self._get("deletion", channel, server)

    def advance_last_deletion_server_id(self, channel: int, server: str, server_id: int) -> bool:
        return self._advance("deletion", channel, server, server_id)

    def list_cursors(self, *, server: str | None = None) -> list[Cursor]:
        sql = "SELECT server, channel, kind, last_id, updated_at FROM cursors"
        params: tuple[str, ...] = ()
        if server is not None:
            sql += " WHERE server = ?"
            params = (server,)
        sql += " ORDER BY server, channel, kind"
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_cursor_from_row(r) for r in rows]

    def reset_cursor(
        self, *, channel: int, server: str, kind: CursorKind | None = None
    ) -> int:
        """Forget the cursor(s) so the next fetch requests the fallback batch.

        Returns the number of cursors removed.
        """
        kinds = CURSOR_KINDS if kind is None else (kind,)
        with self.connect() as conn, conn:
            removed = 0
            for k in kinds:
                cur = conn.execute(
                    "DELETE FROM cursors WHERE server = ? AND channel = ? AND kind = ?",
                    (server, channel, k),
                )
                removed += cur.rowcount
        return removed


def _cursor_from_row(row: sqlite3.Row) -> Cursor:
    return Cursor(
        server=row["server"],
        channel=cast(int, row["channel"]),
        kind=row["kind"],
        last_id=cast(int, row["last_id"]),
        updated_at=row["updated_at"],
    )
