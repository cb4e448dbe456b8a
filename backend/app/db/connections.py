from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from cryptography.fernet import InvalidToken

from ..core.errors import ConnectionUnresolved
from ..core.security import SecretBox
from .models import ConnectionRecord, ResolvedConnection


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteConnectionStore:
    """Saved Postgres connections. Secrets are stored encrypted."""

    def __init__(self, db_path: Path, box: SecretBox):
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._box = box
        self._init()

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _init(self) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS connections (
                  connection_id INTEGER PRIMARY KEY AUTOINCREMENT,
                  name TEXT NOT NULL,
                  host TEXT NOT NULL,
                  port INTEGER NOT NULL DEFAULT 5432,
                  database TEXT NOT NULL DEFAULT 'postgres',
                  username TEXT,
                  secret_encrypted TEXT,
                  ssl_mode TEXT,
                  search_path TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                )
                """
            )
            conn.commit()

    @staticmethod
    def _record(row: sqlite3.Row) -> ConnectionRecord:
        return ConnectionRecord(
            connection_id=int(row["connection_id"]),
            name=str(row["name"]),
            host=str(row["host"]),
            port=int(row["port"]),
            database=str(row["database"]),
            username=row["username"],
            ssl_mode=row["ssl_mode"],
            search_path=row["search_path"],
            has_secret=bool(row["secret_encrypted"]),
            created_at=str(row["created_at"]),
            updated_at=str(row["updated_at"]),
        )

    def create_connection(
        self,
        *,
        name: str,
        host: str,
        port: int = 5432,
        database: str = "postgres",
        username: Optional[str] = None,
        secret: Optional[str] = None,
        ssl_mode: Optional[str] = None,
        search_path: Optional[str] = None,
    ) -> ConnectionRecord:
        now = _now_iso()
        secret_encrypted = self._box.encrypt_text(secret) if secret else None
        with self._conn() as conn:
            cur = conn.execute(
                """
                INSERT INTO connections(name, host, port, database, username, secret_encrypted,
                                        ssl_mode, search_path, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (name, host, int(port), database, username, secret_encrypted, ssl_mode, search_path, now, now),
            )
            conn.commit()
            connection_id = int(cur.lastrowid)
        return self.get_connection(connection_id)

    def get_connection(self, connection_id: int) -> ConnectionRecord:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM connections WHERE connection_id = ?", (connection_id,)).fetchone()
            if row is None:
                raise KeyError(f"Connection not found: {connection_id}")
            return self._record(row)

    def list_connections(self) -> List[ConnectionRecord]:
        with self._conn() as conn:
            rows = conn.execute("SELECT * FROM connections ORDER BY name").fetchall()
            return [self._record(r) for r in rows]

    def delete_connection(self, connection_id: int) -> bool:
        with self._conn() as conn:
            cur = conn.execute("DELETE FROM connections WHERE connection_id = ?", (connection_id,))
            conn.commit()
            return cur.rowcount == 1

    def resolve(self, connection_ref: str) -> ResolvedConnection:
        try:
            connection_id = int(connection_ref)
        except (TypeError, ValueError):
            raise ConnectionUnresolved(f"Invalid connection reference: {connection_ref!r}")
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM connections WHERE connection_id = ?", (connection_id,)).fetchone()
        if row is None:
            raise ConnectionUnresolved(f"Connection not found: {connection_ref}")

        secret: Optional[str] = None
        if row["secret_encrypted"]:
            try:
                secret = self._box.decrypt_text(str(row["secret_encrypted"]))
            except (InvalidToken, UnicodeDecodeError) as e:
                raise ConnectionUnresolved(f"Could not decrypt secret for connection {connection_ref}") from e
        return ResolvedConnection(
            host=str(row["host"]),
            port=int(row["port"]),
            database=str(row["database"]),
            username=row["username"],
            secret=secret,
            ssl_mode=row["ssl_mode"],
            search_path=row["search_path"],
        )
