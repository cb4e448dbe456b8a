from __future__ import annotations

import os
import sqlite3
import stat
import tempfile
import unittest
from pathlib import Path

from cryptography.fernet import InvalidToken

from backend.app.core.errors import ConnectionUnresolved
from backend.app.core.security import SecretBox, generate_fernet_key, load_or_create_key
from backend.app.db.connections import SQLiteConnectionStore


class TestSQLiteConnectionStore(unittest.TestCase):
    def test_secret_is_encrypted_at_rest_and_resolved(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db_path = Path(td) / "connections.sqlite3"
            store = SQLiteConnectionStore(db_path, SecretBox(generate_fernet_key()))
            rec = store.create_connection(
                name="local", host="localhost", username="admin", secret="hunter2", search_path="app"
            )
            self.assertTrue(rec.has_secret)

            with sqlite3.connect(str(db_path)) as conn:
                raw = conn.execute("SELECT secret_encrypted FROM connections").fetchone()[0]
            self.assertNotIn("hunter2", raw)

            resolved = store.resolve(str(rec.connection_id))
            self.assertEqual(resolved.secret, "hunter2")
            self.assertEqual(resolved.search_path, "app")
            self.assertNotIn("hunter2", repr(resolved))

    def test_wrong_key_cannot_resolve(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db_path = Path(td) / "connections.sqlite3"
            rec = SQLiteConnectionStore(db_path, SecretBox(generate_fernet_key())).create_connection(
                name="x", host="h", secret="pw"
            )
            other = SQLiteConnectionStore(db_path, SecretBox(generate_fernet_key()))
            with self.assertRaises(ConnectionUnresolved) as ctx:
                other.resolve(str(rec.connection_id))
            self.assertIsInstance(ctx.exception.__cause__, InvalidToken)

    def test_unknown_and_malformed_references(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            store = SQLiteConnectionStore(Path(td) / "c.sqlite3", SecretBox(generate_fernet_key()))
            for ref in ("7", "abc", ""):
                with self.assertRaises(ConnectionUnresolved):
                    store.resolve(ref)
            with self.assertRaises(KeyError):
                store.get_connection(7)
            self.assertFalse(store.delete_connection(7))


class TestKeyFile(unittest.TestCase):
    def test_key_is_created_once(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            key_path = Path(td) / "db.key"
            key = load_or_create_key(key_path)
            self.assertEqual(load_or_create_key(key_path), key)
            if os.name == "posix":
                self.assertEqual(stat.S_IMODE(key_path.stat().st_mode), 0o600)
            SecretBox(key)

    def test_empty_key_is_rejected(self) -> None:
        with self.assertRaises(RuntimeError):
            SecretBox("")
