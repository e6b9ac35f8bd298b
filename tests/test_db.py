"""Connection settings and error translation."""

import sqlite3

import db
from errors import BackendUnavailable, ConstraintViolation


class TestConnection:

    def test_busy_timeout_follows_db_timeout(self, monkeypatch):
        monkeypatch.setenv("DB_TIMEOUT", "30")
        conn = db._get_conn()
        try:
            assert conn.execute("PRAGMA busy_timeout").fetchone()[0] == 30000
        finally:
            conn.close()

    def test_default_busy_timeout(self, monkeypatch):
        monkeypatch.delenv("DB_TIMEOUT", raising=False)
        conn = db._get_conn()
        try:
            assert conn.execute("PRAGMA busy_timeout").fetchone()[0] == 10000
        finally:
            conn.close()

    def test_foreign_keys_on(self):
        conn = db._get_conn()
        try:
            assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
        finally:
            conn.close()


class TestTranslate:

    def test_locked_is_retryable(self):
        err = db._translate(sqlite3.OperationalError("database is locked"))
        assert isinstance(err, BackendUnavailable)
        assert err.retryable

    def test_duplicate_email(self):
        err = db._translate(sqlite3.IntegrityError("UNIQUE constraint failed: profiles.email"))
        assert isinstance(err, ConstraintViolation)
        assert err.code == "duplicate_email"

    def test_programming_error_passes_through(self):
        assert db._translate(sqlite3.OperationalError("no such table: nope")) is None
