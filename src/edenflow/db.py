from __future__ import annotations

import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator

from .config import Config
from .migrations import apply_migrations

_MIGRATED: set[str] = set()
_MIGRATED_LOCK = threading.Lock()


def is_postgres_url(url: str | None) -> bool:
    if not url:
        return False
    return url.startswith("postgres://") or url.startswith("postgresql://")


class DBConn:
    """Connection wrapper shared by sqlite and postgres backends.

    Statements run in autocommit mode; ``transaction()`` opens an explicit
    transaction and nests through savepoints, so repository helpers can call
    ``commit()`` freely without ending an outer unit of work.
    """

    def __init__(self, conn: Any, backend: str) -> None:
        self._conn = conn
        self.backend = backend
        self._depth = 0

    def execute(self, sql: str, params: tuple | list | None = None):
        sql = _normalize_sql(sql, self.backend)
        params = params or ()
        cursor = self._conn.cursor()
        cursor.execute(sql, params)
        return cursor

    def executemany(self, sql: str, seq_of_params):
        sql = _normalize_sql(sql, self.backend)
        cursor = self._conn.cursor()
        cursor.executemany(sql, seq_of_params)
        return cursor

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def transaction(self) -> Iterator["DBConn"]:
        if self._depth == 0:
            self._conn.execute("BEGIN IMMEDIATE" if self.backend == "sqlite" else "BEGIN")
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._depth = 0
                self._conn.execute("ROLLBACK")
                raise
            self._depth = 0
            self._conn.execute("COMMIT")
            return
        savepoint = f"sp_{self._depth}"
        self._conn.execute(f"SAVEPOINT {savepoint}")
        self._depth += 1
        try:
            yield self
        except BaseException:
            self._depth -= 1
            self._conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
            self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            raise
        self._depth -= 1
        self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")

    def skip_locked(self) -> str:
        return " FOR UPDATE SKIP LOCKED" if self.backend == "postgres" else ""

    def is_integrity_error(self, exc: BaseException) -> bool:
        if self.backend == "postgres":
            import psycopg

            return isinstance(exc, psycopg.IntegrityError)
        return isinstance(exc, sqlite3.IntegrityError)

    def commit(self) -> None:
        if self._depth == 0:
            self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __getattr__(self, name: str):
        return getattr(self._conn, name)


def connect(config: Config) -> DBConn:
    return connect_db(config.database.path, config.database.resolved_url())


def connect_db(path: str, url: str | None = None) -> DBConn:
    if url and is_postgres_url(url):
        try:
            import psycopg
        except ImportError as exc:  # pragma: no cover - depends on env
            raise RuntimeError("psycopg is required for PostgreSQL support") from exc
        raw = psycopg.connect(url, autocommit=True)
        conn = DBConn(raw, "postgres")
        _migrate_once(conn, url)
        return conn

    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    raw = sqlite3.connect(path, isolation_level=None, timeout=30, check_same_thread=False)
    raw.execute("PRAGMA journal_mode=WAL")
    raw.execute("PRAGMA synchronous=NORMAL")
    raw.execute("PRAGMA busy_timeout=5000")
    raw.execute("PRAGMA foreign_keys=ON")
    conn = DBConn(raw, "sqlite")
    _migrate_once(conn, os.path.abspath(path))
    return conn


def _migrate_once(conn: DBConn, key: str) -> None:
    with _MIGRATED_LOCK:
        if key in _MIGRATED:
            return
        apply_migrations(conn)
        _MIGRATED.add(key)


def placeholders(count: int) -> str:
    return ",".join(["?"] * count)


def _normalize_sql(sql: str, backend: str) -> str:
    if backend != "postgres":
        return sql
    normalized = _replace_insert_or_ignore(sql)
    normalized = normalized.replace("BEGIN IMMEDIATE", "BEGIN")
    normalized = _convert_qmark_to_percent(normalized)
    return normalized


def _replace_insert_or_ignore(sql: str) -> str:
    upper = sql.upper()
    if "INSERT OR IGNORE" not in upper:
        return sql
    replaced = _replace_first_case_insensitive(sql, "INSERT OR IGNORE", "INSERT")
    if "ON CONFLICT" in replaced.upper():
        return replaced
    stripped = replaced.rstrip().rstrip(";")
    return stripped + " ON CONFLICT DO NOTHING"


def _replace_first_case_insensitive(text: str, needle: str, replacement: str) -> str:
    idx = text.upper().find(needle.upper())
    if idx == -1:
        return text
    return text[:idx] + replacement + text[idx + len(needle) :]


def _convert_qmark_to_percent(sql: str) -> str:
    out = []
    in_single = False
    in_double = False
    for ch in sql:
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        if ch == "?" and not in_single and not in_double:
            out.append("%s")
        elif ch == "%":
            out.append("%%")
        else:
            out.append(ch)
    return "".join(out)
