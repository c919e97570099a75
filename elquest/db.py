# elquest/db.py
"""
DB module for elquest.

Main features:
- Thread-safe wrapper for sqlite3 (check_same_thread=False)
- Row factory (sqlite3.Row) for by-name column access
- Configurable pragmas (WAL, foreign_keys, busy_timeout, synchronous)
- Context manager for transactions (automatic commit/rollback)
- Simple migrations (elquest_migrations table + apply_migrations)
- open_db() to open a DB with the schema brought up to date
"""

from __future__ import annotations

import contextlib
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generator, Iterable, List, Optional, Sequence, Tuple, Union

from elquest import config
from elquest.errors import ElquestError
from elquest.logging import get_logger

_logger = get_logger("db")


class DBError(ElquestError):
    """Generic DB module error."""


@dataclass
class DBConfig:
    path: str
    timeout: float = 5.0
    journal_mode: str = "WAL"
    foreign_keys: bool = True
    busy_timeout_ms: int = 5000
    synchronous: str = "NORMAL"  # OFF, NORMAL, FULL


# Host package state. Versions are stored as dotted strings.
SCHEMA_MIGRATIONS: List[Tuple[int, str, str]] = [
    (
        1,
        "archives and installed packages",
        """
        CREATE TABLE IF NOT EXISTS archives (
            name TEXT PRIMARY KEY,
            location TEXT NOT NULL,
            registered_at INTEGER NOT NULL,
            refreshed_at INTEGER
        );
        CREATE TABLE IF NOT EXISTS installed_packages (
            name TEXT PRIMARY KEY,
            version TEXT NOT NULL,
            kind TEXT NOT NULL,
            archive TEXT,
            path TEXT NOT NULL,
            installed_at INTEGER NOT NULL
        );
        """,
    ),
    (
        2,
        "recipe cache",
        """
        CREATE TABLE IF NOT EXISTS recipe_cache (
            name TEXT PRIMARY KEY,
            recipe TEXT NOT NULL,
            updated_at INTEGER NOT NULL
        );
        """,
    ),
]


class DB:
    """
    sqlite3 wrapper.

        db = DB("/tmp/state.sqlite3")
        with db.transaction() as cur:
            cur.execute("INSERT ...")
        rows = db.fetchall("SELECT * FROM archives")
    """

    def __init__(self, path: Optional[Union[str, Path]] = None, cfg: Optional[DBConfig] = None) -> None:
        if cfg is None:
            if path is None:
                path = config.get_config().get("db.path")
                if not path:
                    raise DBError("`db.path` is not configured")
            cfg = DBConfig(path=str(path))
        self._cfg = cfg
        self._path = Path(self._cfg.path).expanduser().resolve()
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    # ------------------------
    # Connection and pragmas
    # ------------------------
    def connect(self) -> sqlite3.Connection:
        """Open the connection (once) and apply pragmas."""
        with self._lock:
            if self._conn is not None:
                return self._conn
            self._path.parent.mkdir(parents=True, exist_ok=True)
            try:
                conn = sqlite3.connect(str(self._path), timeout=self._cfg.timeout, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                cur = conn.cursor()
                try:
                    if self._cfg.journal_mode:
                        cur.execute(f"PRAGMA journal_mode = {self._cfg.journal_mode};")
                    if self._cfg.foreign_keys:
                        cur.execute("PRAGMA foreign_keys = ON;")
                    if self._cfg.busy_timeout_ms:
                        cur.execute(f"PRAGMA busy_timeout = {int(self._cfg.busy_timeout_ms)};")
                    if self._cfg.synchronous:
                        cur.execute(f"PRAGMA synchronous = {self._cfg.synchronous};")
                finally:
                    cur.close()
            except sqlite3.Error as e:
                _logger.exception("cannot connect to DB %s", self._path)
                raise DBError(f"cannot connect to DB: {e}") from e
            self._conn = conn
            _logger.debug("connected to DB: %s", self._path)
            return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.close()
            finally:
                self._conn = None

    # ------------------------
    # Statements
    # ------------------------
    def execute(self, sql: str, params: Optional[Sequence[Any]] = None, commit: bool = False) -> sqlite3.Cursor:
        conn = self.connect()
        with self._lock:
            try:
                cur = conn.cursor()
                if params is not None:
                    cur.execute(sql, params)
                else:
                    cur.execute(sql)
                if commit:
                    conn.commit()
                return cur
            except sqlite3.Error as e:
                _logger.error("SQL failed: %s | params=%s", sql, params)
                conn.rollback()
                raise DBError(f"SQL failed: {e}") from e

    def executescript(self, script: str, commit: bool = True) -> None:
        conn = self.connect()
        with self._lock:
            try:
                conn.executescript(script)
                if commit:
                    conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise DBError(f"SQL script failed: {e}") from e

    def fetchone(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[sqlite3.Row]:
        cur = self.execute(sql, params)
        try:
            return cur.fetchone()
        finally:
            cur.close()

    def fetchall(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[sqlite3.Row]:
        cur = self.execute(sql, params)
        try:
            return cur.fetchall()
        finally:
            cur.close()

    @contextlib.contextmanager
    def transaction(self) -> Generator[sqlite3.Cursor, None, None]:
        """Commit on success, rollback on exception."""
        conn = self.connect()
        with self._lock:
            cur = conn.cursor()
            try:
                yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cur.close()

    # ------------------------
    # Migrations
    # ------------------------
    def _ensure_migrations_table(self) -> None:
        self.execute(
            """
            CREATE TABLE IF NOT EXISTS elquest_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT,
                applied_at TEXT
            );
            """,
            commit=True,
        )

    def get_current_version(self) -> int:
        row = self.fetchone("SELECT MAX(version) AS v FROM elquest_migrations;")
        if row is None or row["v"] is None:
            return 0
        return int(row["v"])

    def apply_migrations(self, migrations: Iterable[Tuple[int, str, str]] = SCHEMA_MIGRATIONS) -> List[int]:
        """Apply (version, name, sql) migrations newer than the current version."""
        applied: List[int] = []
        with self._lock:
            self._ensure_migrations_table()
            current = self.get_current_version()
            for version, name, sql in sorted(migrations, key=lambda x: int(x[0])):
                if int(version) <= current:
                    continue
                _logger.debug("applying migration %s: %s", version, name)
                self.executescript(sql, commit=True)
                now = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
                self.execute(
                    "INSERT INTO elquest_migrations (version, name, applied_at) VALUES (?, ?, ?);",
                    (int(version), name, now),
                    commit=True,
                )
                applied.append(int(version))
        return applied

    # ------------------------
    # Context manager
    # ------------------------
    def __enter__(self) -> "DB":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self._conn is not None:
            if exc_type is None:
                self._conn.commit()
            else:
                self._conn.rollback()
        self.close()
        return False

    @property
    def path(self) -> Path:
        return self._path


# ------------------------
# Module helpers
# ------------------------
def open_db(path: Optional[Union[str, Path]] = None) -> DB:
    """Open a DB and bring its schema up to date."""
    db = DB(path)
    db.apply_migrations()
    return db

