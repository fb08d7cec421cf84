"""SQLite schema migration runner with backups."""

from __future__ import annotations

import re
import shutil
import sqlite3
from datetime import datetime
from pathlib import Path

from config import DB_PATH, PROJECT_ROOT

BACKUPS_DIR = PROJECT_ROOT / "backups"
LOCK_PATH = BACKUPS_DIR / ".migrate.lock"
MIGRATIONS_SQL_DIR = Path(__file__).resolve().parent / "sql"


class MigrationError(RuntimeError):
    """Raised when a migration fails and rollback was triggered."""


class MigrationInProgressError(RuntimeError):
    """Raised when a migration lock already exists."""


def _ensure_dirs() -> None:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    BACKUPS_DIR.mkdir(parents=True, exist_ok=True)


def _list_migrations() -> list[tuple[int, Path]]:
    out: list[tuple[int, Path]] = []
    for path in MIGRATIONS_SQL_DIR.glob("[0-9][0-9][0-9]_*.sql"):
        match = re.match(r"^(\d{3})_", path.name)
        if match:
            out.append((int(match.group(1)), path))
    out.sort(key=lambda x: x[0])
    return out


def latest_migration_version() -> int:
    migrations = _list_migrations()
    return migrations[-1][0] if migrations else 0


def _read_schema_version(conn: sqlite3.Connection) -> int:
    # A database without the meta table is at version 0.
    row = conn.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='meta'").fetchone()
    if row is None:
        return 0
    row = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
    if not row:
        return 0
    try:
        return int(row[0])
    except (TypeError, ValueError):
        return 0


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(
        """
        INSERT INTO meta(key, value)
        VALUES('schema_version', ?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value
        """,
        (str(version),),
    )


def _backup_db() -> Path:
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    target = BACKUPS_DIR / f"{DB_PATH.stem}_{timestamp}.db"
    shutil.copy2(DB_PATH, target)
    return target


def _acquire_lock() -> None:
    try:
        LOCK_PATH.touch(exist_ok=False)
    except FileExistsError as e:
        raise MigrationInProgressError("migration in progress") from e


def _release_lock() -> None:
    try:
        LOCK_PATH.unlink()
    except FileNotFoundError:
        pass


def migrate_to_latest() -> int:
    """
    Apply pending SQL migrations and return the resulting schema version.

    A missing database is created. An existing one is copied to backups/ before
    the first pending migration runs.
    """
    _ensure_dirs()
    _acquire_lock()
    try:
        migrations = _list_migrations()
        if not migrations:
            return 0
        db_existed_before = DB_PATH.exists()
        conn = sqlite3.connect(DB_PATH)
        try:
            current = _read_schema_version(conn)
            pending = [(v, p) for v, p in migrations if v > current]
            if not pending:
                return current
            if db_existed_before:
                _backup_db()
            for version, sql_path in pending:
                sql = sql_path.read_text(encoding="utf-8")
                try:
                    conn.execute("BEGIN IMMEDIATE")
                    conn.executescript(sql)
                    _set_schema_version(conn, version)
                    conn.commit()
                except Exception as e:
                    conn.rollback()
                    raise MigrationError(
                        f"Migration failed at {sql_path.name}. Rolled back. Use backups in: {BACKUPS_DIR}"
                    ) from e
            return pending[-1][0]
        finally:
            conn.close()
    finally:
        _release_lock()
