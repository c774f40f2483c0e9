"""SQLite access — connections, transactions, schema upgrades.

Every operation opens its own connection, so the database can be used from
the event loop's executor threads without sharing handles. Writers take
``BEGIN IMMEDIATE``; readers only ever see committed snapshots (WAL).
"""
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .config import (
    DEFAULT_WORKSPACE_ID,
    DEFAULT_WORKSPACE_NAME,
    SQLITE_BUSY_TIMEOUT,
)
from .errors import SchemaUpgradeFailed, StorageUnavailable

logger = logging.getLogger(__name__)

CURRENT_DB_VERSION = 3

# v1 predates workspaces: tracks carried no owner.
SCHEMA_V1 = (
    """
    CREATE TABLE tracks (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        source TEXT,
        is_favorite BOOLEAN DEFAULT 0,
        blob BLOB,
        remote_url TEXT
    )
    """,
)

SCHEMA_V2 = (
    """
    CREATE TABLE workspaces (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL
    )
    """,
    "ALTER TABLE tracks ADD COLUMN workspace_id TEXT",
    "CREATE INDEX idx_tracks_workspace_id ON tracks(workspace_id)",
    """
    CREATE TABLE meta (
        key TEXT PRIMARY KEY,
        value TEXT
    )
    """,
)

SCHEMA_V3 = (
    "ALTER TABLE tracks ADD COLUMN position INTEGER NOT NULL DEFAULT 0",
    "ALTER TABLE tracks ADD COLUMN mime_type TEXT",
    "ALTER TABLE workspaces ADD COLUMN play_mode TEXT NOT NULL DEFAULT 'linear'",
    "ALTER TABLE workspaces ADD COLUMN created_seq INTEGER NOT NULL DEFAULT 0",
    "UPDATE workspaces SET created_seq = rowid",
    "CREATE INDEX idx_tracks_workspace_position ON tracks(workspace_id, position)",
)

_MIGRATIONS = {1: SCHEMA_V1, 2: SCHEMA_V2, 3: SCHEMA_V3}


class Database:
    def __init__(self, path):
        self.path = Path(path)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(f"Cannot create {self.path.parent}: {e}") from e
        self.upgrade()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.path,
            timeout=SQLITE_BUSY_TIMEOUT,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write unit: everything inside commits together or not at all."""
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self._connect()
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            _rollback(conn)
            raise StorageUnavailable(f"{self.path.name}: {e}") from e
        except BaseException:
            _rollback(conn)
            raise
        finally:
            if conn is not None:
                conn.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Read-only snapshot."""
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self._connect()
            conn.execute("BEGIN DEFERRED")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            _rollback(conn)
            raise StorageUnavailable(f"{self.path.name}: {e}") from e
        except BaseException:
            _rollback(conn)
            raise
        finally:
            if conn is not None:
                conn.close()

    def version(self) -> int:
        with self.read() as conn:
            return int(conn.execute("PRAGMA user_version").fetchone()[0])

    def upgrade(self):
        """Bring the schema to CURRENT_DB_VERSION, then migrate legacy tracks.

        Runs before any read is served.
        """
        try:
            with self.transaction() as conn:
                existing = int(conn.execute("PRAGMA user_version").fetchone()[0])
                upgrade_schema(conn, existing)
                migrate_legacy_tracks(conn)
        except SchemaUpgradeFailed:
            raise
        except StorageUnavailable as e:
            raise SchemaUpgradeFailed(str(e)) from e


def upgrade_schema(conn: sqlite3.Connection, existing_version: int):
    if existing_version >= CURRENT_DB_VERSION:
        return
    logger.info("Existing database version: %d", existing_version)

    for version in range(existing_version + 1, CURRENT_DB_VERSION + 1):
        logger.info("Migrate database version %d...", version)
        for statement in _MIGRATIONS[version]:
            conn.execute(statement)
        conn.execute(f"PRAGMA user_version={version}")


def migrate_legacy_tracks(conn: sqlite3.Connection) -> int:
    """Tag tracks lacking a workspace with the default one, in place.

    Idempotent: rows are updated, never copied. Ensures the default
    workspace record exists so migrated tracks never dangle.
    """
    cur = conn.execute(
        "UPDATE tracks SET workspace_id = ? WHERE workspace_id IS NULL OR workspace_id = ''",
        (DEFAULT_WORKSPACE_ID,),
    )
    migrated = cur.rowcount
    if migrated > 0:
        ensure_default_workspace(conn)
        logger.info("Migrated %d legacy track(s) to workspace '%s'", migrated, DEFAULT_WORKSPACE_ID)
    return migrated


def ensure_default_workspace(conn: sqlite3.Connection):
    conn.execute(
        """
        INSERT OR IGNORE INTO workspaces (id, name, play_mode, created_seq)
        VALUES (?, ?, 'linear', (SELECT COALESCE(MAX(created_seq), 0) + 1 FROM workspaces))
        """,
        (DEFAULT_WORKSPACE_ID, DEFAULT_WORKSPACE_NAME),
    )


def _rollback(conn: Optional[sqlite3.Connection]):
    if conn is None or not conn.in_transaction:
        return
    try:
        conn.execute("ROLLBACK")
    except sqlite3.Error as e:
        logger.warning("Rollback failed: %s", e)
