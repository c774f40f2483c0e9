"""TrackStore — track records keyed by id, secondary-indexed by workspace."""
import logging
import sqlite3
from typing import Optional, Sequence

from .db import Database, migrate_legacy_tracks
from .errors import WorkspaceNotFound
from .models import Track, normalize_source

logger = logging.getLogger(__name__)

_COLUMNS = "id, workspace_id, name, source, is_favorite, blob, remote_url, mime_type, position"


class TrackStore:
    def __init__(self, db: Database):
        self.db = db

    # ── Writes ───────────────────────────────────────────────────────────────

    def replace_all(self, workspace_id: str, tracks: Sequence[Track]) -> int:
        """Make ``tracks`` the complete set for the workspace, atomically.

        Full replace, not a merge. Order is persisted as ``position``.
        """
        with self.db.transaction() as conn:
            _require_workspace(conn, workspace_id)
            conn.execute("DELETE FROM tracks WHERE workspace_id = ?", (workspace_id,))
            for position, track in enumerate(tracks):
                _insert(conn, workspace_id, track, position)
        logger.debug("Replaced workspace %s with %d track(s)", workspace_id, len(tracks))
        return len(tracks)

    def append(self, workspace_id: str, track: Track) -> Track:
        """Add one track at the end of a workspace (remote upload notifications)."""
        with self.db.transaction() as conn:
            _require_workspace(conn, workspace_id)
            row = conn.execute(
                "SELECT COALESCE(MAX(position), -1) + 1 FROM tracks WHERE workspace_id = ?",
                (workspace_id,),
            ).fetchone()
            _insert(conn, workspace_id, track, int(row[0]))
        return track.with_workspace(workspace_id)

    def delete_by_workspace(self, workspace_id: str, conn: Optional[sqlite3.Connection] = None) -> int:
        """Cascade primitive. Pass ``conn`` to run inside the caller's transaction."""
        if conn is not None:
            return _delete_workspace_rows(conn, workspace_id)
        with self.db.transaction() as own:
            return _delete_workspace_rows(own, workspace_id)

    # ── Reads ────────────────────────────────────────────────────────────────

    def load_all(self, workspace_id: str) -> list[Track]:
        # Legacy rows are tagged before anything is returned.
        with self.db.transaction() as conn:
            migrate_legacy_tracks(conn)
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM tracks WHERE workspace_id = ? ORDER BY position, rowid",
                (workspace_id,),
            ).fetchall()
        return [_row_to_track(row) for row in rows]

    def get(self, track_id: str) -> Optional[Track]:
        with self.db.read() as conn:
            row = conn.execute(f"SELECT {_COLUMNS} FROM tracks WHERE id = ?", (track_id,)).fetchone()
        return _row_to_track(row) if row else None

    def count(self, workspace_id: str) -> int:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM tracks WHERE workspace_id = ?", (workspace_id,)
            ).fetchone()
        return int(row[0])


def _require_workspace(conn: sqlite3.Connection, workspace_id: str):
    row = conn.execute("SELECT 1 FROM workspaces WHERE id = ?", (workspace_id,)).fetchone()
    if row is None:
        raise WorkspaceNotFound(workspace_id)


def _insert(conn: sqlite3.Connection, workspace_id: str, track: Track, position: int):
    try:
        conn.execute(
            f"INSERT INTO tracks ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                track.id,
                workspace_id,
                track.name,
                track.source,
                1 if track.is_favorite else 0,
                track.payload,
                track.remote_url,
                track.mime_type,
                position,
            ),
        )
    except sqlite3.IntegrityError as e:
        # ids are global: a clash means the track already lives somewhere
        raise ValueError(f"Track id {track.id} already exists") from e


def _delete_workspace_rows(conn: sqlite3.Connection, workspace_id: str) -> int:
    ids = [r[0] for r in conn.execute(
        "SELECT id FROM tracks WHERE workspace_id = ?", (workspace_id,)
    ).fetchall()]
    deleted = 0
    for track_id in ids:
        try:
            deleted += conn.execute("DELETE FROM tracks WHERE id = ?", (track_id,)).rowcount
        except sqlite3.OperationalError as e:
            # One retry for a transient per-row failure; a second failure aborts the unit.
            logger.warning("Delete of track %s failed (%s), retrying", track_id, e)
            deleted += conn.execute("DELETE FROM tracks WHERE id = ?", (track_id,)).rowcount
    return deleted


def _row_to_track(row: sqlite3.Row) -> Track:
    return Track(
        id=row["id"],
        name=row["name"],
        source=normalize_source(row["source"]),
        is_favorite=bool(row["is_favorite"]),
        workspace_id=row["workspace_id"],
        payload=bytes(row["blob"]) if row["blob"] is not None else None,
        remote_url=row["remote_url"],
        mime_type=row["mime_type"],
    )
