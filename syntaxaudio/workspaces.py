"""Workspace registry — lifecycle + the one source of truth for the active workspace."""
import logging
import sqlite3
from typing import Optional

from .config import DEFAULT_PLAY_MODE, DEFAULT_WORKSPACE_ID, DEFAULT_WORKSPACE_NAME
from .db import Database
from .errors import LastWorkspaceError, WorkspaceNotFound
from .models import Workspace, new_id, validate_play_mode
from .store import TrackStore

logger = logging.getLogger(__name__)

_ACTIVE_KEY = "active_workspace"


class WorkspaceRegistry:
    def __init__(self, db: Database, store: TrackStore):
        self.db = db
        self.store = store
        self._active_id: Optional[str] = None
        self.bootstrap()

    def bootstrap(self):
        """Guarantee at least one workspace and a valid active id."""
        with self.db.transaction() as conn:
            if conn.execute("SELECT COUNT(*) FROM workspaces").fetchone()[0] == 0:
                _insert(conn, DEFAULT_WORKSPACE_ID, DEFAULT_WORKSPACE_NAME, DEFAULT_PLAY_MODE)
                logger.info("Created bootstrap workspace '%s'", DEFAULT_WORKSPACE_NAME)

            row = conn.execute("SELECT value FROM meta WHERE key = ?", (_ACTIVE_KEY,)).fetchone()
            active = row["value"] if row else None
            if active is None or _fetch(conn, active) is None:
                active = _first(conn).id
                _write_active(conn, active)
        self._active_id = active

    # ── Queries ──────────────────────────────────────────────────────────────

    def list(self) -> list[Workspace]:
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT id, name, play_mode FROM workspaces ORDER BY created_seq, rowid"
            ).fetchall()
        return [_row_to_workspace(r) for r in rows]

    def get(self, workspace_id: str) -> Workspace:
        with self.db.read() as conn:
            ws = _fetch(conn, workspace_id)
        if ws is None:
            raise WorkspaceNotFound(workspace_id)
        return ws

    @property
    def active_id(self) -> str:
        return self._active_id

    def get_active(self) -> Workspace:
        return self.get(self._active_id)

    # ── Mutations ────────────────────────────────────────────────────────────

    def create(self, name: str, play_mode: str = DEFAULT_PLAY_MODE) -> Workspace:
        name = (name or "").strip()
        if not name:
            raise ValueError("Workspace name must not be empty")
        validate_play_mode(play_mode)
        workspace_id = new_id()
        with self.db.transaction() as conn:
            _insert(conn, workspace_id, name, play_mode)
        logger.info("Created workspace %s (%s)", name, workspace_id)
        return Workspace(id=workspace_id, name=name, play_mode=play_mode)

    def set_active(self, workspace_id: str) -> Workspace:
        with self.db.transaction() as conn:
            ws = _fetch(conn, workspace_id)
            if ws is None:
                raise WorkspaceNotFound(workspace_id)
            _write_active(conn, workspace_id)
        self._active_id = workspace_id
        return ws

    def rename(self, workspace_id: str, name: str) -> Workspace:
        name = (name or "").strip()
        if not name:
            raise ValueError("Workspace name must not be empty")
        with self.db.transaction() as conn:
            if conn.execute("UPDATE workspaces SET name = ? WHERE id = ?", (name, workspace_id)).rowcount == 0:
                raise WorkspaceNotFound(workspace_id)
            return _fetch(conn, workspace_id)

    def set_play_mode(self, workspace_id: str, play_mode: str) -> Workspace:
        validate_play_mode(play_mode)
        with self.db.transaction() as conn:
            cur = conn.execute("UPDATE workspaces SET play_mode = ? WHERE id = ?", (play_mode, workspace_id))
            if cur.rowcount == 0:
                raise WorkspaceNotFound(workspace_id)
            return _fetch(conn, workspace_id)

    def delete(self, workspace_id: str) -> Workspace:
        """Delete a workspace and all its tracks in one transaction.

        Returns the workspace that is active afterwards. The replacement is
        the first remaining workspace in creation order.
        """
        with self.db.transaction() as conn:
            if _fetch(conn, workspace_id) is None:
                raise WorkspaceNotFound(workspace_id)
            remaining = [
                _row_to_workspace(r) for r in conn.execute(
                    "SELECT id, name, play_mode FROM workspaces WHERE id != ? ORDER BY created_seq, rowid",
                    (workspace_id,),
                ).fetchall()
            ]
            if not remaining:
                raise LastWorkspaceError(workspace_id)
            replacement = remaining[0]

            deleted_tracks = self.store.delete_by_workspace(workspace_id, conn=conn)
            conn.execute("DELETE FROM workspaces WHERE id = ?", (workspace_id,))

            new_active = self._active_id
            if self._active_id == workspace_id:
                new_active = replacement.id
                _write_active(conn, new_active)
            active = _fetch(conn, new_active)

        self._active_id = active.id
        logger.info("Deleted workspace %s (%d tracks), active is %s", workspace_id, deleted_tracks, active.id)
        return active


def _insert(conn: sqlite3.Connection, workspace_id: str, name: str, play_mode: str):
    conn.execute(
        """
        INSERT INTO workspaces (id, name, play_mode, created_seq)
        VALUES (?, ?, ?, (SELECT COALESCE(MAX(created_seq), 0) + 1 FROM workspaces))
        """,
        (workspace_id, name, play_mode),
    )


def _fetch(conn: sqlite3.Connection, workspace_id: str) -> Optional[Workspace]:
    row = conn.execute(
        "SELECT id, name, play_mode FROM workspaces WHERE id = ?", (workspace_id,)
    ).fetchone()
    return _row_to_workspace(row) if row else None


def _first(conn: sqlite3.Connection) -> Workspace:
    row = conn.execute(
        "SELECT id, name, play_mode FROM workspaces ORDER BY created_seq, rowid LIMIT 1"
    ).fetchone()
    return _row_to_workspace(row)


def _write_active(conn: sqlite3.Connection, workspace_id: str):
    conn.execute(
        "INSERT INTO meta (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (_ACTIVE_KEY, workspace_id),
    )


def _row_to_workspace(row: sqlite3.Row) -> Workspace:
    return Workspace(id=row["id"], name=row["name"], play_mode=row["play_mode"] or "linear")
