"""Deck engine — the authoritative coordinator, pure async, no transport.

Receives commands via methods, broadcasts state via ObserverHub. Every
playback command and playlist mutation runs under one lock, so transitions
are applied and broadcast in arrival order. SQLite work runs on the default
executor so the event loop never waits on disk.
"""
import asyncio
import logging
import random
from dataclasses import replace
from typing import Iterable, Optional

from .config import DB_PATH
from .db import Database
from .errors import (
    StaleLoadDiscarded,
    TrackNotFound,
    WorkspaceNotLoaded,
)
from .models import FeedEntry, Track, Workspace
from .playback import PlaybackSyncEngine, parse_command, requested_mode
from .store import TrackStore
from .switch_guard import Loader, SwitchGuard
from .workspaces import WorkspaceRegistry

logger = logging.getLogger(__name__)


class DeckEngine:
    def __init__(self, state, db: Optional[Database] = None, *,
                 rng: Optional[random.Random] = None, loader: Optional[Loader] = None):
        """state: ObserverHub instance for broadcasting to WebSocket clients."""
        self.state = state
        self.db = db or Database(DB_PATH)
        self.store = TrackStore(self.db)
        self.registry = WorkspaceRegistry(self.db, self.store)
        self.guard = SwitchGuard(self.registry, self.store, loader=loader)
        self.playback = PlaybackSyncEngine(rng=rng)

        # Resident playlist of the active workspace, valid while the guard says so
        self.tracks: list[Track] = []
        self._lock = asyncio.Lock()

    async def start(self):
        await self.switch_workspace(self.registry.active_id)

    async def _blocking(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    # ── Playback (called from WebSocket handlers) ────────────────────────────

    async def handle_command(self, command: dict) -> dict:
        """Apply one playback command and broadcast the resulting state.

        Raises PlaybackError subclasses for rejected commands; state is untouched.
        A MODE change is persisted before it takes effect.
        """
        async with self._lock:
            kind, payload = parse_command(command)
            mode_changed = False
            if kind == "MODE":
                mode = requested_mode(payload)
                if mode != self.playback.play_mode:
                    await self._blocking(self.registry.set_play_mode, self.registry.active_id, mode)
                    mode_changed = True
            snapshot = self.playback.apply(command).to_dict()
            if mode_changed:
                await self.state.broadcast("play_mode", {"mode": self.playback.play_mode})
            await self.state.broadcast("playback_state", snapshot)
        return snapshot

    # ── Workspaces ───────────────────────────────────────────────────────────

    async def switch_workspace(self, workspace_id: str) -> bool:
        """Switch the active workspace. Returns False if a newer switch overtook this one."""
        async with self._lock:
            ws = await self._blocking(self.registry.get, workspace_id)
            token = await self._begin_switch(ws)
        return await self._finish_switch(ws, token)

    async def _begin_switch(self, ws: Workspace) -> int:
        """Caller holds the lock. Playback and tracks are reset before it is released."""
        token = await self.guard.begin(ws.id)
        self.tracks = []
        self.playback.reset((), ws.play_mode)
        await self.state.broadcast("workspace_switched", {"workspace": ws.to_dict(), "loading": True})
        await self.state.broadcast("playback_state", self.playback.snapshot())
        return token

    async def _finish_switch(self, ws: Workspace, token: int) -> bool:
        try:
            tracks = await self.guard.load(ws.id, token)
        except StaleLoadDiscarded as e:
            logger.debug("%s", e)
            return False

        async with self._lock:
            # Another switch may have begun while we waited for the lock
            if self.guard.generation != token or self.guard.loaded_workspace_id != ws.id:
                logger.debug("Load for %s superseded before publishing", ws.id)
                return False
            self.tracks = tracks
            self.playback.set_playlist([t.id for t in tracks])
            await self.state.broadcast("tracks_updated", self._tracks_payload())
        logger.info("Workspace %s resident with %d track(s)", ws.name, len(tracks))
        return True

    async def create_workspace(self, name: str, play_mode: str = "linear", activate: bool = False) -> Workspace:
        ws = await self._blocking(self.registry.create, name, play_mode)
        await self.state.broadcast("workspaces_updated", {"workspaces": await self.list_workspaces()})
        if activate:
            await self.switch_workspace(ws.id)
        return ws

    async def delete_workspace(self, workspace_id: str) -> Workspace:
        """Cascade-delete a workspace. Moves to the replacement if it was active."""
        token = None
        async with self._lock:
            was_active = workspace_id == self.registry.active_id
            active = await self._blocking(self.registry.delete, workspace_id)
            if was_active:
                token = await self._begin_switch(active)
        await self.state.broadcast("workspaces_updated", {"workspaces": await self.list_workspaces()})
        await self.state.broadcast("toast", {"message": f"Deleted workspace '{workspace_id}'"})
        if token is not None:
            await self._finish_switch(active, token)
        return active

    async def set_play_mode(self, workspace_id: str, play_mode: str) -> Workspace:
        async with self._lock:
            ws = await self._blocking(self.registry.set_play_mode, workspace_id, play_mode)
            if workspace_id == self.registry.active_id:
                self.playback.set_mode(play_mode)
                await self.state.broadcast("play_mode", {"mode": play_mode})
        return ws

    async def list_workspaces(self) -> list[dict]:
        return await self._blocking(self._workspace_listing)

    def _workspace_listing(self) -> list[dict]:
        active_id = self.registry.active_id
        result = []
        for ws in self.registry.list():
            item = ws.to_dict()
            item["trackCount"] = self.store.count(ws.id)
            item["isActive"] = ws.id == active_id
            result.append(item)
        return result

    # ── Tracks ───────────────────────────────────────────────────────────────

    async def list_tracks(self, workspace_id: str) -> list[Track]:
        await self._blocking(self.registry.get, workspace_id)
        if workspace_id == self.registry.active_id and self.guard.can_save():
            return list(self.tracks)
        return await self._blocking(self.store.load_all, workspace_id)

    async def get_track(self, track_id: str) -> Track:
        track = await self._blocking(self.store.get, track_id)
        if track is None:
            raise TrackNotFound(track_id)
        return track

    async def add_upload(self, workspace_id: str, name: str, payload: bytes,
                         mime_type: Optional[str] = None) -> Track:
        """Upload collaborator hand-off: (workspace, metadata, payload)."""
        track = Track.local(name, payload, workspace_id, mime_type)
        async with self._lock:
            if workspace_id == self.registry.active_id:
                await self._commit_tracks(self.tracks + [track])
                return track
        return await self._blocking(self.store.append, workspace_id, track)

    async def import_feed(self, workspace_id: str, entries: Iterable[FeedEntry]) -> list[Track]:
        """Merge feed entries into the resident playlist (existing ∪ new, by URL)."""
        async with self._lock:
            self._require_resident(workspace_id)
            known = {t.remote_url for t in self.tracks if t.remote_url}
            added = []
            for entry in entries:
                if entry.remote_url in known:
                    continue
                known.add(entry.remote_url)
                added.append(Track.syndicated(entry.name, entry.remote_url, workspace_id))
            if added:
                await self._commit_tracks(self.tracks + added)
        logger.info("Imported %d feed item(s) into %s", len(added), workspace_id)
        return added

    async def set_favorite(self, track_id: str, value: Optional[bool] = None) -> Track:
        """Set (or toggle, when value is None) the favorite flag."""
        async with self._lock:
            self._require_resident(self.registry.active_id)
            updated = []
            target = None
            for t in self.tracks:
                if t.id == track_id:
                    t = replace(t, is_favorite=(not t.is_favorite) if value is None else bool(value))
                    target = t
                updated.append(t)
            if target is None:
                raise TrackNotFound(track_id)
            await self._commit_tracks(updated)
        return target

    async def delete_track(self, track_id: str):
        async with self._lock:
            self._require_resident(self.registry.active_id)
            remaining = [t for t in self.tracks if t.id != track_id]
            if len(remaining) == len(self.tracks):
                raise TrackNotFound(track_id)
            await self._commit_tracks(remaining)

    async def clear_tracks(self, workspace_id: str) -> int:
        async with self._lock:
            self._require_resident(workspace_id)
            count = len(self.tracks)
            await self._commit_tracks([])
        return count

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _require_resident(self, workspace_id: str):
        if workspace_id != self.registry.active_id or not self.guard.can_save():
            raise WorkspaceNotLoaded(f"Workspace '{workspace_id}' is not the loaded workspace")

    async def _commit_tracks(self, tracks: list[Track]):
        """Persist first, then publish. Caller holds the lock."""
        self._require_resident(self.registry.active_id)
        if not await self.guard.save(tracks):
            raise WorkspaceNotLoaded("Workspace changed before the playlist could be saved")
        self.tracks = list(tracks)
        before = self.playback.snapshot()
        self.playback.set_playlist([t.id for t in tracks])
        await self.state.broadcast("tracks_updated", self._tracks_payload())
        if self.playback.snapshot() != before:
            await self.state.broadcast("playback_state", self.playback.snapshot())

    def _tracks_payload(self) -> dict:
        return {
            "workspaceId": self.registry.active_id,
            "tracks": [t.to_dict() for t in self.tracks],
        }

    async def get_snapshot(self) -> dict:
        """Full state snapshot for initial WebSocket sync."""
        ws = await self._blocking(self.registry.get_active)
        return {
            "workspace": ws.to_dict(),
            "workspaces": await self.list_workspaces(),
            "loaded": self.guard.can_save(),
            "tracks": [t.to_dict() for t in self.tracks],
            "playMode": self.playback.play_mode,
            "playback": self.playback.snapshot(),
        }
