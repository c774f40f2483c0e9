"""SwitchGuard — keeps slow loads/saves from landing in the wrong workspace.

``loaded_workspace_id`` names the workspace whose tracks are validated as
resident in memory. Every switch takes a new generation token and clears
the marker; a load only sets it if its token is still the latest one, so
of several loads in flight for the same workspace only the last requested
lands. Saves go through only while the marker equals the active id. Stale
loads are dropped, not cancelled.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, Sequence

from .errors import StaleLoadDiscarded
from .models import Track
from .store import TrackStore
from .workspaces import WorkspaceRegistry

logger = logging.getLogger(__name__)

Loader = Callable[[str], Awaitable[list[Track]]]
Saver = Callable[[str, Sequence[Track]], Awaitable[int]]


class SwitchGuard:
    def __init__(
        self,
        registry: WorkspaceRegistry,
        store: TrackStore,
        loader: Optional[Loader] = None,
        saver: Optional[Saver] = None,
    ):
        self.registry = registry
        self.store = store
        self.loaded_workspace_id: Optional[str] = None
        self.generation = 0
        self._loader = loader or self._load_in_executor
        self._saver = saver or self._save_in_executor
        # begin() calls complete in the order they were made
        self._begin_lock = asyncio.Lock()

    async def _load_in_executor(self, workspace_id: str) -> list[Track]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.store.load_all, workspace_id)

    async def _save_in_executor(self, workspace_id: str, tracks: Sequence[Track]) -> int:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.store.replace_all, workspace_id, list(tracks))

    # ── Switching ────────────────────────────────────────────────────────────

    async def begin(self, workspace_id: str) -> int:
        """Make ``workspace_id`` active and disable saves until its load lands.

        Returns the generation token the matching ``load`` must present.
        """
        async with self._begin_lock:
            previous = self.loaded_workspace_id
            self.loaded_workspace_id = None
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, self.registry.set_active, workspace_id)
            except Exception:
                # unknown id: the resident workspace stays valid
                if self.loaded_workspace_id is None:
                    self.loaded_workspace_id = previous
                raise
            self.generation += 1
            self.loaded_workspace_id = None
            return self.generation

    def accept(self, requested_id: str, token: Optional[int] = None):
        active_id = self.registry.active_id
        if requested_id != active_id or (token is not None and token != self.generation):
            raise StaleLoadDiscarded(requested_id, active_id)
        self.loaded_workspace_id = requested_id

    async def load(self, workspace_id: str, token: Optional[int] = None) -> list[Track]:
        """Load tracks for ``workspace_id``; raises StaleLoadDiscarded if outdated on arrival."""
        if token is None:
            token = self.generation
        tracks = await self._loader(workspace_id)
        self.accept(workspace_id, token)
        return tracks

    async def switch_to(self, workspace_id: str) -> Optional[list[Track]]:
        """Switch and load. Returns None when a newer switch overtook this one."""
        token = await self.begin(workspace_id)
        try:
            return await self.load(workspace_id, token)
        except StaleLoadDiscarded as e:
            logger.debug("%s", e)
            return None

    # ── Saving ───────────────────────────────────────────────────────────────

    def can_save(self) -> bool:
        return (
            self.loaded_workspace_id is not None
            and self.loaded_workspace_id == self.registry.active_id
        )

    async def save(self, tracks: Sequence[Track]) -> bool:
        """Persist the resident playlist; a no-op (False) while not validated."""
        if not self.can_save():
            logger.debug(
                "Save skipped: loaded=%s active=%s", self.loaded_workspace_id, self.registry.active_id
            )
            return False
        workspace_id = self.loaded_workspace_id
        await self._saver(workspace_id, tracks)
        return True
