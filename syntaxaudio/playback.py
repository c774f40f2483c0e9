"""Playback state machine — commands in, state snapshots out. No I/O.

States: idle, loaded(track), playing(track, position), paused(track, position).
Transitions only happen through commands; nothing writes the state directly.
"""
import logging
import math
import random
from typing import Optional, Sequence

from .errors import InvalidCommand, NoActiveTrack
from .models import (
    STATUS_IDLE,
    STATUS_LOADED,
    STATUS_PAUSED,
    STATUS_PLAYING,
    PlaybackState,
    validate_play_mode,
)

logger = logging.getLogger(__name__)

# Older clients sent SELECT_TRACK for SELECT.
_ALIASES = {"SELECT_TRACK": "SELECT", "NEXT": "ADVANCE", "PREV": "PREVIOUS"}


class PlaybackSyncEngine:
    def __init__(self, playlist: Sequence[str] = (), play_mode: str = "linear",
                 rng: Optional[random.Random] = None):
        self.playlist: list[str] = list(playlist)
        self.play_mode = validate_play_mode(play_mode)
        self.state = PlaybackState()
        self._rng = rng or random.Random()

    # ── Playlist ─────────────────────────────────────────────────────────────

    def reset(self, playlist: Sequence[str] = (), play_mode: Optional[str] = None) -> PlaybackState:
        """Fresh state for a (new) workspace."""
        self.playlist = list(playlist)
        if play_mode is not None:
            self.play_mode = validate_play_mode(play_mode)
        self.state = PlaybackState()
        return self.state

    def set_playlist(self, playlist: Sequence[str]) -> PlaybackState:
        self.playlist = list(playlist)
        if self.state.active_track_id is not None and self.state.active_track_id not in self.playlist:
            logger.debug("Active track %s left the playlist", self.state.active_track_id)
            self.state = PlaybackState()
        return self.state

    @property
    def current_index(self) -> int:
        try:
            return self.playlist.index(self.state.active_track_id)
        except ValueError:
            return -1

    # ── Commands ─────────────────────────────────────────────────────────────

    def select(self, track_id: str) -> PlaybackState:
        if track_id not in self.playlist:
            raise InvalidCommand(f"Track '{track_id}' is not in the playlist")
        self.state = PlaybackState(STATUS_PLAYING, track_id, 0.0)
        return self.state

    def cue(self, track_id: str) -> PlaybackState:
        if track_id not in self.playlist:
            raise InvalidCommand(f"Track '{track_id}' is not in the playlist")
        self.state = PlaybackState(STATUS_LOADED, track_id, 0.0)
        return self.state

    def play(self) -> PlaybackState:
        st = self.state
        if st.status == STATUS_IDLE:
            raise NoActiveTrack("PLAY")
        if st.status == STATUS_PAUSED:
            self.state = PlaybackState(STATUS_PLAYING, st.active_track_id, st.position_seconds)
        elif st.status == STATUS_LOADED:
            self.state = PlaybackState(STATUS_PLAYING, st.active_track_id, 0.0)
        return self.state

    def pause(self, position: float) -> PlaybackState:
        """``position`` comes from the commanding observer's own clock."""
        st = self.state
        if st.status == STATUS_IDLE:
            raise NoActiveTrack("PAUSE")
        position = _position(position)
        if st.status == STATUS_PLAYING:
            self.state = PlaybackState(STATUS_PAUSED, st.active_track_id, position)
        return self.state

    def advance(self) -> PlaybackState:
        """End of track: apply the play mode."""
        index = self._require_index("ADVANCE")
        n = len(self.playlist)
        if self.play_mode == "loop":
            nxt = index
        elif self.play_mode == "random":
            if n > 1:
                # uniform over every index except the current one
                nxt = self._rng.randrange(n - 1)
                if nxt >= index:
                    nxt += 1
            else:
                nxt = index
        else:
            nxt = (index + 1) % n
        return self.select(self.playlist[nxt])

    def previous(self) -> PlaybackState:
        """Always the preceding index, whatever the play mode."""
        index = self._require_index("PREVIOUS")
        n = len(self.playlist)
        return self.select(self.playlist[(index - 1 + n) % n])

    def set_mode(self, play_mode: str) -> PlaybackState:
        try:
            self.play_mode = validate_play_mode(play_mode)
        except ValueError as e:
            raise InvalidCommand(str(e)) from e
        return self.state

    def apply(self, command: dict) -> PlaybackState:
        """Dispatch a ``{"type": ..., "payload": ...}`` command."""
        kind, payload = parse_command(command)

        if kind == "SELECT":
            return self.select(_track_id(payload, kind))
        elif kind == "CUE":
            return self.cue(_track_id(payload, kind))
        elif kind == "PLAY":
            return self.play()
        elif kind == "PAUSE":
            return self.pause(payload.get("position", payload.get("timestamp")))
        elif kind == "ADVANCE":
            return self.advance()
        elif kind == "PREVIOUS":
            return self.previous()
        elif kind == "MODE":
            return self.set_mode(str(payload.get("mode", "")))
        raise InvalidCommand(f"Unknown command '{command.get('type')}'")

    def snapshot(self) -> dict:
        return self.state.to_dict()

    def _require_index(self, command: str) -> int:
        if self.state.status == STATUS_IDLE or not self.playlist:
            raise NoActiveTrack(command)
        index = self.current_index
        if index < 0:
            raise NoActiveTrack(command)
        return index


def parse_command(command) -> tuple[str, dict]:
    """Normalize a command into (canonical type, payload)."""
    if not isinstance(command, dict):
        raise InvalidCommand("Command must be an object")
    kind = str(command.get("type", "")).upper()
    payload = command.get("payload") or {}
    if not isinstance(payload, dict):
        raise InvalidCommand("Command payload must be an object")
    return _ALIASES.get(kind, kind), payload


def requested_mode(payload: dict) -> str:
    mode = str(payload.get("mode", ""))
    try:
        return validate_play_mode(mode)
    except ValueError as e:
        raise InvalidCommand(str(e)) from e


def _track_id(payload: dict, command: str) -> str:
    track_id = payload.get("trackId") or payload.get("track")
    if not track_id:
        raise InvalidCommand(f"{command} needs payload.trackId")
    return str(track_id)


def _position(value) -> float:
    if isinstance(value, bool):
        raise InvalidCommand("PAUSE position must be a number")
    try:
        position = float(value)
    except (TypeError, ValueError):
        raise InvalidCommand("PAUSE position must be a number") from None
    if not math.isfinite(position) or position < 0:
        raise InvalidCommand("PAUSE position must be >= 0")
    return position
