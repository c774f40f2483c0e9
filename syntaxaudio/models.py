"""Tracks, workspaces and playback state."""
import uuid
from dataclasses import dataclass, field, replace
from typing import Optional

from .config import PLAY_MODES

SOURCE_LOCAL = "local"
SOURCE_SYNDICATED = "syndicated"
SOURCES = (SOURCE_LOCAL, SOURCE_SYNDICATED)

STATUS_IDLE = "idle"
STATUS_LOADED = "loaded"
STATUS_PLAYING = "playing"
STATUS_PAUSED = "paused"


def new_id() -> str:
    return uuid.uuid4().hex


def normalize_source(value: Optional[str]) -> str:
    # "rss" is what older clients stored for feed entries
    if value in ("rss", SOURCE_SYNDICATED):
        return SOURCE_SYNDICATED
    return SOURCE_LOCAL


@dataclass
class Track:
    id: str
    name: str
    source: str = SOURCE_LOCAL
    is_favorite: bool = False
    workspace_id: Optional[str] = None
    payload: Optional[bytes] = field(default=None, repr=False)
    remote_url: Optional[str] = None
    mime_type: Optional[str] = None

    @classmethod
    def local(cls, name: str, payload: bytes, workspace_id: Optional[str] = None,
              mime_type: Optional[str] = None) -> "Track":
        return cls(id=new_id(), name=name, source=SOURCE_LOCAL, workspace_id=workspace_id,
                   payload=payload, mime_type=mime_type)

    @classmethod
    def syndicated(cls, name: str, remote_url: str, workspace_id: Optional[str] = None) -> "Track":
        return cls(id=new_id(), name=name, source=SOURCE_SYNDICATED,
                   workspace_id=workspace_id, remote_url=remote_url)

    @property
    def url(self) -> Optional[str]:
        """Playable handle, derived on read and never persisted."""
        if self.source == SOURCE_SYNDICATED:
            return self.remote_url
        if self.payload is None:
            return None
        return f"/api/tracks/{self.id}/stream"

    @property
    def size(self) -> int:
        return len(self.payload) if self.payload is not None else 0

    def with_workspace(self, workspace_id: str) -> "Track":
        return replace(self, workspace_id=workspace_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "source": self.source,
            "isFavorite": self.is_favorite,
            "workspaceId": self.workspace_id,
            "url": self.url,
            "size": self.size,
            "mimeType": self.mime_type,
        }


@dataclass
class Workspace:
    id: str
    name: str
    play_mode: str = "linear"

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "playMode": self.play_mode}


@dataclass
class FeedEntry:
    name: str
    remote_url: str

    @classmethod
    def from_dict(cls, data: dict) -> "FeedEntry":
        url = (data.get("remoteUrl") or data.get("remote_url") or data.get("url") or "").strip()
        if not url:
            raise ValueError("feed entry without remoteUrl")
        name = (data.get("name") or "").strip() or "Unknown Track"
        return cls(name=name, remote_url=url)


@dataclass
class PlaybackState:
    status: str = STATUS_IDLE
    active_track_id: Optional[str] = None
    position_seconds: float = 0.0

    @property
    def is_playing(self) -> bool:
        return self.status == STATUS_PLAYING

    def to_dict(self) -> dict:
        return {
            "activeTrackId": self.active_track_id,
            "isPlaying": self.is_playing,
            "positionSeconds": self.position_seconds,
        }


def validate_play_mode(mode: str) -> str:
    if mode not in PLAY_MODES:
        raise ValueError(f"Unknown play mode '{mode}' (expected one of {', '.join(PLAY_MODES)})")
    return mode
