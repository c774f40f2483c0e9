"""Error taxonomy + structured error logging (JSON to errors.log)."""
import json
import logging
import sys
from datetime import datetime
from typing import Optional

from .config import ERRORS_LOG, OUTPUT_DIR, DEV_MODE

logger = logging.getLogger(__name__)


class SyntaxAudioError(Exception):
    """Base for every error the core reports to its callers."""


# ── Storage ──────────────────────────────────────────────────────────────────

class StorageUnavailable(SyntaxAudioError):
    """Underlying persistence unreachable; the operation was aborted."""


class SchemaUpgradeFailed(StorageUnavailable):
    """A schema upgrade or legacy migration could not be committed."""


# ── Workspaces / tracks ─────────────────────────────────────────────────────

class WorkspaceNotFound(SyntaxAudioError):
    def __init__(self, workspace_id: str):
        super().__init__(f"Workspace '{workspace_id}' does not exist")
        self.workspace_id = workspace_id


class LastWorkspaceError(SyntaxAudioError):
    def __init__(self, workspace_id: str):
        super().__init__(f"Cannot delete '{workspace_id}': it is the last workspace")
        self.workspace_id = workspace_id


class TrackNotFound(SyntaxAudioError):
    def __init__(self, track_id: str):
        super().__init__(f"Track '{track_id}' does not exist")
        self.track_id = track_id


class WorkspaceNotLoaded(SyntaxAudioError):
    """The resident playlist is not validated for the active workspace yet."""


class StaleLoadDiscarded(SyntaxAudioError):
    """Internal: a load finished after the active workspace moved on."""

    def __init__(self, requested_id: str, active_id: Optional[str]):
        super().__init__(f"Load for '{requested_id}' discarded, active is '{active_id}'")
        self.requested_id = requested_id
        self.active_id = active_id


# ── Playback ─────────────────────────────────────────────────────────────────

class PlaybackError(SyntaxAudioError):
    """A playback command was rejected; state is unchanged."""


class NoActiveTrack(PlaybackError):
    def __init__(self, command: str):
        super().__init__(f"{command} needs an active track")
        self.command = command


class InvalidCommand(PlaybackError):
    pass


# ── Collaborators ────────────────────────────────────────────────────────────

class FeedUnavailable(SyntaxAudioError):
    """Feed could not be fetched or parsed (single attempt, no retry)."""


_FRIENDLY_MESSAGES = {
    "storage": "Storage is unavailable — nothing was changed. Please retry.",
    "schema_upgrade": "Database upgrade failed. Your data was left untouched.",
    "feed_import": "Couldn't import that feed — check the URL and retry.",
    "upload": "Upload could not be saved. Please retry.",
    "preflight": "Startup check failed.",
}


def format_error(
    stage: str,
    user_msg: str = "",
    params: Optional[dict] = None,
    raw: str = "",
) -> str:
    entry = {
        "timestamp": datetime.now().isoformat(),
        "stage": stage,
        "input": user_msg,
        "params": params,
        "error": raw,
        "python": sys.version.split()[0],
    }

    _append_to_log(entry)
    logger.error("Error at %s: %s", stage, raw)

    if DEV_MODE:
        return json.dumps(entry, indent=2)
    return _FRIENDLY_MESSAGES.get(stage, f"Something went wrong ({stage}).")


def _append_to_log(entry: dict):
    try:
        OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
        with open(ERRORS_LOG, "a") as f:
            f.write(json.dumps(entry) + "\n")
    except OSError as e:
        logger.warning("Could not append to %s: %s", ERRORS_LOG, e)
