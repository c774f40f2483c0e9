"""Config & constants"""
import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root (one level up from syntaxaudio/)
_ROOT = Path(__file__).parent.parent
load_dotenv(_ROOT / ".env")

# ─── Paths ────────────────────────────────────────────────────────────────────
ROOT_DIR = _ROOT
DATA_DIR = Path(os.getenv("DATA_DIR", str(ROOT_DIR / "data"))).expanduser()
DB_PATH = Path(os.getenv("DB_PATH", str(DATA_DIR / "syntaxaudio.db"))).expanduser()
OUTPUT_DIR = ROOT_DIR / os.getenv("OUTPUT_DIR", "output")
ERRORS_LOG = OUTPUT_DIR / "errors.log"

# ─── Workspaces ───────────────────────────────────────────────────────────────
# Legacy tracks without a workspace are migrated here.
DEFAULT_WORKSPACE_ID = "default"
DEFAULT_WORKSPACE_NAME = "main"

PLAY_MODES = ("linear", "loop", "random")
DEFAULT_PLAY_MODE = os.getenv("DEFAULT_PLAY_MODE", "linear")
if DEFAULT_PLAY_MODE not in PLAY_MODES:
    DEFAULT_PLAY_MODE = "linear"

# ─── Storage ──────────────────────────────────────────────────────────────────
SQLITE_BUSY_TIMEOUT = float(os.getenv("SQLITE_BUSY_TIMEOUT", "10"))

# ─── External services ────────────────────────────────────────────────────────
FEED_TIMEOUT = float(os.getenv("FEED_TIMEOUT", "15"))

APP_VERSION = "0.3.0"

# ─── Web server ──────────────────────────────────────────────────────────────
WEB_HOST = os.getenv("WEB_HOST", "127.0.0.1")
WEB_PORT = int(os.getenv("WEB_PORT", "8888"))
CLIENT_QUEUE_SIZE = int(os.getenv("CLIENT_QUEUE_SIZE", "50"))
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "200"))

# ─── Dev mode ─────────────────────────────────────────────────────────────────
DEV_MODE = os.getenv("DEV_MODE", "1").strip() in ("1", "true", "yes")
