"""Application configuration loaded from environment variables."""

import json
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

from .constants import DEFAULT_SELECTORS

load_dotenv()

logger = logging.getLogger(__name__)


def clamp_int(raw, minimum: int, maximum: int, fallback: int) -> int:
    """Parse ``raw`` as an int and clamp it into [minimum, maximum]."""
    try:
        value = int(float(raw))
    except (TypeError, ValueError):
        return fallback
    return min(maximum, max(minimum, value))


def as_bool(raw, fallback: bool = False) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        s = raw.strip().lower()
        if s in ("1", "true", "yes", "on"):
            return True
        if s in ("0", "false", "no", "off"):
            return False
    return fallback


# Paths
DATA_DIR = Path(os.getenv("DATA_DIR", Path(__file__).parent.parent / "data"))
DOWNLOAD_DIR = DATA_DIR / "downloads"
LOG_DIR = DATA_DIR / "logs"
SELECTORS_OVERRIDE_PATH = Path(
    os.getenv("SELECTORS_OVERRIDE_PATH", DATA_DIR / "selectors.override.json")
)

# Control surface
CONTROL_HOST = os.getenv("CONTROL_HOST", "127.0.0.1")
CONTROL_PORT = int(os.getenv("CONTROL_PORT", "8025"))
CONTROL_URL = f"http://{CONTROL_HOST}:{CONTROL_PORT}"
CONTROL_API_TOKEN = os.getenv("CONTROL_API_TOKEN", "").strip()

# Browser
BROWSER_HEADLESS = as_bool(os.getenv("BROWSER_HEADLESS", "false"))
BROWSER_TIMEOUT = int(os.getenv("BROWSER_TIMEOUT", "30000"))
START_URL = os.getenv("START_URL", "https://chatgpt.com/")

# Session pool and admission
MAX_TABS = clamp_int(os.getenv("MAX_TABS"), 1, 50, 12)
MAX_INFLIGHT_QUERIES = clamp_int(os.getenv("MAX_INFLIGHT_QUERIES"), 1, 50, 6)
MAX_QUERIES_PER_MINUTE = clamp_int(os.getenv("MAX_QUERIES_PER_MINUTE"), 0, 600, 0)  # 0 = unlimited
MIN_TAB_GAP_MS = clamp_int(os.getenv("MIN_TAB_GAP_MS"), 0, 30_000, 250)
MIN_GLOBAL_GAP_MS = clamp_int(os.getenv("MIN_GLOBAL_GAP_MS"), 0, 30_000, 100)
QUERY_GAP_MAX_WAIT_MS = clamp_int(os.getenv("QUERY_GAP_MAX_WAIT_MS"), 0, 120_000, 5_000)

# Request limits
MAX_PROMPT_CHARS = 200_000
MAX_BODY_BYTES = 2_000_000
MAX_QUERY_BODY_BYTES = 5_000_000


def load_selectors(path: Path = SELECTORS_OVERRIDE_PATH) -> dict[str, str]:
    """Default selectors merged with a JSON override file.

    Only known keys with non-empty string values are taken from the override.
    """
    selectors = dict(DEFAULT_SELECTORS)
    try:
        override = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        return selectors
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring selector override {path}: {e}")
        return selectors

    if not isinstance(override, dict):
        logger.warning(f"Ignoring selector override {path}: expected an object")
        return selectors
    for key, value in override.items():
        if key in selectors and isinstance(value, str) and value.strip():
            selectors[key] = value.strip()
    return selectors


def ensure_dirs():
    """Create required data directories if they don't exist."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    DOWNLOAD_DIR.mkdir(parents=True, exist_ok=True)
    LOG_DIR.mkdir(parents=True, exist_ok=True)
