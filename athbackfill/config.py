"""Configuration and helper utilities for the ATH backfill job.

This module loads environment variables, configures logging and exposes
constants used across the package.
"""

import logging
import os
import re
from logging.handlers import WatchedFileHandler

from dotenv import load_dotenv

load_dotenv()


def parse_duration(value: str) -> int:
    """Return seconds for a duration string like '15m' or '1h'."""
    if value.isdigit():
        return int(value)
    match = re.fullmatch(r"(\d+)([dhms])", value.lower())
    if not match:
        raise ValueError("invalid interval format")
    num, unit = match.groups()
    factor = {"d": 86400, "h": 3600, "m": 60, "s": 1}[unit]
    return int(num) * factor


def format_interval(seconds: int) -> str:
    """Return a short string representation for a duration in seconds."""
    if seconds % 86400 == 0:
        return f"{seconds // 86400}d"
    if seconds % 3600 == 0:
        return f"{seconds // 3600}h"
    if seconds % 60 == 0:
        return f"{seconds // 60}m"
    return f"{seconds}s"


def env_flag(name: str, default: str) -> bool:
    """Return ``True`` when the environment variable is set to ``true``."""
    return os.getenv(name, default).lower() == "true"


DB_FILE = os.getenv("DB_PATH", "calls.db")
JOB_NAME = "ATHBackfill"
NETWORK = os.getenv("NETWORK", "solana").lower()

BIRDEYE_API_KEY = os.getenv("BIRDEYE_API_KEY")
BIRDEYE_BASE_URL = os.getenv("BIRDEYE_BASE_URL") or "https://public-api.birdeye.so"
GECKOTERMINAL_BASE_URL = (
    os.getenv("GECKOTERMINAL_BASE_URL") or "https://api.geckoterminal.com/api/v2"
)
DEXSCREENER_BASE_URL = (
    os.getenv("DEXSCREENER_BASE_URL") or "https://api.dexscreener.com/latest/dex"
)
ENABLE_SYNTHETIC_CANDLES = env_flag("ENABLE_SYNTHETIC_CANDLES", "true")

REQUEST_TIMEOUT = parse_duration(os.getenv("REQUEST_TIMEOUT", "8s"))
RATE_LIMIT_ATTEMPTS = int(os.getenv("RATE_LIMIT_ATTEMPTS", "2"))
RATE_LIMIT_DELAY = parse_duration(os.getenv("RATE_LIMIT_DELAY", "2s"))

BACKFILL_CONCURRENCY = int(os.getenv("BACKFILL_CONCURRENCY", "10"))
BACKFILL_FORCE_REFRESH = env_flag("BACKFILL_FORCE_REFRESH", "false")
WORKER_DELAY_MS = int(os.getenv("WORKER_DELAY_MS", "50"))
_interval = os.getenv("BACKFILL_INTERVAL")
BACKFILL_INTERVAL = parse_duration(_interval) if _interval else None

LOG_FILE = os.getenv("LOG_FILE")
_handlers = [logging.StreamHandler()]
if LOG_FILE:
    _handlers.append(WatchedFileHandler(LOG_FILE))

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    handlers=_handlers,
    force=True,
)
logging.getLogger("aiohttp").setLevel(logging.WARNING)
logging.getLogger("apscheduler").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)
