"""
Coffee price index configuration.

Source URLs, unit tables, credentials, and shared settings live here so
every module can import them from one place.
"""

import logging
import os
from datetime import datetime, timezone


# ---------------------------------------------------------------------------
# Logging — call setup_logging() once at startup (in main.py)
# ---------------------------------------------------------------------------
LOG_DIR = os.getenv("LOG_DIR", "logs")

_LOG_FORMAT = "[%(asctime)s] %(levelname)s — %(name)s — %(message)s"
_LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level=logging.INFO, log_dir: str | None = LOG_DIR):
    """
    Configure the root logger with a clean, timestamped format.

    Every module that does `logger = logging.getLogger(__name__)` will
    inherit this format automatically — no per-file setup needed.

    Besides the console, lines are appended to a daily file
    (``app-YYYY-MM-DD.log``) under ``log_dir`` so scheduled runs leave
    a trail.  Pass ``log_dir=None`` to log to the console only.
    """
    handlers = [logging.StreamHandler()]

    if log_dir:
        try:
            os.makedirs(log_dir, exist_ok=True)
            today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
            handlers.append(
                logging.FileHandler(
                    os.path.join(log_dir, f"app-{today}.log"), encoding="utf-8",
                )
            )
        except OSError as exc:
            logging.getLogger(__name__).warning(
                "Could not open log directory %s (%s) — console only", log_dir, exc,
            )

    logging.basicConfig(
        level=level,
        format=_LOG_FORMAT,
        datefmt=_LOG_DATEFMT,
        handlers=handlers,
    )


# ---------------------------------------------------------------------------
# Network settings
# ---------------------------------------------------------------------------
REQUEST_TIMEOUT = 30    # seconds — used by every fetcher's HTTP calls
MAX_RETRIES = 5         # attempts per commodity scrape before giving up
RETRY_DELAY = 2         # seconds — base delay, doubled after every failure

# A scheduled-run lock older than this belongs to a run that died
RUN_LOCK_TTL_MINUTES = int(os.getenv("RUN_LOCK_TTL_MINUTES", "60"))

# ---------------------------------------------------------------------------
# Commodities
#
# Only the two coffee contracts are tracked.  Each entry records the
# exchange symbol root (used to pick the active contract out of the page
# heading) and the name the inventory records use for it.
# ---------------------------------------------------------------------------
COMMODITIES = {
    "ARABICA": {
        "symbol_root": "KC",        # ICE US — Coffee "C"
        "inventory_name": "Arabica",
    },
    "ROBUSTA": {
        "symbol_root": "RM",        # ICE Europe — Robusta
        "inventory_name": "Robusta",
    },
}

# Moving-average lookback (number of prior records)
MA_WINDOW = 30

# ---------------------------------------------------------------------------
# Grades
#
# Price key (as used by discount settings) → inventory grade string.
# Only these five grades count towards collateral.
# ---------------------------------------------------------------------------
GRADES = {
    "GRADE_1":  "Grade 1",
    "GRADE_2":  "Grade 2",
    "GRADE_3":  "Grade 3",
    "GRADE_4A": "Grade 4a",
    "GRADE_4B": "Grade 4b",
}

# ---------------------------------------------------------------------------
# Currency rate (USD → IDR)
# No API key needed.
# ---------------------------------------------------------------------------
FX_RATE_URL = os.getenv("FX_RATE_URL", "https://api.exchangerate-api.com/v4/latest/USD")
FX_TARGET_CURRENCY = "IDR"
FX_FALLBACK_RATE = 16000.0

# ---------------------------------------------------------------------------
# Futures quotes (Barchart)
#
# The futures-prices page loads its table from a JSON endpoint; we let a
# real browser render the page and read that JSON off the wire.
# ---------------------------------------------------------------------------
BARCHART_URLS = {
    "ARABICA": "https://www.barchart.com/futures/quotes/KC*0/futures-prices?timeFrame=daily",
    "ROBUSTA": "https://www.barchart.com/futures/quotes/RM*0/futures-prices?timeFrame=daily",
}

# URL fragment shared by the KC and RM quote requests
QUOTE_API_PATH = "/proxies/core-api/v1/quotes/get"

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/122.0.0.0 Safari/537.36"
)
BROWSER_PLATFORM = "Windows"
BROWSER_ACCEPT_LANGUAGE = "en-US,en;q=0.9"

# Chrome flags needed inside containers
BROWSER_FLAGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
]

CHROME_BINARY = os.getenv("CHROME_BINARY", "")
CHROMEDRIVER_PATH = os.getenv("CHROMEDRIVER_PATH", "")

PAGE_LOAD_TIMEOUT = 60      # seconds — navigation must settle within this
QUOTE_WAIT_TIMEOUT = 15     # seconds — wait for the quote JSON after load
QUOTE_POLL_INTERVAL = 0.2   # seconds

# ---------------------------------------------------------------------------
# Loan ledger (SRG crowdfunding contract)
# ---------------------------------------------------------------------------
BLOCKCHAIN_NETWORK = os.getenv("BLOCKCHAIN_NETWORK", "base-sepolia")
ALCHEMY_API_KEY = os.getenv("ALCHEMY_API_KEY", "")
SRG_CROWDFUNDING_CONTRACT = os.getenv("SRG_CROWDFUNDING_CONTRACT", "")
SRG_CROWDFUNDING_ABI_PATH = os.getenv("SRG_CROWDFUNDING_ABI_PATH", "")

# Campaign amounts are fixed-point integers with this many decimals
IDR_DECIMALS = 6


def get_network_url() -> str:
    """JSON-RPC endpoint for the configured chain."""
    return f"https://{BLOCKCHAIN_NETWORK}.g.alchemy.com/v2/{ALCHEMY_API_KEY}"


# ---------------------------------------------------------------------------
# CCR
# ---------------------------------------------------------------------------
CCR_AFTER_SCRAPE = os.getenv("CCR_AFTER_SCRAPE", "true").lower() != "false"
CCR_AUTO_REASON = "MA30 price update - Automatic CCR recalculation after price scrape"

# Data freshness: warn if a commodity hasn't updated in this many days
FRESHNESS_WARNING_DAYS = 5

# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------
TURSO_DATABASE_URL = os.getenv("TURSO_DATABASE_URL", "")
TURSO_AUTH_TOKEN = os.getenv("TURSO_AUTH_TOKEN", "")

STORAGE_DIR = os.path.join(os.path.dirname(__file__), "data", "storage")
DB_PATH = os.path.join(STORAGE_DIR, "price_index.db")
