"""Central configuration for the guild roster ingestion engine.

This module is the single source of truth for all magic values: thresholds,
model names, timeouts, storage locations, and sheet layout. Never hardcode
these values elsewhere.

Values that differ between deployments can be overridden through environment
variables; everything else is a plain constant.
"""

import os
from pathlib import Path
from typing import Final

# ---------------------------------------------------------------------------
# Project paths
# ---------------------------------------------------------------------------

PROJECT_ROOT: Final[Path] = Path(__file__).resolve().parent

# ---------------------------------------------------------------------------
# Durable storage
# ---------------------------------------------------------------------------

DATABASE_URL: Final[str] = os.environ.get(
    "ROSTER_DATABASE_URL", f"sqlite:///{PROJECT_ROOT / 'roster.db'}"
)

# Metric rows are bulk-inserted in chunks of this size.
METRIC_INSERT_CHUNK: Final[int] = 200

# Seconds to wait for another recompute of the same guild before giving up.
RECOMPUTE_LOCK_TIMEOUT: Final[float] = 30.0

# "Previous" snapshot lookback window, in days before the current snapshot.
PREVIOUS_WINDOW_MIN_DAYS: Final[int] = 6
PREVIOUS_WINDOW_MAX_DAYS: Final[int] = 8

# ---------------------------------------------------------------------------
# Google Sheets mirror
# ---------------------------------------------------------------------------

# Path to the service account JSON key file. Never commit this file.
SERVICE_ACCOUNT_KEY_PATH: Final[Path] = Path(
    os.environ.get("ROSTER_SERVICE_ACCOUNT_KEY", PROJECT_ROOT / "service_account.json")
)

SPREADSHEET_ID: Final[str] = os.environ.get("ROSTER_SPREADSHEET_ID", "")

SHEET_LATEST_TAB: Final[str] = "Club Latest"
SHEET_LATEST_RANGE: Final[str] = "A:D"
SHEET_NEW_TAB_ROWS: Final[int] = 500
SHEET_NEW_TAB_COLS: Final[int] = 6

SHEET_HEADER: Final[list[str]] = [
    "Name",
    "SIM Power",
    "Total Power",
    "Change % from last week",
]

# ---------------------------------------------------------------------------
# Numeric parsing
# ---------------------------------------------------------------------------

# Plausible power values carry 6-12 digits once separators are stripped.
POWER_MIN_DIGITS: Final[int] = 6
POWER_MAX_DIGITS: Final[int] = 12

# Trailing-extra-digit heuristic only applies to values at least this long.
TRAILING_DIGIT_MIN_LENGTH: Final[int] = 9

# A defective value more than this many times the page median is rejected.
OUTLIER_MEDIAN_RATIO: Final[float] = 8.0

SUFFIX_MULTIPLIERS: Final[dict[str, int]] = {
    "K": 1_000,
    "M": 1_000_000,
    "B": 1_000_000_000,
}

# ---------------------------------------------------------------------------
# Vision oracle
# ---------------------------------------------------------------------------

VISION_FAST_MODEL: Final[str] = os.environ.get(
    "ROSTER_VISION_FAST_MODEL", "claude-3-5-haiku-latest"
)
VISION_STRONG_MODEL: Final[str] = os.environ.get(
    "ROSTER_VISION_STRONG_MODEL", "claude-sonnet-4-0"
)
VISION_STRICT_MODEL: Final[str] = os.environ.get(
    "ROSTER_VISION_STRICT_MODEL", VISION_STRONG_MODEL
)
VISION_MAX_TOKENS: Final[int] = 2000

USE_ENSEMBLE: Final[bool] = os.environ.get("ROSTER_USE_ENSEMBLE", "0") == "1"

# Strict (OCR boost) mode upscales the screenshot before sending it.
STRICT_UPSCALE_FACTOR: Final[float] = 2.0

# Concurrent oracle calls per session (multi-screenshot ingestion).
PARSE_WORKERS: Final[int] = 3

# ---------------------------------------------------------------------------
# Ensemble reconciliation
# ---------------------------------------------------------------------------

# Confidence multipliers for members seen by only one of the two models.
ENSEMBLE_ONLY_STRONG_FACTOR: Final[float] = 0.9
ENSEMBLE_ONLY_FAST_FACTOR: Final[float] = 0.7

# Confidence assigned to a value that needed digit-level arbitration.
ENSEMBLE_DISAGREEMENT_CONFIDENCE: Final[float] = 0.85

# Which model's digit wins on disagreement: "strong" or "fast".
ENSEMBLE_TIEBREAK: Final[str] = "strong"

# ---------------------------------------------------------------------------
# Oracle retry policy
# ---------------------------------------------------------------------------

RETRY_MAX_ATTEMPTS: Final[int] = 4
RETRY_BASE_DELAY: Final[float] = 1.0
RETRY_MAX_JITTER: Final[float] = 1.0
# 529 is the oracle's "overloaded" signal.
TRANSIENT_STATUS_CODES: Final[frozenset[int]] = frozenset({429, 500, 502, 503, 504, 529})

# ---------------------------------------------------------------------------
# Review session QA
# ---------------------------------------------------------------------------

LOW_CONFIDENCE_THRESHOLD: Final[float] = 0.70
SUSPICIOUS_JUMP_PCT: Final[float] = float(
    os.environ.get("ROSTER_SUSPICIOUS_JUMP_PCT", "85")
)
EXTREME_VOLATILITY_PCT: Final[float] = 40.0
EXTREME_VOLATILITY_COUNT: Final[int] = 5

MIN_ROWS_FOR_COMMIT: Final[int] = 3
MAX_OCR_BOOSTS: Final[int] = 2
MAX_SCREENSHOTS: Final[int] = 10

SESSION_TTL_SECONDS: Final[float] = 15 * 60
SESSION_REAP_INTERVAL: Final[float] = 60.0

# Confidence assigned to manually corrected rows.
MANUAL_CONFIDENCE: Final[float] = 1.0

# ---------------------------------------------------------------------------
# Fuzzy name matching
# ---------------------------------------------------------------------------

FUZZY_MATCH_THRESHOLD: Final[float] = 0.85

# ---------------------------------------------------------------------------
# Read queries
# ---------------------------------------------------------------------------

TOP_MOVERS_DEFAULT: Final[int] = 10
TOP_MOVERS_MAX: Final[int] = 50
