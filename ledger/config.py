"""
GridLedger — Configuration
Environment-driven constants shared by the reporting client, the range
fetcher, the FastAPI proxy and the Streamlit dashboard.

Every value can be overridden from the process environment or a ``.env``
file in the working directory.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

# ---------------------------------------------------------------------------
# Upstream endpoints
# ---------------------------------------------------------------------------

REPORTING_API_URL = os.getenv("REPORTING_API_URL", "https://futures.gbe.energy/reporting")
ENDER_API_URL     = os.getenv("ENDER_API_URL", "https://futures.gbe.energy/ender")

# Where the Streamlit dashboard reaches the GridLedger FastAPI backend
GRIDLEDGER_API_URL = os.getenv("GRIDLEDGER_API_URL", "http://localhost:8000")

MARKETS = ("virtuals", "utc")
TRADE_STATUSES = ("cleared", "settled")

# ---------------------------------------------------------------------------
# HTTP / fetch tuning
# ---------------------------------------------------------------------------

REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "30"))

# 2 dates per batch = 8 concurrent requests (2 dates x 4 calls each)
BATCH_SIZE          = int(os.getenv("BATCH_SIZE", "2"))
BATCH_DELAY_SECONDS = float(os.getenv("BATCH_DELAY_SECONDS", "0.2"))
CALLS_PER_DAY       = 4
MAX_CONCURRENCY     = int(os.getenv("MAX_CONCURRENCY", "0"))  # 0 = batch_size x 4

# Dashboard-side retry settings (sync requests client)
MAX_RETRIES = 3
RETRY_BACKOFF_SECONDS = 1.0

LEADERBOARD_SIZE = int(os.getenv("LEADERBOARD_SIZE", "10"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


@dataclass(frozen=True)
class FetchSettings:
    """
    Tuning knobs for the batched range fetcher.

    Parameters
    ----------
    batch_size:
        Number of trading days fetched per round.
    batch_delay:
        Seconds to wait between rounds (server load shedding).
    max_concurrency:
        Upper bound on in-flight HTTP calls. ``0`` means
        ``batch_size * CALLS_PER_DAY``.
    """

    batch_size: int = BATCH_SIZE
    batch_delay: float = BATCH_DELAY_SECONDS
    max_concurrency: int = MAX_CONCURRENCY

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {self.batch_size}")
        if self.batch_delay < 0:
            raise ValueError(f"batch_delay cannot be negative, got {self.batch_delay}")
        if self.max_concurrency < 0:
            raise ValueError(f"max_concurrency cannot be negative, got {self.max_concurrency}")

    @property
    def concurrency_limit(self) -> int:
        return self.max_concurrency or self.batch_size * CALLS_PER_DAY

    @classmethod
    def from_env(cls) -> "FetchSettings":
        return cls(
            batch_size=int(os.getenv("BATCH_SIZE", str(BATCH_SIZE))),
            batch_delay=float(os.getenv("BATCH_DELAY_SECONDS", str(BATCH_DELAY_SECONDS))),
            max_concurrency=int(os.getenv("MAX_CONCURRENCY", str(MAX_CONCURRENCY))),
        )
