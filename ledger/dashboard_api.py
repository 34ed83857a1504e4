"""
GridLedger — Dashboard backend client
Synchronous wrapper the Streamlit dashboard uses to talk to the GridLedger
FastAPI service (api.py).  Streamlit reruns the script top-to-bottom on
every interaction, so a plain blocking ``requests.Session`` fits it better
than an event loop.
"""

from __future__ import annotations

import time
from typing import Any, Optional

import requests
from loguru import logger

from ledger.config import GRIDLEDGER_API_URL, MAX_RETRIES, REQUEST_TIMEOUT, RETRY_BACKOFF_SECONDS

# Analytics over long ranges is paced by the batch delay upstream
ANALYTICS_TIMEOUT_SECONDS = 600.0


class DashboardAPIError(Exception):
    """The backend answered with an error (or never answered)."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _error_detail(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text.strip() or f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or body.get("message") or body)
    return str(body)


class DashboardAPI:
    """
    Thin client over the GridLedger HTTP API.

    Parameters
    ----------
    trader_token:
        Sent as the ``Trader-Token`` header on every call.
    base_url:
        GridLedger FastAPI root.
    timeout:
        Per-request timeout in seconds.
    max_retries:
        Attempts on connection errors, timeouts and 5xx responses.
    """

    def __init__(
        self,
        trader_token: str,
        base_url: str = GRIDLEDGER_API_URL,
        timeout: float = REQUEST_TIMEOUT,
        max_retries: int = MAX_RETRIES,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_retries = max_retries
        self._session = requests.Session()
        self._session.headers.update({"Trader-Token": trader_token, "Accept": "application/json"})

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _get(self, path: str, params: Optional[dict[str, Any]] = None, timeout: Optional[float] = None) -> Any:
        """
        Single GET with retry/backoff. Returns parsed JSON body.
        4xx responses raise immediately; 5xx and network errors are retried.
        """
        url = f"{self._base_url}{path}"
        last_exc: Exception = DashboardAPIError("No attempts made")
        for attempt in range(1, self._max_retries + 1):
            try:
                logger.debug("GET {} params={} attempt={}/{}", url, params, attempt, self._max_retries)
                resp = self._session.get(url, params=params, timeout=timeout or self._timeout)
            except requests.exceptions.Timeout as exc:
                logger.warning("Timeout (attempt {}): {}", attempt, exc)
                last_exc = DashboardAPIError("GridLedger API timed out.")
            except requests.exceptions.ConnectionError as exc:
                logger.warning("Connection error (attempt {}): {}", attempt, exc)
                last_exc = DashboardAPIError(f"Cannot reach GridLedger API at {self._base_url}.")
            else:
                if resp.ok:
                    try:
                        return resp.json()
                    except ValueError as exc:
                        logger.error("Non-JSON {} response from {}", resp.status_code, url)
                        raise DashboardAPIError(
                            f"GridLedger API returned a non-JSON response (HTTP {resp.status_code}).",
                            status_code=resp.status_code,
                        ) from exc
                detail = _error_detail(resp)
                if resp.status_code < 500:
                    logger.error("Client error {}: {}", resp.status_code, detail)
                    raise DashboardAPIError(detail, status_code=resp.status_code)
                logger.warning("Server error {} (attempt {}): {}", resp.status_code, attempt, detail)
                last_exc = DashboardAPIError(detail, status_code=resp.status_code)

            if attempt < self._max_retries:
                wait = RETRY_BACKOFF_SECONDS * attempt
                logger.info("Retrying in {:.1f}s…", wait)
                time.sleep(wait)

        raise last_exc

    # ------------------------------------------------------------------
    # Public API methods
    # ------------------------------------------------------------------

    def trade_status(self, trade_date: str) -> dict:
        """Submitted trades with PENDING/CLEARED/REJECTED/SETTLED status."""
        return self._get("/api/trades/status", {"date": trade_date})

    def comparison(self, trade_date: str) -> dict:
        return self._get("/api/comparison", {"date": trade_date})

    def analytics(self, start: str, end: str) -> dict:
        return self._get("/api/analytics", {"start": start, "end": end}, timeout=ANALYTICS_TIMEOUT_SECONDS)

    def pnl(self, period: str, market: str, **params: Any) -> dict:
        query = {"period": period, "market": market}
        query.update({k: v for k, v in params.items() if v is not None})
        return self._get("/api/reporting/pnl", query)

    def notes(self, trade_date: str, note_type: str = "virtual") -> dict:
        """Trading notes for a day; ``notes`` is empty when none were written."""
        return self._get("/api/reporting/notes", {"tradeDate": trade_date, "type": note_type})

    def leaderboard(self, period: str, market: str, **params: Any) -> dict:
        query = {"period": period, "market": market}
        query.update({k: v for k, v in params.items() if v is not None})
        return self._get("/api/leaderboard", query)
