"""
GridLedger — Reporting API Client
Async httpx wrapper around the third-party PJM trading/reporting service.

Upstream base:  https://futures.gbe.energy/reporting   (REPORTING_API_URL)
Auth base:      https://futures.gbe.energy/ender       (ENDER_API_URL)

Endpoints used
--------------
  GET  /api/v1/pjm/{market}/trades?accountId=&status=&tradeDate=
       cleared / settled trades for one day
  GET  /api/v1/trades/{market}?accountId=&date=
       submitted trades for one day
  GET  /api/v1/markets/pjm/{market}/nodes[?date=]
       valid pricing nodes ({pnodeId, pnodeName, pnodePrice})
  GET  /api/incdec/valid-nodes
       INC/DEC reference nodes
  GET  /api/reporting/pnl/{market}/{period}
       realized PnL; ``leaderboard=true`` returns every trader's row
  POST /api/v1/auth/login, /api/v1/auth/refresh   (ENDER_API_URL)

The upstream returns HTML error pages when its gateway is down; those are
turned into short readable messages instead of being shown verbatim.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import httpx
from loguru import logger

from ledger.config import ENDER_API_URL, MARKETS, REPORTING_API_URL, REQUEST_TIMEOUT, TRADE_STATUSES
from ledger.models import Node
from ledger.normalizer import parse_nodes_payload
from ledger.session import TraderSession

PNL_PERIODS = ("daily", "weekly", "monthly", "quarterly", "ytd", "alltime")
NOTE_TYPES = ("virtual", "utc")


def empty_notes(market: str, note_type: str, trade_date: str) -> dict:
    """Notes payload for a day nobody has written notes for yet."""
    return {"market": market, "type": note_type, "tradeDate": trade_date, "notes": {}}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ReportingAPIError(Exception):
    """A reporting call failed; ``status_code`` is the HTTP status to surface."""

    def __init__(self, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def is_html_error(text: str) -> bool:
    return text.strip().startswith("<") or "<!DOCTYPE" in text or "<html" in text


def clean_error(text: str, fallback: str) -> str:
    """Reduce an upstream error body to a one-line message."""
    if is_html_error(text):
        if "404" in text:
            return "API endpoint not found (404) - Backend may be down or URL is incorrect"
        if "500" in text:
            return "Server error (500) - Backend service issue"
        if "502" in text:
            return "Bad gateway (502) - Backend service unavailable"
        if "503" in text:
            return "Service unavailable (503) - Backend is temporarily down"
        return "API endpoint not available - Backend may be down"
    return text.strip() or fallback


def _check_market(market: str) -> None:
    if market not in MARKETS:
        raise ValueError(f"Unknown market {market!r}; expected one of {MARKETS}")


# ---------------------------------------------------------------------------
# PnL query builder
# ---------------------------------------------------------------------------


def build_pnl_query(
    period: str,
    market: str,
    *,
    as_of: Optional[str] = None,
    anchor_date: Optional[str] = None,
    month: Optional[str] = None,
    quarter: Optional[int] = None,
    year: Optional[int] = None,
    leaderboard: bool = False,
    trader_email: Optional[str] = None,
) -> tuple[str, dict[str, str]]:
    """
    Return ``(path, params)`` for a PnL request.

    Required parameters per period:
      daily → as_of,  weekly → anchor_date,  monthly → month (YYYY-MM),
      quarterly → quarter (year optional),  ytd → year/as_of optional,
      alltime → none.  Unknown periods fall back to all-time.
    """
    _check_market(market)
    params: dict[str, str] = {}

    if period == "daily":
        if not as_of:
            raise ValueError("asOf date required for daily PnL")
        params["asOf"] = as_of
    elif period == "weekly":
        if not anchor_date:
            raise ValueError("anchorDate required for weekly PnL")
        params["anchorDate"] = anchor_date
    elif period == "monthly":
        if not month:
            raise ValueError("month required for monthly PnL (YYYY-MM format)")
        params["month"] = month
    elif period == "quarterly":
        if not quarter:
            raise ValueError("quarter required for quarterly PnL")
        params["quarter"] = str(quarter)
        if year:
            params["year"] = str(year)
    elif period == "ytd":
        if year:
            params["year"] = str(year)
        if as_of:
            params["asOf"] = as_of
    else:
        period = "alltime"

    if trader_email:
        params["traderEmail"] = trader_email
    params["leaderboard"] = "true" if leaderboard else "false"
    return f"/api/reporting/pnl/{market}/{period}", params


# ---------------------------------------------------------------------------
# Relayed response (proxy routes)
# ---------------------------------------------------------------------------


@dataclass
class RelayedResponse:
    """Upstream status + body, passed through verbatim by the proxy routes."""

    status_code: int
    content: bytes
    content_type: str


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ReportingClient:
    """
    Async client for the reporting and auth services.

    Parameters
    ----------
    base_url:
        Reporting service root.
    auth_url:
        Auth (ender) service root.
    timeout:
        Per-request timeout in seconds.
    http_client:
        Optional pre-built ``httpx.AsyncClient`` (tests inject one backed by
        ``httpx.MockTransport``).  A private one is created otherwise and
        closed by :meth:`aclose`.
    """

    def __init__(
        self,
        base_url: str = REPORTING_API_URL,
        auth_url: str = ENDER_API_URL,
        timeout: float = REQUEST_TIMEOUT,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth_url = auth_url.rstrip("/")
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> "ReportingClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
        json: Any = None,
    ) -> httpx.Response:
        logger.debug("{} {} params={}", method, url, params)
        try:
            return await self._http.request(method, url, params=params, headers=headers, json=json)
        except httpx.TimeoutException as exc:
            logger.warning("Reporting request timed out: {} {}", method, url)
            raise ReportingAPIError("Reporting API timed out.", status_code=504) from exc
        except httpx.TransportError as exc:
            logger.warning("Reporting transport error: {}", exc)
            raise ReportingAPIError(f"Could not reach reporting API: {exc}", status_code=502) from exc

    async def _get_json(
        self,
        url: str,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
        fallback: str = "Request failed",
    ) -> Any:
        """Single GET. Raises ReportingAPIError on a non-2xx response."""
        resp = await self._send("GET", url, params=params, headers=headers or {"Accept": "application/json"})
        if resp.is_error:
            message = clean_error(resp.text, fallback)
            logger.error("Reporting API returned {} for {}: {}", resp.status_code, url, message)
            raise ReportingAPIError(message, status_code=resp.status_code)
        try:
            return resp.json()
        except ValueError as exc:
            raise ReportingAPIError(clean_error(resp.text, "Malformed JSON from reporting API")) from exc

    @staticmethod
    def _as_list(payload: Any, what: str) -> list:
        if isinstance(payload, list):
            return payload
        logger.warning("Unexpected payload shape for {} ({}); treating as empty", what, type(payload).__name__)
        return []

    async def relay(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
        json: Any = None,
        auth: bool = False,
    ) -> RelayedResponse:
        """Forward a request and return the upstream response untouched."""
        root = self._auth_url if auth else self._base_url
        resp = await self._send(method, f"{root}{path}", params=params, headers=headers, json=json)
        logger.info("Relayed {} {} → {}", method, path, resp.status_code)
        return RelayedResponse(
            status_code=resp.status_code,
            content=resp.content,
            content_type=resp.headers.get("content-type", "application/json"),
        )

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    async def fetch_trades_by_status(
        self,
        session: TraderSession,
        trade_date: str,
        market: str = "virtuals",
        status: str = "cleared",
    ) -> list[dict]:
        """Cleared or settled trades for one market and day (raw records)."""
        _check_market(market)
        if status not in TRADE_STATUSES:
            raise ValueError(f"Unknown trade status {status!r}; expected one of {TRADE_STATUSES}")
        payload = await self._get_json(
            f"{self._base_url}/api/v1/pjm/{market}/trades",
            params={"accountId": session.account_id, "status": status, "tradeDate": trade_date},
            fallback=f"Failed to fetch {status} trades",
        )
        return self._as_list(payload, f"{market}/{status} trades")

    async def fetch_submitted_trades(
        self,
        session: TraderSession,
        market: str,
        trade_date: str,
    ) -> list[dict]:
        _check_market(market)
        payload = await self._get_json(
            f"{self._base_url}/api/v1/trades/{market}",
            params={"accountId": session.account_id, "date": trade_date},
            fallback="Failed to fetch trades",
        )
        return self._as_list(payload, f"{market} submitted trades")

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    async def fetch_nodes(self, market: str, date: Optional[str] = None) -> list[Node]:
        _check_market(market)
        params = {"date": date} if date else None
        payload = await self._get_json(
            f"{self._base_url}/api/v1/markets/pjm/{market}/nodes",
            params=params,
            fallback="Failed to fetch nodes",
        )
        nodes = parse_nodes_payload(payload)
        logger.info("Loaded {} {} nodes", len(nodes), market)
        return nodes

    async def fetch_incdec_nodes(self) -> list[Node]:
        payload = await self._get_json(
            f"{self._base_url}/api/incdec/valid-nodes",
            headers={"Accept": "*/*"},
            fallback="Failed to fetch INC/DEC nodes",
        )
        return parse_nodes_payload(self._as_list(payload, "INC/DEC nodes"))

    # ------------------------------------------------------------------
    # PnL
    # ------------------------------------------------------------------

    async def fetch_pnl(
        self,
        session: TraderSession,
        period: str,
        market: str = "virtuals",
        **query: Any,
    ) -> dict:
        """
        Realized PnL for one period and market.

        ``query`` is forwarded to :func:`build_pnl_query` (as_of, anchor_date,
        month, quarter, year, leaderboard).
        """
        query.setdefault("trader_email", session.trader_email)
        path, params = build_pnl_query(period, market, **query)
        payload = await self._get_json(
            f"{self._base_url}{path}",
            params=params,
            headers=session.headers(),
            fallback=f"Failed to fetch {period} PnL",
        )
        if not isinstance(payload, dict):
            logger.warning("Unexpected PnL payload shape ({}); treating as empty", type(payload).__name__)
            return {}
        return payload

    # ------------------------------------------------------------------
    # Trading notes
    # ------------------------------------------------------------------

    async def fetch_notes(
        self,
        session: TraderSession,
        trade_date: str,
        note_type: str = "virtual",
        market: str = "pjm",
    ) -> dict:
        """
        The trader's notes for one day as ``{market, type, tradeDate, notes}``
        where ``notes`` maps tag → text.

        A 404 means no notes were written for the day and yields an empty
        ``notes`` map.
        """
        if note_type not in NOTE_TYPES:
            raise ValueError(f"Unknown note type {note_type!r}; expected one of {NOTE_TYPES}")
        url = f"{self._base_url}/api/v1/reporting/notes/{market}/{note_type}"
        resp = await self._send(
            "GET", url,
            params={"tradeDate": trade_date},
            headers={"Accept": "application/json", "Trade-Token": session.trader_token},
        )
        if resp.status_code == 404:
            logger.debug("No {} notes for {}", note_type, trade_date)
            return empty_notes(market, note_type, trade_date)
        if resp.is_error:
            message = clean_error(resp.text, f"API returned {resp.status_code}")
            logger.error("Reporting API returned {} for {}: {}", resp.status_code, url, message)
            raise ReportingAPIError(message, status_code=resp.status_code)
        try:
            payload = resp.json()
        except ValueError as exc:
            raise ReportingAPIError(clean_error(resp.text, "Malformed JSON from reporting API")) from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("notes", {}), dict):
            logger.warning("Unexpected notes payload shape ({}); treating as empty", type(payload).__name__)
            return empty_notes(market, note_type, trade_date)
        payload.setdefault("notes", {})
        return payload
