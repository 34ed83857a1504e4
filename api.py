"""
GridLedger — FastAPI Middleware Server
Async proxy between the GridLedger dashboard and the PJM trading/reporting
API, plus the reconciliation and analytics endpoints built on top of it.

Run:  uvicorn api:app --reload --port 8000
Docs: http://localhost:8000/docs
"""

from __future__ import annotations

import asyncio
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Generic, Optional, TypeVar
from zoneinfo import ZoneInfo

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from loguru import logger
from pydantic import BaseModel

from ledger.aggregate import day_totals, pnl_by_type, rank_leaderboard, settled_outcomes, summarize
from ledger.client import ReportingAPIError, ReportingClient, build_pnl_query
from ledger.config import LEADERBOARD_SIZE, LOG_LEVEL, MARKETS, TRADE_STATUSES, FetchSettings
from ledger.fetcher import RangeFetcher, enumerate_dates, fetch_day, parse_date
from ledger.models import MARKET_UTC, MARKET_VIRTUALS, SOURCE_SUBMITTED
from ledger.normalizer import EMPTY_DIRECTORY, NodeDirectory, normalize_all
from ledger.reconcile import reconcile_day
from ledger.session import TraderSession

logger.remove()
logger.add(sys.stderr, level=LOG_LEVEL)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PJM_TIMEZONE = ZoneInfo("America/New_York")
MAX_ANALYTICS_DAYS = 366

# ---------------------------------------------------------------------------
# Application state: shared reporting client
# ---------------------------------------------------------------------------

_reporting: Optional[ReportingClient] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create a single shared reporting client for the lifetime of the process."""
    global _reporting
    _reporting = ReportingClient()
    logger.info("Reporting client initialised.")
    yield
    await _reporting.aclose()
    logger.info("Reporting client closed.")


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="GridLedger API",
    description=(
        "Async middleware between the GridLedger dashboard and the PJM "
        "virtual/UTC trading reporting API. Relays raw reporting calls and "
        "exposes reconciled trade views and range analytics."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Envelope: standard top-level wrapper for the data endpoints
# ---------------------------------------------------------------------------

_T_data    = TypeVar("_T_data")
_T_summary = TypeVar("_T_summary")


class EnvelopeMeta(BaseModel):
    """Metadata block present on every GridLedger data response."""
    api_version:      str = "1.0"
    market:           str   # "virtuals" | "utc" | "ALL"
    start:            str   # first trade date covered (ISO)
    end:              str   # last trade date covered (ISO)
    timezone:         str = "America/New_York"
    last_updated_ept: str   # server timestamp when response was built
    units:            str   # "$ / MW"


class ApiResponse(BaseModel, Generic[_T_data, _T_summary]):
    """Uniform envelope returned by every GridLedger data endpoint."""
    meta:    EnvelopeMeta
    data:    list[_T_data]
    summary: _T_summary


# ---------------------------------------------------------------------------
# Record models  (per-row shape inside data[])
# ---------------------------------------------------------------------------

class TradeRecord(BaseModel):
    trade_id:        str
    trade_date:      str
    hour:            int             # hour ending 1–24
    market:          str
    trade_type:      str             # "INC" | "DEC" | "UTC"
    location:        str
    status:          str             # "PENDING" | "CLEARED" | "REJECTED" | "SETTLED"
    submitted_mw:    Optional[float] = None
    cleared_mw:      Optional[float] = None
    submitted_price: Optional[float] = None
    da_price:        Optional[float] = None
    rt_price:        Optional[float] = None
    price_diff:      Optional[float] = None
    pnl:             Optional[float] = None


class DailyPnLRecord(BaseModel):
    date:           str
    pnl:            float
    cumulative_pnl: float
    trade_count:    int


class LeaderboardRecord(BaseModel):
    rank:         int
    trader_email: str
    realized_pnl: float


# ---------------------------------------------------------------------------
# Summary models  (aggregated fields inside summary{})
# ---------------------------------------------------------------------------

class MarketTotalsModel(BaseModel):
    market:         str
    count:          int
    submitted_mw:   float
    cleared_mw:     float
    inc_mw:         float
    dec_mw:         float
    cleared_count:  int
    rejected_count: int
    settled_count:  int
    pending_count:  int
    total_pnl:      float


class TradeStatsModel(BaseModel):
    total_submitted: int
    total_cleared:   int
    total_rejected:  int
    total_settled:   int
    wins:            int
    losses:          int
    total_pnl:       float
    avg_pnl:         float
    total_mw:        float
    avg_mw:          float
    win_rate:        float
    clear_rate:      float


class TradeStatusSummary(BaseModel):
    trade_date:             str
    virtuals:               MarketTotalsModel
    utc:                    MarketTotalsModel
    cleared_data_available: bool   # False when the cleared/settled lookup failed


class ComparisonSummary(BaseModel):
    trade_date:  str
    stats:       TradeStatsModel
    pnl_by_type: dict[str, float]


class ProgressModel(BaseModel):
    current:      int
    total:        int
    failed_calls: int


class AnalyticsSummaryModel(BaseModel):
    start:           str
    end:             str
    state:           str   # "DONE" | "CANCELLED"
    stats:           TradeStatsModel
    progress:        ProgressModel
    incomplete_days: list[str]


class LeaderboardSummary(BaseModel):
    period:     str
    market:     str
    total_rows: int
    prelim:     bool


TradeStatusApiResponse = ApiResponse[TradeRecord,       TradeStatusSummary]
ComparisonApiResponse  = ApiResponse[TradeRecord,       ComparisonSummary]
AnalyticsApiResponse   = ApiResponse[DailyPnLRecord,    AnalyticsSummaryModel]
LeaderboardApiResponse = ApiResponse[LeaderboardRecord, LeaderboardSummary]


class HealthResponse(BaseModel):
    status:           str
    timestamp:        str
    reporting_client: bool


class LoginRequest(BaseModel):
    login:    Optional[str] = None
    password: Optional[str] = None


class RefreshRequest(BaseModel):
    refreshToken: Optional[str] = None


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _client() -> ReportingClient:
    if _reporting is None:
        raise HTTPException(status_code=503, detail="Reporting client not initialised.")
    return _reporting


def _http_error(exc: ReportingAPIError) -> HTTPException:
    """Map a reporting failure onto the status the dashboard should see."""
    if exc.status_code == 504:
        return HTTPException(status_code=504, detail="Reporting API timed out.")
    if 400 <= exc.status_code < 500:
        return HTTPException(status_code=exc.status_code, detail=exc.message)
    return HTTPException(status_code=502, detail=exc.message)


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": message})


def _relayed(resp) -> Response:
    return Response(content=resp.content, status_code=resp.status_code, media_type=resp.content_type)


def trader_session(
    trader_token: Optional[str] = Header(default=None, alias="Trader-Token"),
    token_query: Optional[str] = Query(default=None, alias="traderToken"),
) -> TraderSession:
    """Resolve the caller's trader credential from header or query string."""
    token = trader_token or token_query
    if not token or not token.strip():
        raise HTTPException(status_code=401, detail="Missing Trader-Token header.")
    return TraderSession(trader_token=token.strip())


def _parse_day(value: str, name: str = "date") -> str:
    try:
        return parse_date(value).isoformat()
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=f"Invalid {name}: {exc}") from exc


def _make_meta(*, market: str, start: str, end: str) -> EnvelopeMeta:
    return EnvelopeMeta(
        market=market,
        start=start,
        end=end,
        units="$ / MW",
        last_updated_ept=datetime.now(tz=PJM_TIMEZONE).isoformat(),
    )


async def _directories(trade_date: Optional[str] = None) -> tuple[NodeDirectory, NodeDirectory]:
    """
    Node directories for both markets.

    A failed lookup degrades to an empty directory so locations render as
    raw pnode ids.
    """
    client = _client()
    results = await asyncio.gather(
        client.fetch_nodes(MARKET_VIRTUALS, trade_date),
        client.fetch_nodes(MARKET_UTC, trade_date),
        return_exceptions=True,
    )
    directories = []
    for market, result in zip((MARKET_VIRTUALS, MARKET_UTC), results):
        if isinstance(result, Exception):
            logger.warning("Node lookup for {} failed ({}); showing raw ids", market, result)
            directories.append(EMPTY_DIRECTORY)
        else:
            directories.append(NodeDirectory(result))
    return directories[0], directories[1]


# ---------------------------------------------------------------------------
# Endpoints: meta
# ---------------------------------------------------------------------------


@app.get("/health", response_model=HealthResponse, tags=["Meta"])
async def health():
    """Returns service health status and whether the reporting client is up."""
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(tz=PJM_TIMEZONE).isoformat(),
        reporting_client=_reporting is not None,
    )


# ---------------------------------------------------------------------------
# Endpoints: reporting proxy (status and body relayed verbatim)
# ---------------------------------------------------------------------------


@app.get("/api/reporting/cleared", tags=["Reporting proxy"])
async def proxy_cleared(
    tradeDate: Optional[str] = Query(default=None),
    traderToken: Optional[str] = Query(default=None),
    market: str = Query(default="virtuals"),
    status: str = Query(default="cleared"),
):
    """Cleared or settled trades: ``/api/v1/pjm/{market}/trades``."""
    if not tradeDate or not traderToken:
        return _bad_request("Missing tradeDate or traderToken parameter")
    if market not in MARKETS or status not in TRADE_STATUSES:
        return _bad_request(f"Unsupported market/status: {market}/{status}")

    logger.info("GET /api/reporting/cleared | market={} status={} date={}", market, status, tradeDate)
    try:
        resp = await _client().relay(
            "GET", f"/api/v1/pjm/{market}/trades",
            params={"accountId": traderToken, "status": status, "tradeDate": tradeDate},
            headers={"Accept": "application/json"},
        )
    except ReportingAPIError as exc:
        raise _http_error(exc) from exc
    return _relayed(resp)


@app.get("/api/reporting/trades", tags=["Reporting proxy"])
async def proxy_trades(
    market: Optional[str] = Query(default=None),
    accountId: Optional[str] = Query(default=None),
    date: Optional[str] = Query(default=None),
):
    """Submitted trades: ``/api/v1/trades/{market}``."""
    if not market or not accountId or not date:
        return _bad_request("Missing market, accountId, or date parameter")
    if market not in MARKETS:
        return _bad_request(f"Unsupported market: {market}")

    try:
        resp = await _client().relay(
            "GET", f"/api/v1/trades/{market}",
            params={"accountId": accountId, "date": date},
            headers={"Content-Type": "application/json"},
        )
    except ReportingAPIError as exc:
        raise _http_error(exc) from exc
    return _relayed(resp)


@app.get("/api/reporting/nodes", tags=["Reporting proxy"])
async def proxy_nodes(
    market: str = Query(default="virtuals"),
    date: Optional[str] = Query(default=None),
):
    """Valid pricing nodes for a market."""
    if market not in MARKETS:
        return _bad_request(f"Unsupported market: {market}")
    try:
        resp = await _client().relay(
            "GET", f"/api/v1/markets/pjm/{market}/nodes",
            params={"date": date} if date else None,
            headers={"Accept": "application/json"},
        )
    except ReportingAPIError as exc:
        raise _http_error(exc) from exc
    return _relayed(resp)


@app.get("/api/reporting/incdec-nodes", tags=["Reporting proxy"])
async def proxy_incdec_nodes():
    """Valid INC/DEC reference nodes."""
    try:
        resp = await _client().relay("GET", "/api/incdec/valid-nodes", headers={"Accept": "*/*"})
    except ReportingAPIError as exc:
        raise _http_error(exc) from exc
    return _relayed(resp)


@app.get("/api/reporting/pnl", tags=["Reporting proxy"])
async def proxy_pnl(
    period: str = Query(default="ytd", description="daily | weekly | monthly | quarterly | ytd | alltime"),
    market: str = Query(default="virtuals"),
    asOf: Optional[str] = Query(default=None),
    anchorDate: Optional[str] = Query(default=None),
    month: Optional[str] = Query(default=None, description="YYYY-MM"),
    quarter: Optional[int] = Query(default=None, ge=1, le=4),
    year: Optional[int] = Query(default=None),
    traderEmail: Optional[str] = Query(default=None),
    leaderboard: bool = Query(default=False),
    traderToken: Optional[str] = Query(default=None),
    gbe_trader_token: Optional[str] = Header(default=None, alias="gbe-trader-token"),
    trader_token_header: Optional[str] = Header(default=None, alias="Trader-Token"),
):
    """Realized PnL for a period: ``/api/reporting/pnl/{market}/{period}``."""
    token = gbe_trader_token or trader_token_header or traderToken
    if not token:
        return _bad_request("Missing traderToken parameter")
    try:
        path, params = build_pnl_query(
            period, market,
            as_of=asOf, anchor_date=anchorDate, month=month, quarter=quarter,
            year=year, leaderboard=leaderboard, trader_email=traderEmail,
        )
    except ValueError as exc:
        return _bad_request(str(exc))

    logger.info("GET /api/reporting/pnl | {} {} leaderboard={}", market, period, leaderboard)
    try:
        resp = await _client().relay(
            "GET", path, params=params,
            headers={"Accept": "application/json", "gbe-trader-token": token},
        )
    except ReportingAPIError as exc:
        raise _http_error(exc) from exc
    return _relayed(resp)


@app.get("/api/reporting/notes", tags=["Reporting proxy"])
async def proxy_notes(
    tradeDate: Optional[str] = Query(default=None),
    market: str = Query(default="pjm"),
    type: str = Query(default="virtual", description="virtual | utc"),
    traderToken: Optional[str] = Query(default=None),
    trader_token_header: Optional[str] = Header(default=None, alias="Trader-Token"),
):
    """
    The trader's notes for a day: ``/api/v1/reporting/notes/{market}/{type}``.
    A day without notes returns an empty ``notes`` map rather than 404.
    """
    token = (traderToken or trader_token_header or "").strip()
    if not token:
        return _bad_request("Trader token is required")
    if not tradeDate:
        return _bad_request("Trade date is required")

    logger.info("GET /api/reporting/notes | {}/{} date={}", market, type, tradeDate)
    try:
        payload = await _client().fetch_notes(TraderSession(trader_token=token), tradeDate, type, market)
    except ValueError as exc:
        return _bad_request(str(exc))
    except ReportingAPIError as exc:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})
    return JSONResponse(content=payload)


@app.post("/api/auth/login", tags=["Auth proxy"])
async def proxy_login(body: LoginRequest):
    """Exchange login/password for tokens at the auth service."""
    if not body.login or not body.password:
        return JSONResponse(
            status_code=400,
            content={"error": "bad_request", "message": "Login and password are required"},
        )
    try:
        resp = await _client().relay(
            "POST", "/api/v1/auth/login",
            json={"login": body.login, "password": body.password},
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            auth=True,
        )
    except ReportingAPIError as exc:
        raise _http_error(exc) from exc
    return _relayed(resp)


@app.post("/api/auth/refresh", tags=["Auth proxy"])
async def proxy_refresh(body: RefreshRequest):
    """Trade a refresh token for a new token set."""
    if not body.refreshToken:
        return JSONResponse(
            status_code=400,
            content={"error": "bad_request", "message": "refreshToken is required"},
        )
    try:
        resp = await _client().relay(
            "POST", "/api/v1/auth/refresh",
            json={"refreshToken": body.refreshToken},
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "X-Refresh-Token": body.refreshToken,
            },
            auth=True,
        )
    except ReportingAPIError as exc:
        raise _http_error(exc) from exc
    return _relayed(resp)


# ---------------------------------------------------------------------------
# Endpoints: reconciled views
# ---------------------------------------------------------------------------


@app.get("/api/trades/status", response_model=TradeStatusApiResponse, tags=["Trades"])
async def get_trade_status(
    date: str = Query(..., description="Trade date, YYYY-MM-DD."),
    session: TraderSession = Depends(trader_session),
):
    """
    Submitted trades for a day with their clearing status.

    Every submitted trade is listed once.  Status comes from the cleared and
    settled views: SETTLED wins over CLEARED/REJECTED, and a trade missing
    from both is PENDING.  If the cleared/settled lookup fails the trades
    are still returned as PENDING and ``cleared_data_available`` is false.
    """
    trade_date = _parse_day(date)
    client = _client()
    logger.info("GET /api/trades/status | date={}", trade_date)

    try:
        submitted_v, submitted_u = await asyncio.gather(
            client.fetch_submitted_trades(session, MARKET_VIRTUALS, trade_date),
            client.fetch_submitted_trades(session, MARKET_UTC, trade_date),
        )
    except ReportingAPIError as exc:
        raise _http_error(exc) from exc

    virtuals_nodes, utc_nodes = await _directories(trade_date)
    submitted = (
        normalize_all(submitted_v, MARKET_VIRTUALS, SOURCE_SUBMITTED, virtuals_nodes)
        + normalize_all(submitted_u, MARKET_UTC, SOURCE_SUBMITTED, utc_nodes)
    )

    available = True
    try:
        day = await fetch_day(client, session, trade_date)
        cleared, settled = day.normalized(virtuals_nodes, utc_nodes)
    except ReportingAPIError as exc:
        logger.warning("Cleared/settled lookup for {} failed ({}); showing PENDING", trade_date, exc)
        cleared, settled, available = [], [], False

    trades = reconcile_day(
        [c for c in cleared if c.market == MARKET_VIRTUALS],
        [s for s in settled if s.market == MARKET_VIRTUALS],
        [c for c in cleared if c.market == MARKET_UTC],
        [s for s in settled if s.market == MARKET_UTC],
        submitted=submitted,
    )
    totals = day_totals(trades)

    return TradeStatusApiResponse(
        meta=_make_meta(market="ALL", start=trade_date, end=trade_date),
        data=[TradeRecord(**t.to_dict()) for t in trades],
        summary=TradeStatusSummary(
            trade_date=trade_date,
            virtuals=MarketTotalsModel(**totals[MARKET_VIRTUALS].to_dict()),
            utc=MarketTotalsModel(**totals[MARKET_UTC].to_dict()),
            cleared_data_available=available,
        ),
    )


@app.get("/api/comparison", response_model=ComparisonApiResponse, tags=["Trades"])
async def get_comparison(
    date: str = Query(..., description="Trade date, YYYY-MM-DD."),
    session: TraderSession = Depends(trader_session),
):
    """
    Submitted vs DA vs RT prices with PnL for every cleared/settled trade.

    For virtuals the DA/RT prices are LMPs; for UTC they are the DA/RT
    source-to-sink spreads.  Trades are ordered by hour ending, then type.
    """
    trade_date = _parse_day(date)
    client = _client()
    logger.info("GET /api/comparison | date={}", trade_date)

    try:
        day, (virtuals_nodes, utc_nodes) = await asyncio.gather(
            fetch_day(client, session, trade_date),
            _directories(trade_date),
        )
    except ReportingAPIError as exc:
        raise _http_error(exc) from exc

    cleared, settled = day.normalized(virtuals_nodes, utc_nodes)
    trades = reconcile_day(
        [c for c in cleared if c.market == MARKET_VIRTUALS],
        [s for s in settled if s.market == MARKET_VIRTUALS],
        [c for c in cleared if c.market == MARKET_UTC],
        [s for s in settled if s.market == MARKET_UTC],
    )
    stats = settled_outcomes(trades)

    return ComparisonApiResponse(
        meta=_make_meta(market="ALL", start=trade_date, end=trade_date),
        data=[TradeRecord(**t.to_dict()) for t in trades],
        summary=ComparisonSummary(
            trade_date=trade_date,
            stats=TradeStatsModel(**stats.to_dict()),
            pnl_by_type=pnl_by_type(trades),
        ),
    )


# ---------------------------------------------------------------------------
# Endpoints: analytics
# ---------------------------------------------------------------------------


@app.get("/api/analytics", response_model=AnalyticsApiResponse, tags=["Analytics"])
async def get_analytics(
    start: str = Query(..., description="First trade date, YYYY-MM-DD (inclusive)."),
    end: str = Query(..., description="Last trade date, YYYY-MM-DD (inclusive)."),
    session: TraderSession = Depends(trader_session),
):
    """
    Daily and cumulative PnL plus win/loss, clear-rate and MW statistics for
    a date range, both markets combined.

    Days are fetched in small batches with a pause in between.  A day whose
    calls fail contributes nothing and is listed in ``incomplete_days``;
    the request itself still succeeds.  ``end`` before ``start`` returns an
    empty, successful result.
    """
    start_day = _parse_day(start, "start")
    end_day = _parse_day(end, "end")
    days = len(enumerate_dates(start_day, end_day))
    if days > MAX_ANALYTICS_DAYS:
        raise HTTPException(
            status_code=422,
            detail=f"Range spans {days} days; the maximum is {MAX_ANALYTICS_DAYS}.",
        )

    logger.info("GET /api/analytics | {} → {} ({} days)", start_day, end_day, days)
    fetcher = RangeFetcher(_client(), FetchSettings.from_env())
    result = await fetcher.run(session, start_day, end_day)

    cleared, settled = result.normalized()
    summary = summarize(start_day, end_day, cleared, settled, result.incomplete_days)

    return AnalyticsApiResponse(
        meta=_make_meta(market="ALL", start=start_day, end=end_day),
        data=[DailyPnLRecord(**d.to_dict()) for d in summary.daily],
        summary=AnalyticsSummaryModel(
            start=start_day,
            end=end_day,
            state=result.state,
            stats=TradeStatsModel(**summary.stats.to_dict()),
            progress=ProgressModel(**result.progress.to_dict()),
            incomplete_days=summary.incomplete_days,
        ),
    )


@app.get("/api/leaderboard", response_model=LeaderboardApiResponse, tags=["Analytics"])
async def get_leaderboard(
    period: str = Query(default="ytd"),
    market: str = Query(default="virtuals"),
    asOf: Optional[str] = Query(default=None),
    anchorDate: Optional[str] = Query(default=None),
    month: Optional[str] = Query(default=None),
    quarter: Optional[int] = Query(default=None, ge=1, le=4),
    year: Optional[int] = Query(default=None),
    session: TraderSession = Depends(trader_session),
):
    """Top traders by realized PnL for a period, best first."""
    if market not in MARKETS:
        raise HTTPException(status_code=422, detail=f"Unsupported market: {market}")

    query: dict[str, Any] = dict(
        as_of=asOf, anchor_date=anchorDate, month=month, quarter=quarter, year=year, leaderboard=True,
    )
    try:
        payload = await _client().fetch_pnl(session, period, market, **query)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except ReportingAPIError as exc:
        raise _http_error(exc) from exc

    rows = rank_leaderboard(payload, LEADERBOARD_SIZE)
    return LeaderboardApiResponse(
        meta=_make_meta(
            market=market,
            start=str(payload.get("startDate") or ""),
            end=str(payload.get("endDate") or ""),
        ),
        data=[LeaderboardRecord(**r) for r in rows],
        summary=LeaderboardSummary(
            period=period,
            market=market,
            total_rows=len(payload.get("rows") or []),
            prelim=bool(payload.get("prelim")),
        ),
    )
