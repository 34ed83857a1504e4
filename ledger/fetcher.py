"""
GridLedger — Batched Range Fetcher
Walks an inclusive date range and pulls the four per-day trade views
(virtuals settled/cleared, UTC settled/cleared) for historical analytics.

How it works
------------
1. Every calendar date from start to end (inclusive) is enumerated.  An
   end date before the start yields no dates; the run completes at once.
2. Dates are processed in batches of ``batch_size``.  Within a batch all
   ``4 × batch_size`` calls run concurrently on the event loop, bounded by
   a semaphore.  Batches run strictly one after another.
3. Each call is best-effort: a failure is logged and becomes an empty
   result for that call only.  Days with any failed call are listed in
   ``incomplete_days`` so callers can tell "no trades" from "fetch failed".
4. After each batch, progress advances by the batch's day count (days
   attempted, not days succeeded) and, if more batches remain, the fetcher
   waits ``batch_delay`` seconds to shed load on the upstream.

State machine
-------------
    IDLE → RUNNING → DONE | FAILED | CANCELLED

``cancel()`` is honoured at batch boundaries; the partial result gathered
so far is returned with state CANCELLED.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Optional, Union

from loguru import logger

from ledger.client import ReportingClient
from ledger.config import FetchSettings
from ledger.models import MARKET_UTC, MARKET_VIRTUALS, SOURCE_CLEARED, SOURCE_SETTLED, NormalizedTrade
from ledger.normalizer import EMPTY_DIRECTORY, NodeDirectory, normalize_all
from ledger.session import TraderSession

STATE_IDLE      = "IDLE"
STATE_RUNNING   = "RUNNING"
STATE_DONE      = "DONE"
STATE_FAILED    = "FAILED"
STATE_CANCELLED = "CANCELLED"

# Per-date call plan, in the order results are merged
DAY_CALLS: tuple[tuple[str, str], ...] = (
    (MARKET_VIRTUALS, SOURCE_SETTLED),
    (MARKET_VIRTUALS, SOURCE_CLEARED),
    (MARKET_UTC, SOURCE_SETTLED),
    (MARKET_UTC, SOURCE_CLEARED),
)

DateLike = Union[date, str]


# ---------------------------------------------------------------------------
# Date helpers
# ---------------------------------------------------------------------------


def parse_date(value: DateLike) -> date:
    """Accept a ``date`` or an ISO ``YYYY-MM-DD`` string."""
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise ValueError(f"Invalid date {value!r}; expected YYYY-MM-DD") from exc


def enumerate_dates(start: DateLike, end: DateLike) -> list[str]:
    """Every ISO date from start to end inclusive; empty when end < start."""
    current, last = parse_date(start), parse_date(end)
    dates: list[str] = []
    while current <= last:
        dates.append(current.isoformat())
        current += timedelta(days=1)
    return dates


# ---------------------------------------------------------------------------
# Result containers
# ---------------------------------------------------------------------------


@dataclass
class CallOutcome:
    """Tagged result of one per-day call: records on success, reason on failure."""

    trade_date: str
    market: str
    status: str
    records: list = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class FetchProgress:
    current: int = 0        # days attempted
    total: int = 0
    failed_calls: int = 0

    @property
    def fraction(self) -> float:
        return self.current / self.total if self.total else 1.0

    def to_dict(self) -> dict:
        return {"current": self.current, "total": self.total, "failed_calls": self.failed_calls}


@dataclass
class DayRecords:
    """Raw records for one day, one list per (market, status)."""

    cleared_virtuals: list = field(default_factory=list)
    settled_virtuals: list = field(default_factory=list)
    cleared_utc: list = field(default_factory=list)
    settled_utc: list = field(default_factory=list)

    def extend(self, market: str, status: str, records: list) -> None:
        getattr(self, f"{status}_{market}").extend(records)

    def normalized(
        self,
        virtuals_nodes: NodeDirectory = EMPTY_DIRECTORY,
        utc_nodes: NodeDirectory = EMPTY_DIRECTORY,
    ) -> tuple[list[NormalizedTrade], list[NormalizedTrade]]:
        """Return ``(cleared, settled)`` normalised across both markets."""
        cleared = (
            normalize_all(self.cleared_virtuals, MARKET_VIRTUALS, SOURCE_CLEARED, virtuals_nodes)
            + normalize_all(self.cleared_utc, MARKET_UTC, SOURCE_CLEARED, utc_nodes)
        )
        settled = (
            normalize_all(self.settled_virtuals, MARKET_VIRTUALS, SOURCE_SETTLED, virtuals_nodes)
            + normalize_all(self.settled_utc, MARKET_UTC, SOURCE_SETTLED, utc_nodes)
        )
        return cleared, settled


@dataclass
class RangeFetchResult(DayRecords):
    """Flattened records for a whole range plus run bookkeeping."""

    dates: list = field(default_factory=list)
    incomplete_days: list = field(default_factory=list)
    progress: FetchProgress = field(default_factory=FetchProgress)
    state: str = STATE_IDLE

    @property
    def failed_calls(self) -> int:
        return self.progress.failed_calls


ProgressCallback = Callable[[FetchProgress], Optional[Awaitable[Any]]]


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------


class RangeFetcher:
    """
    Bounded-concurrency, best-effort fetch of cleared/settled trades over a
    date range.

    Parameters
    ----------
    client:
        Reporting client used for every call.
    settings:
        Batch size, inter-batch delay and concurrency cap.
    on_progress:
        Optional callback invoked with a FetchProgress after every batch
        (sync or async).
    sleep:
        Awaitable delay function; injectable for tests.
    """

    def __init__(
        self,
        client: ReportingClient,
        settings: Optional[FetchSettings] = None,
        on_progress: Optional[ProgressCallback] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._settings = settings or FetchSettings()
        self._on_progress = on_progress
        self._sleep = sleep
        self._cancelled = asyncio.Event()
        self.state = STATE_IDLE
        self.progress = FetchProgress()

    def cancel(self) -> None:
        """Stop the running fetch at the next batch boundary."""
        if self.state == STATE_RUNNING:
            logger.info("Range fetch cancellation requested")
            self._cancelled.set()

    async def _call(
        self,
        semaphore: asyncio.Semaphore,
        session: TraderSession,
        trade_date: str,
        market: str,
        status: str,
    ) -> CallOutcome:
        async with semaphore:
            try:
                records = await self._client.fetch_trades_by_status(session, trade_date, market, status)
            except Exception as exc:
                logger.warning("{} {} trades for {} failed: {}", market, status, trade_date, exc)
                return CallOutcome(trade_date, market, status, error=str(exc) or type(exc).__name__)
        return CallOutcome(trade_date, market, status, records=records)

    async def _notify(self) -> None:
        if self._on_progress is None:
            return
        maybe = self._on_progress(self.progress)
        if asyncio.iscoroutine(maybe):
            await maybe

    async def run(self, session: TraderSession, start: DateLike, end: DateLike) -> RangeFetchResult:
        """Fetch every day in ``[start, end]``. Per-call failures never abort the run."""
        self.state = STATE_RUNNING
        self._cancelled.clear()
        result = RangeFetchResult(state=STATE_RUNNING)
        try:
            dates = enumerate_dates(start, end)
            result.dates = dates
            self.progress = result.progress = FetchProgress(total=len(dates))
            semaphore = asyncio.Semaphore(self._settings.concurrency_limit)
            batch_size = self._settings.batch_size
            logger.info(
                "Range fetch {} → {}: {} days, batch={} delay={}s",
                start, end, len(dates), batch_size, self._settings.batch_delay,
            )

            for i in range(0, len(dates), batch_size):
                if self._cancelled.is_set():
                    self.state = result.state = STATE_CANCELLED
                    logger.info("Range fetch cancelled at {}/{} days", self.progress.current, self.progress.total)
                    return result

                batch = dates[i:i + batch_size]
                outcomes = await asyncio.gather(*(
                    self._call(semaphore, session, day, market, status)
                    for day in batch
                    for market, status in DAY_CALLS
                ))

                for outcome in outcomes:
                    if outcome.ok:
                        result.extend(outcome.market, outcome.status, outcome.records)
                        continue
                    self.progress.failed_calls += 1
                    if outcome.trade_date not in result.incomplete_days:
                        result.incomplete_days.append(outcome.trade_date)

                self.progress.current = min(i + batch_size, len(dates))
                logger.debug("Range fetch progress {}/{}", self.progress.current, self.progress.total)
                await self._notify()

                if i + batch_size < len(dates):
                    await self._sleep(self._settings.batch_delay)
        except Exception:
            self.state = result.state = STATE_FAILED
            logger.exception("Range fetch {} → {} failed", start, end)
            raise

        self.state = result.state = STATE_DONE
        if result.incomplete_days:
            logger.warning("Range fetch finished with {} incomplete days", len(result.incomplete_days))
        return result


# ---------------------------------------------------------------------------
# Single-day fetch
# ---------------------------------------------------------------------------


async def fetch_day(client: ReportingClient, session: TraderSession, trade_date: str) -> DayRecords:
    """
    All four views for one day, concurrently.

    Unlike the range fetcher this is all-or-nothing: the first failure
    propagates to the caller.
    """
    results = await asyncio.gather(*(
        client.fetch_trades_by_status(session, trade_date, market, status)
        for market, status in DAY_CALLS
    ))
    day = DayRecords()
    for (market, status), records in zip(DAY_CALLS, results):
        day.extend(market, status, records)
    return day
