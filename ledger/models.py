"""
GridLedger — Trade data model
Unified in-memory shapes for PJM virtual (INC/DEC) and Up-to-Congestion
trades as they move from the reporting API through reconciliation and into
period analytics.

Status lifecycle
----------------
    PENDING  → submitted, not yet in the cleared or settled views
    CLEARED  → accepted by the day-ahead clearing process
    REJECTED → not accepted; never settles
    SETTLED  → real-time prices known, final PnL computed

Numeric fields use ``None`` for "absent" so a missing PnL is never confused
with a PnL of exactly zero.  Use :func:`value_or_zero` for arithmetic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MARKET_VIRTUALS = "virtuals"
MARKET_UTC      = "utc"

SOURCE_SUBMITTED = "submitted"
SOURCE_CLEARED   = "cleared"
SOURCE_SETTLED   = "settled"

STATUS_PENDING  = "PENDING"
STATUS_CLEARED  = "CLEARED"
STATUS_REJECTED = "REJECTED"
STATUS_SETTLED  = "SETTLED"

TYPE_INC = "INC"
TYPE_DEC = "DEC"
TYPE_UTC = "UTC"
TRADE_TYPES = (TYPE_INC, TYPE_DEC, TYPE_UTC)


def value_or_zero(value: Optional[float]) -> float:
    return 0.0 if value is None else value


# ---------------------------------------------------------------------------
# Per-trade records
# ---------------------------------------------------------------------------


@dataclass
class Node:
    """A pricing node (PNode) as listed by the node directory."""

    id: str
    name: str

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name}


@dataclass
class NormalizedTrade:
    """One raw record (submitted, cleared or settled) in a common shape."""

    trade_id: str
    trade_date: str
    hour: int                          # hour ending, 1–24
    market: str                        # "virtuals" | "utc"
    trade_type: str                    # "INC" | "DEC" | "UTC"
    location: str                      # resolved node label or "src → sink"
    source: str                        # "submitted" | "cleared" | "settled"
    status: Optional[str] = None       # cleared records only
    mw: Optional[float] = None         # submitted / cleared quantity
    cleared_mw: Optional[float] = None # settled records only
    submitted_price: Optional[float] = None
    da_price: Optional[float] = None   # DA LMP (virtuals) or DA spread (UTC)
    rt_price: Optional[float] = None   # RT LMP (virtuals) or RT spread (UTC)
    price_diff: Optional[float] = None
    pnl: Optional[float] = None


@dataclass
class ReconciledTrade:
    """The joined view of a single trade across submitted/cleared/settled."""

    trade_id: str
    trade_date: str
    hour: int
    market: str
    trade_type: str
    location: str
    status: str                             # PENDING | CLEARED | REJECTED | SETTLED
    submitted_mw: Optional[float] = None
    cleared_mw: Optional[float] = None
    submitted_price: Optional[float] = None
    da_price: Optional[float] = None
    rt_price: Optional[float] = None
    price_diff: Optional[float] = None
    pnl: Optional[float] = None

    @property
    def is_settled(self) -> bool:
        return self.status == STATUS_SETTLED

    def to_dict(self) -> dict:
        return {
            "trade_id":        self.trade_id,
            "trade_date":      self.trade_date,
            "hour":            self.hour,
            "market":          self.market,
            "trade_type":      self.trade_type,
            "location":        self.location,
            "status":          self.status,
            "submitted_mw":    self.submitted_mw,
            "cleared_mw":      self.cleared_mw,
            "submitted_price": self.submitted_price,
            "da_price":        self.da_price,
            "rt_price":        self.rt_price,
            "price_diff":      self.price_diff,
            "pnl":             self.pnl,
        }


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


@dataclass
class DailyPnL:
    """Settled PnL for one trade date plus the running total up to it."""

    date: str
    pnl: float
    cumulative_pnl: float
    trade_count: int

    def to_dict(self) -> dict:
        return {
            "date":           self.date,
            "pnl":            self.pnl,
            "cumulative_pnl": self.cumulative_pnl,
            "trade_count":    self.trade_count,
        }


@dataclass
class TradeStats:
    """Aggregate counters across a date range, both markets combined."""

    total_submitted: int = 0
    total_cleared: int = 0      # includes settled
    total_rejected: int = 0
    total_settled: int = 0
    wins: int = 0               # settled pnl > 0
    losses: int = 0             # settled pnl < 0
    total_pnl: float = 0.0
    avg_pnl: float = 0.0
    total_mw: float = 0.0
    avg_mw: float = 0.0

    @property
    def win_rate(self) -> float:
        """Wins as a percentage of decided (non-zero PnL) trades."""
        decided = self.wins + self.losses
        return round(self.wins / decided * 100, 1) if decided else 0.0

    @property
    def clear_rate(self) -> float:
        """Cleared (incl. settled) as a percentage of submitted."""
        if not self.total_submitted:
            return 0.0
        return round(self.total_cleared / self.total_submitted * 100, 1)

    def to_dict(self) -> dict:
        return {
            "total_submitted": self.total_submitted,
            "total_cleared":   self.total_cleared,
            "total_rejected":  self.total_rejected,
            "total_settled":   self.total_settled,
            "wins":            self.wins,
            "losses":          self.losses,
            "total_pnl":       self.total_pnl,
            "avg_pnl":         self.avg_pnl,
            "total_mw":        self.total_mw,
            "avg_mw":          self.avg_mw,
            "win_rate":        self.win_rate,
            "clear_rate":      self.clear_rate,
        }


@dataclass
class MarketTotals:
    """Header totals for one market's trades on one day."""

    market: str
    count: int = 0
    submitted_mw: float = 0.0
    cleared_mw: float = 0.0
    inc_mw: float = 0.0
    dec_mw: float = 0.0
    cleared_count: int = 0
    rejected_count: int = 0
    settled_count: int = 0
    pending_count: int = 0
    total_pnl: float = 0.0

    def to_dict(self) -> dict:
        return {
            "market":         self.market,
            "count":          self.count,
            "submitted_mw":   self.submitted_mw,
            "cleared_mw":     self.cleared_mw,
            "inc_mw":         self.inc_mw,
            "dec_mw":         self.dec_mw,
            "cleared_count":  self.cleared_count,
            "rejected_count": self.rejected_count,
            "settled_count":  self.settled_count,
            "pending_count":  self.pending_count,
            "total_pnl":      self.total_pnl,
        }


@dataclass
class AnalyticsSummary:
    """Everything the analytics view renders for a date range."""

    start: str
    end: str
    daily: list[DailyPnL]
    stats: TradeStats
    incomplete_days: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "start":           self.start,
            "end":             self.end,
            "daily":           [d.to_dict() for d in self.daily],
            "stats":           self.stats.to_dict(),
            "incomplete_days": list(self.incomplete_days),
        }
