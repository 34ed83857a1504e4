"""
GridLedger — Period Aggregator
Turns flat cleared/settled record lists (any date range, both markets) into
the daily PnL curve and the headline trade statistics.

Counting rules
--------------
  cleared-not-settled : cleared records whose trade id has no settled record
  total_cleared       : CLEARED among those  +  every settled record
  total_rejected      : REJECTED among cleared-not-settled
  total_submitted     : settled + cleared + rejected
  wins / losses       : settled pnl > 0 / < 0   (0 counts as neither)
  total_mw            : Σ mw (cleared-not-settled)  +  Σ cleared_mw (settled)

Settled MW comes from the settled view because it may have been corrected
after clearing; before settlement only the cleared view knows the MW.

Sums are accumulated in ``Decimal`` and converted to ``float`` on the way
out so long date ranges do not drift.
"""

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal
from typing import Iterable, Optional

from loguru import logger

from ledger.models import (
    MARKET_UTC,
    MARKET_VIRTUALS,
    STATUS_CLEARED,
    STATUS_PENDING,
    STATUS_REJECTED,
    STATUS_SETTLED,
    TYPE_DEC,
    TYPE_INC,
    TRADE_TYPES,
    AnalyticsSummary,
    DailyPnL,
    MarketTotals,
    NormalizedTrade,
    ReconciledTrade,
    TradeStats,
)


def _dec(value: Optional[float]) -> Decimal:
    return Decimal(0) if value is None else Decimal(str(value))


def _ratio(numerator: Decimal, denominator: int) -> float:
    return float(numerator / denominator) if denominator else 0.0


# ---------------------------------------------------------------------------
# Daily PnL curve
# ---------------------------------------------------------------------------


def daily_pnl(settled: Iterable[NormalizedTrade]) -> list[DailyPnL]:
    """
    Group settled records by trade date and build the cumulative PnL curve.

    ISO dates sort correctly as strings, so the curve is in calendar order.
    Dates without settled records are simply absent.
    """
    by_date: dict[str, list] = defaultdict(lambda: [Decimal(0), 0])
    for rec in settled:
        bucket = by_date[rec.trade_date]
        bucket[0] += _dec(rec.pnl)
        bucket[1] += 1

    series: list[DailyPnL] = []
    cumulative = Decimal(0)
    for day in sorted(by_date):
        pnl, count = by_date[day]
        cumulative += pnl
        series.append(DailyPnL(
            date=day,
            pnl=float(pnl),
            cumulative_pnl=float(cumulative),
            trade_count=count,
        ))
    return series


# ---------------------------------------------------------------------------
# Headline statistics
# ---------------------------------------------------------------------------


def trade_stats(
    cleared: Iterable[NormalizedTrade],
    settled: Iterable[NormalizedTrade],
) -> TradeStats:
    """Compute TradeStats over flat cleared and settled record lists."""
    settled = list(settled)
    settled_ids = {rec.trade_id for rec in settled}
    open_cleared = [rec for rec in cleared if rec.trade_id not in settled_ids]

    cleared_count  = sum(1 for rec in open_cleared if rec.status == STATUS_CLEARED)
    rejected_count = sum(1 for rec in open_cleared if rec.status == STATUS_REJECTED)
    settled_count  = len(settled)

    wins   = sum(1 for rec in settled if (rec.pnl or 0) > 0)
    losses = sum(1 for rec in settled if (rec.pnl or 0) < 0)
    total_pnl = sum((_dec(rec.pnl) for rec in settled), Decimal(0))

    total_mw = (
        sum((_dec(rec.mw) for rec in open_cleared), Decimal(0))
        + sum((_dec(rec.cleared_mw) for rec in settled), Decimal(0))
    )
    total_trades = settled_count + cleared_count + rejected_count

    return TradeStats(
        total_submitted=total_trades,
        total_cleared=cleared_count + settled_count,
        total_rejected=rejected_count,
        total_settled=settled_count,
        wins=wins,
        losses=losses,
        total_pnl=float(total_pnl),
        avg_pnl=_ratio(total_pnl, settled_count),
        total_mw=float(total_mw),
        avg_mw=_ratio(total_mw, total_trades),
    )


def summarize(
    start: str,
    end: str,
    cleared: Iterable[NormalizedTrade],
    settled: Iterable[NormalizedTrade],
    incomplete_days: Iterable[str] = (),
) -> AnalyticsSummary:
    settled = list(settled)
    cleared = list(cleared)
    summary = AnalyticsSummary(
        start=start,
        end=end,
        daily=daily_pnl(settled),
        stats=trade_stats(cleared, settled),
        incomplete_days=sorted(set(incomplete_days)),
    )
    logger.info(
        "Analytics {} → {}: {} settled, {} days with PnL, total PnL {:.2f}",
        start, end, summary.stats.total_settled, len(summary.daily), summary.stats.total_pnl,
    )
    return summary


# ---------------------------------------------------------------------------
# Per-day views over reconciled trades
# ---------------------------------------------------------------------------


def market_totals(trades: Iterable[ReconciledTrade], market: str) -> MarketTotals:
    """Header totals for one market, as shown above the trades table."""
    totals = MarketTotals(market=market)
    submitted_mw = cleared_mw = inc_mw = dec_mw = pnl = Decimal(0)
    for t in trades:
        if t.market != market:
            continue
        totals.count += 1
        submitted_mw += _dec(t.submitted_mw)
        cleared_mw += _dec(t.cleared_mw)
        if t.trade_type == TYPE_INC:
            inc_mw += _dec(t.submitted_mw)
        elif t.trade_type == TYPE_DEC:
            dec_mw += _dec(t.submitted_mw)
        if t.status == STATUS_CLEARED:
            totals.cleared_count += 1
        elif t.status == STATUS_REJECTED:
            totals.rejected_count += 1
        elif t.status == STATUS_SETTLED:
            totals.settled_count += 1
            pnl += _dec(t.pnl)
        elif t.status == STATUS_PENDING:
            totals.pending_count += 1

    totals.submitted_mw = float(submitted_mw)
    totals.cleared_mw = float(cleared_mw)
    totals.inc_mw = float(inc_mw)
    totals.dec_mw = float(dec_mw)
    totals.total_pnl = float(pnl)
    return totals


def day_totals(trades: Iterable[ReconciledTrade]) -> dict[str, MarketTotals]:
    trades = list(trades)
    return {m: market_totals(trades, m) for m in (MARKET_VIRTUALS, MARKET_UTC)}


def pnl_by_type(trades: Iterable[ReconciledTrade]) -> dict[str, float]:
    """Settled PnL per trade type (INC, DEC, UTC)."""
    sums = {t: Decimal(0) for t in TRADE_TYPES}
    for t in trades:
        if t.is_settled and t.trade_type in sums:
            sums[t.trade_type] += _dec(t.pnl)
    return {k: float(v) for k, v in sums.items()}


def settled_outcomes(trades: Iterable[ReconciledTrade]) -> TradeStats:
    """
    TradeStats computed from already-reconciled trades (single-day views).

    PENDING trades count toward ``total_submitted`` here because the
    submitted list is known for a single day.
    """
    stats = TradeStats()
    total_pnl = total_mw = Decimal(0)
    for t in trades:
        stats.total_submitted += 1
        if t.status == STATUS_SETTLED:
            stats.total_settled += 1
            stats.total_cleared += 1
            total_pnl += _dec(t.pnl)
            total_mw += _dec(t.cleared_mw)
            if (t.pnl or 0) > 0:
                stats.wins += 1
            elif (t.pnl or 0) < 0:
                stats.losses += 1
        elif t.status == STATUS_CLEARED:
            stats.total_cleared += 1
            total_mw += _dec(t.cleared_mw)
        elif t.status == STATUS_REJECTED:
            stats.total_rejected += 1

    stats.total_pnl = float(total_pnl)
    stats.avg_pnl = _ratio(total_pnl, stats.total_settled)
    stats.total_mw = float(total_mw)
    stats.avg_mw = _ratio(total_mw, stats.total_cleared + stats.total_rejected)
    return stats


# ---------------------------------------------------------------------------
# Leaderboard
# ---------------------------------------------------------------------------


def rank_leaderboard(payload: dict, size: int = 10) -> list[dict]:
    """
    Top ``size`` rows of a leaderboard PnL response, best first.

    Rows without a trader email are dropped; a missing PnL ranks as 0.
    """
    rows = payload.get("rows") if isinstance(payload, dict) else None
    if not isinstance(rows, list):
        return []
    valid = [r for r in rows if isinstance(r, dict) and r.get("traderEmail")]
    valid.sort(key=lambda r: float(r.get("realizedPnl") or 0), reverse=True)
    return [
        {"rank": i, "trader_email": r["traderEmail"], "realized_pnl": float(r.get("realizedPnl") or 0)}
        for i, r in enumerate(valid[:size], start=1)
    ]
