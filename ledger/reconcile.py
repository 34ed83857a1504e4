"""
GridLedger — Reconciliation Joiner
Merges the cleared and settled views of one trading day (and optionally the
submitted list) into a single ReconciledTrade per trade id.

Precedence
----------
  settled  >  cleared  >  submitted

A settled record always produces status SETTLED, whatever the cleared view
says.  Cleared records that have not settled keep their CLEARED/REJECTED
status; REJECTED trades carry ``cleared_mw = 0`` and ``pnl = None``.
Submitted trades found in neither view are PENDING.

The join key is ``trade_id``, never list position, so the result does not
depend on the order records arrive in.
"""

from __future__ import annotations

from typing import Iterable, Optional

from loguru import logger

from ledger.models import (
    MARKET_UTC,
    MARKET_VIRTUALS,
    STATUS_CLEARED,
    STATUS_PENDING,
    STATUS_SETTLED,
    TRADE_TYPES,
    NormalizedTrade,
    ReconciledTrade,
    value_or_zero,
)


def _rank(trade: NormalizedTrade) -> tuple:
    """Total order used to pick one record when an id is duplicated."""
    return (
        trade.trade_date,
        trade.hour,
        trade.market,
        trade.trade_type,
        trade.location,
        trade.source,
        trade.status or "",
        *(
            (value is not None, value_or_zero(value))
            for value in (
                trade.cleared_mw,
                trade.mw,
                trade.pnl,
                trade.submitted_price,
                trade.da_price,
                trade.rt_price,
                trade.price_diff,
            )
        ),
    )


def _index_by_id(records: Iterable[NormalizedTrade], label: str) -> dict[str, NormalizedTrade]:
    index: dict[str, NormalizedTrade] = {}
    for rec in records:
        existing = index.get(rec.trade_id)
        if existing is None:
            index[rec.trade_id] = rec
            continue
        logger.warning("Duplicate {} record for trade {}; keeping one deterministically", label, rec.trade_id)
        index[rec.trade_id] = max(existing, rec, key=_rank)
    return index


def _from_settled(rec: NormalizedTrade) -> ReconciledTrade:
    return ReconciledTrade(
        trade_id=rec.trade_id,
        trade_date=rec.trade_date,
        hour=rec.hour,
        market=rec.market,
        trade_type=rec.trade_type,
        location=rec.location,
        status=STATUS_SETTLED,
        cleared_mw=rec.cleared_mw,
        submitted_price=rec.submitted_price,
        da_price=rec.da_price,
        rt_price=rec.rt_price,
        price_diff=rec.price_diff,
        pnl=rec.pnl,
    )


def _from_cleared(rec: NormalizedTrade) -> ReconciledTrade:
    status = rec.status or STATUS_CLEARED
    return ReconciledTrade(
        trade_id=rec.trade_id,
        trade_date=rec.trade_date,
        hour=rec.hour,
        market=rec.market,
        trade_type=rec.trade_type,
        location=rec.location,
        status=status,
        submitted_mw=rec.mw,
        cleared_mw=rec.mw if status == STATUS_CLEARED else 0.0,
        submitted_price=rec.submitted_price,
        da_price=rec.da_price,
        pnl=None,
    )


def reconcile(
    cleared: Iterable[NormalizedTrade],
    settled: Iterable[NormalizedTrade],
) -> dict[str, ReconciledTrade]:
    """
    Join cleared and settled records for one (date, market) pair.

    Returns
    -------
    dict[str, ReconciledTrade]
        Keyed by trade id.  Trades absent from both inputs are not present.
    """
    settled_by_id = _index_by_id(settled, "settled")
    cleared_by_id = _index_by_id(cleared, "cleared")

    result: dict[str, ReconciledTrade] = {
        trade_id: _from_settled(rec) for trade_id, rec in settled_by_id.items()
    }
    for trade_id, rec in cleared_by_id.items():
        if trade_id in settled_by_id:
            # Carry the bid quantity over; settled figures stay authoritative.
            result[trade_id].submitted_mw = rec.mw
            continue
        result[trade_id] = _from_cleared(rec)

    logger.debug(
        "Reconciled {} trades ({} settled, {} cleared-only)",
        len(result), len(settled_by_id), len(result) - len(settled_by_id),
    )
    return result


def _pending(rec: NormalizedTrade) -> ReconciledTrade:
    return ReconciledTrade(
        trade_id=rec.trade_id,
        trade_date=rec.trade_date,
        hour=rec.hour,
        market=rec.market,
        trade_type=rec.trade_type,
        location=rec.location,
        status=STATUS_PENDING,
        submitted_mw=rec.mw,
        submitted_price=rec.submitted_price,
    )


def apply_submitted(
    submitted: Iterable[NormalizedTrade],
    reconciled: dict[str, ReconciledTrade],
) -> list[ReconciledTrade]:
    """
    Overlay the reconciled map onto the submitted trade list.

    Every submitted trade appears once, in submission order: the reconciled
    entry when one exists (with the submitted MW/price filled in), otherwise
    a PENDING trade.  Reconciled trades that were not in the submitted list
    are appended afterwards so cleared/settled data is never dropped.
    """
    out: list[ReconciledTrade] = []
    seen: set[str] = set()
    for rec in submitted:
        if rec.trade_id in seen:
            continue
        seen.add(rec.trade_id)
        match = reconciled.get(rec.trade_id)
        if match is None:
            out.append(_pending(rec))
            continue
        match.submitted_mw = rec.mw
        if rec.submitted_price is not None:
            match.submitted_price = rec.submitted_price
        out.append(match)

    extras = [t for tid, t in reconciled.items() if tid not in seen]
    out.extend(sort_trades(extras))
    return out


def sort_trades(trades: Iterable[ReconciledTrade]) -> list[ReconciledTrade]:
    """Order by hour ending, then trade type, then id."""
    def key(t: ReconciledTrade) -> tuple:
        type_rank = TRADE_TYPES.index(t.trade_type) if t.trade_type in TRADE_TYPES else len(TRADE_TYPES)
        return (t.hour, type_rank, t.trade_id, t.market)
    return sorted(trades, key=key)


def reconcile_day(
    cleared_virtuals: Iterable[NormalizedTrade],
    settled_virtuals: Iterable[NormalizedTrade],
    cleared_utc: Iterable[NormalizedTrade],
    settled_utc: Iterable[NormalizedTrade],
    submitted: Optional[Iterable[NormalizedTrade]] = None,
) -> list[ReconciledTrade]:
    """
    Reconcile both markets for one day and return a sorted trade list.

    Trade ids are only unique within a market, so each market is joined
    and overlaid on its own submissions separately.  When ``submitted`` is
    given, PENDING trades are materialised too.
    """
    by_market = {
        MARKET_VIRTUALS: reconcile(cleared_virtuals, settled_virtuals),
        MARKET_UTC:      reconcile(cleared_utc, settled_utc),
    }
    shared = by_market[MARKET_VIRTUALS].keys() & by_market[MARKET_UTC].keys()
    if shared:
        logger.warning("Trade ids present in both markets: {}; keeping both", sorted(shared))

    if submitted is None:
        return sort_trades(t for trades in by_market.values() for t in trades.values())

    submitted = list(submitted)
    out: list[ReconciledTrade] = []
    for market, reconciled in by_market.items():
        out.extend(apply_submitted([s for s in submitted if s.market == market], reconciled))
    return out
