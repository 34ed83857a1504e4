"""
GridLedger — DataFrame views
pandas shapes the dashboard renders (tables, PnL charts) and exports as CSV.
"""

from __future__ import annotations

from typing import Iterable

import pandas as pd

from ledger.models import DailyPnL, ReconciledTrade

# Display column → ReconciledTrade attribute, in table order
TRADE_COLUMNS = {
    "Type":            "trade_type",
    "HE":              "hour",
    "Location":        "location",
    "Submitted MW":    "submitted_mw",
    "Cleared MW":      "cleared_mw",
    "Submitted Price": "submitted_price",
    "DA Price":        "da_price",
    "RT Price":        "rt_price",
    "Price Diff":      "price_diff",
    "PnL":             "pnl",
    "Status":          "status",
}

DAILY_COLUMNS = ["date", "pnl", "cumulative_pnl", "trade_count"]


def trades_frame(trades: Iterable[ReconciledTrade]) -> pd.DataFrame:
    """One row per reconciled trade; absent values stay NaN rather than 0."""
    rows = [
        {label: getattr(t, attr) for label, attr in TRADE_COLUMNS.items()}
        for t in trades
    ]
    df = pd.DataFrame(rows, columns=list(TRADE_COLUMNS))
    for col in ("Submitted MW", "Cleared MW", "Submitted Price", "DA Price", "RT Price", "Price Diff", "PnL"):
        df[col] = pd.to_numeric(df[col], errors="coerce")
    return df


def daily_pnl_frame(daily: Iterable[DailyPnL]) -> pd.DataFrame:
    """Daily PnL indexed by trade date, ready for st.line_chart / st.bar_chart."""
    df = pd.DataFrame([d.to_dict() for d in daily], columns=DAILY_COLUMNS)
    df["date"] = pd.to_datetime(df["date"])
    return df.set_index("date")


def to_csv(df: pd.DataFrame) -> str:
    return df.to_csv(index=False)


def export_filename(prefix: str, trade_date: str) -> str:
    """``virtuals_20240101.csv`` style name for a downloaded table."""
    return f"{prefix}_{trade_date.replace('-', '')}.csv"
