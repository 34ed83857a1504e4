"""Tests for the pandas views the dashboard renders and exports."""

import math

from ledger.frames import TRADE_COLUMNS, daily_pnl_frame, export_filename, to_csv, trades_frame
from ledger.models import DailyPnL, ReconciledTrade


def test_trades_frame_columns_and_missing_values():
    trades = [
        ReconciledTrade(
            trade_id="T1", trade_date="2024-01-01", hour=3, market="virtuals", trade_type="INC",
            location="AECO", status="SETTLED", submitted_mw=10, cleared_mw=8, pnl=-25.5,
        ),
        ReconciledTrade(
            trade_id="T2", trade_date="2024-01-01", hour=4, market="virtuals", trade_type="DEC",
            location="PSEG", status="PENDING", submitted_mw=5,
        ),
    ]
    df = trades_frame(trades)

    assert list(df.columns) == list(TRADE_COLUMNS)
    assert df.loc[0, "PnL"] == -25.5
    assert math.isnan(df.loc[1, "PnL"])
    assert df.loc[1, "Status"] == "PENDING"


def test_trades_frame_empty():
    df = trades_frame([])
    assert df.empty
    assert list(df.columns) == list(TRADE_COLUMNS)


def test_daily_pnl_frame_indexed_by_date():
    df = daily_pnl_frame([
        DailyPnL(date="2024-01-01", pnl=100.0, cumulative_pnl=100.0, trade_count=2),
        DailyPnL(date="2024-01-02", pnl=-40.0, cumulative_pnl=60.0, trade_count=1),
    ])
    assert df.index.name == "date"
    assert list(df["cumulative_pnl"]) == [100.0, 60.0]


def test_csv_export():
    df = trades_frame([])
    assert to_csv(df).splitlines()[0].startswith("Type,HE,Location")
    assert export_filename("virtuals", "2024-01-01") == "virtuals_20240101.csv"
