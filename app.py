"""
GridLedger — PJM Virtual & UTC Trade Dashboard
Main Streamlit entry point.  Talks to the GridLedger FastAPI backend
(api.py), which must be running at GRIDLEDGER_API_URL.

Run:  uvicorn api:app --port 8000
      streamlit run app.py
"""

from __future__ import annotations

import sys
from datetime import date, timedelta

import pandas as pd
import streamlit as st
from loguru import logger

from ledger.config import GRIDLEDGER_API_URL, LOG_LEVEL

# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

# Direct loguru output to stderr so it doesn't bleed into Streamlit's stdout
logger.remove()
logger.add(sys.stderr, level=LOG_LEVEL)

# ---------------------------------------------------------------------------
# Page configuration (must be the first Streamlit call)
# ---------------------------------------------------------------------------

st.set_page_config(
    page_title="GridLedger | PJM Trade Ledger",
    page_icon="⚡",
    layout="wide",
    initial_sidebar_state="expanded",
)

# ---------------------------------------------------------------------------
# Lazy import of data layer: gives a clear error if dependencies are missing
# ---------------------------------------------------------------------------

try:
    from ledger.dashboard_api import DashboardAPI, DashboardAPIError
    from ledger.frames import daily_pnl_frame, export_filename, to_csv, trades_frame
    from ledger.models import DailyPnL, ReconciledTrade
except ImportError as exc:
    st.error(
        f"Failed to import data layer: {exc}\n\n"
        "Run `pip install -e .` and restart."
    )
    st.stop()

# ---------------------------------------------------------------------------
# Session-state defaults
# ---------------------------------------------------------------------------

for key, default in (
    ("trader_token", ""),
    ("status_payload", None),
    ("comparison_payload", None),
    ("analytics_payload", None),
    ("leaderboard_payload", None),
    ("pnl_payload", None),
    ("notes_payload", None),
):
    if key not in st.session_state:
        st.session_state[key] = default

# ---------------------------------------------------------------------------
# Sidebar: login and dates
# ---------------------------------------------------------------------------

with st.sidebar:
    st.title("⚡ GridLedger")
    st.caption("PJM Virtuals & UTC · Trade reconciliation and PnL")
    st.divider()

    if st.session_state["trader_token"]:
        st.success("Logged in", icon="🔑")
        if st.button("Log out", use_container_width=True):
            st.session_state.clear()
            st.rerun()
    else:
        with st.form("login"):
            token_input = st.text_input("Trader token", type="password")
            if st.form_submit_button("Log in", type="primary", use_container_width=True):
                if token_input.strip():
                    st.session_state["trader_token"] = token_input.strip()
                    st.rerun()
                else:
                    st.error("Enter a trader token.")

    st.divider()
    trade_day = st.date_input("Trade date", value=date.today())
    range_start, range_end = st.columns(2)
    with range_start:
        start_day = st.date_input("From", value=date.today() - timedelta(days=30))
    with range_end:
        end_day = st.date_input("To", value=date.today())

    st.divider()
    st.caption(f"Backend: {GRIDLEDGER_API_URL}")

if not st.session_state["trader_token"]:
    st.title("⚡ GridLedger")
    st.info("Log in with your trader token in the sidebar to load trades.")
    st.stop()

api = DashboardAPI(st.session_state["trader_token"])

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load(state_key: str, label: str, call) -> None:
    """Run ``call`` and keep its payload; on failure show the error and keep the old one."""
    with st.spinner(f"Loading {label}…"):
        try:
            st.session_state[state_key] = call()
        except DashboardAPIError as exc:
            st.error(f"{label} failed: {exc}")
            logger.exception("{} fetch error", label)


def _trades(payload: dict, market: str | None = None) -> list[ReconciledTrade]:
    rows = [ReconciledTrade(**row) for row in payload.get("data", [])]
    return [t for t in rows if market is None or t.market == market]


def _trade_table(trades: list[ReconciledTrade], prefix: str, trade_date: str, key: str) -> None:
    df = trades_frame(trades)
    if df.empty:
        st.info("No trades.")
        return
    st.dataframe(df, use_container_width=True, hide_index=True)
    st.download_button(
        "Download CSV",
        data=to_csv(df),
        file_name=export_filename(prefix, trade_date),
        mime="text/csv",
        key=key,
    )


# ---------------------------------------------------------------------------
# Main content
# ---------------------------------------------------------------------------

st.title("⚡ GridLedger — PJM Trade Ledger")

tab_status, tab_compare, tab_analytics, tab_pnl, tab_notes = st.tabs(
    ["Trade Status", "Price Comparison", "Analytics", "PnL & Leaderboard", "Notes"]
)

# -- Trade status -------------------------------------------------------------

with tab_status:
    if st.button("Load trades", type="primary", key="load_status"):
        _load("status_payload", "Trade status", lambda: api.trade_status(trade_day.isoformat()))

    payload = st.session_state["status_payload"]
    if payload:
        summary = payload["summary"]
        if not summary["cleared_data_available"]:
            st.warning("Clearing results unavailable; trades are shown as PENDING.")
        for market, label in (("virtuals", "Virtuals (INC/DEC)"), ("utc", "Up-to-Congestion")):
            totals = summary[market]
            st.subheader(label)
            c1, c2, c3, c4, c5 = st.columns(5)
            c1.metric("Trades", totals["count"])
            c2.metric("Submitted MW", f"{totals['submitted_mw']:,.1f}")
            c3.metric("Cleared MW", f"{totals['cleared_mw']:,.1f}")
            c4.metric("Cleared / Rejected", f"{totals['cleared_count']} / {totals['rejected_count']}")
            c5.metric("Settled PnL", f"${totals['total_pnl']:,.2f}")
            _trade_table(_trades(payload, market), market, summary["trade_date"], key=f"csv_status_{market}")

# -- Price comparison ---------------------------------------------------------

with tab_compare:
    if st.button("Load comparison", type="primary", key="load_compare"):
        _load("comparison_payload", "Comparison", lambda: api.comparison(trade_day.isoformat()))

    payload = st.session_state["comparison_payload"]
    if payload:
        summary = payload["summary"]
        stats = summary["stats"]
        c1, c2, c3, c4 = st.columns(4)
        c1.metric("Settled PnL", f"${stats['total_pnl']:,.2f}")
        c2.metric("Win rate", f"{stats['win_rate']:.1f}%")
        c3.metric("Wins / Losses", f"{stats['wins']} / {stats['losses']}")
        c4.metric("Settled", f"{stats['total_settled']} of {stats['total_submitted']}")

        by_type = summary["pnl_by_type"]
        st.bar_chart(pd.Series(by_type, name="PnL"))
        _trade_table(_trades(payload), "comparison", summary["trade_date"], key="csv_compare")

# -- Analytics ----------------------------------------------------------------

with tab_analytics:
    st.caption("Range fetches run in small batches; long ranges take a while.")
    if st.button("Run analytics", type="primary", key="load_analytics"):
        if end_day < start_day:
            st.warning("'To' is before 'From'; nothing to fetch.")
        _load(
            "analytics_payload",
            "Analytics",
            lambda: api.analytics(start_day.isoformat(), end_day.isoformat()),
        )

    payload = st.session_state["analytics_payload"]
    if payload:
        summary = payload["summary"]
        stats = summary["stats"]
        progress = summary["progress"]

        st.progress(
            progress["current"] / progress["total"] if progress["total"] else 1.0,
            text=f"{progress['current']}/{progress['total']} days fetched",
        )
        if summary["incomplete_days"]:
            st.warning(
                f"{progress['failed_calls']} calls failed; incomplete days: "
                + ", ".join(summary["incomplete_days"])
            )

        c1, c2, c3, c4, c5, c6 = st.columns(6)
        c1.metric("Total PnL", f"${stats['total_pnl']:,.2f}")
        c2.metric("Avg PnL", f"${stats['avg_pnl']:,.2f}")
        c3.metric("Win rate", f"{stats['win_rate']:.1f}%")
        c4.metric("Clear rate", f"{stats['clear_rate']:.1f}%")
        c5.metric("Total MW", f"{stats['total_mw']:,.1f}")
        c6.metric("Avg MW", f"{stats['avg_mw']:,.2f}")

        daily = daily_pnl_frame(DailyPnL(**row) for row in payload["data"])
        if daily.empty:
            st.info("No settled trades in range.")
        else:
            st.subheader("Cumulative PnL")
            st.line_chart(daily["cumulative_pnl"])
            st.subheader("Daily PnL")
            st.bar_chart(daily["pnl"])
            st.download_button(
                "Download CSV",
                data=daily.reset_index().to_csv(index=False),
                file_name=export_filename("daily_pnl", summary["end"]),
                mime="text/csv",
                key="csv_analytics",
            )

# -- PnL & leaderboard --------------------------------------------------------

with tab_pnl:
    col_period, col_market = st.columns(2)
    with col_period:
        period = st.selectbox("Period", ["daily", "weekly", "monthly", "quarterly", "ytd", "alltime"], index=4)
    with col_market:
        market = st.selectbox("Market", ["virtuals", "utc"])

    params = {}
    if period == "daily":
        params["asOf"] = trade_day.isoformat()
    elif period == "weekly":
        params["anchorDate"] = trade_day.isoformat()
    elif period == "monthly":
        params["month"] = trade_day.strftime("%Y-%m")
    elif period == "quarterly":
        params["quarter"] = (trade_day.month - 1) // 3 + 1
        params["year"] = trade_day.year
    elif period == "ytd":
        params["year"] = trade_day.year

    if st.button("Load PnL", type="primary", key="load_pnl"):
        _load("pnl_payload", "PnL", lambda: api.pnl(period, market, **params))
        _load("leaderboard_payload", "Leaderboard", lambda: api.leaderboard(period, market, **params))

    pnl = st.session_state["pnl_payload"]
    if pnl:
        label = f"{pnl.get('startDate', '')} → {pnl.get('endDate', '')}"
        st.metric(f"My realized PnL ({label})", f"${float(pnl.get('realizedPnl') or 0):,.2f}")
        if pnl.get("prelim"):
            st.caption("Preliminary: settlement not final.")

    board = st.session_state["leaderboard_payload"]
    if board:
        st.subheader("Leaderboard")
        if board["data"]:
            st.dataframe(board["data"], use_container_width=True, hide_index=True)
        else:
            st.info("No leaderboard rows for this period.")

# -- Trading notes ------------------------------------------------------------

with tab_notes:
    note_type = st.radio("Notes for", ["virtual", "utc"], horizontal=True, key="note_type")
    if st.button("Load notes", type="primary", key="load_notes"):
        _load("notes_payload", "Notes", lambda: api.notes(trade_day.isoformat(), note_type))

    notes = st.session_state["notes_payload"]
    if notes:
        st.caption(f"{notes.get('type', '').upper()} notes for {notes.get('tradeDate', '')}")
        if notes.get("notes"):
            for tag, text in notes["notes"].items():
                st.markdown(f"**{tag}**")
                st.write(text)
        else:
            st.info("No notes yet for this day.")

# ---------------------------------------------------------------------------
# Footer
# ---------------------------------------------------------------------------

st.divider()
st.caption("GridLedger v0.1 · Data © PJM Interconnection via the trading reporting API")
