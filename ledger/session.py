"""
GridLedger — Trader session
An explicit handle for the trader credential.  It is passed into every
reporting call instead of being looked up from shared state, so the fetch
and aggregation functions stay pure and testable.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class TraderSession:
    """
    The credential the reporting API knows a trader by.

    The trader token doubles as the ``accountId`` query parameter on the
    reporting endpoints and is sent as ``Trader-Token`` /
    ``gbe-trader-token`` headers where the upstream expects it.
    """

    trader_token: str
    trader_email: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.trader_token or not self.trader_token.strip():
            raise ValueError("trader_token must be a non-empty string")

    @property
    def account_id(self) -> str:
        return self.trader_token

    def headers(self, trade_date: Optional[str] = None) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Trader-Token": self.trader_token,
            "gbe-trader-token": self.trader_token,
        }
        if trade_date:
            headers["Trade-Date"] = trade_date
        return headers

    def __repr__(self) -> str:
        # Never leak the token into logs
        return f"TraderSession(trader_token='***{self.trader_token[-4:]}', trader_email={self.trader_email!r})"
