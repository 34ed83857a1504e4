"""Shared fixtures: a trader session and a reporting client backed by httpx.MockTransport."""

from typing import Callable

import httpx
import pytest

from ledger.client import ReportingClient
from ledger.session import TraderSession

REPORTING_BASE = "https://reporting.test"
AUTH_BASE = "https://auth.test"


@pytest.fixture
def session() -> TraderSession:
    return TraderSession(trader_token="tok-abcd1234")


@pytest.fixture
def make_client() -> Callable[[Callable[[httpx.Request], httpx.Response]], ReportingClient]:
    """Build a ReportingClient whose HTTP calls are answered by ``handler``."""

    def _make(handler):
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return ReportingClient(base_url=REPORTING_BASE, auth_url=AUTH_BASE, http_client=http)

    return _make
