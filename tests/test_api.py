"""Route tests for the FastAPI service, with the upstream answered by httpx.MockTransport."""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

import api

TOKEN = "tok-abcd1234"
AUTH = {"Trader-Token": TOKEN}


def _upstream(*, cleared=None, settled=None, submitted=None, failing_dates=(), trades_status=200):
    """Fake reporting service keyed on path and query."""
    cleared = cleared or {}
    settled = settled or {}
    submitted = submitted or {}

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        params = request.url.params
        if path.startswith("/api/v1/markets/pjm/"):
            return httpx.Response(200, json={"nodes": [{"pnodeId": 1, "pnodeName": "AECO"}]})
        if path.startswith("/api/v1/trades/"):
            market = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json=submitted.get(market, []))
        if path.startswith("/api/v1/pjm/"):
            market = path.split("/")[-2]
            trade_date = params["tradeDate"]
            if trades_status != 200 or trade_date in failing_dates:
                return httpx.Response(trades_status if trades_status != 200 else 500, text="<html>500</html>")
            source = cleared if params["status"] == "cleared" else settled
            return httpx.Response(200, json=[r for r in source.get(market, []) if r.get("tradeDate", trade_date) == trade_date])
        if path.startswith("/api/reporting/pnl/"):
            return httpx.Response(200, json={
                "startDate": "2024-01-01", "endDate": "2024-06-30", "realizedPnl": 10, "prelim": True,
                "rows": [
                    {"traderEmail": "low@x", "realizedPnl": -5},
                    {"traderEmail": "high@x", "realizedPnl": 90},
                    {"realizedPnl": 1000},
                ],
            })
        return httpx.Response(404, text="<html>404</html>")

    return handler


@pytest.fixture
def client(make_client, monkeypatch):
    """Return a factory: install a fake upstream and hand back a TestClient."""
    monkeypatch.setenv("BATCH_DELAY_SECONDS", "0")

    def _install(handler):
        monkeypatch.setattr(api, "_reporting", make_client(handler))
        return TestClient(api.app)

    return _install


# ---------------------------------------------------------------------------
# 1. Meta
# ---------------------------------------------------------------------------

def test_health(client):
    resp = client(_upstream()).get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.json()["reporting_client"] is True


# ---------------------------------------------------------------------------
# 2. Trade status
# ---------------------------------------------------------------------------

class TestTradeStatus:
    def test_cleared_and_pending(self, client):
        handler = _upstream(
            submitted={"virtuals": [
                {"id": "T1", "location": 1, "type": "INC", "hour": 2, "mw": 10, "price": 20},
                {"id": "T2", "location": 2, "type": "DEC", "hour": 1, "mw": 5, "price": 30},
            ]},
            cleared={"virtuals": [{"tradeId": "T1", "location": 1, "type": "INC", "hour": 2,
                                   "mw": 10, "price": 20, "status": "CLEARED", "daLmp": 25}]},
        )
        resp = client(handler).get("/api/trades/status", params={"date": "2024-01-01"}, headers=AUTH)

        assert resp.status_code == 200
        body = resp.json()
        rows = {r["trade_id"]: r for r in body["data"]}
        assert rows["T1"]["status"] == "CLEARED"
        assert rows["T1"]["location"] == "AECO"
        assert rows["T1"]["cleared_mw"] == 10.0
        assert rows["T2"]["status"] == "PENDING"
        assert rows["T2"]["location"] == "2"
        summary = body["summary"]
        assert summary["cleared_data_available"] is True
        assert summary["virtuals"]["count"] == 2
        assert summary["virtuals"]["pending_count"] == 1
        assert summary["virtuals"]["submitted_mw"] == 15.0
        assert summary["utc"]["count"] == 0
        assert body["meta"]["start"] == "2024-01-01"

    def test_clearing_lookup_failure_shows_pending(self, client):
        handler = _upstream(
            submitted={"utc": [{"id": "U1", "sourceLocation": 1, "sinkLocation": 9, "hour": 1, "mw": 3}]},
            trades_status=503,
        )
        resp = client(handler).get("/api/trades/status", params={"date": "2024-01-01"}, headers=AUTH)

        assert resp.status_code == 200
        body = resp.json()
        assert body["summary"]["cleared_data_available"] is False
        assert [r["status"] for r in body["data"]] == ["PENDING"]
        assert body["data"][0]["location"] == "AECO → 9"

    def test_missing_token(self, client):
        resp = client(_upstream()).get("/api/trades/status", params={"date": "2024-01-01"})
        assert resp.status_code == 401

    def test_token_accepted_from_query(self, client):
        resp = client(_upstream()).get("/api/trades/status", params={"date": "2024-01-01", "traderToken": TOKEN})
        assert resp.status_code == 200

    def test_bad_date(self, client):
        resp = client(_upstream()).get("/api/trades/status", params={"date": "01/01/2024"}, headers=AUTH)
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# 3. Comparison
# ---------------------------------------------------------------------------

class TestComparison:
    def test_settled_trade_wins(self, client):
        handler = _upstream(
            cleared={"virtuals": [{"tradeId": "T1", "status": "CLEARED", "mw": 10, "type": "INC", "hour": 1}]},
            settled={
                "virtuals": [{"tradeId": "T1", "tradeType": "INC", "hour": 1, "clearedMw": 8, "pnl": -25.5}],
                "utc": [{"tradeId": "U1", "hour": 2, "clearedMw": 2, "pnl": 4}],
            },
        )
        resp = client(handler).get("/api/comparison", params={"date": "2024-01-01"}, headers=AUTH)

        assert resp.status_code == 200
        body = resp.json()
        assert [r["trade_id"] for r in body["data"]] == ["T1", "U1"]
        t1 = body["data"][0]
        assert t1["status"] == "SETTLED"
        assert t1["cleared_mw"] == 8.0
        assert t1["submitted_mw"] == 10.0
        assert t1["pnl"] == -25.5
        summary = body["summary"]
        assert summary["pnl_by_type"] == {"INC": -25.5, "DEC": 0.0, "UTC": 4.0}
        assert summary["stats"]["wins"] == 1
        assert summary["stats"]["losses"] == 1
        assert summary["stats"]["win_rate"] == 50.0

    def test_upstream_failure_is_bad_gateway(self, client):
        resp = client(_upstream(trades_status=500)).get(
            "/api/comparison", params={"date": "2024-01-01"}, headers=AUTH,
        )
        assert resp.status_code == 502
        assert "Server error (500)" in resp.json()["detail"]

    def test_upstream_auth_error_passes_through(self, client):
        resp = client(_upstream(trades_status=401)).get(
            "/api/comparison", params={"date": "2024-01-01"}, headers=AUTH,
        )
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# 4. Analytics
# ---------------------------------------------------------------------------

class TestAnalytics:
    def test_range_with_failed_day(self, client):
        settled = {"virtuals": [
            {"tradeId": "A", "tradeDate": "2024-01-01", "pnl": 100, "clearedMw": 2},
            {"tradeId": "B", "tradeDate": "2024-01-02", "pnl": 999, "clearedMw": 2},
            {"tradeId": "C", "tradeDate": "2024-01-03", "pnl": -40, "clearedMw": 1},
        ]}
        handler = _upstream(settled=settled, failing_dates={"2024-01-02"})
        resp = client(handler).get(
            "/api/analytics", params={"start": "2024-01-01", "end": "2024-01-03"}, headers=AUTH,
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["data"] == [
            {"date": "2024-01-01", "pnl": 100.0, "cumulative_pnl": 100.0, "trade_count": 1},
            {"date": "2024-01-03", "pnl": -40.0, "cumulative_pnl": 60.0, "trade_count": 1},
        ]
        summary = body["summary"]
        assert summary["state"] == "DONE"
        assert summary["progress"] == {"current": 3, "total": 3, "failed_calls": 4}
        assert summary["incomplete_days"] == ["2024-01-02"]
        assert summary["stats"]["total_settled"] == 2
        assert summary["stats"]["total_mw"] == 3.0

    def test_reversed_range_is_empty(self, client):
        resp = client(_upstream()).get(
            "/api/analytics", params={"start": "2024-01-05", "end": "2024-01-01"}, headers=AUTH,
        )
        assert resp.status_code == 200
        assert resp.json()["data"] == []
        assert resp.json()["summary"]["progress"]["total"] == 0

    def test_range_too_long(self, client):
        resp = client(_upstream()).get(
            "/api/analytics", params={"start": "2020-01-01", "end": "2024-01-01"}, headers=AUTH,
        )
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# 5. Leaderboard
# ---------------------------------------------------------------------------

def test_leaderboard_sorted(client):
    resp = client(_upstream()).get("/api/leaderboard", params={"period": "ytd", "year": 2024}, headers=AUTH)

    assert resp.status_code == 200
    body = resp.json()
    assert [r["trader_email"] for r in body["data"]] == ["high@x", "low@x"]
    assert body["data"][0]["rank"] == 1
    assert body["summary"]["prelim"] is True
    assert body["meta"]["end"] == "2024-06-30"


def test_leaderboard_missing_period_param(client):
    resp = client(_upstream()).get("/api/leaderboard", params={"period": "daily"}, headers=AUTH)
    assert resp.status_code == 422


# ---------------------------------------------------------------------------
# 6. Proxy routes
# ---------------------------------------------------------------------------

class TestProxy:
    def test_cleared_requires_params(self, client):
        resp = client(_upstream()).get("/api/reporting/cleared", params={"tradeDate": "2024-01-01"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Missing tradeDate or traderToken parameter"}

    def test_cleared_relays_body(self, client):
        handler = _upstream(cleared={"utc": [{"tradeId": "U1", "status": "CLEARED"}]})
        resp = client(handler).get("/api/reporting/cleared", params={
            "tradeDate": "2024-01-01", "traderToken": TOKEN, "market": "utc",
        })
        assert resp.status_code == 200
        assert resp.json() == [{"tradeId": "U1", "status": "CLEARED"}]

    def test_trades_requires_params(self, client):
        resp = client(_upstream()).get("/api/reporting/trades", params={"market": "virtuals"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Missing market, accountId, or date parameter"}

    def test_upstream_status_passes_through(self, client):
        resp = client(_upstream()).get("/api/reporting/incdec-nodes")
        assert resp.status_code == 404

    def test_nodes(self, client):
        resp = client(_upstream()).get("/api/reporting/nodes", params={"market": "utc", "date": "2024-01-01"})
        assert resp.status_code == 200
        assert resp.json()["nodes"][0]["pnodeName"] == "AECO"

    def test_pnl_requires_token(self, client):
        resp = client(_upstream()).get("/api/reporting/pnl", params={"period": "ytd"})
        assert resp.status_code == 400

    def test_pnl_period_validation(self, client):
        resp = client(_upstream()).get(
            "/api/reporting/pnl", params={"period": "daily"}, headers={"gbe-trader-token": TOKEN},
        )
        assert resp.status_code == 400
        assert resp.json() == {"error": "asOf date required for daily PnL"}

    def test_pnl_relay(self, client):
        resp = client(_upstream()).get(
            "/api/reporting/pnl", params={"period": "ytd", "traderToken": TOKEN},
        )
        assert resp.status_code == 200
        assert resp.json()["realizedPnl"] == 10


class TestNotesProxy:
    def test_requires_token(self, client):
        resp = client(_upstream()).get("/api/reporting/notes", params={"tradeDate": "2024-01-01"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Trader token is required"}

    def test_requires_trade_date(self, client):
        resp = client(_upstream()).get("/api/reporting/notes", params={"traderToken": TOKEN})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Trade date is required"}

    def test_missing_notes_are_empty_not_404(self, client):
        resp = client(_upstream()).get(
            "/api/reporting/notes", params={"tradeDate": "2024-01-01", "type": "utc"}, headers=AUTH,
        )
        assert resp.status_code == 200
        assert resp.json() == {"market": "pjm", "type": "utc", "tradeDate": "2024-01-01", "notes": {}}

    def test_notes_pass_through(self, client):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["token"] = request.headers.get("trade-token")
            return httpx.Response(200, json={
                "market": "pjm", "type": "virtual", "tradeDate": "2024-01-01", "notes": {"AM": "Heavy load"},
            })

        resp = client(handler).get(
            "/api/reporting/notes", params={"tradeDate": "2024-01-01", "traderToken": TOKEN},
        )
        assert resp.status_code == 200
        assert resp.json()["notes"] == {"AM": "Heavy load"}
        assert seen["path"] == "/api/v1/reporting/notes/pjm/virtual"
        assert seen["token"] == TOKEN

    def test_upstream_error_surfaces_as_error_body(self, client):
        resp = client(lambda r: httpx.Response(403, text="Forbidden")).get(
            "/api/reporting/notes", params={"tradeDate": "2024-01-01", "traderToken": TOKEN},
        )
        assert resp.status_code == 403
        assert resp.json() == {"error": "Forbidden"}


class TestAuthProxy:
    def test_login_requires_credentials(self, client):
        resp = client(_upstream()).post("/api/auth/login", json={"login": "me"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "bad_request"

    def test_login_forwards_to_auth_service(self, client):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"accessToken": "a", "refreshToken": "r", "expiresIn": 3600})

        resp = client(handler).post("/api/auth/login", json={"login": "me", "password": "pw"})
        assert resp.status_code == 200
        assert resp.json()["refreshToken"] == "r"
        assert seen["url"] == "https://auth.test/api/v1/auth/login"
        assert seen["body"] == {"login": "me", "password": "pw"}

    def test_refresh_sends_header(self, client):
        seen = {}

        def handler(request):
            seen["header"] = request.headers.get("x-refresh-token")
            return httpx.Response(401, json={"error": "expired"})

        resp = client(handler).post("/api/auth/refresh", json={"refreshToken": "r1"})
        assert resp.status_code == 401
        assert seen["header"] == "r1"

    def test_refresh_requires_token(self, client):
        resp = client(_upstream()).post("/api/auth/refresh", json={})
        assert resp.status_code == 400
