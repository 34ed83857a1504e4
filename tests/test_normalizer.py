"""Tests for raw record normalisation and node-name resolution."""

import pytest

from ledger.models import Node
from ledger.normalizer import (
    EMPTY_DIRECTORY,
    NodeDirectory,
    normalize,
    normalize_all,
    normalize_cleared_utc,
    normalize_cleared_virtual,
    normalize_settled_utc,
    normalize_settled_virtual,
    normalize_submitted,
    parse_nodes_payload,
)


@pytest.fixture
def directory() -> NodeDirectory:
    return NodeDirectory([
        {"pnodeId": 51291, "pnodeName": "AECO"},
        {"pnodeId": "5021071", "pnodeName": "WESTERN HUB"},
        Node(id="1069452904", name="PSEG"),
    ])


# ---------------------------------------------------------------------------
# 1. Node directory
# ---------------------------------------------------------------------------

class TestNodeDirectory:
    def test_resolves_known_ids_regardless_of_type(self, directory):
        assert directory.name_for(51291) == "AECO"
        assert directory.name_for("51291") == "AECO"
        assert "5021071" in directory
        assert len(directory) == 3

    def test_unknown_id_falls_back_to_raw_id(self, directory):
        assert directory.name_for(999) == "999"

    def test_missing_id_renders_dash(self, directory):
        assert directory.name_for(None) == "-"
        assert directory.name_for("") == "-"

    def test_accepts_normalised_id_name_dicts(self):
        d = NodeDirectory([{"id": "7", "name": "SEVEN"}])
        assert d.name_for(7) == "SEVEN"
        assert d.nodes() == [Node(id="7", name="SEVEN")]


class TestParseNodesPayload:
    def test_bare_array(self):
        nodes = parse_nodes_payload([{"pnodeId": 1, "pnodeName": "A"}])
        assert nodes == [Node(id="1", name="A")]

    def test_wrapped_array(self):
        nodes = parse_nodes_payload({"nodes": [{"pnodeId": 2, "pnodeName": "B"}]})
        assert nodes == [Node(id="2", name="B")]

    def test_unexpected_shape_is_empty(self):
        assert parse_nodes_payload({"error": "nope"}) == []
        assert parse_nodes_payload(None) == []

    def test_skips_items_without_id(self):
        assert parse_nodes_payload([{"pnodeName": "orphan"}, "junk"]) == []


# ---------------------------------------------------------------------------
# 2. Shape-specific normalizers
# ---------------------------------------------------------------------------

class TestVirtuals:
    def test_cleared_virtual(self, directory):
        rec = normalize_cleared_virtual(
            {"tradeId": "T1", "tradeDate": "2024-01-01", "location": 51291, "type": "inc",
             "hour": 14, "price": "25.5", "mw": 10, "status": "CLEARED", "daLmp": 31.2},
            directory,
        )
        assert rec.trade_id == "T1"
        assert rec.trade_type == "INC"
        assert rec.location == "AECO"
        assert rec.hour == 14
        assert rec.mw == 10.0
        assert rec.submitted_price == 25.5
        assert rec.da_price == 31.2
        assert rec.status == "CLEARED"
        assert rec.pnl is None

    def test_cleared_status_is_case_insensitive(self):
        rec = normalize_cleared_virtual({"tradeId": "T1", "status": "rejected"})
        assert rec.status == "REJECTED"

    def test_unknown_cleared_status_counts_as_cleared(self):
        rec = normalize_cleared_virtual({"tradeId": "T1", "status": "ACCEPTED"})
        assert rec.status == "CLEARED"

    def test_settled_virtual(self, directory):
        rec = normalize_settled_virtual(
            {"tradeId": "T1", "tradeDate": "2024-01-01", "pnodeId": "5021071", "tradeType": "DEC",
             "hour": 3, "submittedPrice": 20, "clearedMw": 8, "daLmp": 30, "totalLmpRt": 27.5,
             "priceDiff": 2.5, "pnl": -25.5},
            directory,
        )
        assert rec.location == "WESTERN HUB"
        assert rec.trade_type == "DEC"
        assert rec.cleared_mw == 8.0
        assert rec.rt_price == 27.5
        assert rec.price_diff == 2.5
        assert rec.pnl == -25.5

    def test_missing_and_garbage_numbers_are_absent_not_zero(self):
        rec = normalize_settled_virtual({"tradeId": "T1", "pnl": "", "clearedMw": "n/a"})
        assert rec.pnl is None
        assert rec.cleared_mw is None
        assert rec.da_price is None

    @pytest.mark.parametrize("raw, expected", [("24.0", 24), ("7", 7), (13.0, 13), ("", 0), ("n/a", 0), (None, 0)])
    def test_hour_accepts_float_strings(self, raw, expected):
        rec = normalize_cleared_virtual({"tradeId": "T1", "hour": raw})
        assert rec.hour == expected


class TestUtc:
    def test_cleared_utc_label_resolves_each_side(self, directory):
        rec = normalize_cleared_utc(
            {"tradeId": "U1", "sourceLocation": 51291, "sinkLocation": 42,
             "hour": 1, "mw": 5, "price": 1.5, "status": "CLEARED", "daSpread": 2.25},
            directory,
        )
        assert rec.trade_type == "UTC"
        assert rec.location == "AECO → 42"
        assert rec.da_price == 2.25

    def test_settled_utc_prices_are_spreads(self, directory):
        rec = normalize_settled_utc(
            {"tradeId": "U1", "sourceLocation": "1069452904", "sinkLocation": "5021071",
             "clearedMw": 5, "daSpread": 2, "rtSpread": 3.5, "spreadDiff": 1.5, "pnl": 7.5},
            directory,
        )
        assert rec.location == "PSEG → WESTERN HUB"
        assert rec.da_price == 2.0
        assert rec.rt_price == 3.5
        assert rec.price_diff == 1.5
        assert rec.pnl == 7.5

    def test_missing_side_renders_dash(self):
        rec = normalize_cleared_utc({"tradeId": "U2", "sourceLocation": "A"})
        assert rec.location == "A → -"


class TestSubmitted:
    def test_submitted_uses_id_field(self):
        rec = normalize_submitted({"id": 77, "location": "X", "type": "inc", "mw": 3, "price": 9}, "virtuals")
        assert rec.trade_id == "77"
        assert rec.source == "submitted"
        assert rec.trade_type == "INC"
        assert rec.mw == 3.0
        assert rec.submitted_price == 9.0

    def test_submitted_utc(self):
        rec = normalize_submitted({"id": "U9", "sourceLocation": "A", "sinkLocation": "B"}, "utc")
        assert rec.trade_type == "UTC"
        assert rec.location == "A → B"


# ---------------------------------------------------------------------------
# 3. Dispatch
# ---------------------------------------------------------------------------

def test_normalize_dispatches_by_market_and_source():
    rec = normalize({"tradeId": "T1", "pnl": 4}, "virtuals", "settled")
    assert rec.source == "settled"
    assert rec.pnl == 4.0


def test_normalize_rejects_unknown_shape():
    with pytest.raises(ValueError):
        normalize({"tradeId": "T1"}, "nodal", "cleared")


def test_normalize_all_skips_non_objects():
    out = normalize_all([{"tradeId": "T1"}, None, "x", {"tradeId": "T2"}], "utc", "cleared", EMPTY_DIRECTORY)
    assert [r.trade_id for r in out] == ["T1", "T2"]
