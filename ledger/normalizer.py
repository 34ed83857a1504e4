"""
GridLedger — Trade Record Normalizer
Maps the reporting API's heterogeneous trade shapes onto NormalizedTrade.

Raw shapes (camelCase JSON)
---------------------------
  cleared virtual : tradeId, tradeDate, location, type, hour, price, mw,
                    status, daLmp
  settled virtual : tradeId, tradeDate, pnodeId, tradeType, hour,
                    submittedPrice, clearedMw, daLmp, totalLmpRt,
                    priceDiff, pnl
  cleared UTC     : tradeId, tradeDate, sourceLocation, sinkLocation, hour,
                    price, mw, status, daSpread
  settled UTC     : tradeId, tradeDate, sourceLocation, sinkLocation, hour,
                    submittedPrice, clearedMw, daSpread, rtSpread,
                    spreadDiff, pnl
  submitted       : id (== tradeId), tradeDate, location / source+sink,
                    type (virtuals), hour, price, mw

Node ids are resolved to display names through a NodeDirectory.  A lookup
miss falls back to the raw id; it is never an error.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

from loguru import logger

from ledger.models import (
    MARKET_UTC,
    MARKET_VIRTUALS,
    SOURCE_CLEARED,
    SOURCE_SETTLED,
    SOURCE_SUBMITTED,
    STATUS_CLEARED,
    STATUS_REJECTED,
    TYPE_UTC,
    Node,
    NormalizedTrade,
)

MISSING_LOCATION = "-"


# ---------------------------------------------------------------------------
# Node directory
# ---------------------------------------------------------------------------


class NodeDirectory:
    """
    Read-only ``{pnode id: name}`` lookup for one market.

    Accepts ``Node`` objects, raw ``{"pnodeId", "pnodeName"}`` dicts, or the
    already-normalised ``{"id", "name"}`` form.
    """

    def __init__(self, nodes: Iterable[Any] = ()) -> None:
        self._names: dict[str, str] = {}
        for node in nodes:
            parsed = parse_node(node)
            if parsed is not None:
                self._names[parsed.id] = parsed.name

    def __len__(self) -> int:
        return len(self._names)

    def __contains__(self, node_id: object) -> bool:
        return str(node_id) in self._names

    def name_for(self, node_id: Any) -> str:
        if node_id is None or node_id == "":
            return MISSING_LOCATION
        key = str(node_id)
        return self._names.get(key) or key

    def nodes(self) -> list[Node]:
        return [Node(id=k, name=v) for k, v in self._names.items()]


def parse_node(raw: Any) -> Optional[Node]:
    if isinstance(raw, Node):
        return raw
    if not isinstance(raw, dict):
        return None
    node_id = raw.get("pnodeId", raw.get("id"))
    if node_id is None:
        return None
    name = raw.get("pnodeName", raw.get("name")) or str(node_id)
    return Node(id=str(node_id), name=str(name))


def parse_nodes_payload(payload: Any) -> list[Node]:
    """Accept either a bare node array or a ``{"nodes": [...]}`` wrapper."""
    if isinstance(payload, dict) and isinstance(payload.get("nodes"), list):
        items = payload["nodes"]
    elif isinstance(payload, list):
        items = payload
    else:
        logger.warning("Unexpected nodes payload shape: {}", type(payload).__name__)
        return []
    return [n for n in (parse_node(item) for item in items) if n is not None]


EMPTY_DIRECTORY = NodeDirectory()


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _num(raw: dict, key: str) -> Optional[float]:
    """Parse a numeric field; absent, blank or garbage → None."""
    value = raw.get(key)
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.debug("Non-numeric {}={!r} treated as absent", key, value)
        return None


def _hour(raw: dict) -> int:
    try:
        return int(float(raw.get("hour") or 0))
    except (TypeError, ValueError, OverflowError):
        return 0


def _trade_id(raw: dict) -> str:
    value = raw.get("tradeId", raw.get("id"))
    return "" if value is None else str(value)


def _cleared_status(raw: dict) -> str:
    status = str(raw.get("status") or "").upper()
    return STATUS_REJECTED if status == STATUS_REJECTED else STATUS_CLEARED


def utc_label(source: Any, sink: Any, directory: NodeDirectory) -> str:
    """Render a UTC path as ``"{source} → {sink}"``; each side resolves alone."""
    return f"{directory.name_for(source)} → {directory.name_for(sink)}"


# ---------------------------------------------------------------------------
# Shape-specific normalizers
# ---------------------------------------------------------------------------


def normalize_cleared_virtual(raw: dict, directory: NodeDirectory = EMPTY_DIRECTORY) -> NormalizedTrade:
    return NormalizedTrade(
        trade_id=_trade_id(raw),
        trade_date=str(raw.get("tradeDate") or ""),
        hour=_hour(raw),
        market=MARKET_VIRTUALS,
        trade_type=str(raw.get("type") or "").upper(),
        location=directory.name_for(raw.get("location")),
        source=SOURCE_CLEARED,
        status=_cleared_status(raw),
        mw=_num(raw, "mw"),
        submitted_price=_num(raw, "price"),
        da_price=_num(raw, "daLmp"),
    )


def normalize_settled_virtual(raw: dict, directory: NodeDirectory = EMPTY_DIRECTORY) -> NormalizedTrade:
    return NormalizedTrade(
        trade_id=_trade_id(raw),
        trade_date=str(raw.get("tradeDate") or ""),
        hour=_hour(raw),
        market=MARKET_VIRTUALS,
        trade_type=str(raw.get("tradeType") or "").upper(),
        location=directory.name_for(raw.get("pnodeId")),
        source=SOURCE_SETTLED,
        cleared_mw=_num(raw, "clearedMw"),
        submitted_price=_num(raw, "submittedPrice"),
        da_price=_num(raw, "daLmp"),
        rt_price=_num(raw, "totalLmpRt"),
        price_diff=_num(raw, "priceDiff"),
        pnl=_num(raw, "pnl"),
    )


def normalize_cleared_utc(raw: dict, directory: NodeDirectory = EMPTY_DIRECTORY) -> NormalizedTrade:
    return NormalizedTrade(
        trade_id=_trade_id(raw),
        trade_date=str(raw.get("tradeDate") or ""),
        hour=_hour(raw),
        market=MARKET_UTC,
        trade_type=TYPE_UTC,
        location=utc_label(raw.get("sourceLocation"), raw.get("sinkLocation"), directory),
        source=SOURCE_CLEARED,
        status=_cleared_status(raw),
        mw=_num(raw, "mw"),
        submitted_price=_num(raw, "price"),
        da_price=_num(raw, "daSpread"),
    )


def normalize_settled_utc(raw: dict, directory: NodeDirectory = EMPTY_DIRECTORY) -> NormalizedTrade:
    return NormalizedTrade(
        trade_id=_trade_id(raw),
        trade_date=str(raw.get("tradeDate") or ""),
        hour=_hour(raw),
        market=MARKET_UTC,
        trade_type=TYPE_UTC,
        location=utc_label(raw.get("sourceLocation"), raw.get("sinkLocation"), directory),
        source=SOURCE_SETTLED,
        cleared_mw=_num(raw, "clearedMw"),
        submitted_price=_num(raw, "submittedPrice"),
        da_price=_num(raw, "daSpread"),
        rt_price=_num(raw, "rtSpread"),
        price_diff=_num(raw, "spreadDiff"),
        pnl=_num(raw, "pnl"),
    )


def normalize_submitted(raw: dict, market: str, directory: NodeDirectory = EMPTY_DIRECTORY) -> NormalizedTrade:
    if market == MARKET_UTC:
        location = utc_label(raw.get("sourceLocation"), raw.get("sinkLocation"), directory)
        trade_type = TYPE_UTC
    else:
        location = directory.name_for(raw.get("location"))
        trade_type = str(raw.get("type") or "").upper()
    return NormalizedTrade(
        trade_id=_trade_id(raw),
        trade_date=str(raw.get("tradeDate") or ""),
        hour=_hour(raw),
        market=market,
        trade_type=trade_type,
        location=location,
        source=SOURCE_SUBMITTED,
        mw=_num(raw, "mw"),
        submitted_price=_num(raw, "price"),
    )


_NORMALIZERS = {
    (MARKET_VIRTUALS, SOURCE_CLEARED): normalize_cleared_virtual,
    (MARKET_VIRTUALS, SOURCE_SETTLED): normalize_settled_virtual,
    (MARKET_UTC, SOURCE_CLEARED):      normalize_cleared_utc,
    (MARKET_UTC, SOURCE_SETTLED):      normalize_settled_utc,
}


def normalize(
    raw: dict,
    market: str,
    source: str,
    directory: NodeDirectory = EMPTY_DIRECTORY,
) -> NormalizedTrade:
    """Dispatch one raw record to the normalizer for its (market, source)."""
    if source == SOURCE_SUBMITTED:
        return normalize_submitted(raw, market, directory)
    try:
        fn = _NORMALIZERS[(market, source)]
    except KeyError:
        raise ValueError(f"Unknown record shape: market={market!r} source={source!r}") from None
    return fn(raw, directory)


def normalize_all(
    records: Iterable[Any],
    market: str,
    source: str,
    directory: NodeDirectory = EMPTY_DIRECTORY,
) -> list[NormalizedTrade]:
    """Normalise a list of raw records, skipping anything that isn't a dict."""
    out: list[NormalizedTrade] = []
    for raw in records:
        if not isinstance(raw, dict):
            logger.warning("Skipping non-object {} {} record: {!r}", market, source, raw)
            continue
        out.append(normalize(raw, market, source, directory))
    return out
