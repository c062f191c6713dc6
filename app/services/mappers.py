# app/services/mappers.py
from __future__ import annotations
from typing import Any, Dict, Iterable, List, Optional
import datetime as dt
import re

from app.schemas import Exchange, QuoteRecord, SyncMode

_DIGITS = re.compile(r"\d")

# stored price field per sync mode, and the quote attribute it is taken from
PRICE_FIELDS = {
    SyncMode.CMP: ("cmp", "last_traded_price"),
    SyncMode.LCP: ("lcp", "previous_close"),
}


def _to_float(value: Any) -> Optional[float]:
    try:
        if value is None or value == "":
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def map_quote(raw: Dict[str, Any]) -> QuoteRecord:
    return QuoteRecord(
        trading_symbol=str(raw.get("tradingSymbol") or ""),
        symbol_token=str(raw.get("symbolToken")),
        exchange=Exchange(raw.get("exchange")),
        last_traded_price=_to_float(raw.get("ltp")),
        previous_close=_to_float(raw.get("close")),
        high=_to_float(raw.get("high")),
        low=_to_float(raw.get("low")),
        open=_to_float(raw.get("open")),
    )


def map_quotes(raw: Iterable[Dict[str, Any]]) -> List[QuoteRecord]:
    out = []
    for q in raw:
        try:
            out.append(map_quote(q))
        except ValueError as e:
            # unknown exchange segment or a malformed entry
            print(f"[Fetcher] Skipping unparseable quote {q.get('symbolToken')}: {e}")
    return out


def map_price_rows(quotes: Iterable[QuoteRecord], mode: SyncMode, now: dt.datetime) -> List[Dict[str, Any]]:
    """
    Rows for the stock_mapping upsert. Only the synced price field and
    last_updated are meant to be $set; trading_symbol is insert-only.
    """
    field, attr = PRICE_FIELDS[mode]
    out = []
    for q in quotes:
        price = getattr(q, attr)
        if price is None:
            continue
        out.append({
            "exchange": q.exchange.value,
            "symbol_token": q.symbol_token,
            "trading_symbol": q.trading_symbol,
            field: price,
            "last_updated": now,
        })
    return out


def group_tokens_by_exchange(rows: Iterable[Dict[str, Any]]) -> Dict[str, List[str]]:
    out: Dict[str, List[str]] = {}
    for r in rows:
        exch, token = r.get("exchange"), r.get("symbol_token")
        if exch and token:
            out.setdefault(str(exch), []).append(str(token))
    return out


def map_ltp_response(q: QuoteRecord) -> Dict[str, Any]:
    return {
        "tradingSymbol": q.trading_symbol,
        "symbolToken": q.symbol_token,
        "ltp": q.last_traded_price,
        "yesterdayClose": q.previous_close,
        "high": q.high,
        "low": q.low,
        "open": q.open,
    }


def is_plain_equity(ins: Dict[str, Any]) -> bool:
    return (
        ins.get("exch_seg") in (Exchange.NSE.value, Exchange.BSE.value)
        and ins.get("instrumenttype") == ""
        and bool(ins.get("token"))
        and bool(ins.get("symbol"))
        and not _DIGITS.search(str(ins.get("symbol")))
    )


def map_catalog(raw: Iterable[Dict[str, Any]], known_nse_names: Iterable[str] = ()) -> List[Dict[str, Any]]:
    """
    Instrument master -> stock_symbols rows. NSE listings win; a BSE listing is
    dropped when the same company name is on NSE (stored or in this master).
    """
    equities = [ins for ins in raw if is_plain_equity(ins)]
    nse = [ins for ins in equities if ins["exch_seg"] == Exchange.NSE.value]
    nse_names = set(known_nse_names) | {ins.get("name") for ins in nse}
    bse = [ins for ins in equities if ins["exch_seg"] == Exchange.BSE.value and ins.get("name") not in nse_names]
    print(f"[Catalog] {len(equities)} equities; {len(nse)} NSE and {len(bse)} BSE after de-duplication")

    return [
        {
            "symbol": ins["symbol"],
            "name": ins.get("name"),
            "exchange": ins["exch_seg"],
            "symbol_token": str(ins["token"]),
        }
        for ins in nse + bse
    ]
