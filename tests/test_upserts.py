import asyncio
import datetime as dt
from decimal import Decimal

import pytest

from app.errors import WriteErrorKind
from app.mongo_collections import STOCK_MAPPING, STOCK_SYMBOLS
from app.schemas import Exchange, QuoteRecord, SyncMode
from app.services.mappers import map_price_rows
from app.services.upserts import _classify, build_update, upsert_catalog, upsert_prices, upsert_rows
from app.settings import settings
from conftest import FakeCollection, TUESDAY_10AM, ist
from pymongo.errors import AutoReconnect, BulkWriteError


def utc_naive(ts):
    return ts.astimezone(dt.timezone.utc).replace(tzinfo=None)


def quote(token, ltp=101.5, close=100.0, exchange=Exchange.NSE):
    return QuoteRecord(
        trading_symbol=f"SYM{token}-EQ",
        symbol_token=token,
        exchange=exchange,
        last_traded_price=ltp,
        previous_close=close,
    )


def test_build_update_splits_set_and_set_on_insert():
    row = {"exchange": "NSE", "symbol_token": "1", "trading_symbol": "A-EQ", "cmp": Decimal("10.25"), "last_updated": TUESDAY_10AM}
    key, update = build_update(row, ("exchange", "symbol_token"), insert_only=("trading_symbol",))

    assert key == {"exchange": "NSE", "symbol_token": "1"}
    assert update["$set"] == {"cmp": 10.25, "last_updated": utc_naive(TUESDAY_10AM)}
    assert update["$setOnInsert"] == {"trading_symbol": "A-EQ"}


@pytest.mark.asyncio
async def test_same_row_twice_keeps_one_row_with_second_timestamp(fake_db):
    first = ist(2026, 10, 20, 10, 0)
    second = ist(2026, 10, 20, 10, 5)

    await upsert_prices(fake_db, map_price_rows([quote("1")], SyncMode.CMP, first))
    await upsert_prices(fake_db, map_price_rows([quote("1")], SyncMode.CMP, second))

    docs = fake_db[STOCK_MAPPING].docs
    assert len(docs) == 1
    assert docs[0]["cmp"] == 101.5
    assert docs[0]["last_updated"] == utc_naive(second)


@pytest.mark.asyncio
async def test_price_merge_leaves_unrelated_fields_alone(fake_db):
    fake_db[STOCK_MAPPING] = FakeCollection([
        {"exchange": "NSE", "symbol_token": "1", "trading_symbol": "KEEP-EQ", "cmp": 90.0, "lcp": 88.0, "sector": "IT"},
    ])

    await upsert_prices(fake_db, map_price_rows([quote("1")], SyncMode.CMP, TUESDAY_10AM))

    doc = fake_db[STOCK_MAPPING].docs[0]
    assert doc["cmp"] == 101.5
    assert doc["lcp"] == 88.0
    assert doc["trading_symbol"] == "KEEP-EQ"
    assert doc["sector"] == "IT"
    assert doc["last_updated"] == utc_naive(TUESDAY_10AM)


@pytest.mark.asyncio
async def test_lcp_rows_only_set_lcp(fake_db):
    await upsert_prices(fake_db, map_price_rows([quote("1")], SyncMode.LCP, TUESDAY_10AM))

    doc = fake_db[STOCK_MAPPING].docs[0]
    assert doc["lcp"] == 100.0
    assert "cmp" not in doc


@pytest.mark.asyncio
async def test_rows_are_split_into_batches():
    col = FakeCollection()
    rows = [{"exchange": "NSE", "symbol_token": str(i), "cmp": 1.0} for i in range(1200)]

    summary = await upsert_rows(col, rows, key_fields=("exchange", "symbol_token"), batch_size=500)

    assert [len(b) for b in col.bulk_calls] == [500, 500, 200]
    assert summary.batches == 3
    assert summary.rows_written == 1200
    assert len(col.docs) == 1200


@pytest.mark.asyncio
async def test_failed_batch_does_not_abort_others():
    col = FakeCollection()
    col.fail_bulk_calls = {1}
    rows = [{"exchange": "NSE", "symbol_token": str(i), "cmp": 1.0} for i in range(1200)]

    summary = await upsert_rows(col, rows, key_fields=("exchange", "symbol_token"), batch_size=500)

    assert summary.failed_batches == 1
    assert summary.rows_written == 700
    assert len(col.docs) == 700


@pytest.mark.asyncio
async def test_per_row_mode_uses_update_one():
    col = FakeCollection()
    rows = [{"exchange": "NSE", "symbol_token": str(i), "cmp": 1.0} for i in range(7)]

    summary = await upsert_rows(col, rows, key_fields=("exchange", "symbol_token"), batch_size=5, mode="per_row")

    assert col.bulk_calls == []
    assert col.update_one_calls == 7
    assert summary.batches == 2
    assert summary.rows_written == 7


@pytest.mark.asyncio
async def test_catalog_upsert_keys_on_symbol_and_exchange(fake_db, monkeypatch):
    monkeypatch.setattr(settings, "catalog_batch_size", 2)
    rows = [
        {"symbol": "SBIN-EQ", "name": "SBIN", "exchange": "NSE", "symbol_token": "3045"},
        {"symbol": "SBIN-EQ", "name": "SBIN", "exchange": "NSE", "symbol_token": "3045"},
        {"symbol": "TCS-EQ", "name": "TCS", "exchange": "NSE", "symbol_token": "11536"},
    ]

    summary = await upsert_catalog(fake_db, rows)

    assert summary.batches == 2
    assert len(fake_db[STOCK_SYMBOLS].docs) == 2


def test_classify_write_errors():
    conflict = _classify(BulkWriteError({"writeErrors": [{"errmsg": "E11000 duplicate key"}]}))
    assert conflict.kind == WriteErrorKind.CONFLICT_RESOLUTION_FAILURE
    assert "E11000" in conflict.message

    down = _classify(AutoReconnect("connection reset"))
    assert down.kind == WriteErrorKind.STORE_UNAVAILABLE


@pytest.mark.asyncio
async def test_stalled_batch_times_out_and_others_still_land():
    col = FakeCollection()
    col.stall_bulk_calls = {0}
    rows = [{"exchange": "NSE", "symbol_token": str(i), "cmp": 1.0} for i in range(1200)]

    summary = await upsert_rows(
        col, rows, key_fields=("exchange", "symbol_token"), batch_size=500, timeout=0.05
    )

    assert summary.batches == 3
    assert summary.failed_batches == 1
    assert summary.rows_written == 700
    assert len(col.docs) == 700


@pytest.mark.asyncio
async def test_unencodable_batch_is_counted_not_raised():
    col = FakeCollection()
    col.fail_bulk_calls = {2}
    col.fail_with = "invalid"
    rows = [{"exchange": "NSE", "symbol_token": str(i), "cmp": 1.0} for i in range(1200)]

    summary = await upsert_rows(col, rows, key_fields=("exchange", "symbol_token"), batch_size=500)

    assert summary.failed_batches == 1
    assert summary.rows_written == 1000


def test_write_timeout_is_store_unavailable():
    err = _classify(asyncio.TimeoutError())
    assert err.kind == WriteErrorKind.STORE_UNAVAILABLE
    assert err.message == "write timed out"
