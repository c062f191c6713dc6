import asyncio
import datetime as dt
from typing import Any, Dict, List

import pytest
from bson.errors import InvalidDocument
from pymongo.errors import AutoReconnect, BulkWriteError

from app.services.market_hours import IST


def ist(y, m, d, hh, mm=0, ss=0):
    return dt.datetime(y, m, d, hh, mm, ss, tzinfo=IST)


# 2026-10-20 is a Tuesday, 2026-10-17 a Saturday
TUESDAY_10AM = ist(2026, 10, 20, 10, 0)
TUESDAY_5PM = ist(2026, 10, 20, 17, 0)
SATURDAY_11AM = ist(2026, 10, 17, 11, 0)


class FakeCursor:
    def __init__(self, docs):
        self.docs = docs

    async def to_list(self, length=None):
        return [dict(d) for d in self.docs]


class StalledCursor:
    """A cursor on a server that accepted the query and never answers."""

    async def to_list(self, length=None):
        await asyncio.Event().wait()


class FakeCollection:
    """Just enough of a Motor collection for upserts, finds and distinct."""

    def __init__(self, docs=None):
        self.docs: List[Dict[str, Any]] = list(docs or [])
        self.bulk_calls: List[list] = []
        self.update_one_calls = 0
        self.fail_bulk_calls: set = set()
        self.fail_with = "bulk"
        self.fail_find = False
        self.stall_bulk_calls: set = set()
        self.stall_find = False

    def _apply(self, key, update):
        doc = next((d for d in self.docs if all(d.get(k) == v for k, v in key.items())), None)
        if doc is None:
            doc = dict(key)
            doc.update(update.get("$setOnInsert", {}))
            self.docs.append(doc)
        doc.update(update.get("$set", {}))

    async def bulk_write(self, ops, ordered=True):
        n = len(self.bulk_calls)
        self.bulk_calls.append(ops)
        if n in self.stall_bulk_calls:
            await asyncio.Event().wait()
        if n in self.fail_bulk_calls:
            if self.fail_with == "bulk":
                raise BulkWriteError({"writeErrors": [{"errmsg": "E11000 duplicate key"}]})
            if self.fail_with == "invalid":
                raise InvalidDocument("cannot encode object: <object>")
            raise AutoReconnect("connection reset")
        for op in ops:
            self._apply(op._filter, op._doc)

    async def update_one(self, key, update, upsert=False):
        self.update_one_calls += 1
        self._apply(key, update)

    def find(self, filter=None, projection=None):
        if self.fail_find:
            raise AutoReconnect("no primary")
        if self.stall_find:
            return StalledCursor()
        return FakeCursor(self.docs)

    async def distinct(self, field, filter=None):
        filter = filter or {}
        matching = [d for d in self.docs if all(d.get(k) == v for k, v in filter.items())]
        return sorted({d.get(field) for d in matching if d.get(field) is not None})


class FakeDB(dict):
    def __missing__(self, name):
        col = FakeCollection()
        self[name] = col
        return col

    async def command(self, name):
        return {"ok": 1}


def raw_quote(exchange, token):
    n = int(token)
    return {
        "exchange": exchange,
        "tradingSymbol": f"SYM{token}-EQ",
        "symbolToken": token,
        "ltp": n + 0.5,
        "close": float(n),
        "high": n + 1.0,
        "low": n - 1.0,
        "open": float(n),
    }


class FakeSmartApi:
    def __init__(self, login_ok=True):
        self.login_ok = login_ok
        self.login_calls: List[str] = []
        self.market_calls: List[Dict[str, List[str]]] = []
        self.fail_calls: set = set()
        self.expired = False
        self.unavailable = False

    async def generate_session(self, client_id, password, totp):
        self.login_calls.append(totp)
        # let concurrent callers queue up behind the lock
        await asyncio.sleep(0)
        if self.unavailable:
            raise ConnectionError("connection refused")
        if self.login_ok:
            return {"status": True, "message": "SUCCESS", "errorcode": "", "data": {"jwtToken": "jwt-1"}}
        return {"status": False, "message": "Invalid totp", "errorcode": "AB1050", "data": None}

    async def market_data(self, mode, exchange_tokens):
        n = len(self.market_calls)
        self.market_calls.append(exchange_tokens)
        (exch, tokens), = exchange_tokens.items()
        if self.expired:
            return {"status": False, "message": "Invalid Token", "errorcode": "AG8001", "data": None}
        if n in self.fail_calls:
            raise ConnectionError("read timed out")
        return {"status": True, "data": {"fetched": [raw_quote(exch, t) for t in tokens], "unfetched": []}}


class FakeNotifier:
    def __init__(self):
        self.sent = []

    async def notify(self, success, message):
        self.sent.append((success, message))
        return True


def mapping_docs(exchange, count, start=1000):
    return [
        {"exchange": exchange, "symbol_token": str(start + i), "trading_symbol": f"SYM{start + i}-EQ"}
        for i in range(count)
    ]


@pytest.fixture
def fake_db():
    return FakeDB()


@pytest.fixture
def fake_api():
    return FakeSmartApi()


@pytest.fixture
def notifier():
    return FakeNotifier()
