# app/services/upserts.py
from __future__ import annotations
import asyncio
import datetime as dt
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pymongo import UpdateOne
from pymongo.errors import BulkWriteError

from app.errors import WriteBatchError, WriteErrorKind
from app.mongo_collections import STOCK_MAPPING, STOCK_MAPPING_KEY, STOCK_SYMBOLS, STOCK_SYMBOLS_KEY
from app.schemas import WriteSummary
from app.settings import settings


def _to_mongo_safe(value: Any) -> Any:
    """
    Recursively convert values so MongoDB can encode them.
    - date -> datetime (UTC midnight)
    - tz-aware datetime -> naive UTC datetime
    - Decimal -> float
    - dict/list -> recurse
    """
    if isinstance(value, dt.datetime):
        if value.tzinfo is not None:
            value = value.astimezone(dt.timezone.utc).replace(tzinfo=None)
        return value

    if isinstance(value, dt.date):
        return dt.datetime.combine(value, dt.time.min)

    if isinstance(value, Decimal):
        return float(value)

    if isinstance(value, dict):
        return {k: _to_mongo_safe(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_to_mongo_safe(v) for v in value]

    return value


def build_update(
    row: Dict[str, Any], key_fields: Sequence[str], insert_only: Sequence[str] = ()
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    (filter, update) pair keyed on `key_fields`. Fields in `insert_only` are written only
    when the document is created, so merges never touch them.
    """
    doc = _to_mongo_safe(dict(row))
    key = {k: doc[k] for k in key_fields}
    update: Dict[str, Any] = {}
    to_set = {k: v for k, v in doc.items() if k not in key and k not in insert_only}
    on_insert = {k: doc[k] for k in insert_only if k in doc}
    if to_set:
        update["$set"] = to_set
    if on_insert:
        update["$setOnInsert"] = on_insert
    return key, update


def _classify(e: Exception) -> WriteBatchError:
    if isinstance(e, BulkWriteError):
        errors = e.details.get("writeErrors") or []
        first = errors[0].get("errmsg") if errors else str(e)
        return WriteBatchError(WriteErrorKind.CONFLICT_RESOLUTION_FAILURE, f"{len(errors)} write error(s): {first}")
    if isinstance(e, asyncio.TimeoutError):
        return WriteBatchError(WriteErrorKind.STORE_UNAVAILABLE, "write timed out")
    return WriteBatchError(WriteErrorKind.STORE_UNAVAILABLE, str(e) or e.__class__.__name__)


async def upsert_rows(
    col,
    rows: List[Dict[str, Any]],
    *,
    key_fields: Sequence[str],
    batch_size: int,
    insert_only: Sequence[str] = (),
    mode: str = "bulk",
    label: str = "",
    timeout: Optional[float] = None,
) -> WriteSummary:
    """
    Split rows into batches and write every batch concurrently. A failed or
    stalled batch is logged and counted; the remaining batches still land.
    """
    ops = [build_update(r, key_fields, insert_only) for r in rows]
    batches = [ops[i:i + batch_size] for i in range(0, len(ops), batch_size)]
    tag = f" ({label})" if label else ""
    timeout = settings.store_timeout if timeout is None else timeout

    async def send(batch) -> None:
        if mode == "per_row":
            for key, update in batch:
                await col.update_one(key, update, upsert=True)
        else:
            await col.bulk_write([UpdateOne(k, u, upsert=True) for k, u in batch], ordered=False)

    async def write_batch(n: int, batch) -> int:
        await asyncio.wait_for(send(batch), timeout=timeout)
        print(f"[Upsert] Processed batch {n}{tag}: {len(batch)} rows")
        return len(batch)

    results = await asyncio.gather(
        *(write_batch(n, b) for n, b in enumerate(batches, start=1)),
        return_exceptions=True,
    )

    written = failed = 0
    for n, r in enumerate(results, start=1):
        if isinstance(r, Exception):
            err = _classify(r)
            print(f"[Upsert] Batch {n}{tag} failed ({err.kind.value}): {err.message}")
            failed += 1
        elif isinstance(r, BaseException):
            raise r
        else:
            written += r
    return WriteSummary(batches=len(batches), failed_batches=failed, rows_written=written)

# ---------- COLLECTION HELPERS ----------

async def upsert_catalog(db, rows: List[Dict[str, Any]]) -> WriteSummary:
    return await upsert_rows(
        db[STOCK_SYMBOLS],
        rows,
        key_fields=STOCK_SYMBOLS_KEY,
        batch_size=settings.catalog_batch_size,
        mode=settings.write_mode,
        label="catalog",
    )


async def upsert_prices(
    db, rows: List[Dict[str, Any]], *, label: str = "", timeout: Optional[float] = None
) -> WriteSummary:
    """
    rows come from mappers.map_price_rows: key fields, one price field and
    last_updated. The price and its timestamp go in the same $set.
    """
    return await upsert_rows(
        db[STOCK_MAPPING],
        rows,
        key_fields=STOCK_MAPPING_KEY,
        insert_only=("trading_symbol",),
        batch_size=settings.quote_batch_size,
        mode=settings.write_mode,
        label=label,
        timeout=timeout,
    )
