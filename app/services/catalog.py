# app/services/catalog.py
from __future__ import annotations
from typing import Any, Dict, List, Optional

import httpx

from app.mongo_collections import STOCK_SYMBOLS
from app.services.mappers import map_catalog
from app.services.upserts import upsert_catalog
from app.settings import settings


async def download_master(
    url: Optional[str] = None,
    *,
    timeout: Optional[float] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[Dict[str, Any]]:
    print("[Catalog] Downloading Angel One instrument master...")
    async with httpx.AsyncClient(timeout=timeout or settings.master_timeout, transport=transport) as client:
        resp = await client.get(url or settings.master_url)
        resp.raise_for_status()
        instruments = resp.json()
    print(f"[Catalog] Total instruments: {len(instruments)}")
    return instruments


async def refresh_stocks(db, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> int:
    """
    Rebuild stock_symbols from the instrument master. Download and read
    errors propagate; individual batch failures are logged by the writer.
    """
    instruments = await download_master(transport=transport)

    known_nse = await db[STOCK_SYMBOLS].distinct("name", {"exchange": "NSE"})
    print(f"[Catalog] Found {len(known_nse)} existing NSE stocks")

    rows = map_catalog(instruments, known_nse_names=[n for n in known_nse if n])
    summary = await upsert_catalog(db, rows)
    print(f"[Catalog] All batches processed ({summary.failed_batches} failed of {summary.batches}).")
    return len(rows)
