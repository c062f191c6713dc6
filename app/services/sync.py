# app/services/sync.py
"""
CMP / LCP sync cycles.

A cycle runs: gate check -> ensure session -> read stock_mapping -> chunked
fetch -> map -> batched upsert. Chunk and batch failures only shrink the
result; the next cycle picks up whatever was missed. One lock per cycle type
turns an overlapping trigger into a SKIPPED result.
"""

from __future__ import annotations
import asyncio
import datetime as dt
from typing import Awaitable, Callable, Dict

from pymongo.errors import PyMongoError

from app.mongo_collections import STOCK_MAPPING
from app.schemas import CycleResult, CycleState, SyncMode
from app.services.fetcher import fetch_quotes
from app.services.mappers import group_tokens_by_exchange, map_price_rows
from app.services.market_hours import exchange_now, is_live_window, is_post_close_window
from app.services.notify import StatusNotifier
from app.services.session import SessionManager
from app.services.smartapi_client import ISmartApiClient
from app.services.upserts import upsert_prices
from app.settings import settings


class SyncEngine:
    def __init__(
        self,
        db,
        session: SessionManager,
        client: ISmartApiClient,
        notifier: StatusNotifier,
        *,
        clock: Callable[[], dt.datetime] = exchange_now,
        chunk_size: int | None = None,
        concurrency: int | None = None,
        store_timeout: float | None = None,
    ):
        self.db = db
        self.session = session
        self.client = client
        self.notifier = notifier
        self.clock = clock
        self.chunk_size = chunk_size or settings.quote_chunk_size
        self.concurrency = concurrency or settings.quote_concurrency
        self.store_timeout = store_timeout or settings.store_timeout
        self._locks: Dict[SyncMode, asyncio.Lock] = {m: asyncio.Lock() for m in SyncMode}

    def is_running(self, mode: SyncMode) -> bool:
        return self._locks[mode].locked()

    async def _guarded(self, mode: SyncMode, body: Callable[[], Awaitable[CycleResult]]) -> CycleResult:
        lock = self._locks[mode]
        if lock.locked():
            print(f"[Sync] {mode.value.upper()} sync already running. Skipping this trigger.")
            return CycleResult(mode=mode, state=CycleState.SKIPPED, message="already running")
        async with lock:
            return await body()

    # ---------- cycles ----------

    async def run_cmp_cycle(self) -> CycleResult:
        return await self._guarded(SyncMode.CMP, self._cmp_cycle)

    async def run_lcp_cycle(self) -> CycleResult:
        return await self._guarded(SyncMode.LCP, self._lcp_cycle)

    async def _cmp_cycle(self) -> CycleResult:
        if not is_live_window(self.clock()):
            print("[Sync] Market is closed. Skipping CMP sync.")
            return CycleResult(mode=SyncMode.CMP, state=CycleState.SKIPPED, message="Market is closed")

        auth = await self.session.ensure_authenticated()
        if not auth.success:
            message = f"Automated login failed during CMP sync: {auth.message}"
            print(f"[Sync] {message}")
            await self.notifier.notify(False, message)
            return CycleResult(mode=SyncMode.CMP, state=CycleState.AUTH_FAILED, message=auth.message)

        return await self._sync_prices(SyncMode.CMP)

    async def _lcp_cycle(self) -> CycleResult:
        if not is_post_close_window(self.clock()):
            print("[Sync] Market is still open. Skipping LCP sync (runs after 3:30 PM IST).")
            return CycleResult(mode=SyncMode.LCP, state=CycleState.SKIPPED, message="Market still open")

        auth = await self.session.ensure_authenticated()
        if not auth.success:
            print(f"[Sync] Skipping LCP sync: not authenticated ({auth.message}).")
            return CycleResult(mode=SyncMode.LCP, state=CycleState.SKIPPED, message="Not authenticated")

        return await self._sync_prices(SyncMode.LCP)

    async def _sync_prices(self, mode: SyncMode) -> CycleResult:
        label = mode.value.upper()
        print(f"[Sync] Syncing {label} prices...")
        try:
            cursor = self.db[STOCK_MAPPING].find({}, {"_id": 0, "exchange": 1, "symbol_token": 1})
            mapping = await asyncio.wait_for(cursor.to_list(None), timeout=self.store_timeout)
        except asyncio.TimeoutError:
            print(f"[Sync] Reading {STOCK_MAPPING} timed out after {self.store_timeout}s")
            return CycleResult(mode=mode, state=CycleState.FAILED, message=f"{STOCK_MAPPING} read timed out")
        except PyMongoError as e:
            print(f"[Sync] Could not read {STOCK_MAPPING}: {e!r}")
            return CycleResult(mode=mode, state=CycleState.FAILED, message=str(e))

        by_exchange = group_tokens_by_exchange(mapping)
        expected = sum(len(t) for t in by_exchange.values())
        if not expected:
            return CycleResult(mode=mode, state=CycleState.DONE, message="No instruments to sync")

        quotes = await fetch_quotes(
            self.client,
            by_exchange,
            session=self.session,
            chunk_size=self.chunk_size,
            concurrency=self.concurrency,
        )
        print(f"[Sync] Fetched {len(quotes)} records from API. Expected ~{expected}.")

        rows = map_price_rows(quotes, mode, self.clock())
        if len(rows) < len(quotes):
            print(f"[Sync] Skipped {len(quotes) - len(rows)} quotes with no {label} price.")
        summary = await upsert_prices(self.db, rows, label=label, timeout=self.store_timeout)
        print(f"[Sync] {label} Sync complete. Updated {summary.rows_written} symbols.")

        return CycleResult(
            mode=mode,
            state=CycleState.DONE,
            message=f"{label} sync completed",
            expected=expected,
            fetched=len(quotes),
            written=summary.rows_written,
            failed_batches=summary.failed_batches,
        )

    # ---------- session upkeep ----------

    async def daily_relogin(self) -> bool:
        print("[Sync] Automated daily login ...")
        self.session.invalidate()
        result = await self.session.login()
        await self.notifier.notify(
            result.success,
            "Daily automated login successful" if result.success else f"Daily automated login failed: {result.message}",
        )
        return result.success

    async def startup_login(self) -> bool:
        if not self.session.totp_secret:
            print("[Sync] Waiting for manual TOTP login at /login endpoint...")
            return False
        print("[Sync] TOTP secret found. Attempting initial automated login...")
        result = await self.session.login()
        await self.notifier.notify(
            result.success,
            "Initial startup login successful" if result.success else f"Initial startup login failed: {result.message}",
        )
        return result.success
