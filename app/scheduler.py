# app/scheduler.py
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
import datetime as dt
import traceback
from uuid import uuid4

from app.services.market_hours import IST, IST_NAME

class Scheduler:
    def __init__(self, engine):
        self.engine = engine
        self.scheduler = AsyncIOScheduler(timezone=IST_NAME)

    def start(self, with_cron: bool = True):
        if with_cron:
            self.add_cron_jobs()
        self.scheduler.start()

    def add_cron_jobs(self):
        # CMP every 5 minutes; the cycle itself checks market hours
        self.scheduler.add_job(
            self.cmp_job,
            CronTrigger(minute="*/5", timezone=IST_NAME),
            id="sync-cmp",
            max_instances=1,
            coalesce=True,
        )
        # LCP once a day, an hour after the 15:30 close
        self.scheduler.add_job(
            self.lcp_job,
            CronTrigger(hour=16, minute=30, timezone=IST_NAME),
            id="sync-lcp",
            max_instances=1,
            coalesce=True,
        )
        # fresh session before the trading day
        self.scheduler.add_job(
            self.relogin_job,
            CronTrigger(hour=8, minute=0, timezone=IST_NAME),
            id="daily-login",
            max_instances=1,
            coalesce=True,
        )

    def shutdown(self):
        if getattr(self.scheduler, "running", False):
            self.scheduler.shutdown(wait=False)

    async def cmp_job(self):
        print(f"[Scheduler] CMP cron triggered at {dt.datetime.now(IST):%H:%M} IST")
        try:
            await self.engine.run_cmp_cycle()
        except Exception:
            traceback.print_exc()

    async def lcp_job(self):
        print("[Scheduler] Running daily LCP sync at 16:30 IST (after market close)...")
        try:
            await self.engine.run_lcp_cycle()
        except Exception:
            traceback.print_exc()

    async def relogin_job(self):
        try:
            await self.engine.daily_relogin()
        except Exception:
            traceback.print_exc()

    def enqueue(self, func, name: str, **kwargs):
        """Run `func` once, as soon as possible, detached from the caller."""
        self.scheduler.add_job(
            self.run_detached,
            trigger="date",                       # run once ASAP
            args=[func, name],
            kwargs=kwargs,
            id=f"{name}-{uuid4().hex}",
            max_instances=1,
            coalesce=True,
            replace_existing=False,
        )

    async def run_detached(self, func, name: str, **kwargs):
        try:
            result = await func(**kwargs)
            print(f"[Scheduler] {name} finished: {result}")
        except Exception as e:
            print(f"[Scheduler] {name} failed: {e}")
            traceback.print_exc()
