# app/main.py
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Body, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.settings import settings
from app.db import connect_to_mongo, close_mongo_connection
from app.scheduler import Scheduler

from app.errors import FetchChunkError
from app.schemas import CycleResult, CycleState, Exchange, LoginReq
from app.services.catalog import refresh_stocks
from app.services.fetcher import fetch_single_quote
from app.services.mappers import map_ltp_response
from app.services.market_hours import format_exchange_time, is_live_window, is_post_close_window
from app.services.notify import StatusNotifier
from app.services.session import SessionManager
from app.services.smartapi_client import build_smartapi_client, is_expiry_signal
from app.services.sync import SyncEngine

VERSION = "0.3.0"

# ---------------- helpers & models ----------------

class HealthResponse(BaseModel):
    status: str
    env: str
    version: str
    db_connected: bool


def _cycle_response(result: CycleResult, label: str, **flags):
    if result.state in (CycleState.AUTH_FAILED, CycleState.FAILED):
        return JSONResponse(
            {"status": "error", "message": f"{label} Sync failed: {result.message}", "result": result.as_dict(), **flags},
            status_code=500,
        )
    if result.state == CycleState.DONE:
        status, outcome = "success", "completed"
    else:
        status, outcome = result.state.value, result.state.value
    return {"status": status, "message": f"{label} Sync {outcome}: {result.message}", "result": result.as_dict(), **flags}

# ---------------- lifespan ----------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.mongodb = await connect_to_mongo()
    app.state.smartapi = build_smartapi_client()
    app.state.session = SessionManager(
        app.state.smartapi,
        client_id=settings.angel_client_id,
        password=settings.angel_password,
        totp_secret=settings.angel_totp_secret,
    )
    app.state.notifier = StatusNotifier(
        settings.portfolio_backend_url,
        timeout=settings.notify_timeout,
        is_authenticated=lambda: app.state.session.is_authenticated,
    )
    app.state.engine = SyncEngine(
        app.state.mongodb, app.state.session, app.state.smartapi, app.state.notifier
    )
    app.state.scheduler = Scheduler(app.state.engine)
    app.state.scheduler.start(with_cron=settings.scheduler_enabled)

    await app.state.engine.startup_login()
    try:
        yield
    finally:
        app.state.scheduler.shutdown()
        await close_mongo_connection()

app = FastAPI(
    title="Angel One Price Sync",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.frontend_url.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------- health & root ----------------

@app.get("/healthz", response_model=HealthResponse)
async def healthz(request: Request):
    try:
        await request.app.state.mongodb.command("ping")
        db_ok = True
    except Exception as e:
        print("Mongo health ping failed:", repr(e))
        db_ok = False
    return HealthResponse(
        status="ok",
        env=settings.app_env,
        version=VERSION,
        db_connected=db_ok,
    )

@app.get("/")
async def root():
    return {"message": "Angel One price sync is up. Try GET /status"}

@app.get("/status")
async def status(request: Request):
    session: SessionManager = request.app.state.session
    engine: SyncEngine = request.app.state.engine
    now = engine.clock()
    return {
        "status": "online",
        "authenticated": session.is_authenticated,
        "lastLogin": format_exchange_time(session.last_login) if session.last_login else "Never",
        "marketOpen": is_live_window(now),
        "istTime": format_exchange_time(now),
    }

# ---------------- session ----------------

@app.post("/login")
async def login(request: Request, req: Optional[LoginReq] = Body(default=None)):
    session: SessionManager = request.app.state.session
    totp = req.totp if req else None
    if not totp and not session.totp_secret:
        return JSONResponse({"error": "TOTP is required"}, status_code=400)

    result = await session.login(totp)
    if result.success:
        return {"message": "Login successful. LTP fetching started."}
    return JSONResponse({"error": "Login failed", "message": result.message}, status_code=401)

# ---------------- manual sync triggers ----------------

@app.api_route("/sync", methods=["GET", "POST"])
@app.api_route("/sync-cmp", methods=["GET", "POST"])
async def sync_cmp(request: Request):
    engine: SyncEngine = request.app.state.engine
    if not is_live_window(engine.clock()):
        return JSONResponse(
            {
                "error": "Market is closed",
                "message": "CMP sync only works during market hours (9:15 AM - 3:30 PM IST, weekdays)",
                "marketOpen": False,
            },
            status_code=400,
        )

    if settings.sync_trigger_mode == "background":
        request.app.state.scheduler.enqueue(engine.run_cmp_cycle, "sync-cmp")
        return JSONResponse(
            {"status": "triggered", "message": "CMP sync started in background", "marketOpen": True},
            status_code=202,
        )

    result = await engine.run_cmp_cycle()
    return _cycle_response(result, "CMP", marketOpen=True)

@app.api_route("/sync-lcp", methods=["GET", "POST"])
async def sync_lcp(request: Request):
    engine: SyncEngine = request.app.state.engine
    if not is_post_close_window(engine.clock()):
        return JSONResponse(
            {
                "error": "Market still open",
                "message": "LCP sync runs after market close (3:30 PM IST)",
                "marketClosed": False,
            },
            status_code=400,
        )

    if settings.sync_trigger_mode == "background":
        request.app.state.scheduler.enqueue(engine.run_lcp_cycle, "sync-lcp")
        return JSONResponse(
            {"status": "triggered", "message": "LCP sync started in background", "marketClosed": True},
            status_code=202,
        )

    result = await engine.run_lcp_cycle()
    return _cycle_response(result, "LCP", marketClosed=True)

# ---------------- quotes ----------------

@app.get("/ltp/{exchange}/{symbol_token}")
async def ltp(exchange: Exchange, symbol_token: str, request: Request):
    session: SessionManager = request.app.state.session
    if not session.is_authenticated:
        return JSONResponse({"error": "Not logged in. Please submit TOTP via /login first."}, status_code=401)

    try:
        quote = await fetch_single_quote(request.app.state.smartapi, exchange, symbol_token)
    except FetchChunkError as e:
        if is_expiry_signal({"errorcode": e.error_code, "message": e.message}):
            session.invalidate()
            return JSONResponse({"error": "Session expired. Please re-login with new TOTP."}, status_code=401)
        return JSONResponse({"error": e.message}, status_code=500)
    return map_ltp_response(quote)

# ---------------- catalog ----------------

@app.get("/refresh-stocks")
async def refresh_stocks_route(request: Request):
    db = request.app.state.mongodb
    if settings.refresh_mode == "background":
        request.app.state.scheduler.enqueue(refresh_stocks, "refresh-stocks", db=db)
        return {
            "status": "Processing",
            "message": "Stock refresh started in background. It will take a few seconds to complete.",
        }

    try:
        count = await refresh_stocks(db)
    except Exception as e:
        print(f"[Catalog] Stock refresh failed: {e!r}")
        return JSONResponse({"status": "error", "message": f"Stock refresh failed: {e}"}, status_code=500)
    return {"status": "success", "message": f"Stock refresh completed: {count} stocks processed"}
