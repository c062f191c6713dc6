# app/services/fetcher.py
"""
Chunked quote fetch.

getMarketData takes at most 50 tokens of a single exchange per request, so
each exchange's token list is cut into ordered chunks and requested
concurrently. A failing chunk only loses its own tokens; the caller gets
whatever the other chunks returned.
"""

from __future__ import annotations
import asyncio
from typing import Dict, List, Optional, Sequence, TypeVar

from app.errors import FetchChunkError, FetchErrorKind
from app.schemas import Exchange, QuoteRecord
from app.services.mappers import map_quotes
from app.services.session import SessionManager
from app.services.smartapi_client import ISmartApiClient, is_expiry_signal

CHUNK_SIZE = 50
QUOTE_MODE = "FULL"

T = TypeVar("T")


def chunk(seq: Sequence[T], size: int) -> List[List[T]]:
    if size < 1:
        raise ValueError("chunk size must be positive")
    return [list(seq[i:i + size]) for i in range(0, len(seq), size)]


async def _request_chunk(
    client: ISmartApiClient,
    exchange: str,
    tokens: List[str],
    mode: str,
) -> List[QuoteRecord]:
    try:
        response = await client.market_data(mode, {exchange: tokens})
    except asyncio.TimeoutError as e:
        raise FetchChunkError(FetchErrorKind.TIMEOUT, f"{exchange} chunk timed out") from e
    except Exception as e:
        raise FetchChunkError(FetchErrorKind.PROVIDER_ERROR, str(e) or e.__class__.__name__) from e

    data = (response or {}).get("data") or {}
    if not (response or {}).get("status") or data.get("fetched") is None:
        raise FetchChunkError(
            FetchErrorKind.PROVIDER_ERROR,
            (response or {}).get("message") or "Unknown error",
            error_code=(response or {}).get("errorcode") or None,
        )
    return map_quotes(data["fetched"])


async def fetch_quotes(
    client: ISmartApiClient,
    by_exchange: Dict[str, List[str]],
    *,
    session: Optional[SessionManager] = None,
    chunk_size: int = CHUNK_SIZE,
    concurrency: int = 5,
    mode: str = QUOTE_MODE,
) -> List[QuoteRecord]:
    sem = asyncio.Semaphore(max(concurrency, 1))
    jobs = [
        (exch, tokens)
        for exch, all_tokens in by_exchange.items()
        for tokens in chunk(all_tokens, chunk_size)
    ]

    async def run(exch: str, tokens: List[str]) -> List[QuoteRecord]:
        async with sem:
            try:
                return await _request_chunk(client, exch, tokens, mode)
            except FetchChunkError as e:
                print(f"[Fetcher] {e.kind.value} for {exch} chunk of {len(tokens)}: {e.message}")
                if session is not None and (
                    is_expiry_signal({"errorcode": e.error_code, "message": e.message})
                ):
                    session.invalidate()
                return []

    # one result list per chunk; merged in issue order once every chunk is done
    results = await asyncio.gather(*(run(exch, tokens) for exch, tokens in jobs))
    out: List[QuoteRecord] = []
    for part in results:
        out.extend(part)
    return out


async def fetch_single_quote(
    client: ISmartApiClient,
    exchange: Exchange,
    symbol_token: str,
    *,
    mode: str = QUOTE_MODE,
) -> QuoteRecord:
    quotes = await _request_chunk(client, exchange.value, [symbol_token], mode)
    if not quotes:
        raise FetchChunkError(FetchErrorKind.PROVIDER_ERROR, f"No quote returned for {exchange.value}:{symbol_token}")
    return quotes[0]
