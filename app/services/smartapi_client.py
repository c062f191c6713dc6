# app/services/smartapi_client.py
from __future__ import annotations
import asyncio
from typing import Any, Dict, List, Optional

from SmartApi import SmartConnect

from app.settings import settings

# errorcode / message fragments the provider uses for a dead session
TOKEN_EXPIRED_CODES = {"AG8001"}
TOKEN_EXPIRED_PHRASES = ("Token expired", "Invalid Token")


def is_expiry_signal(payload: Any) -> bool:
    """
    True when a provider response (dict) or exception/message says the
    session token is no longer accepted.
    """
    if isinstance(payload, dict):
        if str(payload.get("errorcode") or "") in TOKEN_EXPIRED_CODES:
            return True
        message = str(payload.get("message") or "")
    else:
        message = str(payload or "")
    return any(p.lower() in message.lower() for p in TOKEN_EXPIRED_PHRASES)


class ISmartApiClient:
    async def generate_session(self, client_id: str, password: str, totp: str) -> Dict[str, Any]: ...
    async def market_data(self, mode: str, exchange_tokens: Dict[str, List[str]]) -> Dict[str, Any]: ...


class RealSmartApiClient(ISmartApiClient):
    """
    Async facade over the blocking SmartConnect SDK. Each call runs in a
    worker thread and is bounded by `timeout` seconds.
    """

    def __init__(self, api_key: Optional[str], timeout: float = 20.0):
        self.timeout = timeout
        self.smart = SmartConnect(api_key=api_key, timeout=int(timeout))

    async def _call(self, fn, *args):
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.timeout)

    async def generate_session(self, client_id: str, password: str, totp: str) -> Dict[str, Any]:
        # on success the SDK also stores the jwt on self.smart for later calls
        return await self._call(self.smart.generateSession, client_id, password, totp)

    async def market_data(self, mode: str, exchange_tokens: Dict[str, List[str]]) -> Dict[str, Any]:
        return await self._call(self.smart.getMarketData, mode, exchange_tokens)


def build_smartapi_client(api_key: Optional[str] = None) -> ISmartApiClient:
    return RealSmartApiClient(api_key or settings.angel_api_key, timeout=settings.smartapi_timeout)
