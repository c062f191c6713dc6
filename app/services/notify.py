# app/services/notify.py
"""
Status pings to the portfolio backend. Fire-and-forget: a failed POST is
logged and never raised.
"""

from __future__ import annotations
from typing import Callable, Optional

import httpx

from app.services.market_hours import format_exchange_time

SOURCE = "angel-one-backend"


class StatusNotifier:
    def __init__(
        self,
        base_url: Optional[str],
        *,
        timeout: float = 10.0,
        is_authenticated: Callable[[], bool] = lambda: False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = f"{base_url.rstrip('/')}/api/angel-one-status" if base_url else None
        self.timeout = timeout
        self.is_authenticated = is_authenticated
        self.transport = transport

    async def notify(self, success: bool, message: str) -> bool:
        if not self.url:
            return False
        payload = {
            "source": SOURCE,
            "success": success,
            "message": message,
            "timestamp": format_exchange_time(),
            "authenticated": self.is_authenticated(),
        }
        print(f"[Notify] Sending {'SUCCESS' if success else 'FAILURE'} to portfolio backend")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(self.url, json=payload)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            print(f"[Notify] Failed to notify portfolio backend: {e!r}")
            return False
        return True
