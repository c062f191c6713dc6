# app/schemas.py
from __future__ import annotations
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel


class Exchange(str, Enum):
    NSE = "NSE"
    BSE = "BSE"


class SyncMode(str, Enum):
    CMP = "cmp"
    LCP = "lcp"


class CycleState(str, Enum):
    SKIPPED = "skipped"
    AUTH_FAILED = "auth_failed"
    FAILED = "failed"
    DONE = "done"


class QuoteRecord(BaseModel):
    """One entry of the provider's `fetched` list, normalized."""
    trading_symbol: str
    symbol_token: str
    exchange: Exchange
    last_traded_price: Optional[float] = None
    previous_close: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    open: Optional[float] = None


class WriteSummary(BaseModel):
    batches: int = 0
    failed_batches: int = 0
    rows_written: int = 0


class CycleResult(BaseModel):
    mode: SyncMode
    state: CycleState
    message: str = ""
    expected: int = 0
    fetched: int = 0
    written: int = 0
    failed_batches: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class LoginReq(BaseModel):
    totp: Optional[str] = None
