# app/services/session.py
"""
Process-wide SmartAPI session.

Two states: no session (Unauthenticated) or a token bundle from a successful
generateSession (Authenticated). Logins are serialized behind one asyncio.Lock;
callers without an explicit code that queued behind an in-flight login get that
login's outcome instead of issuing another request.
"""

from __future__ import annotations
import asyncio
import datetime as dt
from typing import Any, Callable, Dict, Optional

import pyotp
from pydantic import BaseModel

from app.errors import AuthError, AuthErrorKind
from app.services.market_hours import exchange_now
from app.services.smartapi_client import ISmartApiClient


class Session(BaseModel):
    token_bundle: Dict[str, Any]
    issued_at: dt.datetime


class AuthResult(BaseModel):
    success: bool
    message: str = ""
    kind: Optional[AuthErrorKind] = None

    @classmethod
    def ok(cls, message: str = "") -> "AuthResult":
        return cls(success=True, message=message)

    @classmethod
    def from_error(cls, err: AuthError) -> "AuthResult":
        return cls(success=False, message=err.message, kind=err.kind)


class SessionManager:
    def __init__(
        self,
        client: ISmartApiClient,
        *,
        client_id: Optional[str],
        password: Optional[str],
        totp_secret: Optional[str] = None,
        clock: Callable[[], dt.datetime] = exchange_now,
    ):
        self.client = client
        self.client_id = client_id
        self.password = password
        self.totp_secret = totp_secret
        self.clock = clock
        self._session: Optional[Session] = None
        self._lock = asyncio.Lock()
        self._attempts = 0
        self._last_result: Optional[AuthResult] = None

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None

    @property
    def last_login(self) -> Optional[dt.datetime]:
        return self._session.issued_at if self._session else None

    def invalidate(self) -> None:
        if self._session is not None:
            print("[Session] Session invalidated.")
        self._session = None

    def _generate_code(self) -> str:
        if not self.totp_secret:
            raise AuthError(AuthErrorKind.NO_CREDENTIALS, "No TOTP secret configured")
        try:
            return pyotp.TOTP(self.totp_secret).now()
        except (TypeError, ValueError) as e:
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS, f"Invalid TOTP secret: {e}") from e

    async def _submit(self, code: str) -> Dict[str, Any]:
        if not self.client_id or not self.password:
            raise AuthError(AuthErrorKind.NO_CREDENTIALS, "Client id / password missing in .env")
        try:
            data = await self.client.generate_session(self.client_id, self.password, code)
        except asyncio.TimeoutError as e:
            raise AuthError(AuthErrorKind.PROVIDER_UNAVAILABLE, "Login request timed out") from e
        except Exception as e:
            raise AuthError(AuthErrorKind.PROVIDER_UNAVAILABLE, str(e) or e.__class__.__name__) from e

        if not data or not data.get("status"):
            message = (data or {}).get("message") or "Login rejected"
            print(f"[Session] Login failed response: {data}")
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS, message)
        return data.get("data") or {}

    async def _do_login(self, code: Optional[str]) -> AuthResult:
        try:
            code = code or self._generate_code()
            print("[Session] Attempting login with TOTP ...")
            bundle = await self._submit(code)
        except AuthError as e:
            print(f"[Session] Login failed ({e.kind.value}): {e.message}")
            return AuthResult.from_error(e)

        self._session = Session(token_bundle=bundle, issued_at=self.clock())
        print("[Session] Login successful. Session updated.")
        return AuthResult.ok("Login successful")

    async def login(self, code: Optional[str] = None) -> AuthResult:
        seen = self._attempts
        async with self._lock:
            if code is None and self._attempts != seen and self._last_result is not None:
                return self._last_result
            result = await self._do_login(code)
            self._attempts += 1
            self._last_result = result
            return result

    async def ensure_authenticated(self) -> AuthResult:
        if self.is_authenticated:
            return AuthResult.ok("Already authenticated")
        if not self.totp_secret:
            return AuthResult.from_error(
                AuthError(AuthErrorKind.NO_CREDENTIALS, "Not authenticated and no TOTP secret configured")
            )
        return await self.login()
