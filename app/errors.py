# app/errors.py
from __future__ import annotations
from enum import Enum
from typing import Optional


class AuthErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    NO_CREDENTIALS = "no_credentials"
    PROVIDER_UNAVAILABLE = "provider_unavailable"


class FetchErrorKind(str, Enum):
    TIMEOUT = "timeout"
    PROVIDER_ERROR = "provider_error"


class WriteErrorKind(str, Enum):
    CONFLICT_RESOLUTION_FAILURE = "conflict_resolution_failure"
    STORE_UNAVAILABLE = "store_unavailable"


class AuthError(Exception):
    def __init__(self, kind: AuthErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


class FetchChunkError(Exception):
    def __init__(self, kind: FetchErrorKind, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.error_code = error_code


class WriteBatchError(Exception):
    def __init__(self, kind: WriteErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message
