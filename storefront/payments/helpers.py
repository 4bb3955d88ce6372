"""Helpers shared by the Stripe and Square adapters."""
from __future__ import annotations

import base64
import hashlib
import hmac
import threading
from typing import Any, Callable, Generic, Iterable, Optional, TypeVar

from ..logger import ErrorCode, log_debug, log_error
from .base import PaymentSession, PaymentSessionListResult

T = TypeVar("T")
C = TypeVar("C")


def sanitize_error_detail(err: BaseException) -> str:
    """Loggable summary of a provider error: status, code and type only.

    Raw messages can carry customer data or credentials, so they are never
    logged.
    """
    parts = []
    status = (
        getattr(err, "http_status", None)
        or getattr(err, "status_code", None)
        or getattr(getattr(err, "response", None), "status_code", None)
    )
    if status:
        parts.append(f"status={status}")
    code = getattr(err, "code", None)
    if isinstance(code, str) and code:
        parts.append(f"code={code}")
    err_type = getattr(getattr(err, "error", None), "type", None)
    if isinstance(err_type, str) and err_type:
        parts.append(f"type={err_type}")
    return " ".join(parts) if parts else type(err).__name__


def get_field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from an SDK object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict) and not hasattr(obj, name):
        return obj.get(name, default)
    return getattr(obj, name, default)


def safe_call(fn: Callable[[], T], error_code: ErrorCode) -> Optional[T]:
    """Run a provider call; log and return None if it raises."""
    try:
        return fn()
    except Exception as e:
        log_error(error_code, sanitize_error_detail(e))
        return None


class ClientCache(Generic[C]):
    """Process-wide provider client, rebuilt when the credential changes."""

    def __init__(self, name: str, factory: Callable[[str], C]):
        self._name = name
        self._factory = factory
        self._lock = threading.Lock()
        self._credential: Optional[str] = None
        self._client: Optional[C] = None

    def get(self, credential: str) -> Optional[C]:
        if not credential:
            log_debug(self._name, "No credential configured, cannot create client")
            return None
        with self._lock:
            if self._client is not None and self._credential == credential:
                return self._client
            log_debug(self._name, "Creating new client")
            self._client = self._factory(credential)
            self._credential = credential
            return self._client

    def reset(self) -> None:
        with self._lock:
            self._client = None
            self._credential = None


def to_session_list_result(
    items: Optional[Iterable[T]],
    has_more: bool,
    map_fn: Callable[[T], PaymentSession],
    next_cursor: Optional[str] = None,
) -> PaymentSessionListResult:
    if items is None:
        return PaymentSessionListResult(sessions=[], has_more=False)
    sessions = [map_fn(i) for i in items]
    if has_more and next_cursor is None and sessions:
        next_cursor = sessions[-1].id
    return PaymentSessionListResult(
        sessions=sessions,
        has_more=has_more,
        next_cursor=next_cursor if has_more else None,
    )


def compute_hmac_sha256(data: str, secret: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).digest()


def hmac_to_hex(digest: bytes) -> str:
    return digest.hex()


def hmac_to_base64(digest: bytes) -> str:
    return base64.b64encode(digest).decode("ascii")


def secure_compare(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
