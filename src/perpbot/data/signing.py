"""
Authenticated request building for the futures REST API.

A ``PendingRequest`` keeps the caller's parameters for the whole retry sequence;
``RequestSigner.prepare`` turns it into wire form for one attempt, so every attempt
carries a fresh timestamp and signature.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
import hashlib
import hmac
import time
from typing import Any
from urllib.parse import quote, urlencode

from perpbot.config.constants import API_KEY_HEADER, RECV_WINDOW_MS


class AuthMode(Enum):
    """How a request is authenticated."""

    PUBLIC = "public"
    API_KEY = "api_key"  # header only, e.g. listen key endpoints
    SIGNED = "signed"


@dataclass
class PendingRequest:
    """Retry context of one logical call; lives only for the retry sequence."""

    method: str
    path: str
    params: dict[str, Any] = field(default_factory=dict)
    auth: AuthMode = AuthMode.SIGNED
    attempt: int = 0
    url: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None


def _canonical(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_query(params: dict[str, Any]) -> str:
    """Sort keys and RFC 3986 encode, so the signed string is deterministic."""
    items = [(key, _canonical(value)) for key, value in sorted(params.items()) if value is not None]
    return urlencode(items, quote_via=quote)


def sign(secret: str, payload: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


class RequestSigner:
    """Prepares wire-ready URL, headers and body for each attempt of a request."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str,
        recv_window: int = RECV_WINDOW_MS,
        clock: Callable[[], float] = time.time,
    ):
        self._api_key = api_key
        self._api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.recv_window = recv_window
        self._clock = clock

    def timestamp_ms(self) -> int:
        return int(self._clock() * 1000)

    def prepare(self, request: PendingRequest) -> PendingRequest:
        """Fill ``url``, ``headers`` and ``body`` of ``request`` for the next attempt."""
        method = request.method.upper()
        params = dict(request.params)
        headers: dict[str, str] = {}

        if request.auth is not AuthMode.PUBLIC:
            headers[API_KEY_HEADER] = self._api_key

        if request.auth is AuthMode.SIGNED:
            params["timestamp"] = self.timestamp_ms()
            params["recvWindow"] = self.recv_window
            query = build_query(params)
            query = f"{query}&signature={sign(self._api_secret, query)}"
        else:
            query = build_query(params)

        url = f"{self.base_url}{request.path}"
        body = None
        if method in ("POST", "PUT"):
            headers["Content-Type"] = "application/x-www-form-urlencoded"
            body = query
        elif query:
            url = f"{url}?{query}"

        request.url = url
        request.headers = headers
        request.body = body
        return request
