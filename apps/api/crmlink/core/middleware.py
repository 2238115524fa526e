from __future__ import annotations

import logging
import secrets
import threading
import time
from collections import deque
from contextvars import ContextVar

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from crmlink.core.config import Settings
from crmlink.core.log import log_event
from crmlink.core.metrics import observe_http_request

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
logger = logging.getLogger("crmlink.api")


class RateLimiter:
    """Sliding one-minute window per key, kept in process memory.

    Keys with no hit inside the window are dropped, so the map only holds
    recently active clients.
    """

    def __init__(self, *, max_requests: int, window_seconds: int = 60) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._lock = threading.Lock()
        self._buckets: dict[str, deque[float]] = {}
        self._last_sweep = 0.0

    def retry_after(self, key: str, *, now_ts: float) -> int:
        """Record a hit for `key`; return 0 when allowed, else seconds until a slot frees up."""
        with self._lock:
            cutoff = now_ts - self.window_seconds
            if now_ts - self._last_sweep >= self.window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now_ts

            bucket = self._buckets.setdefault(key, deque())
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()

            if len(bucket) >= self.max_requests:
                return max(1, int(bucket[0] - cutoff) + 1)
            bucket.append(now_ts)
            return 0

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._buckets)

    def _sweep(self, cutoff: float) -> None:
        stale = [k for k, bucket in self._buckets.items() if not bucket or bucket[-1] <= cutoff]
        for k in stale:
            del self._buckets[k]


def install_request_middleware(app: FastAPI, *, settings: Settings) -> None:
    rate_limiter = (
        RateLimiter(max_requests=settings.RATE_LIMIT_REQUESTS_PER_MINUTE)
        if settings.RATE_LIMIT_REQUESTS_PER_MINUTE > 0
        else None
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):  # type: ignore[no-untyped-def]
        request_id = _request_id(request, header_name=settings.REQUEST_ID_HEADER)
        token = request_id_ctx.set(request_id)
        started = time.monotonic()
        status_code = 500
        wait = 0

        try:
            if rate_limiter is not None:
                key = _rate_limit_key(request, user_header=settings.HOST_USER_HEADER)
                wait = rate_limiter.retry_after(key, now_ts=time.time())

            if wait:
                response: Response = JSONResponse(
                    status_code=429,
                    content={"detail": "Rate limit exceeded"},
                    headers={"Retry-After": str(wait)},
                )
            else:
                response = await call_next(request)

            status_code = response.status_code
            response.headers[settings.REQUEST_ID_HEADER] = request_id
            _apply_security_headers(response, settings=settings)
            return response
        finally:
            duration_ms = int((time.monotonic() - started) * 1000)
            observe_http_request(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_ms=duration_ms,
                rate_limited=bool(wait),
            )
            log_event(
                logger,
                "http.request.completed",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_ms=duration_ms,
                rate_limited=bool(wait),
            )
            request_id_ctx.reset(token)


def _request_id(request: Request, *, header_name: str) -> str:
    incoming = (request.headers.get(header_name) or "").strip()
    if incoming:
        return incoming[:128]
    return secrets.token_urlsafe(18)


def _rate_limit_key(request: Request, *, user_header: str) -> str:
    # Per host user when known, otherwise per client address.
    user_id = (request.headers.get(user_header) or "").strip()
    if user_id:
        return f"user:{user_id}"
    forwarded_for = (request.headers.get("x-forwarded-for") or "").strip()
    if forwarded_for:
        return forwarded_for.split(",", 1)[0].strip()
    return request.client.host if request.client else "unknown"


def _apply_security_headers(response: Response, *, settings: Settings) -> None:
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Content-Security-Policy", settings.CONTENT_SECURITY_POLICY)
