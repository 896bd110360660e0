"""Client address resolution and per-client rate limiting."""

from __future__ import annotations

import logging
import math
import threading
import time
from typing import Awaitable, Callable, Mapping

from aiohttp import web

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

_CF_HEADER = "cf-connecting-ip"
_XFF_HEADER = "x-forwarded-for"


def _header(headers: Mapping[str, str], name: str) -> str | None:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def _visible_ascii(value: str) -> bool:
    return all(ch == "\t" or 32 <= ord(ch) <= 126 for ch in value)


def resolve_client_ip(
    headers: Mapping[str, str], peer: str | None
) -> tuple[str | None, str]:
    """Pick the client address and where it came from.

    Priority: CF-Connecting-IP, then the first X-Forwarded-For entry, then the
    socket peer. Returns ``(None, "unknown")`` when nothing is available.
    """
    cf = _header(headers, _CF_HEADER)
    if cf is not None and _visible_ascii(cf):
        return cf.strip(), "cf-connecting-ip"

    xff = _header(headers, _XFF_HEADER)
    if xff is not None and _visible_ascii(xff):
        first = xff.split(",", 1)[0].strip()
        if first:
            return first, "x-forwarded-for"

    if peer:
        return peer, "socket"
    return None, "unknown"


@web.middleware
async def client_ip_middleware(
    request: web.Request, handler: Handler
) -> web.StreamResponse:
    """Record the client address and add X-Forwarded-For when it came from the socket."""
    ip, source = resolve_client_ip(request.headers, request.remote)
    if ip is None:
        logger.debug("client_ip_source=unavailable")
    else:
        logger.debug("client_ip_source=%s ip=%s", source, ip)

    if source == "socket" and ip is not None:
        headers = request.headers.copy()
        headers["X-Forwarded-For"] = ip
        request = request.clone(headers=headers)
    request["client_ip"] = ip
    return await handler(request)


class RateLimiter:
    """Per-key token bucket: ``burst`` tokens, one restored every ``interval`` seconds."""

    def __init__(
        self,
        interval: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval <= 0:
            raise ValueError("rate limiter interval must be positive")
        if burst <= 0:
            raise ValueError("rate limiter burst must be positive")
        self.interval = float(interval)
        self.burst = int(burst)
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[str, tuple[float, float]] = {}

    def _check(self, key: str) -> float:
        """Take a token for ``key``; return 0 if granted, else seconds to wait."""
        with self._lock:
            now = self._clock()
            tokens, last = self._buckets.get(key, (float(self.burst), now))
            tokens = min(float(self.burst), tokens + (now - last) / self.interval)
            if tokens >= 1.0:
                self._buckets[key] = (tokens - 1.0, now)
                return 0.0
            self._buckets[key] = (tokens, now)
            return (1.0 - tokens) * self.interval

    def allow(self, key: str) -> bool:
        """Whether a request from ``key`` may proceed now."""
        return self._check(key) == 0.0


def rate_limit_middleware(limiter: RateLimiter):
    """Build a middleware that answers 429 once a client exceeds ``limiter``."""

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        key = request.get("client_ip")
        if key is None:
            key, _ = resolve_client_ip(request.headers, request.remote)
        if key is None:
            return web.Response(status=500, text="Couldn't find the IP address")
        wait = limiter._check(key)
        if wait > 0.0:
            seconds = max(1, math.ceil(wait))
            return web.Response(
                status=429,
                text=f"Too Many Requests! Wait for {seconds}s",
                headers={"retry-after": str(seconds), "x-ratelimit-after": str(seconds)},
            )
        return await handler(request)

    return middleware