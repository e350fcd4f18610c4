from __future__ import annotations

import hashlib
import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable

from fastapi import HTTPException, Request

from mpin_auth.errors import InvalidInput
from mpin_auth.identity_repository import normalize_phone


@dataclass(frozen=True)
class RateLimitSettings:
    enabled: bool = True
    requests: int = 10
    window_seconds: int = 60

    def __post_init__(self) -> None:
        if self.requests <= 0:
            raise ValueError("RATE_LIMIT_REQUESTS must be greater than 0.")
        if self.window_seconds <= 0:
            raise ValueError("RATE_LIMIT_WINDOW_SECONDS must be greater than 0.")


class InMemoryRateLimiter:
    def __init__(self, settings: RateLimitSettings, clock: Callable[[], float] = time.time) -> None:
        self._settings = settings
        self._clock = clock
        self._events: dict[str, deque[float]] = defaultdict(deque)
        self._lock = Lock()
        self._next_sweep = 0.0

    def check_and_consume(self, key: str) -> tuple[bool, int]:
        now = self._clock()
        window_start = now - self._settings.window_seconds

        with self._lock:
            if now >= self._next_sweep:
                self._sweep(window_start)
                self._next_sweep = now + self._settings.window_seconds

            events = self._events[key]
            while events and events[0] <= window_start:
                events.popleft()

            if len(events) >= self._settings.requests:
                retry_after = max(
                    1,
                    math.ceil(self._settings.window_seconds - (now - events[0])),
                )
                return False, retry_after

            events.append(now)
            return True, 0

    def _sweep(self, window_start: float) -> None:
        # Keys with no event inside the window carry no state.
        stale = [key for key, events in self._events.items() if not events or events[-1] <= window_start]
        for key in stale:
            del self._events[key]


async def _resolve_phone_key(request: Request) -> str:
    try:
        body = await request.json()
    except ValueError:
        return "anonymous"
    raw_phone = body.get("phone") if isinstance(body, dict) else None
    try:
        phone = normalize_phone(raw_phone)
    except InvalidInput:
        return "anonymous"
    return "phone:" + hashlib.sha256(phone.encode("utf-8")).hexdigest()[:16]


async def enforce_auth_rate_limit(request: Request) -> None:
    settings: RateLimitSettings | None = getattr(request.app.state, "rate_limit_settings", None)
    if not settings or not settings.enabled:
        return

    rate_limiter: InMemoryRateLimiter | None = getattr(request.app.state, "rate_limiter", None)
    if rate_limiter is None:
        raise HTTPException(status_code=500, detail="Rate limiter is not configured.")

    client_ip = request.client.host if request.client else "unknown"
    limit_key = f"{client_ip}:{await _resolve_phone_key(request)}"

    allowed, retry_after = rate_limiter.check_and_consume(limit_key)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail="Too many authentication attempts. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )
