from __future__ import annotations

import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock

DEFAULT_MAX_FAILURES = 5
DEFAULT_LOCK_DURATION = timedelta(minutes=30)


@dataclass(frozen=True)
class LockoutPolicy:
    max_failures: int = DEFAULT_MAX_FAILURES
    lock_duration: timedelta = DEFAULT_LOCK_DURATION

    def __post_init__(self) -> None:
        if self.max_failures <= 0:
            raise ValueError("LOCKOUT_MAX_FAILURES must be greater than 0.")
        if self.lock_duration <= timedelta(0):
            raise ValueError("LOCKOUT_DURATION_MINUTES must be greater than 0.")


@dataclass(frozen=True)
class LockoutState:
    """Either ``Unlocked(failures)`` or ``Locked(until)``.

    ``locked_until`` set means locked; while locked ``failures`` is always 0
    because reaching the threshold resets the counter and sets the expiry in
    the same transition.
    """

    failures: int = 0
    locked_until: datetime | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def check(self, now: datetime) -> "LockoutState":
        if self.locked_until is not None and now >= self.locked_until:
            return LockoutState()
        return self

    def on_failure(self, now: datetime, policy: LockoutPolicy) -> "LockoutState":
        current = self.check(now)
        if current.is_locked(now):
            return current
        failures = current.failures + 1
        if failures >= policy.max_failures:
            return LockoutState(failures=0, locked_until=now + policy.lock_duration)
        return LockoutState(failures=failures)

    def on_success(self) -> "LockoutState":
        return LockoutState()

    def attempts_remaining(self, now: datetime, policy: LockoutPolicy) -> int:
        if self.is_locked(now):
            return 0
        return policy.max_failures - self.check(now).failures


class IdentityLock:
    __slots__ = ("_lock", "__weakref__")

    def __init__(self) -> None:
        self._lock = Lock()

    def __enter__(self) -> "IdentityLock":
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()


class KeyedLocks:
    """Hands out one lock per identity; unused locks are garbage collected."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: "weakref.WeakValueDictionary[str, IdentityLock]" = weakref.WeakValueDictionary()

    def for_key(self, key: str) -> IdentityLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = IdentityLock()
                self._locks[key] = lock
            return lock
