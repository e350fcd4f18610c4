from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from threading import Lock
from typing import Any, Protocol

from supabase import Client

from mpin_auth.clock import Clock, parse_iso_datetime, to_iso, utcnow
from mpin_auth.database import rows
from mpin_auth.errors import StorageUnavailable
from mpin_auth.identity_repository import mask_phone

RETENTION = timedelta(days=90)
UNKNOWN_FINGERPRINT = "unknown"

logger = logging.getLogger("mpin_auth.ledger")


class ReasonCode(str, Enum):
    SUCCESS = "success"
    WRONG_MPIN = "wrong_mpin"
    ACCOUNT_LOCKED = "account_locked"
    FRAUD_DETECTED = "fraud_detected"
    # Written by the upstream OTP re-verification flow, never by this service.
    OTP_FAILED = "otp_failed"
    INVALID_DATA = "invalid_data"


@dataclass(frozen=True)
class AttemptRecord:
    phone: str
    ip: str
    success: bool
    reason: ReasonCode
    timestamp: datetime
    fingerprint: str = UNKNOWN_FINGERPRINT
    user_agent: str = ""
    risk_score: int = 0

    def __post_init__(self) -> None:
        if not 0 <= self.risk_score <= 100:
            raise ValueError("risk_score must be between 0 and 100.")
        if self.timestamp.tzinfo is None:
            raise ValueError("Attempt timestamps must be timezone-aware.")

    def to_row(self) -> dict[str, Any]:
        return {
            "phone": self.phone,
            "ip": self.ip,
            "fingerprint": self.fingerprint,
            "user_agent": self.user_agent,
            "success": self.success,
            "reason": self.reason.value,
            "risk_score": self.risk_score,
            "timestamp": to_iso(self.timestamp),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "AttemptRecord":
        return cls(
            phone=str(row["phone"]),
            ip=str(row["ip"]),
            fingerprint=str(row.get("fingerprint") or UNKNOWN_FINGERPRINT),
            user_agent=str(row.get("user_agent") or ""),
            success=bool(row["success"]),
            reason=ReasonCode(row.get("reason") or ReasonCode.SUCCESS.value),
            risk_score=int(row.get("risk_score") or 0),
            timestamp=parse_iso_datetime(row["timestamp"]),
        )


class AttemptStore(Protocol):
    def append(self, record: AttemptRecord) -> None: ...

    def query(self, phone: str, since: datetime, limit: int) -> list[AttemptRecord]: ...


class InMemoryAttemptStore:
    """Process-local attempt store with the same retention as the hosted table."""

    def __init__(self, clock: Clock = utcnow, retention: timedelta = RETENTION) -> None:
        self._clock = clock
        self._retention = retention
        self._records: dict[str, list[AttemptRecord]] = {}
        self._lock = Lock()

    def append(self, record: AttemptRecord) -> None:
        with self._lock:
            self._records.setdefault(record.phone, []).append(record)

    def query(self, phone: str, since: datetime, limit: int) -> list[AttemptRecord]:
        self.purge_expired()
        with self._lock:
            matching = [record for record in self._records.get(phone, []) if record.timestamp >= since]
        matching.sort(key=lambda record: record.timestamp, reverse=True)
        return matching[:limit]

    def purge_expired(self, now: datetime | None = None) -> int:
        cutoff = (now or self._clock()) - self._retention
        purged = 0
        with self._lock:
            for phone, records in list(self._records.items()):
                kept = [record for record in records if record.timestamp >= cutoff]
                purged += len(records) - len(kept)
                if kept:
                    self._records[phone] = kept
                else:
                    del self._records[phone]
        return purged


class SupabaseAttemptStore:
    """Backed by a table whose retention job deletes rows older than 90 days."""

    def __init__(self, client: Client, table_name: str) -> None:
        self.client = client
        self.table_name = table_name

    def append(self, record: AttemptRecord) -> None:
        self.client.table(self.table_name).insert(record.to_row()).execute()

    def query(self, phone: str, since: datetime, limit: int) -> list[AttemptRecord]:
        result = (
            self.client.table(self.table_name)
            .select("*")
            .eq("phone", phone)
            .gte("timestamp", to_iso(since))
            .order("timestamp", desc=True)
            .limit(limit)
            .execute()
        )
        return [AttemptRecord.from_row(row) for row in rows(result)]


class AttemptLedger:
    def __init__(self, store: AttemptStore) -> None:
        self._store = store

    def record(self, attempt: AttemptRecord) -> None:
        try:
            self._store.append(attempt)
        except Exception as exc:
            logger.error(
                "attempt_record_failed phone=%s reason=%s success=%s error=%s",
                mask_phone(attempt.phone),
                attempt.reason.value,
                attempt.success,
                type(exc).__name__,
            )

    def recent_for(self, phone: str, since: datetime, limit: int) -> list[AttemptRecord]:
        try:
            attempts = self._store.query(phone, since, limit)
        except Exception as exc:
            raise StorageUnavailable() from exc

        recent = [attempt for attempt in attempts if attempt.timestamp >= since]
        recent.sort(key=lambda attempt: attempt.timestamp, reverse=True)
        return recent[:limit]
