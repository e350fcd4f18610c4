from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from threading import Lock
from typing import Any, Protocol

from supabase import Client

from mpin_auth.clock import parse_iso_datetime, parse_optional_datetime, to_iso
from mpin_auth.database import single_row
from mpin_auth.errors import AlreadyRegistered, InvalidInput, StorageUnavailable

PHONE_MIN_DIGITS = 10
PHONE_MAX_DIGITS = 15
_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw_phone: object) -> str:
    if not isinstance(raw_phone, str):
        raise InvalidInput("Phone number is required.")
    digits = _NON_DIGITS.sub("", raw_phone)
    if not PHONE_MIN_DIGITS <= len(digits) <= PHONE_MAX_DIGITS:
        raise InvalidInput("Invalid phone number format.")
    return digits


def mask_phone(phone: str) -> str:
    normalized = phone.strip()
    if len(normalized) <= 4:
        return normalized
    return f"{'*' * (len(normalized) - 4)}{normalized[-4:]}"


@dataclass(frozen=True)
class DeviceBinding:
    fingerprint: str
    user_agent: str
    last_used: datetime
    trusted: bool = True

    def to_row(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "user_agent": self.user_agent,
            "last_used": to_iso(self.last_used),
            "trusted": self.trusted,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "DeviceBinding":
        return cls(
            fingerprint=str(row["fingerprint"]),
            user_agent=str(row.get("user_agent") or ""),
            last_used=parse_iso_datetime(row["last_used"]),
            trusted=bool(row.get("trusted", True)),
        )


@dataclass(frozen=True)
class IdentityRecord:
    phone: str
    mpin_hash: str
    mpin_salt: str
    created_at: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    devices: tuple[DeviceBinding, ...] = ()
    failed_attempts: int = 0
    locked_until: datetime | None = None
    last_login: datetime | None = None
    version: int = 0

    def find_device(self, fingerprint: str) -> DeviceBinding | None:
        for device in self.devices:
            if device.fingerprint == fingerprint:
                return device
        return None

    def public_view(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "phone": self.phone,
            "devices": [device.to_row() for device in self.devices],
            "failedAttempts": self.failed_attempts,
            "lockedUntil": to_iso(self.locked_until),
            "createdAt": to_iso(self.created_at),
            "lastLogin": to_iso(self.last_login),
        }

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "phone": self.phone,
            "mpin_hash": self.mpin_hash,
            "mpin_salt": self.mpin_salt,
            "devices": [device.to_row() for device in self.devices],
            "failed_attempts": self.failed_attempts,
            "locked_until": to_iso(self.locked_until),
            "created_at": to_iso(self.created_at),
            "last_login": to_iso(self.last_login),
            "version": self.version,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "IdentityRecord":
        return cls(
            id=str(row["id"]),
            phone=str(row["phone"]),
            mpin_hash=str(row["mpin_hash"]),
            mpin_salt=str(row["mpin_salt"]),
            devices=tuple(DeviceBinding.from_row(device) for device in row.get("devices") or []),
            failed_attempts=int(row.get("failed_attempts") or 0),
            locked_until=parse_optional_datetime(row.get("locked_until")),
            created_at=parse_iso_datetime(row["created_at"]),
            last_login=parse_optional_datetime(row.get("last_login")),
            version=int(row.get("version") or 0),
        )


def _updates_to_row(updates: dict[str, Any]) -> dict[str, Any]:
    row: dict[str, Any] = {}
    for key, value in updates.items():
        if key == "devices":
            row[key] = [device.to_row() for device in value]
        elif isinstance(value, datetime):
            row[key] = to_iso(value)
        else:
            row[key] = value
    return row


def _record_from_row(row: dict[str, Any] | None) -> IdentityRecord | None:
    if not row:
        return None
    try:
        return IdentityRecord.from_row(row)
    except (KeyError, TypeError, ValueError) as exc:
        raise StorageUnavailable("Stored identity record is malformed.") from exc


class IdentityStore(Protocol):
    def get(self, phone: str) -> IdentityRecord | None: ...

    def create(self, record: IdentityRecord) -> IdentityRecord: ...

    def compare_and_swap(
        self,
        phone: str,
        expected_version: int,
        updates: dict[str, Any],
    ) -> IdentityRecord | None: ...


class InMemoryIdentityStore:
    def __init__(self) -> None:
        self._records: dict[str, IdentityRecord] = {}
        self._lock = Lock()

    def get(self, phone: str) -> IdentityRecord | None:
        with self._lock:
            return self._records.get(phone)

    def create(self, record: IdentityRecord) -> IdentityRecord:
        with self._lock:
            if record.phone in self._records:
                raise AlreadyRegistered()
            self._records[record.phone] = record
            return record

    def compare_and_swap(
        self,
        phone: str,
        expected_version: int,
        updates: dict[str, Any],
    ) -> IdentityRecord | None:
        with self._lock:
            current = self._records.get(phone)
            if current is None or current.version != expected_version:
                return None
            updated = replace(current, **updates, version=current.version + 1)
            self._records[phone] = updated
            return updated


class SupabaseIdentityStore:
    def __init__(self, client: Client, table_name: str) -> None:
        self.client = client
        self.table_name = table_name

    def get(self, phone: str) -> IdentityRecord | None:
        try:
            result = self.client.table(self.table_name).select("*").eq("phone", phone).limit(1).execute()
        except Exception as exc:
            raise StorageUnavailable() from exc
        return _record_from_row(single_row(result))

    def create(self, record: IdentityRecord) -> IdentityRecord:
        if self.get(record.phone) is not None:
            raise AlreadyRegistered()
        try:
            result = self.client.table(self.table_name).insert(record.to_row()).execute()
        except Exception as exc:
            # Unique-violation on phone means another request registered first.
            if "23505" in str(exc) or "duplicate" in str(exc).lower():
                raise AlreadyRegistered() from exc
            raise StorageUnavailable() from exc
        created = _record_from_row(single_row(result))
        if created is None:
            raise StorageUnavailable("Identity creation returned no data.")
        return created

    def compare_and_swap(
        self,
        phone: str,
        expected_version: int,
        updates: dict[str, Any],
    ) -> IdentityRecord | None:
        patch_payload = _updates_to_row(updates)
        patch_payload["version"] = expected_version + 1
        try:
            result = (
                self.client.table(self.table_name)
                .update(patch_payload)
                .eq("phone", phone)
                .eq("version", expected_version)
                .execute()
            )
        except Exception as exc:
            raise StorageUnavailable() from exc
        return _record_from_row(single_row(result))
