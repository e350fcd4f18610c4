from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from mpin_auth.clock import Clock, utcnow
from mpin_auth.crypto import CredentialHasher, TransportDecryptor
from mpin_auth.errors import (
    AccountLocked,
    AlreadyRegistered,
    DecryptionError,
    InvalidCiphertext,
    InvalidPinFormat,
    NotFound,
    RiskBlocked,
    StorageUnavailable,
    WrongCredential,
)
from mpin_auth.identity_repository import (
    DeviceBinding,
    IdentityRecord,
    IdentityStore,
    mask_phone,
    normalize_phone,
)
from mpin_auth.keys import KeyCustodian
from mpin_auth.ledger import UNKNOWN_FINGERPRINT, AttemptLedger, AttemptRecord, ReasonCode
from mpin_auth.lockout import KeyedLocks, LockoutPolicy, LockoutState
from mpin_auth.risk_engine import RiskAction, RiskAssessment, RiskScorer
from mpin_auth.sessions import SessionClaims, SessionIssuer

MPIN_PATTERN = re.compile(r"[0-9]{4}|[0-9]{6}")
MAX_CAS_RETRIES = 5
UNKNOWN_IP = "unknown"

logger = logging.getLogger("mpin_auth.credential_engine")


@dataclass(frozen=True)
class RegistrationResult:
    token: str
    identity: IdentityRecord


@dataclass(frozen=True)
class LoginResult:
    token: str
    identity: IdentityRecord
    risk: RiskAssessment


def _lockout_state(record: IdentityRecord) -> LockoutState:
    return LockoutState(failures=record.failed_attempts, locked_until=record.locked_until)


def _bind_device(
    devices: tuple[DeviceBinding, ...],
    fingerprint: str,
    user_agent: str,
    now: datetime,
) -> tuple[DeviceBinding, ...]:
    bound: list[DeviceBinding] = []
    seen = False
    for device in devices:
        if device.fingerprint == fingerprint:
            seen = True
            device = DeviceBinding(
                fingerprint=device.fingerprint,
                user_agent=user_agent or device.user_agent,
                last_used=now,
                trusted=device.trusted,
            )
        bound.append(device)
    if not seen:
        bound.append(DeviceBinding(fingerprint=fingerprint, user_agent=user_agent, last_used=now, trusted=True))
    return tuple(bound)


class CredentialEngine:
    """Answers register and login requests for phone + MPIN identities.

    Login order is fixed: lockout gate, risk gate, decrypt, verify. Every
    login outcome after the identity lookup leaves exactly one entry in the
    attempt ledger before the verdict is returned.
    """

    def __init__(
        self,
        *,
        custodian: KeyCustodian,
        identities: IdentityStore,
        ledger: AttemptLedger,
        scorer: RiskScorer,
        sessions: SessionIssuer,
        decryptor: TransportDecryptor | None = None,
        hasher: CredentialHasher | None = None,
        lockout_policy: LockoutPolicy | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._custodian = custodian
        self._identities = identities
        self._ledger = ledger
        self._scorer = scorer
        self._sessions = sessions
        self._decryptor = decryptor or TransportDecryptor(custodian)
        self._hasher = hasher or CredentialHasher()
        self._policy = lockout_policy or LockoutPolicy()
        self._clock = clock
        self._locks = KeyedLocks()

    def public_key(self) -> bytes:
        return self._custodian.public_key()

    @property
    def session_ttl(self) -> timedelta:
        return self._sessions.ttl

    def verify_session(self, token: str) -> SessionClaims | None:
        return self._sessions.verify(token)

    def register(
        self,
        phone: str,
        encrypted_pin: str,
        fingerprint: str | None = None,
        ip: str = UNKNOWN_IP,
        user_agent: str = "",
    ) -> RegistrationResult:
        phone = normalize_phone(phone)
        with self._locks.for_key(phone):
            if self._identities.get(phone) is not None:
                raise AlreadyRegistered()

            pin = self._decrypt(encrypted_pin)
            if not MPIN_PATTERN.fullmatch(pin):
                raise InvalidPinFormat()

            now = self._clock()
            salt = self._hasher.new_salt()
            digest = self._hasher.hash(pin, salt)
            del pin

            devices: tuple[DeviceBinding, ...] = ()
            if fingerprint:
                devices = (DeviceBinding(fingerprint=fingerprint, user_agent=user_agent, last_used=now),)

            identity = self._identities.create(
                IdentityRecord(
                    phone=phone,
                    mpin_hash=digest,
                    mpin_salt=salt,
                    created_at=now,
                    devices=devices,
                )
            )
            token = self._sessions.issue(identity.id, phone, now)
            self._ledger.record(
                AttemptRecord(
                    phone=phone,
                    ip=ip,
                    fingerprint=fingerprint or UNKNOWN_FINGERPRINT,
                    user_agent=user_agent,
                    success=True,
                    reason=ReasonCode.SUCCESS,
                    risk_score=0,
                    timestamp=now,
                )
            )
            logger.info("identity_registered phone=%s device_bound=%s", mask_phone(phone), bool(devices))
            return RegistrationResult(token=token, identity=identity)

    def login(
        self,
        phone: str,
        encrypted_pin: str,
        ip: str = UNKNOWN_IP,
        fingerprint: str | None = None,
        user_agent: str = "",
    ) -> LoginResult:
        phone = normalize_phone(phone)
        device = fingerprint or UNKNOWN_FINGERPRINT

        def record_attempt(success: bool, reason: ReasonCode, risk_score: int, at: datetime) -> None:
            self._ledger.record(
                AttemptRecord(
                    phone=phone,
                    ip=ip,
                    fingerprint=device,
                    user_agent=user_agent,
                    success=success,
                    reason=reason,
                    risk_score=risk_score,
                    timestamp=at,
                )
            )

        with self._locks.for_key(phone):
            identity = self._identities.get(phone)
            if identity is None:
                raise NotFound()

            now = self._clock()
            state = _lockout_state(identity)
            if state.is_locked(now):
                record_attempt(False, ReasonCode.ACCOUNT_LOCKED, 0, now)
                logger.info("login_rejected_locked phone=%s locked_until=%s", mask_phone(phone), state.locked_until)
                raise AccountLocked(state.locked_until)  # type: ignore[arg-type]

            risk = self._scorer.score(phone, ip, device, now)
            if risk.action is RiskAction.BLOCK:
                record_attempt(False, ReasonCode.FRAUD_DETECTED, risk.score, now)
                logger.warning(
                    "login_blocked phone=%s score=%s flags=%s",
                    mask_phone(phone),
                    risk.score,
                    ",".join(risk.flag_names),
                )
                raise RiskBlocked(risk.flag_names, risk.score)
            if risk.action is RiskAction.WARN:
                logger.warning(
                    "login_risk_warning phone=%s score=%s flags=%s",
                    mask_phone(phone),
                    risk.score,
                    ",".join(risk.flag_names),
                )

            try:
                pin = self._decryptor.decrypt(encrypted_pin)
            except DecryptionError:
                record_attempt(False, ReasonCode.INVALID_DATA, risk.score, now)
                raise InvalidCiphertext() from None

            matched = self._hasher.verify(pin, identity.mpin_hash, identity.mpin_salt)
            del pin

            if not matched:
                identity = self._transition(
                    identity,
                    lambda current: self._failure_updates(current, now),
                )
                remaining = _lockout_state(identity).attempts_remaining(now, self._policy)
                record_attempt(False, ReasonCode.WRONG_MPIN, risk.score, now)
                logger.info("login_wrong_mpin phone=%s attempts_remaining=%s", mask_phone(phone), remaining)
                raise WrongCredential(remaining)

            identity = self._transition(
                identity,
                lambda current: self._success_updates(current, fingerprint, user_agent, now),
            )
            token = self._sessions.issue(identity.id, phone, now)
            record_attempt(True, ReasonCode.SUCCESS, risk.score, now)
            logger.info(
                "login_succeeded phone=%s score=%s action=%s",
                mask_phone(phone),
                risk.score,
                risk.action.value,
            )
            return LoginResult(token=token, identity=identity, risk=risk)

    def _decrypt(self, encrypted_pin: str) -> str:
        try:
            return self._decryptor.decrypt(encrypted_pin)
        except DecryptionError:
            raise InvalidCiphertext() from None

    def _failure_updates(self, current: IdentityRecord, now: datetime) -> dict[str, Any]:
        next_state = _lockout_state(current).on_failure(now, self._policy)
        return {"failed_attempts": next_state.failures, "locked_until": next_state.locked_until}

    @staticmethod
    def _success_updates(
        current: IdentityRecord,
        fingerprint: str | None,
        user_agent: str,
        now: datetime,
    ) -> dict[str, Any]:
        next_state = _lockout_state(current).on_success()
        updates: dict[str, Any] = {
            "failed_attempts": next_state.failures,
            "locked_until": next_state.locked_until,
            "last_login": now,
        }
        if fingerprint:
            updates["devices"] = _bind_device(current.devices, fingerprint, user_agent, now)
        return updates

    def _transition(
        self,
        identity: IdentityRecord,
        build_updates: Callable[[IdentityRecord], dict[str, Any]],
    ) -> IdentityRecord:
        current = identity
        for _ in range(MAX_CAS_RETRIES):
            swapped = self._identities.compare_and_swap(current.phone, current.version, build_updates(current))
            if swapped is not None:
                return swapped
            reloaded = self._identities.get(current.phone)
            if reloaded is None:
                raise NotFound()
            current = reloaded
        logger.error("identity_update_conflict phone=%s retries=%s", mask_phone(identity.phone), MAX_CAS_RETRIES)
        raise StorageUnavailable()
