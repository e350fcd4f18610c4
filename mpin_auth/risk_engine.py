from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from mpin_auth.identity_repository import mask_phone
from mpin_auth.ledger import AttemptLedger

HISTORY_WINDOW = timedelta(days=30)
HISTORY_LIMIT = 50
RAPID_WINDOW = timedelta(minutes=5)
RAPID_ATTEMPT_LIMIT = 3
UNUSUAL_HOUR_START = 2
UNUSUAL_HOUR_END = 5
MAX_SCORE = 100

logger = logging.getLogger("mpin_auth.risk_engine")


class RiskFlag(str, Enum):
    FIRST_LOGIN = "first_login"
    NEW_IP = "new_ip"
    NEW_DEVICE = "new_device"
    RAPID_ATTEMPTS = "rapid_attempts"
    HIGH_FAILURE_RATE = "high_failure_rate"
    UNUSUAL_HOUR = "unusual_hour"
    DETECTION_ERROR = "detection_error"


class RiskAction(str, Enum):
    ALLOW = "allow"
    WARN = "warn"
    BLOCK = "block"


FLAG_POINTS: dict[RiskFlag, int] = {
    RiskFlag.FIRST_LOGIN: 5,
    RiskFlag.NEW_IP: 20,
    RiskFlag.NEW_DEVICE: 25,
    RiskFlag.RAPID_ATTEMPTS: 30,
    RiskFlag.HIGH_FAILURE_RATE: 15,
    RiskFlag.UNUSUAL_HOUR: 10,
}


@dataclass(frozen=True)
class RiskThresholds:
    allow_max: int = 30
    warn_max: int = 60

    def __post_init__(self) -> None:
        if not 0 <= self.allow_max <= MAX_SCORE:
            raise ValueError("RISK_ALLOW_MAX must be between 0 and 100.")
        if not 0 <= self.warn_max <= MAX_SCORE:
            raise ValueError("RISK_WARN_MAX must be between 0 and 100.")
        if self.allow_max >= self.warn_max:
            raise ValueError("RISK_ALLOW_MAX must be less than RISK_WARN_MAX.")


@dataclass(frozen=True)
class RiskAssessment:
    score: int
    flags: frozenset[RiskFlag]
    action: RiskAction

    @property
    def flag_names(self) -> list[str]:
        return sorted(flag.value for flag in self.flags)


DETECTION_FALLBACK = RiskAssessment(
    score=10,
    flags=frozenset({RiskFlag.DETECTION_ERROR}),
    action=RiskAction.ALLOW,
)


def evaluate_action(score: int, thresholds: RiskThresholds) -> RiskAction:
    if score <= thresholds.allow_max:
        return RiskAction.ALLOW
    if score <= thresholds.warn_max:
        return RiskAction.WARN
    return RiskAction.BLOCK


class RiskScorer:
    """Additive point model over an identity's recent login history.

    Each rule fires at most once per call and the result depends only on the
    ledger contents and the supplied ``now``.
    """

    def __init__(self, ledger: AttemptLedger, thresholds: RiskThresholds | None = None) -> None:
        self._ledger = ledger
        self._thresholds = thresholds or RiskThresholds()

    def score(
        self,
        phone: str,
        current_ip: str,
        current_fingerprint: str,
        now: datetime,
    ) -> RiskAssessment:
        try:
            history = self._ledger.recent_for(phone, since=now - HISTORY_WINDOW, limit=HISTORY_LIMIT)
        except Exception as exc:
            logger.warning(
                "risk_detection_error phone=%s error=%s",
                mask_phone(phone),
                type(exc).__name__,
            )
            return DETECTION_FALLBACK

        flags: set[RiskFlag] = set()
        if not history:
            flags.add(RiskFlag.FIRST_LOGIN)
        else:
            successful = [attempt for attempt in history if attempt.success]

            known_ips = {attempt.ip for attempt in successful}
            if known_ips and current_ip not in known_ips:
                flags.add(RiskFlag.NEW_IP)

            known_fingerprints = {attempt.fingerprint for attempt in successful}
            if known_fingerprints and current_fingerprint not in known_fingerprints:
                flags.add(RiskFlag.NEW_DEVICE)

            rapid_since = now - RAPID_WINDOW
            rapid_count = sum(1 for attempt in history if attempt.timestamp >= rapid_since)
            if rapid_count > RAPID_ATTEMPT_LIMIT:
                flags.add(RiskFlag.RAPID_ATTEMPTS)

            # failed / total > 1/2, kept in integers
            failed = len(history) - len(successful)
            if 2 * failed > len(history):
                flags.add(RiskFlag.HIGH_FAILURE_RATE)

        if UNUSUAL_HOUR_START <= now.hour <= UNUSUAL_HOUR_END:
            flags.add(RiskFlag.UNUSUAL_HOUR)

        score = min(max(sum(FLAG_POINTS[flag] for flag in flags), 0), MAX_SCORE)
        return RiskAssessment(
            score=score,
            flags=frozenset(flags),
            action=evaluate_action(score, self._thresholds),
        )
