from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from jose import JWTError, jwt

from mpin_auth.clock import utcnow

DEFAULT_SESSION_TTL_MINUTES = 15
DEFAULT_ISSUER = "SmartBank"
DEFAULT_AUDIENCE = "smartbank-app"
DEFAULT_ALGORITHM = "HS256"

logger = logging.getLogger("mpin_auth.sessions")


@dataclass(frozen=True)
class SessionSettings:
    secret: str
    ttl: timedelta = timedelta(minutes=DEFAULT_SESSION_TTL_MINUTES)
    issuer: str = DEFAULT_ISSUER
    audience: str = DEFAULT_AUDIENCE
    algorithm: str = DEFAULT_ALGORITHM

    def __post_init__(self) -> None:
        if not self.secret:
            raise ValueError("JWT_SECRET must not be empty.")
        if self.ttl <= timedelta(0):
            raise ValueError("SESSION_TTL_MINUTES must be greater than 0.")

    @classmethod
    def from_env(cls) -> "SessionSettings":
        secret = os.getenv("JWT_SECRET", "").strip()
        if not secret:
            # Sessions will not survive a restart or span multiple workers.
            logger.warning("jwt_secret_missing using_ephemeral_secret=true")
            secret = "smartbank_jwt_secret_" + secrets.token_hex(16)

        raw_ttl = os.getenv("SESSION_TTL_MINUTES", str(DEFAULT_SESSION_TTL_MINUTES)).strip()
        try:
            ttl_minutes = int(raw_ttl)
        except ValueError as exc:
            raise ValueError("SESSION_TTL_MINUTES must be an integer value.") from exc

        return cls(
            secret=secret,
            ttl=timedelta(minutes=ttl_minutes),
            issuer=os.getenv("JWT_ISSUER", DEFAULT_ISSUER).strip() or DEFAULT_ISSUER,
            audience=os.getenv("JWT_AUDIENCE", DEFAULT_AUDIENCE).strip() or DEFAULT_AUDIENCE,
        )


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    phone: str
    issued_at: int
    expires_at: int


class SessionIssuer:
    """Mints and checks the short-lived bearer tokens handed out after login."""

    def __init__(self, settings: SessionSettings) -> None:
        self._settings = settings

    @property
    def ttl(self) -> timedelta:
        return self._settings.ttl

    def issue(self, identity_id: str, phone: str, now: datetime | None = None) -> str:
        issued_at = now or utcnow()
        claims = {
            "userId": identity_id,
            "phone": phone,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + self._settings.ttl).timestamp()),
            "iss": self._settings.issuer,
            "aud": self._settings.audience,
        }
        return jwt.encode(claims, self._settings.secret, algorithm=self._settings.algorithm)

    def verify(self, token: str) -> SessionClaims | None:
        try:
            payload = jwt.decode(
                token,
                self._settings.secret,
                algorithms=[self._settings.algorithm],
                audience=self._settings.audience,
                issuer=self._settings.issuer,
            )
        except JWTError:
            return None

        user_id = payload.get("userId")
        phone = payload.get("phone")
        if not user_id or not phone:
            return None
        return SessionClaims(
            user_id=str(user_id),
            phone=str(phone),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
        )
