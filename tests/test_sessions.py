from __future__ import annotations

import unittest
from datetime import timedelta
from unittest.mock import patch

from jose import jwt

from mpin_auth.clock import utcnow
from mpin_auth.sessions import SessionIssuer, SessionSettings


class SessionIssuerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.issuer = SessionIssuer(SessionSettings(secret="session-secret"))

    def test_issued_token_verifies_to_the_same_identity(self) -> None:
        token = self.issuer.issue("user-1", "9876543210")

        claims = self.issuer.verify(token)

        self.assertIsNotNone(claims)
        self.assertEqual(claims.user_id, "user-1")
        self.assertEqual(claims.phone, "9876543210")
        self.assertEqual(claims.expires_at - claims.issued_at, 15 * 60)

    def test_token_carries_issuer_and_audience(self) -> None:
        token = self.issuer.issue("user-1", "9876543210")
        claims = jwt.get_unverified_claims(token)

        self.assertEqual(claims["iss"], "SmartBank")
        self.assertEqual(claims["aud"], "smartbank-app")

    def test_expired_token_is_rejected(self) -> None:
        token = self.issuer.issue("user-1", "9876543210", now=utcnow() - timedelta(minutes=16))
        self.assertIsNone(self.issuer.verify(token))

    def test_token_signed_with_another_secret_is_rejected(self) -> None:
        other = SessionIssuer(SessionSettings(secret="someone-else"))
        self.assertIsNone(self.issuer.verify(other.issue("user-1", "9876543210")))

    def test_token_for_another_audience_is_rejected(self) -> None:
        other = SessionIssuer(SessionSettings(secret="session-secret", audience="admin-portal"))
        self.assertIsNone(self.issuer.verify(other.issue("user-1", "9876543210")))

    def test_token_without_identity_claims_is_rejected(self) -> None:
        token = jwt.encode(
            {"iss": "SmartBank", "aud": "smartbank-app", "exp": int(utcnow().timestamp()) + 60},
            "session-secret",
            algorithm="HS256",
        )
        self.assertIsNone(self.issuer.verify(token))

    def test_garbage_token_is_rejected(self) -> None:
        self.assertIsNone(self.issuer.verify("not-a-token"))


class SessionSettingsTests(unittest.TestCase):
    def test_from_env_reads_overrides(self) -> None:
        with patch.dict(
            "os.environ",
            {"JWT_SECRET": "env-secret", "SESSION_TTL_MINUTES": "5", "JWT_ISSUER": "Issuer"},
            clear=False,
        ):
            settings = SessionSettings.from_env()

        self.assertEqual(settings.secret, "env-secret")
        self.assertEqual(settings.ttl, timedelta(minutes=5))
        self.assertEqual(settings.issuer, "Issuer")

    def test_missing_secret_falls_back_to_ephemeral_secret_with_warning(self) -> None:
        with patch.dict("os.environ", {"JWT_SECRET": ""}, clear=False):
            with self.assertLogs("mpin_auth.sessions", level="WARNING") as captured:
                first = SessionSettings.from_env()
            with self.assertLogs("mpin_auth.sessions", level="WARNING"):
                second = SessionSettings.from_env()

        self.assertIn("jwt_secret_missing", captured.output[0])
        self.assertTrue(first.secret)
        self.assertNotEqual(first.secret, second.secret)

    def test_invalid_ttl_is_rejected(self) -> None:
        with patch.dict("os.environ", {"JWT_SECRET": "x", "SESSION_TTL_MINUTES": "soon"}, clear=False):
            with self.assertRaises(ValueError):
                SessionSettings.from_env()
        with self.assertRaises(ValueError):
            SessionSettings(secret="x", ttl=timedelta(0))


if __name__ == "__main__":
    unittest.main()
