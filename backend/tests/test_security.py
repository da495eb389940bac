import os
import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

from jose import jwt

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from auth import security

JWT_ENV = {
    "JWT_SECRET": "unit-test-secret",
    "JWT_ALGORITHM": "HS256",
    "JWT_ISSUER": "storefront-api",
}


class SecurityTests(unittest.TestCase):
    def setUp(self) -> None:
        patcher = patch.dict(os.environ, JWT_ENV)
        patcher.start()
        self.addCleanup(patcher.stop)

    @staticmethod
    def _token(**overrides) -> str:
        claims = {
            "sub": "shopper-1",
            "type": "access",
            "iss": "storefront-api",
            "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
        }
        claims.update(overrides)
        secret = claims.pop("secret", JWT_ENV["JWT_SECRET"])
        return jwt.encode(claims, secret, algorithm="HS256")

    def test_decode_access_token_returns_claims(self) -> None:
        payload = security.decode_access_token(self._token(is_admin=True))

        self.assertEqual(payload["sub"], "shopper-1")
        self.assertTrue(payload["is_admin"])

    def test_decode_access_token_invalid_token_sets_cause(self) -> None:
        with self.assertRaises(ValueError) as ctx:
            security.decode_access_token("invalid-token")

        self.assertEqual(str(ctx.exception), "Invalid token")
        self.assertIsNotNone(ctx.exception.__cause__)

    def test_decode_access_token_rejects_expired_token(self) -> None:
        token = self._token(exp=datetime.now(timezone.utc) - timedelta(minutes=1))

        with self.assertRaises(ValueError) as ctx:
            security.decode_access_token(token)

        self.assertEqual(str(ctx.exception), "Token expired")

    def test_decode_access_token_rejects_refresh_token(self) -> None:
        with self.assertRaises(ValueError) as ctx:
            security.decode_access_token(self._token(type="refresh"))

        self.assertEqual(str(ctx.exception), "Invalid token type")

    def test_decode_access_token_rejects_foreign_issuer(self) -> None:
        with self.assertRaises(ValueError):
            security.decode_access_token(self._token(iss="someone-else"))

    def test_decode_access_token_rejects_wrong_signature(self) -> None:
        with self.assertRaises(ValueError):
            security.decode_access_token(self._token(secret="another-secret"))

    def test_missing_secret_is_a_configuration_error(self) -> None:
        with patch.dict(os.environ, {"JWT_SECRET": ""}):
            with self.assertRaises(RuntimeError):
                security.get_jwt_config()

    def test_identity_comes_from_subject(self) -> None:
        self.assertEqual(security.parse_subject_identity(" shopper-9 "), "shopper-9")
        with self.assertRaises(ValueError):
            security.parse_subject_identity(None)


if __name__ == "__main__":
    unittest.main()
