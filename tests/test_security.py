from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from jose import jwt

from attendance_ot.errors import ApiError
from attendance_ot.models import UserRole
from attendance_ot.security import create_access_token, decode_token
from attendance_ot.settings import get_settings

TEST_ENV = {
    "JWT_SECRET": "unit-test-secret",
    "JWT_ISSUER": "attendance-ot",
    "JWT_AUDIENCE": "attendance-ot-api",
    "ACCESS_TOKEN_MINUTES": "15",
}


class TokenTests(unittest.TestCase):
    def setUp(self) -> None:
        self._env = patch.dict(os.environ, TEST_ENV, clear=False)
        self._env.start()
        get_settings.cache_clear()

    def tearDown(self) -> None:
        self._env.stop()
        get_settings.cache_clear()

    def test_token_round_trip(self) -> None:
        token, expires_in = create_access_token(user_id=42, role=UserRole.MASTER_ADMIN)

        principal = decode_token(token)

        self.assertEqual(expires_in, 15 * 60)
        self.assertEqual(principal.user_id, 42)
        self.assertEqual(principal.role, UserRole.MASTER_ADMIN)
        self.assertTrue(principal.is_admin)

    def test_token_signed_with_another_secret_is_rejected(self) -> None:
        token = jwt.encode(
            {"sub": "7", "role": "employee", "iss": "attendance-ot", "aud": "attendance-ot-api", "iat": 1, "exp": 4102444800},
            "another-secret",
            algorithm="HS256",
        )

        with self.assertRaises(ApiError) as ctx:
            decode_token(token)

        self.assertEqual(ctx.exception.status_code, 401)
        self.assertEqual(ctx.exception.code, "INVALID_TOKEN")

    def test_wrong_audience_is_rejected(self) -> None:
        token = jwt.encode(
            {"sub": "7", "role": "employee", "iss": "attendance-ot", "aud": "someone-else", "iat": 1, "exp": 4102444800},
            "unit-test-secret",
            algorithm="HS256",
        )

        with self.assertRaises(ApiError):
            decode_token(token)

    def test_unknown_role_is_rejected(self) -> None:
        token = jwt.encode(
            {
                "sub": "7",
                "role": "superuser",
                "iss": "attendance-ot",
                "aud": "attendance-ot-api",
                "iat": 1,
                "exp": 4102444800,
            },
            "unit-test-secret",
            algorithm="HS256",
        )

        with self.assertRaises(ApiError) as ctx:
            decode_token(token)

        self.assertEqual(ctx.exception.message, "Token role is invalid.")


if __name__ == "__main__":
    unittest.main()
