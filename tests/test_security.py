from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from jose import jwt

from geoattend import security
from geoattend.errors import ApiError
from geoattend.security import (
    create_access_token,
    decode_token,
    ensure_login_attempt_allowed,
    hash_password,
    register_login_failure,
    register_login_success,
    verify_password,
)
from geoattend.settings import get_settings


class SecurityTests(unittest.TestCase):
    def setUp(self) -> None:
        env_patch = patch.dict(os.environ, {"JWT_SECRET": "security-test-secret-abcdefghijklmnop"}, clear=False)
        env_patch.start()
        self.addCleanup(env_patch.stop)
        get_settings.cache_clear()
        self.addCleanup(get_settings.cache_clear)
        security._FAILED_ATTEMPTS.clear()

    def test_password_hash_roundtrip_and_bad_hash(self) -> None:
        hashed = hash_password("correct horse")
        self.assertTrue(verify_password("correct horse", hashed))
        self.assertFalse(verify_password("wrong", hashed))
        self.assertFalse(verify_password("anything", "not-a-hash"))

    def test_login_throttle_blocks_after_repeated_failures(self) -> None:
        for _ in range(10):
            ensure_login_attempt_allowed("10.0.0.1")
            register_login_failure("10.0.0.1")

        with self.assertRaises(ApiError) as ctx:
            ensure_login_attempt_allowed("10.0.0.1")
        self.assertEqual(ctx.exception.status_code, 429)

        ensure_login_attempt_allowed("10.0.0.2")
        register_login_success("10.0.0.1")
        ensure_login_attempt_allowed("10.0.0.1")

    def test_access_token_carries_tenant_claim(self) -> None:
        token, expires_in, _claims = create_access_token(admin_user_id=7, username="ops", tenant_id=3)

        payload = decode_token(token)

        self.assertEqual(payload["tenant_id"], 3)
        self.assertEqual(payload["sub"], "7")
        self.assertEqual(expires_in, get_settings().access_token_minutes * 60)

    def test_token_without_integer_tenant_is_rejected(self) -> None:
        _token, _expires_in, claims = create_access_token(admin_user_id=7, username="ops", tenant_id=3)
        claims["tenant_id"] = "3"
        forged = jwt.encode(claims, get_settings().jwt_secret, algorithm="HS256")

        with self.assertRaises(ApiError) as ctx:
            decode_token(forged)
        self.assertEqual(ctx.exception.code, "INVALID_TOKEN")

    def test_non_admin_role_is_forbidden(self) -> None:
        _token, _expires_in, claims = create_access_token(admin_user_id=7, username="ops", tenant_id=3)
        claims["role"] = "employee"
        forged = jwt.encode(claims, get_settings().jwt_secret, algorithm="HS256")

        with self.assertRaises(ApiError) as ctx:
            decode_token(forged)
        self.assertEqual(ctx.exception.status_code, 403)


if __name__ == "__main__":
    unittest.main()
