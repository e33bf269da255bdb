from __future__ import annotations

import os
import unittest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import patch

from fastapi.security import HTTPAuthorizationCredentials
from fastapi.testclient import TestClient
from jose import jwt

from carerota.db import get_db
from carerota.errors import ApiError
from carerota.main import app
from carerota.security import Actor, actor_from_claims, decode_token, require_actor, require_reviewer
from carerota.settings import get_settings
from tests.db_support import SqliteDatabase

SECRET = "jwt-test-secret"


def _token(**overrides) -> str:  # type: ignore[no-untyped-def]
    now = datetime.now(timezone.utc)
    claims = {
        "sub": "carer-ada",
        "role": "carer",
        "care_space_id": 7,
        "iss": "carerota-auth",
        "aud": "carerota-api",
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=15)).timestamp()),
    }
    claims.update(overrides)
    claims = {key: value for key, value in claims.items() if value is not None}
    return jwt.encode(claims, SECRET, algorithm="HS256")


class SecurityTests(unittest.TestCase):
    def setUp(self) -> None:
        self._env = patch.dict(os.environ, {"JWT_SECRET": SECRET}, clear=False)
        self._env.start()
        get_settings.cache_clear()

    def tearDown(self) -> None:
        self._env.stop()
        get_settings.cache_clear()

    def test_valid_token_resolves_actor_and_request_state(self) -> None:
        request = SimpleNamespace(state=SimpleNamespace())
        credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials=_token())

        actor = require_actor(request, credentials)  # type: ignore[arg-type]

        self.assertEqual(actor, Actor(actor_id="carer-ada", role="carer", care_space_id=7))
        self.assertFalse(actor.is_reviewer)
        self.assertEqual(request.state.actor_id, "carer-ada")
        self.assertEqual(request.state.care_space_id, 7)

    def test_wrong_audience_is_invalid(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            decode_token(_token(aud="someone-else"))
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertEqual(ctx.exception.code, "INVALID_TOKEN")

    def test_expired_token_is_invalid(self) -> None:
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        with self.assertRaises(ApiError) as ctx:
            decode_token(_token(iat=int(past.timestamp()), exp=int((past + timedelta(minutes=5)).timestamp())))
        self.assertEqual(ctx.exception.status_code, 401)

    def test_unknown_role_is_forbidden(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            decode_token(_token(role="auditor"))
        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(ctx.exception.code, "FORBIDDEN")

    def test_missing_care_space_is_invalid(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            actor_from_claims(decode_token(_token(care_space_id=None)))
        self.assertEqual(ctx.exception.status_code, 401)

    def test_require_reviewer_accepts_admin_only(self) -> None:
        manager = Actor(actor_id="manager-1", role="admin", care_space_id=7)
        self.assertIs(require_reviewer(manager), manager)

        with self.assertRaises(ApiError) as ctx:
            require_reviewer(Actor(actor_id="carer-ada", role="carer", care_space_id=7))
        self.assertEqual(ctx.exception.status_code, 403)

    def test_http_requests_without_valid_bearer_are_rejected(self) -> None:
        database = SqliteDatabase()
        app.dependency_overrides[get_db] = database.override_get_db()
        try:
            client = TestClient(app)
            missing = client.get("/api/change-requests")
            garbage = client.get("/api/change-requests", headers={"Authorization": "Bearer not-a-token"})
        finally:
            app.dependency_overrides.clear()
            database.dispose()

        self.assertEqual(missing.status_code, 401)
        self.assertEqual(missing.json()["error"]["code"], "INVALID_TOKEN")
        self.assertEqual(garbage.status_code, 401)
        self.assertEqual(garbage.json()["error"]["code"], "INVALID_TOKEN")


if __name__ == "__main__":
    unittest.main()
