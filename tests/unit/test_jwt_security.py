"""
Security Test Suite: JWT Authentication

Tests that the centralized JWT verification in dependencies.py correctly:
- Rejects missing Authorization headers
- Rejects malformed, expired and wrongly signed tokens
- Accepts properly signed HS256 tokens
- Reads the admin role from app_metadata
"""

import time
from unittest.mock import patch

import jwt
import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from billing_sync.api.dependencies import CallerIdentity, get_current_identity, require_admin
from billing_sync.config.settings import get_settings


# ---------------------------------------------------------------------------
# Minimal app that uses the real dependencies
# ---------------------------------------------------------------------------

test_app = FastAPI()


@test_app.get("/protected")
async def protected_endpoint(identity: CallerIdentity = Depends(get_current_identity)):
    return {"user_id": identity.user_id, "role": identity.role, "email": identity.email}


@test_app.get("/admin-only")
async def admin_endpoint(identity: CallerIdentity = Depends(require_admin)):
    return {"user_id": identity.user_id}


client = TestClient(test_app, raise_server_exceptions=False)

USER_ID = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"


@pytest.fixture(autouse=True)
def no_jwks():
    """Force the HS256 path; no JWKS endpoint is reachable in tests."""
    with patch(
        "billing_sync.api.dependencies._decode_with_jwks",
        side_effect=jwt.exceptions.PyJWKClientError("no jwks in tests"),
    ):
        yield


def _token(exp_offset: int = 3600, secret=None, **claims) -> str:
    settings = get_settings()
    payload = {
        "sub": USER_ID,
        "aud": "authenticated",
        "iss": f"{settings.supabase_url}/auth/v1",
        "exp": int(time.time()) + exp_offset,
    }
    payload.update(claims)
    return jwt.encode(payload, secret or settings.supabase_jwt_secret, algorithm="HS256")


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Tests: rejection scenarios
# ---------------------------------------------------------------------------


class TestJWTRejection:
    """Verify that invalid/missing JWTs are rejected with 401."""

    def test_no_auth_header(self):
        resp = client.get("/protected")
        assert resp.status_code == 401

    def test_malformed_scheme(self):
        resp = client.get("/protected", headers={"Authorization": "Basic abc123"})
        assert resp.status_code == 401

    def test_garbage_token(self):
        resp = client.get("/protected", headers=_auth("not.a.jwt"))
        assert resp.status_code == 401

    def test_wrong_secret(self):
        token = _token(secret="some-other-secret-that-is-long-enough")
        resp = client.get("/protected", headers=_auth(token))
        assert resp.status_code == 401

    def test_expired_token_hs256(self):
        """An expired HS256 token (even with correct secret) must be rejected."""
        resp = client.get("/protected", headers=_auth(_token(exp_offset=-60)))
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Token has expired"

    def test_wrong_audience(self):
        resp = client.get("/protected", headers=_auth(_token(aud="anon")))
        assert resp.status_code == 401

    def test_raw_uuid_rejected(self):
        resp = client.get("/protected", headers=_auth(USER_ID))
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Tests: acceptance scenarios
# ---------------------------------------------------------------------------


class TestJWTAcceptance:

    def test_valid_hs256_token(self):
        resp = client.get("/protected", headers=_auth(_token(email="user@example.com")))

        assert resp.status_code == 200
        body = resp.json()
        assert body["user_id"] == USER_ID
        assert body["email"] == "user@example.com"
        assert body["role"] is None


class TestAdminGuard:

    def test_non_admin_is_forbidden(self):
        resp = client.get("/admin-only", headers=_auth(_token()))
        assert resp.status_code == 403

    def test_admin_role_from_app_metadata(self):
        token = _token(app_metadata={"role": "admin"})
        resp = client.get("/admin-only", headers=_auth(token))
        assert resp.status_code == 200

    def test_role_outside_app_metadata_is_ignored(self):
        """user_metadata is user-editable and must not grant admin."""
        token = _token(user_metadata={"role": "admin"})
        resp = client.get("/admin-only", headers=_auth(token))
        assert resp.status_code == 403

    def test_configured_admin_user_id(self):
        settings = get_settings()
        with patch.object(settings, "admin_user_ids", [USER_ID]):
            resp = client.get("/admin-only", headers=_auth(_token()))
        assert resp.status_code == 200
