"""
Unit Tests — JWT verification + RBAC
════════════════════════════════════
Tests for:
  • _fetch_jwks / _get_signing_key — TTL cache, kid lookup, force-refresh
  • verify_token       — valid, expired, bad audience/issuer, tampered
  • claim extraction   — Cognito + Auth0 namespaces, tenant id sanity,
                         unknown role → viewer
  • get_current_user   — missing bearer token
  • require_role       — hierarchy, 403 on insufficient role

All tests use the test RSA key pair from conftest.py.
Zero network calls — the JWKS fetch is patched.
"""

from __future__ import annotations

import time
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from assessment_docs.auth import token as token_module
from assessment_docs.auth.rbac import has_role, require_role
from assessment_docs.auth.token import get_current_user, verify_token
from tests.fakes import COMPANY_ID, TEST_ISSUER, USER_ID


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def clear_jwks_cache():
    """Ensure the module-level JWKS cache is clean before and after each test."""
    token_module._JWKS_CACHE.clear()
    yield
    token_module._JWKS_CACHE.clear()


@pytest.fixture
def jwks_endpoint(test_jwks):
    """Patch the JWKS fetch to serve the test key set."""
    with patch.object(token_module, "_fetch_jwks", new=AsyncMock(return_value=test_jwks)) as mock:
        yield mock


async def _auth_error(token: str) -> HTTPException:
    with pytest.raises(HTTPException) as exc_info:
        await verify_token(token)
    assert exc_info.value.status_code == 401
    return exc_info.value


# ─────────────────────────────────────────────────────────────────────────────
# JWKS cache + signing key lookup
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.auth
class TestSigningKey:

    async def test_fetch_jwks_serves_fresh_cache(self, test_jwks):
        token_module._JWKS_CACHE[TEST_ISSUER] = (test_jwks, time.monotonic())

        assert await token_module._fetch_jwks(TEST_ISSUER) is test_jwks

    async def test_matching_kid_returns_key(self, make_token, jwks_endpoint, test_jwks):
        key = await token_module._get_signing_key(make_token())

        assert key == test_jwks["keys"][0]
        assert jwks_endpoint.await_count == 1

    async def test_unknown_kid_forces_one_refresh(self, make_token, test_jwks):
        fetch = AsyncMock(side_effect=[{"keys": []}, test_jwks])
        with patch.object(token_module, "_fetch_jwks", new=fetch):
            key = await token_module._get_signing_key(make_token())

        assert key["kid"] == test_jwks["keys"][0]["kid"]
        assert fetch.await_count == 2

    async def test_unknown_kid_after_refresh_raises_401(self, make_token, jwks_endpoint):
        with pytest.raises(HTTPException) as exc_info:
            await token_module._get_signing_key(make_token(kid="rotated-away"))

        assert exc_info.value.status_code == 401
        assert jwks_endpoint.await_count == 2

    async def test_malformed_token_raises_401(self):
        with pytest.raises(HTTPException) as exc_info:
            await token_module._get_signing_key("not-a-jwt")
        assert exc_info.value.status_code == 401


# ─────────────────────────────────────────────────────────────────────────────
# verify_token
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.auth
class TestVerifyToken:

    async def test_valid_member_token(self, make_token, jwks_endpoint):
        payload = await verify_token(make_token(role="member"))

        assert payload.sub == USER_ID
        assert payload.company_id == COMPANY_ID
        assert payload.role == "member"
        assert payload.iss == TEST_ISSUER

    @pytest.mark.parametrize("role", ["viewer", "admin", "owner"])
    async def test_roles_are_carried(self, make_token, jwks_endpoint, role):
        payload = await verify_token(make_token(role=role))
        assert payload.role == role

    async def test_expired_token(self, make_token, jwks_endpoint):
        err = await _auth_error(make_token(expired=True))
        assert err.detail == "Token has expired"

    async def test_wrong_audience(self, make_token, jwks_endpoint):
        await _auth_error(make_token(audience="another-api"))

    async def test_wrong_issuer(self, make_token, jwks_endpoint):
        await _auth_error(make_token(issuer="https://evil.example.com/"))

    async def test_tampered_token(self, make_token, jwks_endpoint):
        header, payload, signature = make_token().split(".")
        tampered = ".".join([header, payload, signature[:-4] + ("AAAA" if signature[-4:] != "AAAA" else "BBBB")])

        await _auth_error(tampered)

    async def test_missing_company_claim(self, make_token, jwks_endpoint):
        err = await _auth_error(make_token(no_company=True))
        assert "company_id" in err.detail

    async def test_company_claim_cannot_contain_key_separator(self, make_token, jwks_endpoint):
        await _auth_error(make_token(company_id="company-alpha/other"))

    async def test_unknown_role_defaults_to_viewer(self, make_token, jwks_endpoint):
        payload = await verify_token(make_token(role="superuser"))
        assert payload.role == "viewer"

    async def test_missing_role_defaults_to_viewer(self, make_token, jwks_endpoint):
        payload = await verify_token(make_token(no_role=True))
        assert payload.role == "viewer"

    async def test_auth0_namespace_claims(self, make_token, jwks_endpoint):
        payload = await verify_token(make_token(role="admin", company_id="acme", claim_style="auth0"))

        assert payload.company_id == "acme"
        assert payload.role == "admin"


# ─────────────────────────────────────────────────────────────────────────────
# get_current_user
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.auth
class TestGetCurrentUser:

    async def test_missing_credentials(self):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(None)
        assert exc_info.value.status_code == 401

    async def test_bearer_token_is_verified(self, make_token, jwks_endpoint):
        credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials=make_token())

        user = await get_current_user(credentials)

        assert user.company_id == COMPANY_ID


# ─────────────────────────────────────────────────────────────────────────────
# RBAC
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.auth
class TestRequireRole:

    @pytest.mark.parametrize("user_role,required,allowed", [
        ("viewer", "viewer", True),
        ("viewer", "member", False),
        ("member", "member", True),
        ("admin",  "member", True),
        ("member", "admin",  False),
        ("admin",  "owner",  False),
        ("owner",  "owner",  True),
        ("ghost",  "viewer", False),
    ])
    def test_hierarchy(self, user_role, required, allowed):
        assert has_role(user_role, required) is allowed

    async def test_sufficient_role_passes_payload_through(self, admin_payload):
        dependency = require_role("member")
        assert await dependency(user=admin_payload) is admin_payload

    async def test_insufficient_role_raises_403(self, viewer_payload):
        dependency = require_role("member")

        with pytest.raises(HTTPException) as exc_info:
            await dependency(user=viewer_payload)

        assert exc_info.value.status_code == 403
        assert "member" in exc_info.value.detail

    def test_unknown_minimum_role(self):
        with pytest.raises(ValueError):
            require_role("superadmin")
