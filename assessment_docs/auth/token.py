"""
JWT Token Verification — OIDC-Compatible

Supports two auth providers with identical verification logic:

  Provider A: AWS Cognito
    Issuer:   https://cognito-idp.<region>.amazonaws.com/<user_pool_id>
    JWKS URI: <issuer>/.well-known/jwks.json
    Claims:   sub, email, custom:company_id, custom:role, cognito:groups

  Provider B: Auth0
    Issuer:   https://<tenant>.auth0.com/
    JWKS URI: <issuer>/.well-known/jwks.json
    Claims:   sub, email, https://<api>/company_id, https://<api>/role

Both providers sign tokens with RS256 using rotating key sets.
We fetch the public JWKS once and cache it (TTL: 1 hour). If a kid is
missing we force-refresh, which handles key rotation transparently.

The company_id claim is the tenant boundary for every document operation;
it is never read from a request body or path.

RBAC roles (embedded in JWT, enforced in route dependencies):
  owner   - full company admin
  admin   - manage users, upload and delete documents
  member  - upload, categorize, update and delete documents
  viewer  - read-only access to documents and statistics
"""

from __future__ import annotations

import logging
import time
from typing import Annotated

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel

from assessment_docs.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# HTTP Bearer extractor
# ---------------------------------------------------------------------------

bearer_scheme = HTTPBearer(auto_error=False)


# ---------------------------------------------------------------------------
# Verified token payload
# ---------------------------------------------------------------------------

class TokenPayload(BaseModel):
    """Parsed, validated JWT claims — passed to route handlers."""
    sub:        str          # provider user ID
    email:      str
    company_id: str          # tenant
    role:       str          # owner | admin | member | viewer
    exp:        int
    iss:        str


VALID_ROLES = {"owner", "admin", "member", "viewer"}


# ---------------------------------------------------------------------------
# JWKS cache (in-memory, TTL-based)
# ---------------------------------------------------------------------------

_JWKS_CACHE: dict[str, tuple[dict, float]] = {}   # issuer → (jwks, fetched_at)
_JWKS_TTL   = 3600   # 1 hour


async def _fetch_jwks(issuer: str) -> dict:
    """Fetch JWKS from the provider's well-known endpoint with TTL caching."""
    now = time.monotonic()
    cached = _JWKS_CACHE.get(issuer)
    if cached and (now - cached[1]) < _JWKS_TTL:
        return cached[0]

    jwks_uri = f"{issuer.rstrip('/')}/.well-known/jwks.json"
    async with httpx.AsyncClient(timeout=10.0) as client:
        resp = await client.get(jwks_uri)
        resp.raise_for_status()
        jwks = resp.json()

    _JWKS_CACHE[issuer] = (jwks, now)
    logger.debug("JWKS refreshed for issuer: %s", issuer)
    return jwks


async def _get_signing_key(token: str):
    """
    Extract kid from token header, fetch matching public key from JWKS.
    Force-refreshes the cache if the kid is not found.
    """
    try:
        header = jwt.get_unverified_header(token)
    except JWTError as exc:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Invalid token header") from exc

    kid = header.get("kid")
    issuer = settings.auth_issuer

    for attempt in range(2):   # 0 = cached, 1 = force refresh
        if attempt == 1:
            _JWKS_CACHE.pop(issuer, None)

        try:
            jwks = await _fetch_jwks(issuer)
        except httpx.HTTPError as exc:
            logger.error("JWKS fetch failed | issuer=%s error=%s", issuer, exc)
            raise HTTPException(
                status.HTTP_401_UNAUTHORIZED, detail="Unable to verify token"
            ) from exc

        for key_data in jwks.get("keys", []):
            if key_data.get("kid") == kid:
                return key_data

    raise HTTPException(
        status.HTTP_401_UNAUTHORIZED,
        detail=f"Unable to find signing key for kid={kid}",
    )


# ---------------------------------------------------------------------------
# Claim extractors (Cognito vs Auth0 have different claim names)
# ---------------------------------------------------------------------------

def _extract_company_id(claims: dict) -> str:
    """
    Cognito: custom:company_id
    Auth0:   https://<api_namespace>/company_id
    """
    raw = (
        claims.get("custom:company_id")
        or claims.get(f"{settings.auth0_namespace}/company_id")
        or claims.get("company_id")
    )
    if not raw or not isinstance(raw, str) or "/" in raw:
        raise HTTPException(
            status.HTTP_401_UNAUTHORIZED,
            detail="Token missing company_id claim",
        )
    return raw


def _extract_role(claims: dict) -> str:
    """
    Cognito: custom:role  OR  cognito:groups[0]
    Auth0:   https://<api_namespace>/role
    """
    role = (
        claims.get("custom:role")
        or claims.get(f"{settings.auth0_namespace}/role")
        or claims.get("role")
    )
    if not role and "cognito:groups" in claims:
        groups = claims["cognito:groups"]
        role = groups[0] if groups else None

    if role not in VALID_ROLES:
        logger.warning("Unknown role '%s' in token, defaulting to 'viewer'", role)
        role = "viewer"

    return role


# ---------------------------------------------------------------------------
# Main verification function
# ---------------------------------------------------------------------------

async def verify_token(token: str) -> TokenPayload:
    """
    Verify a JWT token:
      1. Fetch matching public key from JWKS (cached).
      2. Verify signature, expiry, issuer, audience.
      3. Extract and validate company_id + role claims.
      4. Return a typed TokenPayload.
    """
    signing_key = await _get_signing_key(token)

    try:
        claims = jwt.decode(
            token,
            signing_key,
            algorithms=["RS256"],
            audience=settings.auth_audience,
            issuer=settings.auth_issuer,
            options={"verify_exp": True},
        )
    except ExpiredSignatureError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Token has expired")
    except JWTError as exc:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {exc}")

    return TokenPayload(
        sub=claims["sub"],
        email=claims.get("email", ""),
        company_id=_extract_company_id(claims),
        role=_extract_role(claims),
        exp=claims["exp"],
        iss=claims["iss"],
    )


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> TokenPayload:
    """
    FastAPI dependency that extracts and validates the Bearer token.

        @router.get("/documents")
        async def list_docs(user: TokenPayload = Depends(get_current_user)):
            ...
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    return await verify_token(credentials.credentials)
