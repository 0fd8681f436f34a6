from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import jwt
from fastapi import Request

from roadwatch.core.types import Actor, Category, Role
from roadwatch.errors import Unauthenticated
from roadwatch.security.types import AuthContext


def _jwt_settings() -> Tuple[str, str, str, str]:
    secret = (os.getenv("ROADWATCH_JWT_SECRET") or "").strip()
    algorithm = (os.getenv("ROADWATCH_JWT_ALGORITHM", "HS256") or "HS256").strip()
    issuer = (os.getenv("ROADWATCH_JWT_ISSUER", "roadwatch") or "roadwatch").strip()
    audience = (os.getenv("ROADWATCH_JWT_AUDIENCE", "roadwatch-api") or "roadwatch-api").strip()
    return secret, algorithm, issuer, audience


def decode_token(token: str) -> AuthContext:
    secret, algorithm, issuer, audience = _jwt_settings()
    if not secret:
        raise Unauthenticated("JWT auth is not configured", error_code="AUTH_JWT_UNAVAILABLE")

    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[algorithm],
            issuer=issuer,
            audience=audience,
            options={
                "require": ["exp", "iss", "sub", "aud", "role"],
            },
        )
    except jwt.ExpiredSignatureError as exc:
        raise Unauthenticated("JWT token has expired", error_code="AUTH_JWT_EXPIRED") from exc
    except jwt.InvalidTokenError as exc:
        raise Unauthenticated("JWT token is invalid", error_code="AUTH_JWT_INVALID") from exc

    principal = str(payload.get("sub") or "").strip()
    if not principal:
        raise Unauthenticated("JWT token missing sub claim", error_code="AUTH_JWT_CLAIMS")
    try:
        role = Role(str(payload.get("role") or "").strip().lower())
    except ValueError as exc:
        raise Unauthenticated("JWT token has an unknown role", error_code="AUTH_JWT_ROLE") from exc

    specialization = None
    raw_specialization = payload.get("specialization")
    if role is Role.STAFF and raw_specialization:
        try:
            specialization = Category(str(raw_specialization).strip().lower())
        except ValueError as exc:
            raise Unauthenticated(
                "JWT token has an unknown specialization", error_code="AUTH_JWT_SPECIALIZATION"
            ) from exc

    return AuthContext(
        principal_id=principal,
        role=role,
        specialization=specialization,
        name=str(payload.get("name") or ""),
    )


def issue_token(actor: Actor, *, ttl_seconds: int = 3600) -> str:
    """Mint a bearer token for ``actor`` (used by the CLI and tests)."""
    secret, algorithm, issuer, audience = _jwt_settings()
    if not secret:
        raise Unauthenticated("JWT auth is not configured", error_code="AUTH_JWT_UNAVAILABLE")
    now = datetime.now(timezone.utc)
    claims = {
        "sub": actor.id,
        "role": actor.role.value,
        "name": actor.name,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
        "iss": issuer,
        "aud": audience,
    }
    if actor.effective_specialization is not None:
        claims["specialization"] = actor.effective_specialization.value
    return jwt.encode(claims, secret, algorithm=algorithm)


def optional_actor(request: Request) -> Optional[Actor]:
    """Resolve the caller; no Authorization header means an anonymous caller."""
    authz = (request.headers.get("Authorization") or "").strip()
    if not authz:
        return None
    if not authz.lower().startswith("bearer "):
        raise Unauthenticated("Only bearer tokens are supported", error_code="AUTH_SCHEME_UNSUPPORTED")
    token = authz.split(" ", 1)[1].strip()
    if not token:
        raise Unauthenticated("Missing bearer token", error_code="AUTH_BEARER_MISSING")
    context = decode_token(token)
    request.state.auth_context = context
    return context.to_actor()
