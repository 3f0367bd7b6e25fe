"""
Bearer-token authentication for the /api routes.

Protected routes are grouped under a router that declares
`Depends(get_current_user)`. Authentication is active once either
variable is set (see config.py):

    DOROFILL_JWT_SECRET  -  shared secret for HS256-signed tokens
    DOROFILL_JWKS_URL    -  JWKS endpoint for RS256/ES256-signed tokens

With neither set the dependency lets every request through, which is
meant for a single operator running the tool on their own machine.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import Settings, get_settings

logger = logging.getLogger(__name__)

_bearer = HTTPBearer(auto_error=False)

ANONYMOUS_USER = {"sub": "anonymous", "role": "operator"}


@lru_cache(maxsize=4)
def _get_jwks_client(jwks_url: str) -> jwt.PyJWKClient:
    return jwt.PyJWKClient(jwks_url, cache_keys=True)


def decode_token(token: str, settings: Settings) -> dict:
    """
    Decode and validate a JWT whether it is HS256 or asymmetric-signed.
    Raises jwt.InvalidTokenError (or a subclass) on failure.
    """
    header = jwt.get_unverified_header(token)
    alg = header.get("alg", "HS256")

    if alg == "HS256":
        if not settings.jwt_secret:
            raise jwt.InvalidTokenError(
                "DOROFILL_JWT_SECRET is not set; cannot validate HS256 token."
            )
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )

    if not settings.jwks_url:
        raise jwt.InvalidTokenError(
            f"Token uses {alg} but DOROFILL_JWKS_URL is not set; "
            "cannot fetch JWKS to verify asymmetric token."
        )
    signing_key = _get_jwks_client(settings.jwks_url).get_signing_key_from_jwt(token)
    return jwt.decode(
        token,
        signing_key.key,
        algorithms=[alg],
        options={"verify_aud": False},
    )


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    settings: Settings = Depends(get_settings),
) -> dict:
    """
    Decoded token payload of the caller.

    Raises HTTP 401 on a missing or invalid token while authentication is on.
    """
    if not settings.auth_enabled:
        return ANONYMOUS_USER

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid Authorization header.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return decode_token(credentials.credentials, settings)
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as exc:
        logger.warning("Rejected token: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {exc}",
            headers={"WWW-Authenticate": "Bearer"},
        )
