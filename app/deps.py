from __future__ import annotations
from typing import Any, Dict, AsyncGenerator
from fastapi import Depends, Header, HTTPException, status
import logging
import time
import httpx
import jwt
from jwt.algorithms import RSAAlgorithm
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .core.config import get_settings
from .core.broadcast import STAFF_ROLES, ConnectionRegistry, get_registry

logger = logging.getLogger(__name__)
settings = get_settings()

# kid -> public key, refreshed hourly or when an unknown kid shows up
_KEYS: Dict[str | None, Any] = {}
_KEYS_TS: float = 0.0
_KEYS_TTL: int = 3600
_KEYS_MIN_REFRESH: int = 30

async def _load_jwks() -> None:
    global _KEYS, _KEYS_TS
    async with httpx.AsyncClient() as client:
        r = await client.get(settings.auth_jwks_url, timeout=5.0)
        r.raise_for_status()
    keys = r.json().get("keys") or []
    loaded: Dict[str | None, Any] = {k.get("kid"): RSAAlgorithm.from_jwk(k) for k in keys}
    if keys:
        # tokens without a kid fall back to the first published key
        loaded.setdefault(None, RSAAlgorithm.from_jwk(keys[0]))
    _KEYS, _KEYS_TS = loaded, time.time()

async def get_signing_key(kid: str | None = None):
    age = time.time() - _KEYS_TS
    if not _KEYS or age > _KEYS_TTL or (kid not in _KEYS and age > _KEYS_MIN_REFRESH):
        await _load_jwks()
    try:
        return _KEYS[kid]
    except KeyError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown signing key")

async def decode_bearer(token: str) -> Dict[str, Any]:
    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    try:
        key = await get_signing_key(kid)
    except httpx.HTTPError:
        logger.error("could not fetch JWKS from %s", settings.auth_jwks_url)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Auth service unavailable")
    try:
        payload = jwt.decode(
            token, key=key, algorithms=["RS256"], issuer=settings.token_issuer, options={"verify_aud": False}
        )
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if "sub" not in payload or "role" not in payload:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return payload

async def get_claims(authorization: str | None = Header(default=None)) -> Dict[str, Any]:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    return await decode_bearer(authorization.split(" ", 1)[1].strip())

async def require_staff(claims: Dict[str, Any] = Depends(get_claims)) -> Dict[str, Any]:
    if claims.get("role") not in STAFF_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Staff role required")
    return claims

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for s in get_session():
        yield s

def get_connection_registry() -> ConnectionRegistry:
    return get_registry()
