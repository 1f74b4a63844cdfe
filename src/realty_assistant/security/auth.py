from __future__ import annotations

"""Authentication: resolve each request to a stable user id.

Identity sources, in order:
- ``Authorization: Bearer <jwt>``, verified against a JWKS endpoint
  (AUTH_JWKS_URL, RS256) or a shared secret (AUTH_JWT_SECRET, HS256)
- App Service authentication principal (``X-MS-CLIENT-PRINCIPAL``), only when
  REALTY_TRUST_EASY_AUTH is enabled or the app runs on App Service
- REALTY_PUBLIC_MODE: unauthenticated callers become ``anonymous`` (dev only)

The user id is the ``oid`` claim when present, else ``sub``.

Env vars:
- AUTH_JWKS_URL, AUTH_AUDIENCE, AUTH_ISSUER
- AUTH_JWT_SECRET (default for dev), AUTH_JWT_EXPIRES_MIN (default 60)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
import base64
import binascii
import json
import logging
import os

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient
from pydantic import BaseModel


logger = logging.getLogger(__name__)
bearer_scheme = HTTPBearer(auto_error=False)

ANONYMOUS_USER_ID = "anonymous"
PRINCIPAL_HEADER = "X-MS-CLIENT-PRINCIPAL"

_CLAIM_ALIASES = {
    "http://schemas.microsoft.com/identity/claims/objectidentifier": "oid",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/nameidentifier": "sub",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress": "email",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/name": "name",
}


def _flag(name: str) -> Optional[bool]:
    val = os.getenv(name)
    if val is None:
        return None
    return val.lower() in ("1", "true", "yes", "on")


@dataclass
class JwtConfig:
    secret: str
    algorithm: str = "HS256"
    expires_min: int = 60
    jwks_url: Optional[str] = None
    audience: Optional[str] = None
    issuer: Optional[str] = None

    @staticmethod
    def from_env() -> "JwtConfig":
        return JwtConfig(
            secret=os.getenv("AUTH_JWT_SECRET", "dev-secret-change-me"),
            expires_min=int(os.getenv("AUTH_JWT_EXPIRES_MIN", "60")),
            jwks_url=os.getenv("AUTH_JWKS_URL") or None,
            audience=os.getenv("AUTH_AUDIENCE") or None,
            issuer=os.getenv("AUTH_ISSUER") or None,
        )


class User(BaseModel):
    id: str
    name: str = ""
    email: Optional[str] = None
    authenticated: bool = True


def anonymous_user() -> User:
    return User(id=ANONYMOUS_USER_ID, name="Anonymous", authenticated=False)


_JWK_CLIENTS: Dict[str, PyJWKClient] = {}


def _jwk_client(url: str) -> PyJWKClient:
    client = _JWK_CLIENTS.get(url)
    if client is None:
        client = _JWK_CLIENTS.setdefault(url, PyJWKClient(url))
    return client


def user_from_claims(claims: Dict[str, Any]) -> Optional[User]:
    uid = claims.get("oid") or claims.get("sub")
    if not uid:
        return None
    email = claims.get("email") or claims.get("preferred_username") or claims.get("upn")
    return User(id=str(uid), name=str(claims.get("name") or ""), email=email)


def create_access_token(
    user_id: str,
    name: str = "",
    email: Optional[str] = None,
    cfg: Optional[JwtConfig] = None,
) -> str:
    """Issue an HS256 token (local development and tests)."""
    cfg = cfg or JwtConfig.from_env()
    now = datetime.now(timezone.utc)
    payload: Dict[str, Any] = {
        "sub": user_id,
        "name": name,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=cfg.expires_min)).timestamp()),
    }
    if email:
        payload["email"] = email
    if cfg.audience:
        payload["aud"] = cfg.audience
    if cfg.issuer:
        payload["iss"] = cfg.issuer
    return jwt.encode(payload, cfg.secret, algorithm=cfg.algorithm)


def decode_token(token: str, cfg: Optional[JwtConfig] = None) -> User:
    cfg = cfg or JwtConfig.from_env()
    options = {"verify_aud": bool(cfg.audience)}
    try:
        if cfg.jwks_url:
            key = _jwk_client(cfg.jwks_url).get_signing_key_from_jwt(token).key
            data = jwt.decode(
                token, key, algorithms=["RS256"], audience=cfg.audience, issuer=cfg.issuer, options=options
            )
        else:
            data = jwt.decode(
                token, cfg.secret, algorithms=[cfg.algorithm], audience=cfg.audience, issuer=cfg.issuer, options=options
            )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    user = user_from_claims(data)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has no subject")
    return user


def parse_client_principal(header_value: str) -> Optional[User]:
    """Decode an App Service ``X-MS-CLIENT-PRINCIPAL`` header (base64 JSON)."""
    try:
        padded = header_value + "=" * (-len(header_value) % 4)
        data = json.loads(base64.b64decode(padded).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        logger.warning("Ignoring malformed %s header", PRINCIPAL_HEADER)
        return None
    if not isinstance(data, dict):
        return None
    claims: Dict[str, Any] = {}
    raw_claims: List[Any] = data.get("claims") or []
    for claim in raw_claims:
        if not isinstance(claim, dict):
            continue
        typ = str(claim.get("typ") or "")
        claims.setdefault(_CLAIM_ALIASES.get(typ, typ), claim.get("val"))
    return user_from_claims(claims)


def _trust_easy_auth() -> bool:
    explicit = _flag("REALTY_TRUST_EASY_AUTH")
    if explicit is not None:
        return explicit
    return bool(os.getenv("WEBSITE_SITE_NAME"))


def _public_mode_enabled() -> bool:
    return bool(_flag("REALTY_PUBLIC_MODE"))


def _resolve_user(request: Request, creds: Optional[HTTPAuthorizationCredentials]) -> Optional[User]:
    if creds is not None and creds.scheme and creds.scheme.lower() == "bearer":
        return decode_token(creds.credentials)
    if _trust_easy_auth():
        header = request.headers.get(PRINCIPAL_HEADER)
        if header:
            return parse_client_principal(header)
    return None


def get_current_user(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> User:
    """Resolve the caller; 401 unless authenticated or public mode is on."""
    try:
        user = _resolve_user(request, creds)
    except HTTPException:
        if _public_mode_enabled():
            return anonymous_user()
        raise
    if user is not None:
        return user
    if _public_mode_enabled():
        return anonymous_user()
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
