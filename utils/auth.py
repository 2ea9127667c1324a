from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

ALGORITHMS = ["RS256"]

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Auth0Config:
    domain: Optional[str]
    audience: Optional[str]
    issuer: Optional[str]
    jwks_cache_ttl: int = 3600

    @classmethod
    def from_env(cls) -> "Auth0Config":
        domain = os.getenv("AUTH0_DOMAIN")
        raw_ttl = os.getenv("AUTH0_JWKS_CACHE_TTL")
        try:
            ttl = max(int(raw_ttl), 60) if raw_ttl else 3600
        except ValueError:
            ttl = 3600
        return cls(
            domain=domain,
            audience=os.getenv("AUTH0_AUDIENCE"),
            issuer=os.getenv("AUTH0_ISSUER") or (f"https://{domain}/" if domain else None),
            jwks_cache_ttl=ttl,
        )

    def missing(self) -> List[str]:
        names = {"AUTH0_DOMAIN": self.domain, "AUTH0_AUDIENCE": self.audience, "AUTH0_ISSUER": self.issuer}
        return [name for name, value in names.items() if not value]

    @property
    def configured(self) -> bool:
        return not self.missing()


@dataclass
class AuthContext:
    """The identity provider's view of the caller.

    ``sub`` is the identity provider id that checkout sessions carry as
    ``client_reference_id``.
    """

    token: str
    sub: str
    email: Optional[str]


class JWKSCache:
    def __init__(self, config: Auth0Config) -> None:
        self._config = config
        self._keys: Optional[Dict[str, Any]] = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def _fetch(self) -> Dict[str, Any]:
        jwks_url = f"https://{self._config.domain}/.well-known/jwks.json"
        try:
            response = httpx.get(jwks_url, timeout=10.0)
            response.raise_for_status()
        except httpx.HTTPError as exc:  # pragma: no cover - network failure path
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Unable to fetch identity provider public keys.",
            ) from exc
        return response.json()

    def get(self, force_refresh: bool = False) -> Dict[str, Any]:
        with self._lock:
            now = time.monotonic()
            if force_refresh or self._keys is None or now >= self._expires_at:
                self._keys = self._fetch()
                self._expires_at = now + self._config.jwks_cache_ttl
            return self._keys

    def find(self, kid: Optional[str]) -> Optional[Dict[str, Any]]:
        key = next((k for k in self.get().get("keys", []) if k.get("kid") == kid), None)
        if key is None:
            key = next((k for k in self.get(force_refresh=True).get("keys", []) if k.get("kid") == kid), None)
        return key


AUTH0 = Auth0Config.from_env()
_jwks = JWKSCache(AUTH0)


def _decode_token(token: str) -> Dict[str, Any]:
    if not AUTH0.configured:
        message = f"Missing Auth0 configuration values: {', '.join(AUTH0.missing())}"
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=message)

    try:
        unverified_header = jwt.get_unverified_header(token)
    except JWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token header.") from exc

    jwk_key = _jwks.find(unverified_header.get("kid"))
    if jwk_key is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token header.")

    try:
        return jwt.decode(
            token,
            jwk_key,
            algorithms=ALGORITHMS,
            audience=AUTH0.audience,
            issuer=AUTH0.issuer,
        )
    except JWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token.") from exc


def get_auth_context(credentials: HTTPAuthorizationCredentials = Depends(security)) -> AuthContext:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authorization header is required.")

    token = credentials.credentials
    payload = _decode_token(token)
    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token payload is missing subject.")

    return AuthContext(token=token, sub=sub, email=payload.get("email"))
