"""
auth/tokens.py -- Session assertion (JWT) minting, decoding, and cookie helpers.

Security design decisions:
  JWT: python-jose with HS256. Two assertion kinds, each signed with its own
       secret [S1]:
         access  -- {email, principal_id, kind, type="access"}, ~1 hour,
                    returned in the JSON body, sent back as a Bearer header.
         refresh -- {email, kind, type="refresh"}, ~1 day, only ever sent as
                    an httpOnly cookie.
       The "type" claim is checked as well, so even a misconfigured deployment
       with identical secrets cannot use one kind as the other.

       decode_*() returns None on any failure (bad signature, expired,
       malformed, wrong type). The session workflow turns None into Forbidden
       or Unauthorized.

  Secrets are injected through the Settings instance passed to
  AssertionSigner -- there is no module-level key.

Layer rule: no imports from api/. Cookie helpers take any Starlette-style
response object (anything with set_cookie / delete_cookie).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.models import PrincipalKind
from core.config import Settings

logger = logging.getLogger("scholargate.auth.tokens")

_ALGORITHM = "HS256"
_ACCESS = "access"
_REFRESH = "refresh"


@dataclass(frozen=True)
class AccessClaims:
    email: str
    principal_id: str
    kind: PrincipalKind


@dataclass(frozen=True)
class RefreshClaims:
    email: str
    kind: PrincipalKind


class AssertionSigner:
    """Mints and verifies access and refresh assertions."""

    def __init__(self, settings: Settings) -> None:
        self._access_key = settings.access_secret_key
        self._refresh_key = settings.refresh_secret_key
        self.access_expire_seconds = settings.access_token_expire_seconds
        self.refresh_expire_seconds = settings.refresh_token_expire_seconds

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    def mint_access(self, email: str, principal_id: str, kind: PrincipalKind) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "email": email,
            "principal_id": principal_id,
            "kind": PrincipalKind(kind).value,
            "type": _ACCESS,
            "iat": now,
            "exp": now + timedelta(seconds=self.access_expire_seconds),
        }
        return jwt.encode(payload, self._access_key, algorithm=_ALGORITHM)

    def mint_refresh(self, email: str, kind: PrincipalKind) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "email": email,
            "kind": PrincipalKind(kind).value,
            "type": _REFRESH,
            "iat": now,
            "exp": now + timedelta(seconds=self.refresh_expire_seconds),
        }
        return jwt.encode(payload, self._refresh_key, algorithm=_ALGORITHM)

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def decode_access(self, token: str) -> AccessClaims | None:
        """Verify an access assertion. Returns its claims or None on any failure."""
        payload = _decode(token, self._access_key, _ACCESS)
        if payload is None or not payload.get("principal_id"):
            return None
        return AccessClaims(
            email=payload["email"],
            principal_id=payload["principal_id"],
            kind=PrincipalKind(payload["kind"]),
        )

    def decode_refresh(self, token: str) -> RefreshClaims | None:
        """Verify a refresh assertion. Returns its claims or None on any failure."""
        payload = _decode(token, self._refresh_key, _REFRESH)
        if payload is None:
            return None
        return RefreshClaims(email=payload["email"], kind=PrincipalKind(payload["kind"]))


def _decode(token: str, key: str, expected_type: str) -> dict | None:
    try:
        payload = jwt.decode(token, key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != expected_type or not payload.get("email"):
        return None
    if payload.get("kind") not in {k.value for k in PrincipalKind}:
        return None
    return payload


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_refresh_cookie(response, token: str, settings: Settings) -> None:
    """Write the refresh assertion as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="strict": never sent on cross-site requests (CSRF mitigation for
        the refresh endpoint, which mints credentials).
    path: scoped to the auth routes so the cookie is not attached to every
        API call.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the assertion expiry so both expire together.
    """
    response.set_cookie(
        settings.refresh_cookie_name,
        value=token,
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
        max_age=settings.refresh_token_expire_seconds,
        path=settings.refresh_cookie_path,
    )


def clear_refresh_cookie(response, settings: Settings) -> None:
    """Expire the refresh cookie. Attributes must match set_refresh_cookie()."""
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
    )
