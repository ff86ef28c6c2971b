"""
auth/sessions.py -- Login, refresh and logout protocols.

Only Verified principals get session assertions:

  login    Unknown email     -> NotFound      (after a dummy bcrypt check)
           Wrong password    -> Unauthorized
           Unverified        -> PendingVerification, after re-sending the
                                verification link if no live token exists
           Verified          -> access assertion + refresh assertion

  refresh  Missing / tampered / expired / wrong-type cookie -> Forbidden
           Principal no longer resolvable                   -> NotFound
           Otherwise a new access assertion. The principal is re-resolved by
           (kind, email) on every call -- nothing is cached -- so an account
           that disappears is locked out at its next refresh.

  logout   Stateless: the route clears the cookie. Idempotent.

The server keeps no session table.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from auth.credentials import CredentialVerifier
from auth.errors import Forbidden, NotFound, PendingVerification, Unauthorized
from auth.models import Principal, PrincipalKind
from auth.store import PrincipalStore
from auth.tokens import AssertionSigner
from auth.verification import VerificationWorkflow
from core.logsafe import redact_email

logger = logging.getLogger("scholargate.auth.sessions")


@dataclass(frozen=True)
class AccessGrant:
    access_token: str
    expires_in: int


@dataclass(frozen=True)
class SessionTokens:
    access_token: str
    expires_in: int
    refresh_token: str  # cookie only -- never put this in a response body
    principal: Principal  # redacted


class SessionService:
    def __init__(
        self,
        principals: PrincipalStore,
        credentials: CredentialVerifier,
        signer: AssertionSigner,
        verification: VerificationWorkflow,
    ) -> None:
        self.principals = principals
        self.credentials = credentials
        self.signer = signer
        self.verification = verification

    def login(self, email: str, password: str, kind: PrincipalKind | str) -> SessionTokens:
        kind = PrincipalKind.parse(kind)
        principal = self.principals.find_by_email(kind, email)
        if principal is None:
            # Equalize timing before failing -- do NOT return before running bcrypt.
            self.credentials.burn(password)
            raise NotFound()
        if not self.credentials.verify(password, principal.credential_hash):
            logger.info("Failed login for %s principal %s", kind.value, principal.id)
            raise Unauthorized()

        if not principal.verified:
            sent = self.verification.send_verification(principal)
            logger.info(
                "Login by unverified principal %s (%s); verification mail %s",
                principal.id,
                redact_email(principal.email),
                "kept existing token" if sent is None else ("sent" if sent else "failed"),
            )
            raise PendingVerification()

        logger.info("Login succeeded for %s principal %s", kind.value, principal.id)
        return SessionTokens(
            access_token=self.signer.mint_access(principal.email, principal.id, principal.kind),
            expires_in=self.signer.access_expire_seconds,
            refresh_token=self.signer.mint_refresh(principal.email, principal.kind),
            principal=principal.redacted(),
        )

    def refresh(self, refresh_token: str | None) -> AccessGrant:
        if not refresh_token:
            raise Forbidden("Unauthorized, no refresh cookie found.")
        claims = self.signer.decode_refresh(refresh_token)
        if claims is None:
            raise Forbidden()
        principal = self.principals.find_by_email(claims.kind, claims.email)
        if principal is None:
            raise NotFound()
        return AccessGrant(
            access_token=self.signer.mint_access(principal.email, principal.id, principal.kind),
            expires_in=self.signer.access_expire_seconds,
        )

    def logout(self, refresh_token: str | None) -> bool:
        """Return True if there was a session cookie to clear."""
        if not refresh_token:
            return False
        claims = self.signer.decode_refresh(refresh_token)
        if claims is not None:
            logger.info("Logout for %s %s", claims.kind.value, redact_email(claims.email))
        return True

    def resolve_access(self, access_token: str) -> Principal | None:
        """Return the (redacted) principal an access assertion belongs to, or None."""
        claims = self.signer.decode_access(access_token)
        if claims is None:
            return None
        principal = self.principals.find_by_id(claims.principal_id)
        if principal is None or principal.kind != claims.kind or not principal.verified:
            return None
        return principal.redacted()
