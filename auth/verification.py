"""
auth/verification.py -- Registration and email-verification workflow.

Lifecycle of a principal: Unregistered -> Unverified -> Verified.

  register()           creates the unverified principal, issues a verification
                       token and mails the link. Store writes are sequenced:
                       principal first, token second, delivery last.
  send_verification()  re-entry point used by login: issues and mails a token
                       only when the principal has no live one.
  verify()             resolves the link, flips verified, then consumes the
                       token.

Delivery failures do not fail registration. The principal ends up Unverified
(possibly with an undelivered token); logging in again after the token expires
issues a fresh one. Every failed delivery is logged as a warning.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from auth.credentials import CredentialVerifier
from auth.errors import InvalidLink
from auth.models import Principal, PrincipalKind, SingleUseToken, TokenPurpose
from auth.store import PrincipalStore, TokenStore
from core.logsafe import redact_email
from notify.gateway import NotificationGateway

logger = logging.getLogger("scholargate.auth.verification")

VERIFY_SUBJECT = "Verify email"


@dataclass
class Registration:
    principal: Principal  # redacted
    verification_email_sent: bool


class VerificationWorkflow:
    def __init__(
        self,
        principals: PrincipalStore,
        tokens: TokenStore,
        credentials: CredentialVerifier,
        gateway: NotificationGateway,
        frontend_url: str,
    ) -> None:
        self.principals = principals
        self.tokens = tokens
        self.credentials = credentials
        self.gateway = gateway
        self.frontend_url = frontend_url.rstrip("/")

    def verification_link(self, principal: Principal, token: SingleUseToken) -> str:
        return f"{self.frontend_url}/auth/{principal.id}/{principal.kind.value}/verify/{token.secret}"

    def email_available(self, kind: PrincipalKind | str, email: str) -> bool:
        """Cheap pre-check so callers can skip expensive work (uploads) for a taken email.

        register() still relies on the store's UNIQUE constraint; this check
        alone does not prevent a race.
        """
        return self.principals.find_by_email(PrincipalKind.parse(kind), email) is None

    def register(
        self,
        kind: PrincipalKind | str,
        email: str,
        password: str,
        attributes: dict | None = None,
    ) -> Registration:
        """Create an unverified principal and send its verification link.

        Raises ValidationFailed (bad kind, over-long password) before touching
        the store, and Conflict if the email is taken for this kind.
        """
        kind = PrincipalKind.parse(kind)
        credential_hash = self.credentials.hash(password)
        principal = self.principals.create(
            Principal(
                kind=kind,
                email=email,
                credential_hash=credential_hash,
                attributes=dict(attributes or {}),
            )
        )
        logger.info("Registered %s principal %s", kind.value, principal.id)

        token = self.tokens.issue(principal.id, TokenPurpose.VERIFICATION)
        sent = self._deliver(principal, token)
        return Registration(principal=principal.redacted(), verification_email_sent=sent)

    def send_verification(self, principal: Principal) -> bool | None:
        """Issue and deliver a verification link unless a live one already exists.

        Returns None when an existing live token was kept (nothing sent),
        otherwise whether delivery succeeded.
        """
        token, created = self.tokens.get_or_issue(principal.id, TokenPurpose.VERIFICATION)
        if not created:
            return None
        return self._deliver(principal, token)

    def _deliver(self, principal: Principal, token: SingleUseToken) -> bool:
        result = self.gateway.deliver(principal.email, VERIFY_SUBJECT, self.verification_link(principal, token))
        if not result.ok:
            logger.warning(
                "Verification mail to %s for principal %s not delivered (%s)",
                redact_email(principal.email),
                principal.id,
                result.error,
            )
        return result.ok

    def verify(self, principal_id: str, secret: str, kind: PrincipalKind | str) -> Principal:
        """Mark the principal verified if the link resolves, then spend the token.

        Unknown principal, kind mismatch, and unknown/used/expired token all
        raise the same InvalidLink.
        """
        kind = PrincipalKind.parse(kind)
        principal = self.principals.find_by_id(principal_id)
        if principal is None or principal.kind != kind:
            raise InvalidLink()
        token = self.tokens.find_by_principal_and_secret(principal.id, secret, TokenPurpose.VERIFICATION)
        if token is None:
            raise InvalidLink()

        if not principal.verified:
            principal = self.principals.mark_verified(principal.id) or principal
        self._consume(token)
        logger.info("Principal %s verified", principal.id)
        return principal.redacted()

    def _consume(self, token: SingleUseToken) -> None:
        # The verified flag is already committed; a leftover token is harmless
        # (it only re-verifies) and expires on its own.
        try:
            self.tokens.consume(token)
        except SQLAlchemyError:
            logger.warning("Could not delete spent verification token %s", token.id, exc_info=True)
