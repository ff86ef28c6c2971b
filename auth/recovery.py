"""
auth/recovery.py -- Forgot-password / reset-password workflow.

States per principal: Requested -> TokenIssued -> Consumed. Recovery tokens
carry purpose=recovery and live independently of verification tokens, so a
pending verification link and a reset link never invalidate each other.

request_reset() answers the same way whether or not the email exists and
whether or not the mail went out; the outcome is only logged. This keeps the
endpoint from confirming which addresses hold accounts.

perform_reset() commits the new hash before deleting the token. If the process
dies in between, the token is still live and the user can simply reuse the
link; the reverse order could lose the reset. A failed delete afterwards is
logged and ignored -- the password has already changed.
"""

from __future__ import annotations

import enum
import logging

from sqlalchemy.exc import SQLAlchemyError

from auth.credentials import CredentialVerifier
from auth.errors import InvalidLink
from auth.models import PrincipalKind, SingleUseToken, TokenPurpose
from auth.store import PrincipalStore, TokenStore
from core.logsafe import redact_email
from notify.gateway import NotificationGateway

logger = logging.getLogger("scholargate.auth.recovery")

RESET_SUBJECT = "Reset Password"


class RecoveryOutcome(str, enum.Enum):
    """What actually happened on a reset request. Never shown to the caller."""

    SENT = "sent"
    UNKNOWN_EMAIL = "unknown_email"
    DELIVERY_FAILED = "delivery_failed"


class RecoveryWorkflow:
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

    def reset_link(self, token: SingleUseToken, kind: PrincipalKind) -> str:
        return f"{self.frontend_url}/auth/reset/{token.secret}?type={kind.value}"

    def request_reset(self, email: str, kind: PrincipalKind | str) -> RecoveryOutcome:
        """Issue a fresh recovery token (invalidating any older one) and mail the link."""
        kind = PrincipalKind.parse(kind)
        principal = self.principals.find_by_email(kind, email)
        if principal is None:
            logger.info("Password reset requested for unknown %s email %s", kind.value, redact_email(email))
            return RecoveryOutcome.UNKNOWN_EMAIL

        token = self.tokens.rotate(principal.id, TokenPurpose.RECOVERY)
        result = self.gateway.deliver(principal.email, RESET_SUBJECT, self.reset_link(token, kind))
        if not result.ok:
            logger.warning(
                "Recovery mail to %s for principal %s not delivered (%s)",
                redact_email(principal.email),
                principal.id,
                result.error,
            )
            return RecoveryOutcome.DELIVERY_FAILED
        logger.info("Recovery token issued for principal %s", principal.id)
        return RecoveryOutcome.SENT

    def perform_reset(self, secret: str, new_password: str, kind: PrincipalKind | str) -> None:
        """Replace the principal's password if the reset link resolves.

        Raises InvalidLink when the token is unknown, used, expired, or was
        issued for a different kind of account. ValidationFailed (password too
        long) is raised before the token is touched.
        """
        kind = PrincipalKind.parse(kind)
        token = self.tokens.find_by_secret(secret, TokenPurpose.RECOVERY)
        if token is None:
            raise InvalidLink()

        principal = self.principals.find_by_id(token.principal_id)
        if principal is None:
            # Dangling token: spend it so it cannot be probed again.
            self._consume(token)
            raise InvalidLink()
        if principal.kind != kind:
            raise InvalidLink()

        credential_hash = self.credentials.hash(new_password)
        self.principals.set_credential_hash(principal.id, credential_hash)
        self._consume(token)
        logger.info("Password reset completed for principal %s", principal.id)

    def _consume(self, token: SingleUseToken) -> None:
        try:
            self.tokens.consume(token)
        except SQLAlchemyError:
            logger.warning("Could not delete spent recovery token %s", token.id, exc_info=True)
