"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
workflows do the work; these only own the domain shape.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum

from auth.errors import ValidationFailed


class PrincipalKind(str, Enum):
    """Role discriminant. Gates which attributes and links apply."""

    STUDENT = "student"
    UNIVERSITY = "university"

    @classmethod
    def parse(cls, value: str | PrincipalKind) -> PrincipalKind:
        """Coerce a caller-supplied kind, raising ValidationFailed for anything else."""
        try:
            return cls(value)
        except ValueError:
            raise ValidationFailed("Invalid account type.") from None


class TokenPurpose(str, Enum):
    """What a single-use token may be spent on.

    A verification token can never be replayed as a password-reset token (or
    the reverse): every token lookup is scoped by purpose.
    """

    VERIFICATION = "verification"
    RECOVERY = "recovery"


@dataclass
class Principal:
    """One authenticable account, either a student or a university.

    email is stored lower-cased and never changes after creation.
    credential_hash is the bcrypt hash; it is empty on redacted copies.
    verified only ever moves from False to True.

    attributes holds the kind-specific profile:
      student:    first_name, last_name, birth_date, nationality, phone
      university: name, province, postal_code, phone, documents (list of URLs)
    """

    kind: PrincipalKind
    email: str
    credential_hash: str
    id: str | None = None
    verified: bool = False
    attributes: dict = field(default_factory=dict)
    created_at: str | None = None
    updated_at: str | None = None

    def redacted(self) -> Principal:
        """Return a copy safe to hand to clients (no credential hash)."""
        return replace(self, credential_hash="", attributes=dict(self.attributes))


@dataclass
class SingleUseToken:
    """A capability proving control of the principal's email at one point in time.

    secret is 64 hex chars (256 bits). It is stored in plain text: it is
    already unguessable and is deleted on first successful use.
    """

    principal_id: str
    purpose: TokenPurpose
    secret: str
    id: str | None = None
    created_at: str | None = None
    expires_at: float | None = None  # epoch seconds
