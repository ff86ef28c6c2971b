"""
auth/credentials.py -- Password hashing and verification.

bcrypt is used directly (no passlib wrapper). Its cost factor makes each
hash deliberately slow -- the right trade-off for low-entropy secrets such as
passwords. checkpw() compares in constant time.

bcrypt only looks at the first 72 bytes of its input, and bcrypt >= 5 raises
ValueError beyond that. hash() rejects such passwords up front with
ValidationFailed instead of letting two different long passwords collide.

Plaintext secrets are never logged or stored; they live only for the duration
of the call.
"""

from __future__ import annotations

import bcrypt

from auth.errors import ValidationFailed

MAX_PASSWORD_BYTES = 72


class CredentialVerifier:
    """Hashes new credentials and checks submitted ones.

    rounds is the bcrypt log2 cost factor (12 in production, 4 in tests).
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        self._dummy_hash: str | None = None

    def hash(self, secret: str) -> str:
        """Return a salted bcrypt hash of secret."""
        encoded = secret.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            raise ValidationFailed(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")
        return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, secret: str, credential_hash: str) -> bool:
        """Return True if secret matches credential_hash. Malformed input returns False."""
        try:
            return bcrypt.checkpw(secret.encode("utf-8"), credential_hash.encode("utf-8"))
        except ValueError:
            return False

    def burn(self, secret: str) -> None:
        """Spend one verify() worth of time against a dummy hash.

        Called when the email is unknown so that response time does not depend
        on whether an account exists. The dummy hash is computed lazily once.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self.hash("scholargate_timing_dummy")
        self.verify(secret, self._dummy_hash)
