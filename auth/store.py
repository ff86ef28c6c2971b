"""
auth/store.py -- SQLAlchemy Core persistence layer for principals and tokens.

Pattern: Repository + Data Mapper.
PrincipalStore and TokenStore are the repositories; _row_to_principal /
_row_to_token are the mappers. Workflow and route code never touches SQL.

Both repositories share one Engine built by create_store_engine(). Each method
opens its own connection and commits before returning, so every store call is
one atomic single-record operation. No workflow needs a multi-record
transaction except TokenStore.rotate(), which runs in engine.begin().

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(kind, email) on principals: the same address may hold one student
  and one university account, never two of the same kind.

  UNIQUE(principal_id, purpose) on single_use_tokens: at most one token per
  principal per purpose. This constraint is what makes get_or_issue() safe
  under concurrent logins -- the losing insert hits IntegrityError and reads
  the winner's row instead of creating a duplicate.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
import secrets
import time
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import Conflict
from auth.models import Principal, PrincipalKind, SingleUseToken, TokenPurpose

logger = logging.getLogger("scholargate.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_principals = Table(
    "principals",
    _metadata,
    Column("id", String(32), primary_key=True),  # uuid4 hex
    Column("kind", String(20), nullable=False),  # "student", "university"
    Column("email", String(320), nullable=False),  # lower-cased, immutable
    Column("credential_hash", Text, nullable=False),
    Column("verified", Integer, nullable=False, server_default="0"),
    Column("attributes", Text, nullable=False, server_default="{}"),  # JSON blob
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("kind", "email", name="uq_principals_kind_email"),
)

_tokens = Table(
    "single_use_tokens",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("principal_id", String(32), nullable=False),
    Column("purpose", String(20), nullable=False),  # "verification", "recovery"
    Column("secret", String(64), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", Float, nullable=False),  # epoch seconds
    UniqueConstraint("principal_id", "purpose", name="uq_tokens_principal_purpose"),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked by a writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str, timeout: float = 5.0) -> Engine:
    """Build the Engine shared by PrincipalStore and TokenStore and create tables.

    timeout bounds how long a statement waits on a locked database before
    sqlalchemy.exc.OperationalError is raised; the API maps that to a 503 so
    the caller can retry instead of hanging.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout
    engine = create_engine(db_url, connect_args=connect_args, pool_pre_ping=True)
    if db_url.startswith("sqlite") and "mode=memory" not in db_url and ":memory:" not in db_url:
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Principal repository
# ---------------------------------------------------------------------------


class PrincipalStore:
    """Repository for Principal records of both kinds.

    Reads return the full record including credential_hash -- authentication
    needs it. Anything handed to a client must go through Principal.redacted()
    or an API response model that has no hash field.

    Usage:
        engine = create_store_engine("sqlite:///scholargate.db")
        principals = PrincipalStore(engine)
        p = principals.create(Principal(kind=PrincipalKind.STUDENT, email="a@b.c", credential_hash=h))
        principals.mark_verified(p.id)
    """

    # Only these columns may change after creation. email is deliberately absent.
    _MUTABLE_FIELDS: set = {"credential_hash", "verified", "attributes"}

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, principal: Principal) -> Principal:
        """Insert a new principal and return it with id and timestamps assigned.

        Raises Conflict if a principal of the same kind already uses the email.
        The UNIQUE constraint makes this safe against two concurrent
        registrations racing past an earlier find_by_email() check.
        """
        now = _now_iso()
        created = Principal(
            id=_new_id(),
            kind=PrincipalKind(principal.kind),
            email=_normalize_email(principal.email),
            credential_hash=principal.credential_hash,
            verified=principal.verified,
            attributes=dict(principal.attributes),
            created_at=now,
            updated_at=now,
        )
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _principals.insert().values(
                        id=created.id,
                        kind=created.kind.value,
                        email=created.email,
                        credential_hash=created.credential_hash,
                        verified=1 if created.verified else 0,
                        attributes=json.dumps(created.attributes),
                        created_at=now,
                        updated_at=now,
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise Conflict() from exc
        return created

    def find_by_email(self, kind: PrincipalKind, email: str) -> Principal | None:
        """Look up a principal by (kind, email). Email match is case-insensitive."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _principals.select().where(
                    (_principals.c.kind == PrincipalKind(kind).value)
                    & (_principals.c.email == _normalize_email(email))
                )
            ).fetchone()
        return _row_to_principal(row) if row is not None else None

    def find_by_id(self, principal_id: str) -> Principal | None:
        """Look up a principal by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_principals.select().where(_principals.c.id == principal_id)).fetchone()
        return _row_to_principal(row) if row is not None else None

    def update(self, principal_id: str, **fields) -> Principal | None:
        """Apply a patch to an existing principal and return the updated record.

        Accepted fields: credential_hash, verified, attributes.
        Unknown fields (including email) raise ValueError, as does verified=False:
        verification never reverts.

        Returns None if principal_id was not found.
        """
        unknown = set(fields) - self._MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Immutable or unknown principal fields: {sorted(unknown)!r}")
        values: dict = {}
        if "verified" in fields:
            if not fields["verified"]:
                raise ValueError("verified cannot be reverted to False")
            values["verified"] = 1
        if "credential_hash" in fields:
            values["credential_hash"] = fields["credential_hash"]
        if "attributes" in fields:
            values["attributes"] = json.dumps(fields["attributes"])
        values["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_principals.update().where(_principals.c.id == principal_id).values(**values))
            conn.commit()
        if result.rowcount == 0:
            return None
        return self.find_by_id(principal_id)

    def mark_verified(self, principal_id: str) -> Principal | None:
        return self.update(principal_id, verified=True)

    def set_credential_hash(self, principal_id: str, credential_hash: str) -> Principal | None:
        return self.update(principal_id, credential_hash=credential_hash)


# ---------------------------------------------------------------------------
# Single-use token repository
# ---------------------------------------------------------------------------


class TokenStore:
    """Repository for single-use verification and recovery tokens.

    Tokens are looked up two ways: by (principal_id, secret) for verification
    links, which carry the principal id, and by secret alone for reset links,
    which do not. Every lookup is also scoped by purpose.

    A token past its expires_at never resolves; purge_expired() removes those
    rows in the background.

    Usage:
        tokens = TokenStore(engine, ttl_seconds={TokenPurpose.RECOVERY: 3600})
        token = tokens.rotate(principal_id, TokenPurpose.RECOVERY)
        found = tokens.find_by_secret(token.secret, TokenPurpose.RECOVERY)
        tokens.consume(found)
    """

    _DEFAULT_TTL = 86400

    def __init__(self, engine: Engine, ttl_seconds: dict[TokenPurpose, int] | None = None) -> None:
        self.engine = engine
        self.ttl_seconds: dict[TokenPurpose, int] = dict(ttl_seconds or {})

    def _ttl(self, purpose: TokenPurpose) -> int:
        return self.ttl_seconds.get(TokenPurpose(purpose), self._DEFAULT_TTL)

    def _new_token(self, principal_id: str, purpose: TokenPurpose) -> SingleUseToken:
        # token_hex(32): 32 random bytes as 64 hex chars, 256 bits of entropy.
        return SingleUseToken(
            id=_new_id(),
            principal_id=principal_id,
            purpose=TokenPurpose(purpose),
            secret=secrets.token_hex(32),
            created_at=_now_iso(),
            expires_at=time.time() + self._ttl(purpose),
        )

    @staticmethod
    def _insert_values(token: SingleUseToken) -> dict:
        return {
            "id": token.id,
            "principal_id": token.principal_id,
            "purpose": token.purpose.value,
            "secret": token.secret,
            "created_at": token.created_at,
            "expires_at": token.expires_at,
        }

    def issue(self, principal_id: str, purpose: TokenPurpose) -> SingleUseToken:
        """Create and persist a new token.

        Raises Conflict if a token for (principal_id, purpose) already exists --
        use get_or_issue() or rotate() when that is expected.
        """
        token = self._new_token(principal_id, purpose)
        try:
            with self.engine.connect() as conn:
                conn.execute(_tokens.insert().values(**self._insert_values(token)))
                conn.commit()
        except IntegrityError as exc:
            raise Conflict("A token for this principal already exists.") from exc
        return token

    def get_or_issue(self, principal_id: str, purpose: TokenPurpose) -> tuple[SingleUseToken, bool]:
        """Return the live token for (principal_id, purpose), creating one if needed.

        Returns (token, created). An expired token is replaced, so a principal
        whose verification mail never arrived gets a fresh link on the next
        login instead of being stuck behind a dead one.

        If a concurrent caller inserts first, the UNIQUE constraint rejects our
        insert and we return the winner's token with created=False.
        """
        purpose = TokenPurpose(purpose)
        now = time.time()
        token = self._new_token(principal_id, purpose)
        try:
            with self.engine.begin() as conn:
                row = conn.execute(
                    _tokens.select().where((_tokens.c.principal_id == principal_id) & (_tokens.c.purpose == purpose.value))
                ).fetchone()
                if row is not None and row.expires_at > now:
                    return _row_to_token(row), False
                if row is not None:
                    conn.execute(_tokens.delete().where(_tokens.c.id == row.id))
                conn.execute(_tokens.insert().values(**self._insert_values(token)))
        except IntegrityError:
            existing = self._find_live(principal_id, purpose)
            if existing is None:
                raise
            return existing, False
        return token, True

    def rotate(self, principal_id: str, purpose: TokenPurpose) -> SingleUseToken:
        """Invalidate any token for (principal_id, purpose) and issue a new one.

        Both steps run in one transaction so there is never a moment with two
        live tokens, and a crash in between leaves the old token in place.
        """
        purpose = TokenPurpose(purpose)
        token = self._new_token(principal_id, purpose)
        with self.engine.begin() as conn:
            conn.execute(
                _tokens.delete().where((_tokens.c.principal_id == principal_id) & (_tokens.c.purpose == purpose.value))
            )
            conn.execute(_tokens.insert().values(**self._insert_values(token)))
        return token

    def _find_live(self, principal_id: str, purpose: TokenPurpose) -> SingleUseToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _tokens.select().where(
                    (_tokens.c.principal_id == principal_id)
                    & (_tokens.c.purpose == TokenPurpose(purpose).value)
                    & (_tokens.c.expires_at > time.time())
                )
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    def find_by_principal_and_secret(
        self, principal_id: str, secret: str, purpose: TokenPurpose
    ) -> SingleUseToken | None:
        """Resolve a verification-style link. Returns None if absent, expired, or another purpose."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _tokens.select().where(
                    (_tokens.c.principal_id == principal_id)
                    & (_tokens.c.secret == secret)
                    & (_tokens.c.purpose == TokenPurpose(purpose).value)
                    & (_tokens.c.expires_at > time.time())
                )
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    def find_by_secret(self, secret: str, purpose: TokenPurpose) -> SingleUseToken | None:
        """Resolve a reset-style link, which carries no principal id."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _tokens.select().where(
                    (_tokens.c.secret == secret)
                    & (_tokens.c.purpose == TokenPurpose(purpose).value)
                    & (_tokens.c.expires_at > time.time())
                )
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    def invalidate_for_principal(self, principal_id: str, purpose: TokenPurpose | None = None) -> int:
        """Delete the principal's tokens (of one purpose, or all). Returns rows removed."""
        condition = _tokens.c.principal_id == principal_id
        if purpose is not None:
            condition = condition & (_tokens.c.purpose == TokenPurpose(purpose).value)
        with self.engine.connect() as conn:
            result = conn.execute(_tokens.delete().where(condition))
            conn.commit()
        return result.rowcount

    def consume(self, token: SingleUseToken) -> bool:
        """Delete a spent token. Returns False if it was already gone."""
        with self.engine.connect() as conn:
            result = conn.execute(_tokens.delete().where(_tokens.c.id == token.id))
            conn.commit()
        return result.rowcount > 0

    def purge_expired(self) -> int:
        """Delete every expired token. Returns number of rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_tokens.delete().where(_tokens.c.expires_at <= time.time()))
            conn.commit()
        if result.rowcount:
            logger.info("Purged %d expired single-use tokens", result.rowcount)
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row) -> Principal:
    return Principal(
        id=row.id,
        kind=PrincipalKind(row.kind),
        email=row.email,
        credential_hash=row.credential_hash,
        verified=bool(row.verified),
        attributes=json.loads(row.attributes or "{}"),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_token(row) -> SingleUseToken:
    return SingleUseToken(
        id=row.id,
        principal_id=row.principal_id,
        purpose=TokenPurpose(row.purpose),
        secret=row.secret,
        created_at=row.created_at,
        expires_at=row.expires_at,
    )
