"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore, TokenStore and ProofStore are
the repositories; the _row_to_* functions are the mappers. Services never
touch SQL directly.

All three repositories share one Engine (create_auth_engine) so they see the
same database and the same connection pool.

Concurrency: per-user linearizability comes from single-statement UPDATEs.
  TokenStore.revoke_all_for_user() flips every live row in one statement.
  ProofStore.mark_confirmed() is a conditional UPDATE -- it only matches a
  row that is still unconfirmed and unexpired, and reports via rowcount
  whether it won. Two concurrent consumers cannot both see rowcount == 1.

Time: timestamps that take part in comparisons (proof expires_at /
confirmed_at) are stored as REAL epoch seconds; audit timestamps
(created_at) as ISO 8601 text.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Proof values are stored as HMAC digests only (see auth/proofs.py).

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

from auth.models import EphemeralProof, LedgerEntry, ProofKind, TokenKind, User
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("roles", Text, nullable=False, server_default="ROLE_USER"),  # space-separated
    Column("enabled", Integer, nullable=False, server_default="0"),
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("mfa_secret", String(64), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_tokens = Table(
    "tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token", Text, nullable=False, unique=True),
    Column("jti", String(64)),
    Column("kind", String(16), nullable=False),
    Column("expired", Integer, nullable=False, server_default="0"),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_proofs = Table(
    "proofs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("kind", String(32), nullable=False),
    Column("value_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("payload", Text),
    Column("expires_at", Float, nullable=False),
    Column("confirmed_at", Float),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode. Set per-connection; PRAGMAs are not inherited."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_auth_engine(db_url: str | None = None) -> Engine:
    """Create the shared Engine and make sure the schema exists."""
    db_url = db_url or get_settings().database_url
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_epoch(value: datetime) -> float:
    return value.timestamp()


def _from_epoch(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records.

    Usage:
        store = UserStore(create_auth_engine())
        uid = store.create_user(user)
        store.enable("alice@x.com")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. AccountService checks both first and treats the IntegrityError
        as the concurrent-registration case.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email,
                    hashed_password=user.hashed_password,
                    roles=" ".join(user.roles),
                    enabled=1 if user.enabled else 0,
                    mfa_enabled=1 if user.mfa_enabled else 0,
                    mfa_secret=user.mfa_secret,
                    created_at=user.created_at or _now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def username_exists(self, username: str) -> bool:
        return self.get_by_username(username) is not None

    def email_exists(self, email: str) -> bool:
        return self.get_by_email(email) is not None

    def save(self, user: User) -> bool:
        """Write back every mutable field of an existing user.

        Returns True if a row was updated, False if user.id was not found.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user.id)
                .values(
                    email=user.email,
                    hashed_password=user.hashed_password,
                    roles=" ".join(user.roles),
                    enabled=1 if user.enabled else 0,
                    mfa_enabled=1 if user.mfa_enabled else 0,
                    mfa_secret=user.mfa_secret,
                )
            )
            conn.commit()
        return result.rowcount > 0

    def enable(self, email: str) -> bool:
        """Mark the account owning email as confirmed. Returns True if a row changed."""
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.email == email).values(enabled=1))
            conn.commit()
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Token ledger rows
# ---------------------------------------------------------------------------


class TokenStore:
    """Repository for issued bearer tokens. Rows are never deleted."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def save(self, entry: LedgerEntry) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _tokens.insert().values(
                    user_id=entry.user_id,
                    token=entry.token,
                    jti=entry.jti,
                    kind=TokenKind(entry.kind).value,
                    expired=1 if entry.expired else 0,
                    revoked=1 if entry.revoked else 0,
                    created_at=entry.created_at or _now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def find_by_value(self, token: str) -> LedgerEntry | None:
        with self.engine.connect() as conn:
            row = conn.execute(_tokens.select().where(_tokens.c.token == token)).fetchone()
        return _row_to_entry(row) if row is not None else None

    def find_all_valid_for_user(self, user_id: int) -> list[LedgerEntry]:
        """Return the user's entries that are neither expired nor revoked (oldest first)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _tokens.select()
                .where((_tokens.c.user_id == user_id) & (_tokens.c.expired == 0) & (_tokens.c.revoked == 0))
                .order_by(_tokens.c.id)
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def revoke_all_for_user(self, user_id: int) -> int:
        """Flip every live entry of user_id to expired+revoked in one statement.

        Returns the number of entries revoked.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _tokens.update()
                .where((_tokens.c.user_id == user_id) & (_tokens.c.expired == 0) & (_tokens.c.revoked == 0))
                .values(expired=1, revoked=1)
            )
            conn.commit()
        return result.rowcount

    def revoke(self, token: str) -> bool:
        """Mark a single entry expired+revoked. Returns True if it was live."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _tokens.update()
                .where((_tokens.c.token == token) & ((_tokens.c.expired == 0) | (_tokens.c.revoked == 0)))
                .values(expired=1, revoked=1)
            )
            conn.commit()
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Ephemeral proofs
# ---------------------------------------------------------------------------


class ProofStore:
    """Repository for confirmation / reset / email-change proofs."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def save(self, proof: EphemeralProof) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _proofs.insert().values(
                    user_id=proof.user_id,
                    kind=ProofKind(proof.kind).value,
                    value_hash=proof.value_hash,
                    payload=proof.payload,
                    expires_at=_to_epoch(proof.expires_at),
                    confirmed_at=_to_epoch(proof.confirmed_at) if proof.confirmed_at else None,
                    created_at=proof.created_at or _now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def find_by_value(self, value_hash: str) -> EphemeralProof | None:
        with self.engine.connect() as conn:
            row = conn.execute(_proofs.select().where(_proofs.c.value_hash == value_hash)).fetchone()
        return _row_to_proof(row) if row is not None else None

    def delete_all_for_user(self, user_id: int, kind: ProofKind | None = None) -> int:
        """Delete the user's proofs (optionally of one kind). Returns rows removed."""
        condition = _proofs.c.user_id == user_id
        if kind is not None:
            condition = condition & (_proofs.c.kind == ProofKind(kind).value)
        with self.engine.connect() as conn:
            result = conn.execute(_proofs.delete().where(condition))
            conn.commit()
        return result.rowcount

    def mark_confirmed(self, value_hash: str, now: datetime) -> bool:
        """Set confirmed_at only if the proof is still unconfirmed and unexpired.

        Returns True if this call performed the transition.
        """
        ts = _to_epoch(now)
        with self.engine.connect() as conn:
            result = conn.execute(
                _proofs.update()
                .where(
                    (_proofs.c.value_hash == value_hash)
                    & (_proofs.c.confirmed_at.is_(None))
                    & (_proofs.c.expires_at >= ts)
                )
                .values(confirmed_at=ts)
            )
            conn.commit()
        return result.rowcount == 1


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        roles=row.roles.split(),
        enabled=bool(row.enabled),
        mfa_enabled=bool(row.mfa_enabled),
        mfa_secret=row.mfa_secret,
        created_at=row.created_at,
    )


def _row_to_entry(row) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        jti=row.jti,
        kind=TokenKind(row.kind),
        expired=bool(row.expired),
        revoked=bool(row.revoked),
        created_at=row.created_at,
    )


def _row_to_proof(row) -> EphemeralProof:
    return EphemeralProof(
        id=row.id,
        user_id=row.user_id,
        kind=ProofKind(row.kind),
        value_hash=row.value_hash,
        payload=row.payload,
        expires_at=_from_epoch(row.expires_at),
        confirmed_at=_from_epoch(row.confirmed_at),
        created_at=row.created_at,
    )
