"""
auth/store.py -- SQLAlchemy Core persistence layer for user accounts.

Pattern: Repository + Data Mapper (same as qa/store.py).
UserStore is the repository; _row_to_user is the mapper. Route and dependency
code never touches SQL directly.

Repository surface consumed by the auth endpoints:
  find_by_email / find_by_id / find_by_verification_token / find_by_reset_token
  create / save / compare_password

Pre-save hook:
  create() and save() hash User.password (the transient plaintext slot) into
  hashed_password before writing, then clear it. Routes assign a new password
  and save; they never hash it themselves.

Security:
  All queries use bound parameters. No f-strings in SQL.
  One-time tokens are looked up by sha256(raw) -- the raw value never reaches
  the database.
  email carries a UNIQUE index and is always stored lower-cased, so duplicate
  detection is case-insensitive and a concurrent duplicate insert surfaces as
  IntegrityError.

Timestamps are stored as ISO 8601 UTC strings and mapped to aware datetimes.

Layer rule: no imports from api/, web/, or qa/. Import from core/ is allowed.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    text,
)
from sqlalchemy.engine import Engine

from auth.models import User
from auth.tokens import hash_password, hash_token, verify_password
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False),
    Column("email", String(255), nullable=False, unique=True),  # lower-cased on write
    Column("hashed_password", Text, nullable=False),
    Column("avatar", Text),
    Column("role", String(20), nullable=False, server_default="user"),
    Column("reputation", Integer, nullable=False, server_default="0"),
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("verification_token_hash", String(64), index=True),  # sha256 hex
    Column("verification_expires", String(32)),
    Column("reset_token_hash", String(64), index=True),  # sha256 hex
    Column("reset_expires", String(32)),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    CheckConstraint("reputation >= 0", name="ck_users_reputation"),
    CheckConstraint("role IN ('user', 'moderator', 'admin')", name="ck_users_role"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _apply_password(user: User) -> None:
    """Pre-save hook: hash a newly assigned plaintext password."""
    if user.password:
        user.hashed_password = hash_password(user.password)
        user.password = None


def _writable(user: User) -> dict:
    return {
        "name": user.name.strip(),
        "email": user.email.strip().lower(),
        "hashed_password": user.hashed_password,
        "avatar": user.avatar,
        "role": user.role,
        "reputation": user.reputation,
        "is_verified": 1 if user.is_verified else 0,
        "verification_token_hash": user.verification_token_hash,
        "verification_expires": _iso(user.verification_expires),
        "reset_token_hash": user.reset_token_hash,
        "reset_expires": _iso(user.reset_expires),
        "last_login_at": _iso(user.last_login_at),
    }


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records.

    Usage:
        store = UserStore()
        user = store.create(User(name="Ada", email="ada@example.com", password="s3cret-pass"))
        same = store.find_by_email("ADA@example.com")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception:
            return False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _find_one(self, clause) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(clause)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_email(self, email: str) -> User | None:
        """Case-insensitive lookup. Returns None if not found."""
        return self._find_one(users.c.email == email.strip().lower())

    def find_by_id(self, user_id: int | str) -> User | None:
        """Look up by primary key. Non-numeric ids (e.g. a tampered sub claim) return None."""
        try:
            key = int(user_id)
        except (TypeError, ValueError):
            return None
        return self._find_one(users.c.id == key)

    def find_many(self, user_ids: Iterable[int]) -> dict[int, User]:
        """Return {id: User} for the given ids; unknown ids are simply absent."""
        ids = {int(i) for i in user_ids}
        if not ids:
            return {}
        with self.engine.connect() as conn:
            rows = conn.execute(users.select().where(users.c.id.in_(ids))).fetchall()
        return {row.id: _row_to_user(row) for row in rows}

    def find_by_verification_token(self, raw_token: str) -> User | None:
        """Find the account whose stored verification hash matches sha256(raw_token).

        Expiry is not checked here; the verify-email route decides that.
        """
        return self._find_one(users.c.verification_token_hash == hash_token(raw_token))

    def find_by_reset_token(self, raw_token: str, now: datetime | None = None) -> User | None:
        """Find the account holding this reset token, only while the token is unexpired."""
        user = self._find_one(users.c.reset_token_hash == hash_token(raw_token))
        if user is None or user.reset_expires is None:
            return None
        if user.reset_expires <= (now or _now()):
            return None
        return user

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, user: User) -> User:
        """Insert a new user and return it with id and timestamps filled in.

        Raises sqlalchemy.exc.IntegrityError if the email is already taken.
        Callers translate that into a 409 -- the check-then-insert in the
        register route can race, the UNIQUE index cannot.
        """
        _apply_password(user)
        if not user.hashed_password:
            raise ValueError("A password is required to create a user.")
        now = _now()
        values = _writable(user)
        values["created_at"] = _iso(now)
        values["updated_at"] = _iso(now)
        with self.engine.connect() as conn:
            result = conn.execute(users.insert().values(**values))
            conn.commit()
        user.id = result.inserted_primary_key[0]
        user.email = values["email"]
        user.name = values["name"]
        user.created_at = now
        user.updated_at = now
        return user

    def save(self, user: User) -> None:
        """Write every mutable field of an existing user back to the database.

        Not wrapped in a wider transaction: a crash between a route's load and
        this write leaves the previous row intact, and re-running the flow is
        idempotent.
        """
        if user.id is None:
            raise ValueError("save() requires a persisted user; use create() for new records.")
        _apply_password(user)
        now = _now()
        values = _writable(user)
        values["updated_at"] = _iso(now)
        with self.engine.connect() as conn:
            conn.execute(users.update().where(users.c.id == user.id).values(**values))
            conn.commit()
        user.updated_at = now

    def compare_password(self, user: User, candidate: str) -> bool:
        if not user.hashed_password:
            return False
        return verify_password(candidate, user.hashed_password)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        hashed_password=row.hashed_password,
        avatar=row.avatar,
        role=row.role,
        reputation=row.reputation,
        is_verified=bool(row.is_verified),
        verification_token_hash=row.verification_token_hash,
        verification_expires=_parse(row.verification_expires),
        reset_token_hash=row.reset_token_hash,
        reset_expires=_parse(row.reset_expires),
        last_login_at=_parse(row.last_login_at),
        created_at=_parse(row.created_at),
        updated_at=_parse(row.updated_at),
    )
