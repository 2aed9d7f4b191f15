"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. RefreshTokenStore and UserStore are the
repositories; _row_to_record / _row_to_user are the mappers. Route and
service code never touches SQL directly.

Concurrency (several API instances may share one database):
  - Token values are unique because the refresh_tokens.token column is
    UNIQUE. Creation inserts and lets the database reject a duplicate; there
    is no check-then-insert.
  - Revocation is a single conditional UPDATE (... WHERE is_revoked = 0). No
    code path ever writes is_revoked = 0, so the flag is monotonic.
  - rotate() revokes the presented token and inserts its successor in one
    transaction. When two requests rotate the same token, the conditional
    UPDATE matches for exactly one of them; the other gets None.
  - Validity (not revoked, expires_at in the future) is evaluated in the
    WHERE clause of every lookup, so a row that has expired but has not yet
    been purged is never returned as valid.

Errors:
  Any SQLAlchemyError other than a token collision is re-raised as
  StoreUnavailable. The store never retries; retry policy belongs to the
  caller driving the auth flow. timeout_seconds is applied as the SQLite busy
  timeout or the pool checkout timeout so a call fails instead of hanging.

Timestamps are stored as naive UTC DateTime values and mapped back to
timezone-aware UTC datetimes.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import StoreUnavailable
from auth.models import RefreshTokenRecord, User
from auth.tokens import generate_refresh_token

logger = logging.getLogger("tokengate.store")

_DEFAULT_DB_URL = "sqlite:///tokengate_auth.db"
_DEFAULT_REFRESH_TTL = timedelta(days=7)
_MAX_CREATE_ATTEMPTS = 3

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),
    Column("role", String(30), nullable=False),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", DateTime),
    Column("last_login", DateTime),
    Column("created_at", DateTime, nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(128), nullable=False, unique=True),
    Column("user_id", String(64), nullable=False),
    Column("expires_at", DateTime, nullable=False),
    Column("is_revoked", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    Index("ix_refresh_tokens_user_revoked", "user_id", "is_revoked"),
    Index("ix_refresh_tokens_expires_at", "expires_at"),
)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _connect_args(db_url: str, timeout_seconds: float) -> dict:
    """Driver-level limits so a single call cannot outlive the store deadline.

    SQLite: busy timeout. PostgreSQL (libpq drivers): connect_timeout and a
    server-side statement_timeout. Other backends only get the pool checkout
    limit set in build_engine; a hung query there is bounded by the driver
    defaults.
    """
    if db_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": timeout_seconds}
    if db_url.startswith("postgresql"):
        return {
            "connect_timeout": max(1, math.ceil(timeout_seconds)),
            "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
        }
    return {}


def build_engine(db_url: str, timeout_seconds: float = 5.0) -> Engine:
    """Create an engine whose calls give up after timeout_seconds."""
    kwargs: dict = {}
    if not db_url.startswith("sqlite"):
        kwargs["pool_timeout"] = timeout_seconds
        kwargs["pool_pre_ping"] = True
    engine = create_engine(db_url, connect_args=_connect_args(db_url, timeout_seconds), **kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(value: datetime | None) -> datetime | None:
    """Normalize an aware datetime to naive UTC for storage and comparison."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


class _Repository:
    """Shared engine ownership and error translation."""

    def __init__(
        self,
        db_url: str = _DEFAULT_DB_URL,
        *,
        engine: Engine | None = None,
        timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._owns_engine = engine is None
        self.engine: Engine = engine if engine is not None else build_engine(db_url, timeout_seconds)
        self._clock = clock
        try:
            _metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"schema setup failed: {exc}") from exc

    def _now(self) -> datetime:
        return _to_db(self._clock())

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        try:
            with self.engine.connect() as conn:
                yield conn
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.warning("Store call failed: %s", exc.__class__.__name__)
            raise StoreUnavailable(str(exc)) from exc

    @contextmanager
    def _transaction(self) -> Iterator[Connection]:
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.warning("Store transaction failed: %s", exc.__class__.__name__)
            raise StoreUnavailable(str(exc)) from exc

    def ping(self) -> bool:
        """Return True when the database answers a trivial query."""
        try:
            with self._connect() as conn:
                conn.execute(select(1))
        except StoreUnavailable:
            return False
        return True

    def close(self) -> None:
        if self._owns_engine:
            self.engine.dispose()


# ---------------------------------------------------------------------------
# RefreshTokenStore
# ---------------------------------------------------------------------------


class RefreshTokenStore(_Repository):
    """Repository for refresh-token records.

    Usage:
        store = RefreshTokenStore("sqlite:///auth.db", refresh_ttl=config.refresh_ttl)
        record = store.create_refresh_token("42")
        store.find_valid_token(record.token)   # -> record
        store.revoke_token(record.token)
        store.find_valid_token(record.token)   # -> None
    """

    def __init__(
        self,
        db_url: str = _DEFAULT_DB_URL,
        *,
        refresh_ttl: timedelta = _DEFAULT_REFRESH_TTL,
        engine: Engine | None = None,
        timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = _utcnow,
        token_factory: Callable[[], str] = generate_refresh_token,
    ) -> None:
        super().__init__(db_url, engine=engine, timeout_seconds=timeout_seconds, clock=clock)
        self.refresh_ttl = refresh_ttl
        self._token_factory = token_factory

    def _insert(self, conn: Connection, user_id: str, now: datetime) -> RefreshTokenRecord:
        token = self._token_factory()
        expires_at = now + self.refresh_ttl
        result = conn.execute(
            _refresh_tokens.insert().values(
                token=token,
                user_id=user_id,
                expires_at=expires_at,
                is_revoked=False,
                created_at=now,
                updated_at=now,
            )
        )
        return RefreshTokenRecord(
            id=result.inserted_primary_key[0],
            token=token,
            user_id=user_id,
            expires_at=_from_db(expires_at),
            is_revoked=False,
            created_at=_from_db(now),
            updated_at=_from_db(now),
        )

    def create_refresh_token(self, user_id: str | int) -> RefreshTokenRecord:
        """Persist a new refresh credential for user_id.

        A duplicate token value is rejected by the UNIQUE constraint; the
        insert is then attempted again with a fresh value.
        """
        user_id = str(user_id)
        for attempt in range(1, _MAX_CREATE_ATTEMPTS + 1):
            try:
                with self._transaction() as conn:
                    record = self._insert(conn, user_id, self._now())
            except IntegrityError:
                logger.warning("Refresh token collision (attempt %d/%d)", attempt, _MAX_CREATE_ATTEMPTS)
                continue
            logger.info("Refresh token issued for user %s (id=%s)", user_id, record.id)
            return record
        raise StoreUnavailable("could not generate a unique refresh token")

    def find_valid_token(self, token: str) -> RefreshTokenRecord | None:
        """Return the record only if it exists, is not revoked and has not expired."""
        if not token:
            return None
        with self._connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(
                    and_(
                        _refresh_tokens.c.token == token,
                        _refresh_tokens.c.is_revoked.is_(False),
                        _refresh_tokens.c.expires_at > self._now(),
                    )
                )
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def get_token(self, token: str) -> RefreshTokenRecord | None:
        """Return the record in whatever state it is in. Not a validity check."""
        with self._connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token == token)).fetchone()
        return _row_to_record(row) if row is not None else None

    def revoke_token(self, token: str) -> bool:
        """Idempotently revoke one token.

        Always succeeds for an absent or already revoked token. Returns True
        only when this call flipped the flag.
        """
        with self._transaction() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(and_(_refresh_tokens.c.token == token, _refresh_tokens.c.is_revoked.is_(False)))
                .values(is_revoked=True, updated_at=self._now())
            )
        if result.rowcount:
            logger.info("Refresh token revoked")
        return result.rowcount > 0

    def revoke_all_for_user(self, user_id: str | int) -> int:
        """Revoke every non-revoked record of user_id. Returns how many were revoked."""
        with self._transaction() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(and_(_refresh_tokens.c.user_id == str(user_id), _refresh_tokens.c.is_revoked.is_(False)))
                .values(is_revoked=True, updated_at=self._now())
            )
        logger.info("Revoked %d refresh token(s) for user %s", result.rowcount, user_id)
        return result.rowcount

    def rotate(self, token: str) -> RefreshTokenRecord | None:
        """Swap a valid token for a new one in a single transaction.

        Returns the replacement, or None when the presented token was not
        valid (absent, revoked, expired, or already rotated by a concurrent
        request).
        """
        for attempt in range(1, _MAX_CREATE_ATTEMPTS + 1):
            try:
                with self._transaction() as conn:
                    now = self._now()
                    owner = conn.execute(
                        select(_refresh_tokens.c.user_id).where(_refresh_tokens.c.token == token)
                    ).scalar()
                    if owner is None:
                        return None
                    result = conn.execute(
                        _refresh_tokens.update()
                        .where(
                            and_(
                                _refresh_tokens.c.token == token,
                                _refresh_tokens.c.is_revoked.is_(False),
                                _refresh_tokens.c.expires_at > now,
                            )
                        )
                        .values(is_revoked=True, updated_at=now)
                    )
                    if result.rowcount != 1:
                        return None
                    replacement = self._insert(conn, owner, now)
            except IntegrityError:
                logger.warning("Refresh token collision during rotation (attempt %d)", attempt)
                continue
            logger.info("Refresh token rotated for user %s", owner)
            return replacement
        raise StoreUnavailable("could not generate a unique refresh token")

    def list_for_user(self, user_id: str | int, include_inactive: bool = False) -> list[RefreshTokenRecord]:
        """Return a user's records, newest first. Active-only unless include_inactive."""
        query = _refresh_tokens.select().where(_refresh_tokens.c.user_id == str(user_id))
        if not include_inactive:
            query = query.where(
                and_(_refresh_tokens.c.is_revoked.is_(False), _refresh_tokens.c.expires_at > self._now())
            )
        with self._connect() as conn:
            rows = conn.execute(query.order_by(_refresh_tokens.c.created_at.desc())).fetchall()
        return [_row_to_record(r) for r in rows]

    def purge_expired(self) -> int:
        """Delete every record past expires_at, revoked or not. Returns rows removed."""
        with self._transaction() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= self._now()))
        if result.rowcount:
            logger.info("Purged %d expired refresh token(s)", result.rowcount)
        return result.rowcount


# ---------------------------------------------------------------------------
# UserStore
# ---------------------------------------------------------------------------


class UserStore(_Repository):
    """Repository for User records.

    User management belongs to another part of the system; this store covers
    what login and refresh need: lookup, creation for bootstrap, and
    failed-attempt bookkeeping for account lockout.
    """

    def create_user(self, user: User) -> int:
        """Insert a user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the username or email exists.
        """
        with self._transaction() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email.lower(),
                    hashed_password=user.hashed_password,
                    role=user.role,
                    is_active=user.is_active,
                    failed_login_attempts=0,
                    created_at=self._now(),
                )
            )
        return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int | str) -> User | None:
        try:
            user_id = int(user_id)
        except (TypeError, ValueError):
            return None
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Case-insensitive on the stored (lower-cased) email."""
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def set_active(self, user_id: int, is_active: bool) -> bool:
        with self._transaction() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(is_active=is_active))
        return result.rowcount > 0

    def record_failed_login(self, user_id: int, max_attempts: int, lockout: timedelta) -> int:
        """Increment the failure counter atomically; lock the account at max_attempts.

        Returns the new failure count.
        """
        with self._transaction() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(failed_login_attempts=_users.c.failed_login_attempts + 1)
            )
            attempts = conn.execute(select(_users.c.failed_login_attempts).where(_users.c.id == user_id)).scalar()
            if attempts is not None and attempts >= max_attempts:
                conn.execute(_users.update().where(_users.c.id == user_id).values(locked_until=self._now() + lockout))
                logger.warning("User %s locked after %d failed logins", user_id, attempts)
        return attempts or 0

    def record_successful_login(self, user_id: int) -> None:
        """Reset the failure counter, clear any lock and stamp last_login."""
        with self._transaction() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(failed_login_attempts=0, locked_until=None, last_login=self._now())
            )

    def is_locked(self, user: User) -> bool:
        return user.is_locked(self._clock())


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_record(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        token=row.token,
        user_id=row.user_id,
        expires_at=_from_db(row.expires_at),
        is_revoked=bool(row.is_revoked),
        created_at=_from_db(row.created_at),
        updated_at=_from_db(row.updated_at),
    )


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        role=row.role,
        is_active=bool(row.is_active),
        failed_login_attempts=row.failed_login_attempts or 0,
        locked_until=_from_db(row.locked_until),
        last_login=_from_db(row.last_login),
        created_at=_from_db(row.created_at),
    )
