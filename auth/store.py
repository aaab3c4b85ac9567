"""
auth/store.py -- SQLAlchemy Core persistence layer for credential entities.

Pattern: Repository + Data Mapper.
AccountStore is the repository; _row_to_account / _row_to_login_code are the
mappers. Service and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(username) and UNIQUE(email) are enforced by the schema, not only by
  the service's pre-check. Two concurrent registrations for the same name both
  pass the pre-check; the second INSERT then fails with IntegrityError, which
  the service reports as a conflict.

Time columns are ISO 8601 UTC strings with fixed microsecond precision (see
core.config.now_iso), so "expires after now" is a plain string comparison.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Engine

from auth.models import Account, LoginCode
from core.config import get_settings, now_iso

logger = logging.getLogger("credgate.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(64), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("fullname", String(255), nullable=False),
    Column("hashed_password", Text, nullable=False),
    Column("profile_picture", Text),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("otp", Integer),  # registration verification code
    Column("refresh_token", Text, index=True),
    Column("reset_token", String(64), index=True),
    Column("reset_token_expiry", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_login_codes = Table(
    "login_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False),
    Column("code", Integer, nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

Index("ix_login_codes_account_id", _login_codes.c.account_id)

# Columns update_account() accepts. Identity columns (id, created_at) are not
# mutable through the generic update path.
_MUTABLE_FIELDS = frozenset(
    {
        "username",
        "email",
        "fullname",
        "hashed_password",
        "profile_picture",
        "email_verified",
        "otp",
        "refresh_token",
        "reset_token",
        "reset_token_expiry",
        "last_login",
    }
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def to_iso(moment: datetime) -> str:
    """Render a datetime in the store's timestamp format (UTC, microseconds)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account and LoginCode entities.

    Usage:
        store = AccountStore("sqlite:///:memory:")
        account_id = store.create_account(Account(username="alice5", ...))
        account = store.get_by_username("alice5")
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
        """Return True if the database answers a trivial query. Used by /health."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception:
            logger.warning("Database ping failed", exc_info=True)
            return False
        return True

    # ------------------------------------------------------------------
    # Account queries
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. The service catches it as the authoritative conflict signal.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    username=account.username,
                    email=account.email,
                    fullname=account.fullname,
                    hashed_password=account.hashed_password,
                    profile_picture=account.profile_picture,
                    email_verified=1 if account.email_verified else 0,
                    otp=account.otp,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, account_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_username(self, username: str) -> Account | None:
        """Look up an account by exact username (case-sensitive)."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.username == username)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_email(self, email: str) -> Account | None:
        """Look up an account by exact email address."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == email)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_refresh_token(self, token: str) -> Account | None:
        """Return the account whose live refresh token equals token, if any."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.refresh_token == token)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_reset_token(self, token: str, now: datetime) -> Account | None:
        """Return the account holding token if its expiry is strictly after now.

        A token whose expiry equals now is already expired.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _accounts.select().where(
                    (_accounts.c.reset_token == token) & (_accounts.c.reset_token_expiry > to_iso(now))
                )
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def update_account(self, account_id: int, **fields) -> bool:
        """Update mutable fields on an existing account.

        email_verified must be passed as bool; this method converts to int.
        Unknown field names raise ValueError rather than being ignored.

        Returns True if a row was updated, False if account_id was not found.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        if not fields:
            return False
        if "email_verified" in fields:
            fields["email_verified"] = 1 if fields["email_verified"] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Login code queries
    # ------------------------------------------------------------------

    def add_login_code(self, login_code: LoginCode) -> int:
        """Insert a login code. Existing codes for the account are left alone."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _login_codes.insert().values(
                    account_id=login_code.account_id,
                    code=login_code.code,
                    expires_at=login_code.expires_at,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def find_valid_login_code(self, account_id: int, code: int, now: datetime) -> LoginCode | None:
        """Return a matching code for the account whose expiry is strictly after now."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _login_codes.select()
                .where(
                    (_login_codes.c.account_id == account_id)
                    & (_login_codes.c.code == code)
                    & (_login_codes.c.expires_at > to_iso(now))
                )
                .limit(1)
            ).fetchone()
        return _row_to_login_code(row) if row is not None else None

    def list_login_codes(self, account_id: int) -> list[LoginCode]:
        """Return every outstanding code for the account, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _login_codes.select().where(_login_codes.c.account_id == account_id).order_by(_login_codes.c.id)
            ).fetchall()
        return [_row_to_login_code(r) for r in rows]

    def delete_login_codes(self, account_id: int) -> int:
        """Delete every code for the account. Returns the number of rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_login_codes.delete().where(_login_codes.c.account_id == account_id))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        username=row.username,
        email=row.email,
        fullname=row.fullname,
        hashed_password=row.hashed_password,
        profile_picture=row.profile_picture,
        email_verified=bool(row.email_verified),
        otp=row.otp,
        refresh_token=row.refresh_token,
        reset_token=row.reset_token,
        reset_token_expiry=row.reset_token_expiry,
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_login_code(row) -> LoginCode:
    return LoginCode(
        id=row.id,
        account_id=row.account_id,
        code=row.code,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )
