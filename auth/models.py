"""
auth/models.py -- Domain dataclasses for credential entities.

Pattern: Data class (pure data container, zero logic). Stores and the
credential service do the work; api/models.py owns the wire shape.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class Account:
    """A registered user identity and its credential state.

    otp is the registration-verification code only. Login codes live in
    their own table (LoginCode) and are never stored here.

    refresh_token holds the single live refresh credential; a new login
    overwrites it, which retires any previously issued refresh token.

    reset_token is honoured only while reset_token_expiry is in the future.
    """

    username: str
    email: str
    fullname: str
    hashed_password: str
    id: int | None = None
    profile_picture: str | None = None
    email_verified: bool = False
    otp: int | None = None
    refresh_token: str | None = None
    reset_token: str | None = None
    reset_token_expiry: str | None = None  # ISO 8601 UTC
    created_at: str | None = None
    last_login: str | None = None


@dataclass
class LoginCode:
    """A one-time passcode issued for passwordless (email OTP) login.

    Several may be outstanding for one account; a successful verification
    deletes all of them.
    """

    account_id: int
    code: int
    expires_at: str  # ISO 8601 UTC
    id: int | None = None
    created_at: str | None = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
