"""
auth/tokens.py -- JWT signing, password hashing, one-time codes and cookies.

Security design decisions:
  JWT: python-jose with HS256. TokenSigner issues an access/refresh pair for
       an account. The two token kinds are signed with different secrets and
       carry a "type" claim, so neither can stand in for the other. Each token
       gets a random jti: two logins in the same second still produce
       different refresh tokens, which keeps "a new login retires the old
       refresh token" true. Verification returns None on any failure -- the
       caller decides which error to raise.

  Passwords: bcrypt directly. Bcrypt's cost factor makes brute-force of
       low-entropy secrets expensive. The DUMMY_HASH constant enables timing
       equalization when the username does not exist.

  One-time codes: 6-digit integers from secrets.randbelow. Reset tokens are
       secrets.token_hex(32) (256 bits), never the weak numeric code.

  Secrets: sourced from core.config.get_settings(). The Settings validator
       generates dev secrets, rejects short ones and rejects equal ones.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from auth.models import Account, TokenPair
from core.config import Settings, get_settings

logger = logging.getLogger("credgate.auth")

_ALGORITHM = "HS256"

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords are capped at 12 characters by the API schema, well below
    bcrypt's 72-byte truncation threshold.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash -- treat as a mismatch.
        return False


# Computed once at module load so the first failed login is not measurably
# slower than later ones.
DUMMY_HASH: str = hash_password("credgate_timing_dummy")


# ---------------------------------------------------------------------------
# One-time codes
# ---------------------------------------------------------------------------


def generate_otp() -> int:
    """Return a uniformly random 6-digit code (100000-999999)."""
    return 100_000 + secrets.randbelow(900_000)


def generate_reset_token() -> str:
    """Return a 64-hex-character password reset token (256 bits of entropy)."""
    return secrets.token_hex(32)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


class TokenSigner:
    """Issues and verifies access/refresh JWTs for accounts.

    Constructed once at startup from Settings and injected into the
    credential service.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self._access_secret = settings.access_token_secret
        self._refresh_secret = settings.refresh_token_secret
        self.access_expire_seconds = settings.access_token_expire_seconds
        self.refresh_expire_seconds = settings.refresh_token_expire_seconds

    def issue_pair(self, account: Account) -> TokenPair:
        """Sign a fresh access/refresh pair carrying {id, email, username}."""
        claims = {"id": account.id, "email": account.email, "username": account.username}
        return TokenPair(
            access_token=self._encode(claims, "access", self._access_secret, self.access_expire_seconds),
            refresh_token=self._encode(claims, "refresh", self._refresh_secret, self.refresh_expire_seconds),
        )

    def decode_access(self, token: str) -> dict | None:
        return self._decode(token, "access", self._access_secret)

    def decode_refresh(self, token: str) -> dict | None:
        return self._decode(token, "refresh", self._refresh_secret)

    @staticmethod
    def _encode(claims: dict, token_type: str, secret: str, expire_seconds: int) -> str:
        issued = datetime.now(timezone.utc)
        payload = {
            **claims,
            "type": token_type,
            "jti": uuid.uuid4().hex,
            "iat": issued,
            "exp": issued + timedelta(seconds=expire_seconds),
        }
        return jwt.encode(payload, secret, algorithm=_ALGORITHM)

    @staticmethod
    def _decode(token: str, token_type: str, secret: str) -> dict | None:
        """Verify signature, expiry and token type. Returns None on any failure."""
        try:
            payload = jwt.decode(token, secret, algorithms=[_ALGORITHM])
        except JWTError:
            return None
        if payload.get("type") != token_type or "id" not in payload:
            return None
        return payload


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookies(response, tokens: TokenPair, settings: Settings | None = None) -> None:
    """Write both tokens as httpOnly cookies on the response.

    httponly=True: JS cannot read the cookies (XSS mitigation).
    samesite: from Settings.cookie_samesite ("lax" by default) -- cookies are
        not sent on cross-site POSTs.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches each token's expiry so cookie and JWT expire together.
    """
    settings = settings or get_settings()
    response.set_cookie(
        ACCESS_COOKIE,
        value=tokens.access_token,
        httponly=True,
        samesite=settings.cookie_samesite,
        secure=settings.secure_cookies,
        max_age=settings.access_token_expire_seconds,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        value=tokens.refresh_token,
        httponly=True,
        samesite=settings.cookie_samesite,
        secure=settings.secure_cookies,
        max_age=settings.refresh_token_expire_seconds,
    )


def clear_session_cookies(response, settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            httponly=True,
            samesite=settings.cookie_samesite,
            secure=settings.secure_cookies,
        )
