"""
auth/service.py -- Credential lifecycle rules.

CredentialService owns every rule about how an account, its verification
state, its one-time codes and its session tokens evolve. It talks to its
collaborators only through what it was given at construction time:

  store     AccountStore      -- the single source of truth
  signer    TokenSigner       -- access/refresh JWT pairs
  mailer    Mailer            -- async send(OutgoingMail) -> bool
  uploader  ImageUploader     -- upload(bytes, name, type) -> url | None

One instance is built in the FastAPI lifespan and shared by every request.
It holds no per-request state, so concurrent requests only meet in the DB.

Rules:
  - Zero FastAPI routing imports. Fire-and-forget side effects (mail, image
    upload) are appended to the starlette BackgroundTasks the route passes in
    and run after the response is sent. Their failure never rolls back the
    state change that scheduled them.
  - Failures raise auth.errors.CredentialError subclasses; nothing here
    builds an HTTP response.
  - The registration OTP (Account.otp) and login codes (LoginCode rows) are
    two separate mechanisms and never read each other's storage.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError
from starlette.background import BackgroundTasks

from auth.errors import AuthenticationFailed, Conflict, NotFound, ValidationFailed
from auth.mailer import Mailer, login_code_message, reset_message, verification_message
from auth.models import Account, LoginCode, TokenPair
from auth.store import AccountStore, to_iso
from auth.tokens import (
    DUMMY_HASH,
    TokenSigner,
    generate_otp,
    generate_reset_token,
    hash_password,
    verify_password,
)
from auth.uploads import MAX_IMAGE_SIZE_BYTES, ImageUploader
from core.config import Settings, get_settings

logger = logging.getLogger("credgate.service")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LogoutOutcome(enum.Enum):
    NO_TOKEN = "no_token"
    UNKNOWN_TOKEN = "unknown_token"
    LOGGED_OUT = "logged_out"


class CredentialService:
    def __init__(
        self,
        store: AccountStore,
        signer: TokenSigner,
        mailer: Mailer,
        uploader: ImageUploader | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.signer = signer
        self.mailer = mailer
        self.uploader = uploader
        self.settings = settings or get_settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Registration and email verification
    # ------------------------------------------------------------------

    def register(
        self,
        *,
        fullname: str,
        email: str,
        username: str,
        password: str,
        tasks: BackgroundTasks,
        image: bytes | None = None,
        image_filename: str | None = None,
        image_content_type: str | None = None,
    ) -> int:
        """Create an unverified account and return its id.

        image is None when no file was sent; an empty bytes object means a
        file was sent with no content, which is rejected before any write.
        """
        if image is not None:
            if not image:
                raise ValidationFailed("Invalid file content")
            if len(image) > MAX_IMAGE_SIZE_BYTES:
                raise ValidationFailed("Profile image is too large")

        if self.store.get_by_username(username) is not None:
            raise Conflict("User with username already exists")
        if self.store.get_by_email(email) is not None:
            raise Conflict("User with email already exists")

        otp = generate_otp()
        account = Account(
            username=username,
            email=email,
            fullname=fullname,
            hashed_password=hash_password(password),
            email_verified=False,
            otp=otp,
        )
        try:
            account_id = self.store.create_account(account)
        except IntegrityError as exc:
            # A concurrent registration won the race past the pre-checks.
            field = "username" if self.store.get_by_username(username) is not None else "email"
            raise Conflict(f"User with {field} already exists") from exc
        logger.info("Account %d registered (username=%s)", account_id, username)

        link = f"{self.settings.email_verification_link}?userId={account_id}"
        tasks.add_task(self.mailer.send, verification_message(email, fullname, otp, link))
        if image is not None and self.uploader is not None:
            tasks.add_task(self._attach_profile_picture, account_id, image, image_filename, image_content_type)
        return account_id

    def _attach_profile_picture(
        self, account_id: int, data: bytes, filename: str | None, content_type: str | None
    ) -> None:
        url = self.uploader.upload(data, filename, content_type)
        if url is None:
            return
        self.store.update_account(account_id, profile_picture=url)
        logger.info("Profile picture stored for account %d", account_id)

    def verify_email(self, account_id: int, otp: int) -> None:
        """Mark the account's email verified if otp equals the stored code.

        Exact numeric match, no expiry. The code is cleared on success so it
        cannot be replayed.
        """
        account = self.store.get_by_id(account_id)
        if account is None:
            raise NotFound("User is not present", status_code=400)
        if account.otp is None or account.otp != otp:
            raise AuthenticationFailed("Invalid OTP")
        self.store.update_account(account_id, email_verified=True, otp=None)
        logger.info("Email verified for account %d", account_id)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def login(self, username: str, password: str) -> tuple[Account, TokenPair]:
        """Password login. On success the stored refresh token is overwritten."""
        account = self.store.get_by_username(username)
        if account is None:
            # Run bcrypt anyway so response time does not depend on existence.
            verify_password(password, DUMMY_HASH)
            raise NotFound("User does not exist", status_code=400)
        if not verify_password(password, account.hashed_password):
            logger.info("Failed password login for account %d", account.id)
            raise AuthenticationFailed("Invalid User password")
        return self._start_session(account)

    def logout(self, refresh_token: str | None) -> LogoutOutcome:
        if not refresh_token:
            return LogoutOutcome.NO_TOKEN
        account = self.store.get_by_refresh_token(refresh_token)
        if account is None:
            return LogoutOutcome.UNKNOWN_TOKEN
        self.store.update_account(account.id, refresh_token=None)
        logger.info("Account %d logged out", account.id)
        return LogoutOutcome.LOGGED_OUT

    def refresh(self, refresh_token: str | None) -> tuple[Account, TokenPair]:
        """Rotate the session. Only the account's current refresh token is accepted."""
        if not refresh_token:
            raise AuthenticationFailed("No refresh token", status_code=401)
        claims = self.signer.decode_refresh(refresh_token)
        account = self.store.get_by_refresh_token(refresh_token) if claims else None
        if account is None or account.id != claims["id"]:
            raise AuthenticationFailed("Invalid refresh token", status_code=401)
        return self._start_session(account)

    def _start_session(self, account: Account) -> tuple[Account, TokenPair]:
        tokens = self.signer.issue_pair(account)
        last_login = to_iso(self.clock())
        self.store.update_account(account.id, refresh_token=tokens.refresh_token, last_login=last_login)
        account.refresh_token = tokens.refresh_token
        account.last_login = last_login
        return account, tokens

    # ------------------------------------------------------------------
    # OTP login
    # ------------------------------------------------------------------

    def request_login_code(self, email: str, *, tasks: BackgroundTasks) -> None:
        """Issue a new login code. Earlier outstanding codes stay valid."""
        account = self.store.get_by_email(email)
        if account is None:
            raise NotFound("User does not exist", status_code=400)
        code = generate_otp()
        ttl = self.settings.login_code_expire_seconds
        self.store.add_login_code(
            LoginCode(
                account_id=account.id,
                code=code,
                expires_at=to_iso(self.clock() + timedelta(seconds=ttl)),
            )
        )
        tasks.add_task(self.mailer.send, login_code_message(account.email, account.fullname, code, ttl // 60))

    def verify_login_code(self, email: str, code: int) -> tuple[Account, TokenPair]:
        """Exchange a valid login code for a session. Consumes every outstanding code."""
        account = self.store.get_by_email(email)
        if account is None:
            raise NotFound("User not found")
        if self.store.find_valid_login_code(account.id, code, self.clock()) is None:
            raise AuthenticationFailed("Invalid or expired OTP")
        self.store.delete_login_codes(account.id)
        return self._start_session(account)

    # ------------------------------------------------------------------
    # Password recovery
    # ------------------------------------------------------------------

    def forgot_password(self, email: str, *, tasks: BackgroundTasks) -> None:
        account = self.store.get_by_email(email)
        if account is None:
            raise NotFound("User not found")
        token = generate_reset_token()
        expiry = self.clock() + timedelta(seconds=self.settings.reset_token_expire_seconds)
        self.store.update_account(account.id, reset_token=token, reset_token_expiry=to_iso(expiry))
        link = f"{self.settings.reset_password_link}?token={token}"
        tasks.add_task(self.mailer.send, reset_message(account.email, account.fullname, link))

    def reset_password(self, token: str, new_password: str) -> None:
        """Set a new password. The token is accepted only while now < expiry, and only once."""
        account = self.store.get_by_reset_token(token, self.clock())
        if account is None:
            raise AuthenticationFailed("Invalid or expired token")
        self.store.update_account(
            account.id,
            hashed_password=hash_password(new_password),
            reset_token=None,
            reset_token_expiry=None,
        )
        logger.info("Password reset for account %d", account.id)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_account(self, account_id: int) -> Account:
        account = self.store.get_by_id(account_id)
        if account is None:
            raise NotFound("User does not exist", status_code=400)
        return account
