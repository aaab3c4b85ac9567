"""Unit tests for auth/service.py -- credential lifecycle rules.

These drive CredentialService directly with an isolated store, an outbox
mailer, a recording uploader and a FrozenClock, so expiry boundaries can be
hit exactly. Background tasks are collected in a BackgroundTasks instance
and executed explicitly, the same way Starlette runs them after a response.
"""

from __future__ import annotations

import asyncio
import re

import pytest
from starlette.background import BackgroundTasks

from auth.errors import AuthenticationFailed, Conflict, NotFound, ValidationFailed
from auth.service import LogoutOutcome
from auth.tokens import verify_password


def run(tasks: BackgroundTasks) -> None:
    asyncio.run(tasks())


def register(service, **overrides) -> int:
    fields = {
        "fullname": "Alice Example",
        "email": "a@x.com",
        "username": "alice5",
        "password": "secret1",
    }
    fields.update(overrides)
    tasks = BackgroundTasks()
    account_id = service.register(tasks=tasks, **fields)
    run(tasks)
    return account_id


def sent_code(mail) -> int:
    return int(re.search(r"\b(\d{6})\b", mail.text).group(1))


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_creates_unverified_account_with_hashed_password(self, service, store):
        account_id = register(service)
        account = store.get_by_id(account_id)
        assert account.email_verified is False
        assert account.hashed_password != "secret1"
        assert verify_password("secret1", account.hashed_password)
        assert account.otp is not None

    def test_verification_mail_carries_code_and_link(self, service, store, mailer):
        account_id = register(service)
        mail = mailer.last_to("a@x.com")
        assert sent_code(mail) == store.get_by_id(account_id).otp
        assert f"?userId={account_id}" in mail.html

    def test_duplicate_username_conflicts(self, service):
        register(service)
        with pytest.raises(Conflict, match="username"):
            register(service, email="other@x.com")

    def test_duplicate_email_conflicts(self, service):
        register(service)
        with pytest.raises(Conflict, match="email"):
            register(service, username="bobby5")

    def test_conflict_status_is_400(self, service):
        register(service)
        with pytest.raises(Conflict) as info:
            register(service, email="other@x.com")
        assert info.value.status_code == 400

    def test_race_past_precheck_still_conflicts(self, service, store, monkeypatch):
        """A concurrent insert that beats the pre-check is caught by the UNIQUE constraint."""
        register(service)
        monkeypatch.setattr(store, "get_by_email", lambda email: None)
        real_lookup = store.get_by_username
        calls = {"n": 0}

        def lookup_once_missing(username):
            calls["n"] += 1
            return None if calls["n"] == 1 else real_lookup(username)

        monkeypatch.setattr(store, "get_by_username", lookup_once_missing)
        with pytest.raises(Conflict, match="username"):
            register(service, email="other@x.com")

    def test_profile_image_uploaded_after_commit(self, service, store, uploader):
        account_id = register(service, image=b"\x89PNG...", image_filename="me.png", image_content_type="image/png")
        assert uploader.uploads == [(b"\x89PNG...", "me.png", "image/png")]
        assert store.get_by_id(account_id).profile_picture == "https://images.test/1-me.png"

    def test_empty_image_rejected_before_any_write(self, service, store, mailer):
        with pytest.raises(ValidationFailed, match="Invalid file content"):
            register(service, image=b"", image_filename="empty.png")
        assert store.get_by_username("alice5") is None
        assert mailer.outbox == []

    def test_failed_upload_keeps_account(self, service, store, uploader, monkeypatch):
        monkeypatch.setattr(uploader, "upload", lambda data, name, ctype: None)
        account_id = register(service, image=b"img", image_filename="me.png")
        account = store.get_by_id(account_id)
        assert account is not None
        assert account.profile_picture is None


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


class TestVerifyEmail:
    def test_correct_code_verifies(self, service, store):
        account_id = register(service)
        service.verify_email(account_id, store.get_by_id(account_id).otp)
        account = store.get_by_id(account_id)
        assert account.email_verified is True
        assert account.otp is None

    def test_wrong_code_rejected(self, service, store):
        account_id = register(service)
        wrong = store.get_by_id(account_id).otp + 1
        with pytest.raises(AuthenticationFailed, match="Invalid OTP"):
            service.verify_email(account_id, wrong)
        assert store.get_by_id(account_id).email_verified is False

    def test_code_is_single_use(self, service, store):
        account_id = register(service)
        otp = store.get_by_id(account_id).otp
        service.verify_email(account_id, otp)
        with pytest.raises(AuthenticationFailed):
            service.verify_email(account_id, otp)

    def test_unknown_account(self, service):
        with pytest.raises(NotFound, match="User is not present") as info:
            service.verify_email(42, 123456)
        assert info.value.status_code == 400


# ---------------------------------------------------------------------------
# Password login, logout, refresh
# ---------------------------------------------------------------------------


class TestLogin:
    def test_success_persists_refresh_token(self, service, store):
        account_id = register(service)
        account, tokens = service.login("alice5", "secret1")
        assert account.id == account_id
        assert store.get_by_id(account_id).refresh_token == tokens.refresh_token
        assert store.get_by_id(account_id).last_login is not None

    def test_wrong_password_leaves_refresh_token_alone(self, service, store):
        account_id = register(service)
        _, tokens = service.login("alice5", "secret1")
        with pytest.raises(AuthenticationFailed, match="Invalid User password"):
            service.login("alice5", "wrong12")
        assert store.get_by_id(account_id).refresh_token == tokens.refresh_token

    def test_unknown_username(self, service):
        with pytest.raises(NotFound, match="User does not exist"):
            service.login("nobody", "secret1")

    def test_new_login_retires_previous_refresh_token(self, service, store):
        account_id = register(service)
        _, first = service.login("alice5", "secret1")
        _, second = service.login("alice5", "secret1")
        assert first.refresh_token != second.refresh_token
        assert store.get_by_id(account_id).refresh_token == second.refresh_token
        with pytest.raises(AuthenticationFailed, match="Invalid refresh token"):
            service.refresh(first.refresh_token)
        account, _ = service.refresh(second.refresh_token)
        assert account.id == account_id


class TestLogout:
    def test_no_token(self, service):
        assert service.logout(None) is LogoutOutcome.NO_TOKEN

    def test_unknown_token(self, service):
        assert service.logout("unknown") is LogoutOutcome.UNKNOWN_TOKEN

    def test_clears_refresh_token(self, service, store):
        account_id = register(service)
        _, tokens = service.login("alice5", "secret1")
        assert service.logout(tokens.refresh_token) is LogoutOutcome.LOGGED_OUT
        assert store.get_by_id(account_id).refresh_token is None
        with pytest.raises(AuthenticationFailed):
            service.refresh(tokens.refresh_token)


class TestRefresh:
    def test_missing_token(self, service):
        with pytest.raises(AuthenticationFailed, match="No refresh token") as info:
            service.refresh(None)
        assert info.value.status_code == 401

    def test_forged_token(self, service):
        register(service)
        with pytest.raises(AuthenticationFailed, match="Invalid refresh token"):
            service.refresh("not.a.jwt")

    def test_access_token_cannot_refresh(self, service):
        register(service)
        _, tokens = service.login("alice5", "secret1")
        with pytest.raises(AuthenticationFailed):
            service.refresh(tokens.access_token)

    def test_rotation(self, service, store):
        account_id = register(service)
        _, tokens = service.login("alice5", "secret1")
        _, rotated = service.refresh(tokens.refresh_token)
        assert store.get_by_id(account_id).refresh_token == rotated.refresh_token
        with pytest.raises(AuthenticationFailed):
            service.refresh(tokens.refresh_token)


# ---------------------------------------------------------------------------
# OTP login
# ---------------------------------------------------------------------------


class TestLoginCodes:
    def request_code(self, service, mailer, email="a@x.com") -> int:
        tasks = BackgroundTasks()
        service.request_login_code(email, tasks=tasks)
        run(tasks)
        return sent_code(mailer.last_to(email))

    def test_request_persists_code_with_five_minute_expiry(self, service, store, mailer, clock):
        account_id = register(service)
        code = self.request_code(service, mailer)
        (row,) = store.list_login_codes(account_id)
        assert row.code == code
        clock.advance(299)
        assert store.find_valid_login_code(account_id, code, clock()) is not None
        clock.advance(1)
        assert store.find_valid_login_code(account_id, code, clock()) is None

    def test_request_for_unknown_email(self, service):
        with pytest.raises(NotFound, match="User does not exist") as info:
            service.request_login_code("nobody@x.com", tasks=BackgroundTasks())
        assert info.value.status_code == 400

    def test_verify_issues_session(self, service, store, mailer):
        account_id = register(service)
        code = self.request_code(service, mailer)
        account, tokens = service.verify_login_code("a@x.com", code)
        assert account.id == account_id
        assert store.get_by_id(account_id).refresh_token == tokens.refresh_token

    def test_verify_consumes_every_outstanding_code(self, service, store, mailer):
        account_id = register(service)
        code_a = self.request_code(service, mailer)
        code_b = self.request_code(service, mailer)
        while code_b == code_a:
            code_b = self.request_code(service, mailer)
        service.verify_login_code("a@x.com", code_b)
        assert store.list_login_codes(account_id) == []
        with pytest.raises(AuthenticationFailed, match="Invalid or expired OTP"):
            service.verify_login_code("a@x.com", code_a)

    def test_expired_code_rejected(self, service, mailer, clock):
        register(service)
        code = self.request_code(service, mailer)
        clock.advance(300)
        with pytest.raises(AuthenticationFailed, match="Invalid or expired OTP"):
            service.verify_login_code("a@x.com", code)

    def test_wrong_code_rejected(self, service, mailer):
        register(service)
        code = self.request_code(service, mailer)
        with pytest.raises(AuthenticationFailed):
            service.verify_login_code("a@x.com", 100_000 if code != 100_000 else 100_001)

    def test_verify_unknown_email_is_404(self, service):
        with pytest.raises(NotFound, match="User not found") as info:
            service.verify_login_code("nobody@x.com", 123456)
        assert info.value.status_code == 404

    def test_registration_otp_is_not_a_login_code(self, service, store):
        account_id = register(service)
        registration_otp = store.get_by_id(account_id).otp
        with pytest.raises(AuthenticationFailed):
            service.verify_login_code("a@x.com", registration_otp)


# ---------------------------------------------------------------------------
# Password recovery
# ---------------------------------------------------------------------------


class TestPasswordReset:
    def forgot(self, service, mailer, email="a@x.com") -> str:
        tasks = BackgroundTasks()
        service.forgot_password(email, tasks=tasks)
        run(tasks)
        return re.search(r"token=([0-9a-f]{64})", mailer.last_to(email).html).group(1)

    def test_reset_before_expiry(self, service, store, mailer, clock):
        account_id = register(service)
        token = self.forgot(service, mailer)
        clock.advance(15 * 60 - 1)
        service.reset_password(token, "newpass1")
        account = store.get_by_id(account_id)
        assert verify_password("newpass1", account.hashed_password)
        assert account.reset_token is None
        assert account.reset_token_expiry is None

    def test_token_is_single_use(self, service, mailer):
        register(service)
        token = self.forgot(service, mailer)
        service.reset_password(token, "newpass1")
        with pytest.raises(AuthenticationFailed, match="Invalid or expired token"):
            service.reset_password(token, "newpass2")

    def test_exactly_at_expiry_is_rejected(self, service, store, mailer, clock):
        account_id = register(service)
        token = self.forgot(service, mailer)
        clock.advance(15 * 60)
        with pytest.raises(AuthenticationFailed):
            service.reset_password(token, "newpass1")
        assert verify_password("secret1", store.get_by_id(account_id).hashed_password)

    def test_new_request_replaces_old_token(self, service, mailer):
        register(service)
        old = self.forgot(service, mailer)
        new = self.forgot(service, mailer)
        with pytest.raises(AuthenticationFailed):
            service.reset_password(old, "newpass1")
        service.reset_password(new, "newpass1")

    def test_login_with_new_password(self, service, mailer):
        register(service)
        service.reset_password(self.forgot(service, mailer), "newpass1")
        service.login("alice5", "newpass1")
        with pytest.raises(AuthenticationFailed):
            service.login("alice5", "secret1")

    def test_forgot_for_unknown_email(self, service):
        with pytest.raises(NotFound, match="User not found"):
            service.forgot_password("nobody@x.com", tasks=BackgroundTasks())


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


def test_get_account(service):
    account_id = register(service)
    assert service.get_account(account_id).username == "alice5"


def test_get_unknown_account(service):
    with pytest.raises(NotFound, match="User does not exist"):
        service.get_account(99)
