"""
auth/errors.py -- Credential lifecycle failures.

Every failure the credential service can report is a CredentialError carrying
an HTTP status and a client-safe message. The API layer owns the translation
into the response envelope (api/main.py exception handlers); nothing in auth/
builds HTTP responses for errors.

Messages never contain hashes, codes or tokens.
"""

from __future__ import annotations


class CredentialError(Exception):
    """Base class. status_code is the HTTP status the API layer responds with."""

    status_code: int = 400

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationFailed(CredentialError):
    """Input that passed the schema but is still unusable (e.g. empty upload)."""


class Conflict(CredentialError):
    """Username or email already taken."""


class NotFound(CredentialError):
    """No account, code or token matches."""

    status_code = 404


class AuthenticationFailed(CredentialError):
    """Wrong password, wrong/expired code, or an unusable token."""
