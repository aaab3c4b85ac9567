"""
auth/dependencies.py -- FastAPI Depends() helpers for session checks.

The access token is read from, in priority order:
  1. the "accessToken" cookie -- set by /login and /verifyOtp.
  2. an Authorization: Bearer <token> header -- for non-browser clients.

try_get_session() is the soft variant (returns None on failure).
require_session() wraps it and raises HTTP 401 if unauthenticated.

auth/dependencies.py may import from fastapi because this module is part of
the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.tokens import ACCESS_COOKIE, TokenSigner


def try_get_session(request: Request) -> dict | None:
    """Return the verified access-token claims, or None. Never raises."""
    token: str | None = request.cookies.get(ACCESS_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    if not token:
        return None
    signer: TokenSigner = request.app.state.credentials.signer
    return signer.decode_access(token)


def require_session(request: Request) -> dict:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.post("/protected")
        def route(session: dict = Depends(require_session)): ...
    """
    claims = try_get_session(request)
    if claims is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return claims
