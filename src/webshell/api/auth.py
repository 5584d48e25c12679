"""Identity resolution for HTTP and WebSocket callers.

Credential issuance lives elsewhere; here a presented token is only mapped to
a user id, or rejected.
"""

import json
import logging
import pathlib
import secrets
from typing import Protocol

from fastapi import Depends, HTTPException, Request
from starlette.requests import HTTPConnection

from webshell.common import settings

logger = logging.getLogger(__name__)


class IdentityResolver(Protocol):
    def resolve(self, token: str | None) -> str | None:
        """Return the user id the token belongs to, or None if it is invalid."""
        ...


class DevIdentityResolver:
    """Every caller is the development user. Only for AUTH_ENABLED=false."""

    def __init__(self, user_id: str = settings.DEV_USER_ID):
        self.user_id = user_id

    def resolve(self, token: str | None) -> str | None:
        return self.user_id


class StaticTokenResolver:
    """Resolves tokens from a fixed token -> user table."""

    def __init__(self, tokens: dict[str, str]):
        self.tokens = dict(tokens)

    @classmethod
    def from_settings(
        cls,
        tokens: str = settings.AUTH_TOKENS,
        tokens_file: str = settings.AUTH_TOKENS_FILE,
    ) -> "StaticTokenResolver":
        table: dict[str, str] = {}
        for entry in tokens.split(","):
            token, _, user_id = entry.strip().partition(":")
            if token and user_id:
                table[token] = user_id
        if tokens_file:
            path = pathlib.Path(tokens_file)
            try:
                table.update(json.loads(path.read_text()))
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Could not load auth tokens from {path}: {e}")
        if not table:
            logger.warning("Authentication enabled but no tokens configured")
        return cls(table)

    def resolve(self, token: str | None) -> str | None:
        if not token:
            return None
        user_id = None
        # Compare against every entry so timing does not reveal a match position
        for known, owner in self.tokens.items():
            if secrets.compare_digest(known.encode(), token.encode()):
                user_id = owner
        return user_id


_resolver: IdentityResolver | None = None


def get_identity_resolver() -> IdentityResolver:
    global _resolver
    if _resolver is None:
        if settings.AUTH_ENABLED:
            _resolver = StaticTokenResolver.from_settings()
        else:
            _resolver = DevIdentityResolver()
    return _resolver


def set_identity_resolver(resolver: IdentityResolver | None) -> None:
    global _resolver
    _resolver = resolver


def get_bearer_token(conn: HTTPConnection) -> str | None:
    """Get bearer token from request"""
    bearer_token = conn.headers.get("Authorization", "").split(" ")
    if len(bearer_token) != 2:
        return None
    return bearer_token[1]


def get_token(conn: HTTPConnection) -> str | None:
    """Token from the Authorization header, the ``token`` query parameter or the cookie."""
    return (
        get_bearer_token(conn)
        or conn.query_params.get("token")
        or conn.cookies.get(settings.SESSION_COOKIE_NAME)
    )


def resolve_user(conn: HTTPConnection) -> str | None:
    return get_identity_resolver().resolve(get_token(conn))


def get_current_user(request: Request) -> str:
    """FastAPI dependency to get the current user id"""
    user_id = resolve_user(request)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user_id


def is_admin(user_id: str) -> bool:
    if not settings.AUTH_ENABLED:
        return True
    return user_id in settings.ADMIN_USERS


def require_admin(user_id: str = Depends(get_current_user)) -> str:
    if not is_admin(user_id):
        raise HTTPException(status_code=403, detail="Admin access required")
    return user_id
