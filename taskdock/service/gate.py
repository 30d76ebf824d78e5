from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from taskdock.logging import get_logger
from taskdock.service.errors import (
    MissingCredentials,
    MissingToken,
    SessionInvalidOrExpired,
    UserNotFound,
)
from taskdock.service.sessions import SessionStore
from taskdock.service.tokens import TokenIssuer
from taskdock.storage.models import User

logger = get_logger(__name__)

ACCESS_TOKEN_HEADER = "x-access-token"
REFRESH_TOKEN_HEADER = "x-refresh-token"
USER_ID_HEADER = "_id"


@dataclass(frozen=True)
class AccessIdentity:
    user_id: str


@dataclass(frozen=True)
class SessionIdentity:
    user_id: str
    user: User
    refresh_token: str


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup; blank values count as absent."""

    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                value = candidate
                break
    if value is None:
        return None
    value = value.strip()
    return value or None


class AuthGate:
    """Request admission policies.

    ``require_access`` (policy A) admits callers presenting a valid access
    token and touches only the token issuer. ``require_session`` (policy B)
    admits callers presenting a user id plus one of that user's unexpired
    refresh tokens. Neither policy writes to the store.
    """

    def __init__(self, tokens: TokenIssuer, sessions: SessionStore) -> None:
        self.tokens = tokens
        self.sessions = sessions

    def require_access(self, headers: Mapping[str, str]) -> AccessIdentity:
        token = _header(headers, ACCESS_TOKEN_HEADER)
        if not token:
            raise MissingToken()
        user_id = self.tokens.verify_access_token(token)
        return AccessIdentity(user_id=user_id)

    def require_session(self, headers: Mapping[str, str]) -> SessionIdentity:
        refresh_token = _header(headers, REFRESH_TOKEN_HEADER)
        user_id = _header(headers, USER_ID_HEADER)
        if not refresh_token or not user_id:
            raise MissingCredentials()

        user = self.sessions.find_user_by_session_token(user_id, refresh_token)
        if user is None:
            logger.info("session_user_not_found", user_id=user_id)
            raise UserNotFound()

        session = self.sessions.find_session(user, refresh_token)
        if session is None or self.sessions.has_expired(session.expires_at):
            logger.info("session_rejected", user_id=user_id, found=session is not None)
            raise SessionInvalidOrExpired()
        return SessionIdentity(user_id=user.id, user=user, refresh_token=refresh_token)


__all__ = [
    "ACCESS_TOKEN_HEADER",
    "REFRESH_TOKEN_HEADER",
    "USER_ID_HEADER",
    "AccessIdentity",
    "AuthGate",
    "SessionIdentity",
]
