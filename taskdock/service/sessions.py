from __future__ import annotations

import time
from typing import Optional

from taskdock.logging import get_logger
from taskdock.service.errors import SessionInvalidOrExpired, UserNotFound
from taskdock.service.tokens import TokenIssuer
from taskdock.storage.common import DocumentStore
from taskdock.storage.models import USERS, Session, User

logger = get_logger(__name__)


class SessionStore:
    """Refresh-token sessions embedded in each user document.

    A user's ``sessions`` list only grows through ``create_session`` (and
    ``rotate_session``, which swaps one entry for another). Expired entries
    stay in place until ``purge_expired`` drops them; lookups treat them as
    invalid either way.
    """

    def __init__(
        self,
        store: DocumentStore,
        tokens: TokenIssuer,
        *,
        refresh_ttl_seconds: int,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.refresh_ttl_seconds = refresh_ttl_seconds

    def _now(self) -> float:
        return time.time()

    def create_session(self, user_id: str) -> str:
        refresh_token = self.tokens.issue_refresh_token()
        session = Session.new(refresh_token, self.refresh_ttl_seconds, now=self._now())
        matched = self.store.update_one(
            USERS, {"id": user_id}, {"$push": {"sessions": session.to_doc()}}
        )
        if not matched:
            raise UserNotFound()
        logger.info("session_created", user_id=user_id, expires_at=session.expires_at)
        return refresh_token

    def find_user_by_session_token(
        self, user_id: str, refresh_token: str
    ) -> Optional[User]:
        """Return the user owning ``refresh_token``; expiry is not checked here."""

        doc = self.store.find_one(USERS, {"id": user_id, "sessions.token": refresh_token})
        return User.from_doc(doc) if doc else None

    @staticmethod
    def find_session(user: User, refresh_token: str) -> Optional[Session]:
        # linear scan; first exact match wins
        for session in user.sessions:
            if session.token == refresh_token:
                return session
        return None

    def has_expired(self, expires_at: int) -> bool:
        return expires_at <= self._now()

    def rotate_session(self, user_id: str, refresh_token: str) -> str:
        """Replace ``refresh_token`` with a fresh session and return the new token."""

        new_token = self.tokens.issue_refresh_token()
        session = Session.new(new_token, self.refresh_ttl_seconds, now=self._now())
        matched = self.store.update_one(
            USERS,
            {"id": user_id, "sessions.token": refresh_token},
            {
                "$pull": {"sessions": {"token": refresh_token}},
                "$push": {"sessions": session.to_doc()},
            },
        )
        if not matched:
            raise SessionInvalidOrExpired()
        logger.info("session_rotated", user_id=user_id)
        return new_token

    def purge_expired(self, user_id: str) -> int:
        """Drop sessions that have already expired; return how many were removed."""

        doc = self.store.find_one(USERS, {"id": user_id})
        if not doc:
            return 0
        user = User.from_doc(doc)
        removed = 0
        for session in user.sessions:
            if not self.has_expired(session.expires_at):
                continue
            removed += self.store.update_one(
                USERS,
                {"id": user_id},
                {"$pull": {"sessions": {"token": session.token}}},
            )
        if removed:
            logger.info("sessions_purged", user_id=user_id, removed=removed)
        return removed


__all__ = ["SessionStore"]
