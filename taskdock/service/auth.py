from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from taskdock.logging import get_logger
from taskdock.service.errors import ConflictError, InvalidCredentials
from taskdock.service.sessions import SessionStore
from taskdock.service.tokens import TokenIssuer
from taskdock.storage.common import DocumentStore
from taskdock.storage.errors import ConstraintViolation
from taskdock.storage.models import USERS, User, new_id

logger = get_logger(__name__)


class CredentialVerifier:
    """Checks an email/password pair against the stored argon2id hash."""

    def __init__(
        self, store: DocumentStore, hasher: Optional[PasswordHasher] = None
    ) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def _burn_dummy_verify(self, password: str) -> None:
        # Unknown emails still pay for one hash verification
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash("taskdock-dummy-password")
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass

    def verify_credentials(self, email: str, password: str) -> User:
        doc = self.store.find_one(USERS, {"email": email})
        if not doc:
            self._burn_dummy_verify(password)
            logger.info("login_unknown_email")
            raise InvalidCredentials()
        user = User.from_doc(doc)
        if user.password_algo != "argon2id":
            logger.warning("password_algo_mismatch", user_id=user.id, algo=user.password_algo)
            raise InvalidCredentials()
        try:
            self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerificationError):
            logger.warning("password_verification_failed", user_id=user.id)
            raise InvalidCredentials() from None
        return user


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: Optional[str] = None


class AuthService:
    """Signup, login and access-token refresh built from the auth components."""

    def __init__(
        self,
        store: DocumentStore,
        verifier: CredentialVerifier,
        sessions: SessionStore,
        tokens: TokenIssuer,
        *,
        rotate_refresh_tokens: bool = False,
        purge_expired_on_login: bool = False,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.sessions = sessions
        self.tokens = tokens
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self.purge_expired_on_login = purge_expired_on_login
        self.logger = logger

    def _find_user(self, user_id: str) -> User:
        doc = self.store.find_one(USERS, {"id": user_id})
        if not doc:
            raise InvalidCredentials()
        return User.from_doc(doc)

    async def signup(self, email: str, password: str) -> tuple[User, IssuedTokens]:
        pwd_hash, algo = self.verifier.hash_password(password)
        user = User(id=new_id(), email=email, password_hash=pwd_hash, password_algo=algo)
        try:
            self.store.insert(USERS, user.to_doc())
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail={"field": "email"}) from exc
        refresh_token = self.sessions.create_session(user.id)
        access_token = self.tokens.issue_access_token(user.id)
        self.logger.info("user_signed_up", user_id=user.id)
        return self._find_user(user.id), IssuedTokens(access_token, refresh_token)

    async def login(self, email: str, password: str) -> tuple[User, IssuedTokens]:
        user = self.verifier.verify_credentials(email, password)
        if self.purge_expired_on_login:
            self.sessions.purge_expired(user.id)
        refresh_token = self.sessions.create_session(user.id)
        access_token = self.tokens.issue_access_token(user.id)
        self.logger.info("user_logged_in", user_id=user.id)
        return self._find_user(user.id), IssuedTokens(access_token, refresh_token)

    async def refresh(self, user_id: str, refresh_token: str) -> IssuedTokens:
        """Mint a new access token for a session the gate already admitted.

        With rotation enabled the used refresh token is replaced and the new
        one is returned alongside the access token.
        """

        rotated: Optional[str] = None
        if self.rotate_refresh_tokens:
            rotated = self.sessions.rotate_session(user_id, refresh_token)
        access_token = self.tokens.issue_access_token(user_id)
        self.logger.info("access_token_refreshed", user_id=user_id, rotated=bool(rotated))
        return IssuedTokens(access_token, rotated)


__all__ = ["AuthService", "CredentialVerifier", "IssuedTokens"]
