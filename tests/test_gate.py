import pytest

from taskdock.service.errors import (
    MissingCredentials,
    MissingToken,
    SessionInvalidOrExpired,
    TokenExpired,
    TokenInvalid,
    UserNotFound,
)
from taskdock.service.gate import AuthGate
from taskdock.service.sessions import SessionStore
from taskdock.service.tokens import TokenIssuer
from taskdock.storage.memory import MemoryStore
from taskdock.storage.models import USERS, User

TTL = 10 * 24 * 60 * 60


class RecordingStore(MemoryStore):
    def __init__(self):
        super().__init__()
        self.reads = 0
        self.writes = 0

    def find_one(self, collection, filter):
        self.reads += 1
        return super().find_one(collection, filter)

    def update_one(self, collection, filter, patch):
        self.writes += 1
        return super().update_one(collection, filter, patch)


@pytest.fixture
def store():
    s = RecordingStore()
    s.save(USERS, User(id="u1", email="a@x.com", password_hash="h").to_doc())
    return s


@pytest.fixture
def tokens():
    return TokenIssuer("gate-secret", issuer="i", audience="a", access_ttl_seconds=60)


@pytest.fixture
def sessions(store, tokens):
    return SessionStore(store, tokens, refresh_ttl_seconds=TTL)


@pytest.fixture
def gate(tokens, sessions):
    return AuthGate(tokens, sessions)


def test_policy_a_admits_valid_token(gate, tokens):
    identity = gate.require_access({"x-access-token": tokens.issue_access_token("u1")})
    assert identity.user_id == "u1"


def test_policy_a_headers_are_case_insensitive(gate, tokens):
    identity = gate.require_access({"X-Access-Token": tokens.issue_access_token("u1")})
    assert identity.user_id == "u1"


@pytest.mark.parametrize("headers", [{}, {"x-access-token": ""}, {"x-access-token": "  "}])
def test_policy_a_missing_token(gate, headers):
    with pytest.raises(MissingToken):
        gate.require_access(headers)


def test_policy_a_invalid_token(gate):
    with pytest.raises(TokenInvalid):
        gate.require_access({"x-access-token": "not.a.jwt"})


def test_policy_a_expired_token_never_touches_store(gate, tokens, store, monkeypatch):
    monkeypatch.setattr(tokens, "_now", lambda: 1_000.0)
    token = tokens.issue_access_token("u1")
    monkeypatch.setattr(tokens, "_now", lambda: 2_000.0)
    reads_before = store.reads
    with pytest.raises(TokenExpired):
        gate.require_access({"x-access-token": token})
    assert store.reads == reads_before


def test_policy_b_admits_fresh_session(gate, sessions):
    refresh = sessions.create_session("u1")
    identity = gate.require_session({"x-refresh-token": refresh, "_id": "u1"})
    assert identity.user_id == "u1"
    assert identity.refresh_token == refresh
    assert identity.user.email == "a@x.com"


def test_policy_b_does_not_write(gate, sessions, store):
    refresh = sessions.create_session("u1")
    writes_before = store.writes
    gate.require_session({"x-refresh-token": refresh, "_id": "u1"})
    assert store.writes == writes_before


@pytest.mark.parametrize(
    "headers",
    [{}, {"x-refresh-token": "t"}, {"_id": "u1"}, {"x-refresh-token": "", "_id": "u1"}],
)
def test_policy_b_missing_credentials(gate, headers):
    with pytest.raises(MissingCredentials):
        gate.require_session(headers)


def test_policy_b_unknown_user_or_token(gate, sessions):
    refresh = sessions.create_session("u1")
    with pytest.raises(UserNotFound):
        gate.require_session({"x-refresh-token": refresh, "_id": "someone"})
    with pytest.raises(UserNotFound):
        gate.require_session({"x-refresh-token": "wrong", "_id": "u1"})


def test_policy_b_rejects_after_expiry(gate, sessions, monkeypatch):
    monkeypatch.setattr(sessions, "_now", lambda: 1_000.0)
    refresh = sessions.create_session("u1")
    headers = {"x-refresh-token": refresh, "_id": "u1"}

    monkeypatch.setattr(sessions, "_now", lambda: 1_000.0 + TTL - 1)
    assert gate.require_session(headers).user_id == "u1"

    monkeypatch.setattr(sessions, "_now", lambda: 1_000.0 + TTL + 1)
    with pytest.raises(SessionInvalidOrExpired) as excinfo:
        gate.require_session(headers)
    assert excinfo.value.status_code == 401
    assert excinfo.value.detail["reason"] == "SessionInvalidOrExpired"
    # expiry check is stable across calls
    with pytest.raises(SessionInvalidOrExpired):
        gate.require_session(headers)


def test_policy_b_rejects_at_exact_expiry(gate, sessions, monkeypatch):
    monkeypatch.setattr(sessions, "_now", lambda: 1_000.0)
    refresh = sessions.create_session("u1")
    monkeypatch.setattr(sessions, "_now", lambda: 1_000.0 + TTL)
    with pytest.raises(SessionInvalidOrExpired):
        gate.require_session({"x-refresh-token": refresh, "_id": "u1"})
