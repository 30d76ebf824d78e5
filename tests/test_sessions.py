import pytest

from taskdock.service.errors import SessionInvalidOrExpired, UserNotFound
from taskdock.service.sessions import SessionStore
from taskdock.service.tokens import TokenIssuer
from taskdock.storage.memory import MemoryStore
from taskdock.storage.models import USERS, Session, User

TEN_DAYS = 10 * 24 * 60 * 60


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sessions(store):
    tokens = TokenIssuer("s", issuer="i", audience="a", access_ttl_seconds=60)
    return SessionStore(store, tokens, refresh_ttl_seconds=TEN_DAYS)


@pytest.fixture
def user(store):
    u = User(id="user-1", email="a@x.com", password_hash="h")
    store.save(USERS, u.to_doc())
    return u


def _sessions_of(store, user_id):
    return User.from_doc(store.find_one(USERS, {"id": user_id})).sessions


def test_create_session_appends_and_sets_expiry(store, sessions, user, monkeypatch):
    monkeypatch.setattr(sessions, "_now", lambda: 1_000.0)
    token = sessions.create_session(user.id)
    stored = _sessions_of(store, user.id)
    assert stored == [Session(token=token, expires_at=1_000 + TEN_DAYS)]


def test_session_list_only_grows(store, sessions, user):
    tokens = [sessions.create_session(user.id) for _ in range(3)]
    stored = _sessions_of(store, user.id)
    assert [s.token for s in stored] == tokens


def test_create_session_for_missing_user(sessions):
    with pytest.raises(UserNotFound):
        sessions.create_session("ghost")


def test_find_user_by_session_token(sessions, user):
    token = sessions.create_session(user.id)
    found = sessions.find_user_by_session_token(user.id, token)
    assert found is not None and found.id == user.id
    assert sessions.find_user_by_session_token(user.id, "nope") is None
    assert sessions.find_user_by_session_token("other", token) is None


def test_find_user_ignores_expiry(store, sessions, user, monkeypatch):
    monkeypatch.setattr(sessions, "_now", lambda: 0.0)
    token = sessions.create_session(user.id)
    monkeypatch.setattr(sessions, "_now", lambda: float(TEN_DAYS * 5))
    assert sessions.find_user_by_session_token(user.id, token) is not None


def test_find_session_linear_scan_first_match():
    u = User(
        id="u",
        email="e@x.com",
        password_hash="h",
        sessions=[Session("a", 1), Session("b", 2), Session("b", 3)],
    )
    assert SessionStore.find_session(u, "b") == Session("b", 2)
    assert SessionStore.find_session(u, "c") is None


def test_has_expired_at_boundary_and_idempotent(sessions, monkeypatch):
    monkeypatch.setattr(sessions, "_now", lambda: 100.0)
    assert sessions.has_expired(99) is True
    assert sessions.has_expired(99) is True
    assert sessions.has_expired(100) is True
    assert sessions.has_expired(101) is False


def test_rotate_session_replaces_token(store, sessions, user):
    first = sessions.create_session(user.id)
    second = sessions.create_session(user.id)
    rotated = sessions.rotate_session(user.id, first)
    tokens = [s.token for s in _sessions_of(store, user.id)]
    assert first not in tokens
    assert tokens == [second, rotated]


def test_rotate_unknown_session_rejected(sessions, user):
    with pytest.raises(SessionInvalidOrExpired):
        sessions.rotate_session(user.id, "missing")


def test_purge_expired_drops_only_expired(store, sessions, user, monkeypatch):
    monkeypatch.setattr(sessions, "_now", lambda: 0.0)
    old = sessions.create_session(user.id)
    monkeypatch.setattr(sessions, "_now", lambda: float(TEN_DAYS))
    fresh = sessions.create_session(user.id)
    monkeypatch.setattr(sessions, "_now", lambda: float(TEN_DAYS + 1))

    assert sessions.purge_expired(user.id) == 1
    assert [s.token for s in _sessions_of(store, user.id)] == [fresh]
    assert old not in [s.token for s in _sessions_of(store, user.id)]
    assert sessions.purge_expired("ghost") == 0
