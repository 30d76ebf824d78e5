import pytest
from fastapi.testclient import TestClient

from taskdock import app as app_module
from taskdock.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _token(client, email):
    response = client.post("/users/signup", json={"email": email, "password": "secret123"})
    assert response.status_code == 201
    return {"x-access-token": response.headers["x-access-token"]}


def test_lists_require_access_token(client):
    response = client.get("/lists")
    assert response.status_code == 401
    assert response.json()["error"]["details"]["reason"] == "MissingToken"

    response = client.get("/lists", headers={"x-access-token": "garbage"})
    assert response.status_code == 401
    assert response.json()["error"]["details"]["reason"] == "TokenInvalid"


def test_get_lists_returns_only_own(client):
    alice = _token(client, "alice@x.com")
    bob = _token(client, "bob@x.com")
    client.post("/lists", json={"title": "alice list"}, headers=alice)
    client.post("/lists", json={"title": "bob list"}, headers=bob)

    items = client.get("/lists", headers=alice).json()["data"]["items"]
    assert [item["title"] for item in items] == ["alice list"]


def test_expired_access_token_rejected_before_store(client, monkeypatch):
    headers = _token(client, "alice@x.com")
    runtime = get_runtime()
    monkeypatch.setattr(runtime.tokens, "_now", lambda: 9_999_999_999.0)

    def fail(*args, **kwargs):
        raise AssertionError("store must not be reached")

    monkeypatch.setattr(runtime.store, "find_many", fail)
    monkeypatch.setattr(runtime.store, "find_one", fail)
    response = client.get("/lists", headers=headers)
    assert response.status_code == 401
    assert response.json()["error"]["details"]["reason"] == "TokenExpired"


def test_list_and_task_lifecycle(client):
    headers = _token(client, "alice@x.com")
    created = client.post("/lists", json={"title": "groceries"}, headers=headers)
    assert created.status_code == 201
    list_id = created.json()["data"]["id"]

    renamed = client.patch(f"/lists/{list_id}", json={"title": "food"}, headers=headers)
    assert renamed.json()["data"]["title"] == "food"

    task = client.post(f"/lists/{list_id}/tasks", json={"title": "milk"}, headers=headers)
    assert task.status_code == 201
    task_id = task.json()["data"]["id"]
    assert task.json()["data"]["completed"] is False

    done = client.patch(
        f"/lists/{list_id}/tasks/{task_id}", json={"completed": True}, headers=headers
    )
    assert done.json()["data"]["completed"] is True

    tasks = client.get(f"/lists/{list_id}/tasks", headers=headers).json()["data"]["items"]
    assert [t["id"] for t in tasks] == [task_id]

    assert client.delete(f"/lists/{list_id}/tasks/{task_id}", headers=headers).status_code == 200
    assert client.delete(f"/lists/{list_id}", headers=headers).status_code == 200
    assert client.get("/lists", headers=headers).json()["data"]["items"] == []


def test_cross_user_task_access_is_not_found(client):
    alice = _token(client, "alice@x.com")
    bob = _token(client, "bob@x.com")
    list_id = client.post("/lists", json={"title": "private"}, headers=alice).json()["data"]["id"]
    task_id = client.post(
        f"/lists/{list_id}/tasks", json={"title": "secret"}, headers=alice
    ).json()["data"]["id"]

    assert client.get(f"/lists/{list_id}/tasks", headers=bob).status_code == 404
    assert client.post(
        f"/lists/{list_id}/tasks", json={"title": "x"}, headers=bob
    ).status_code == 404
    response = client.patch(
        f"/lists/{list_id}/tasks/{task_id}", json={"completed": True}, headers=bob
    )
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"
    assert client.delete(f"/lists/{list_id}", headers=bob).status_code == 404


def test_task_update_requires_a_field(client):
    headers = _token(client, "alice@x.com")
    list_id = client.post("/lists", json={"title": "l"}, headers=headers).json()["data"]["id"]
    task_id = client.post(
        f"/lists/{list_id}/tasks", json={"title": "t"}, headers=headers
    ).json()["data"]["id"]
    response = client.patch(f"/lists/{list_id}/tasks/{task_id}", json={}, headers=headers)
    assert response.status_code == 400
