import pytest

from taskdock.service.errors import NotFoundError, StoreUnavailable, ValidationError
from taskdock.service.lists import ListService, LookupStatus
from taskdock.storage.memory import MemoryStore
from taskdock.storage.models import TASKS


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def lists(store):
    return ListService(store)


def test_resolve_owned_list_is_tagged(lists):
    mine = lists.create_list("alice", "groceries")
    found = lists.resolve_owned_list("alice", mine.id)
    assert found.status is LookupStatus.FOUND
    assert found.task_list == mine

    missing = lists.resolve_owned_list("bob", mine.id)
    assert missing.status is LookupStatus.NOT_FOUND
    assert missing.task_list is None
    assert not missing.found


def test_resolve_owned_list_reports_store_failure(store, lists, monkeypatch):
    def down(*args, **kwargs):
        raise StoreUnavailable("down")

    monkeypatch.setattr(store, "find_one", down)
    failed = lists.resolve_owned_list("alice", "l1")
    assert failed.status is LookupStatus.ERROR
    assert isinstance(failed.error, StoreUnavailable)
    with pytest.raises(StoreUnavailable):
        lists.list_tasks("alice", "l1")


def test_lists_are_scoped_to_owner(lists):
    lists.create_list("alice", "a1")
    lists.create_list("alice", "a2")
    lists.create_list("bob", "b1")
    assert sorted(item.title for item in lists.list_lists("alice")) == ["a1", "a2"]
    assert [item.title for item in lists.list_lists("bob")] == ["b1"]
    assert lists.list_lists("carol") == []


def test_other_users_cannot_modify_list(lists):
    mine = lists.create_list("alice", "groceries")
    with pytest.raises(NotFoundError):
        lists.update_list("bob", mine.id, "stolen")
    with pytest.raises(NotFoundError):
        lists.delete_list("bob", mine.id)
    assert lists.update_list("alice", mine.id, "food").title == "food"


def test_task_operations_require_list_ownership(lists):
    mine = lists.create_list("alice", "groceries")
    task = lists.create_task("alice", mine.id, "milk")

    with pytest.raises(NotFoundError):
        lists.list_tasks("bob", mine.id)
    with pytest.raises(NotFoundError):
        lists.create_task("bob", mine.id, "sneaky")
    with pytest.raises(NotFoundError):
        lists.update_task("bob", mine.id, task.id, completed=True)
    with pytest.raises(NotFoundError):
        lists.delete_task("bob", mine.id, task.id)

    assert [t.title for t in lists.list_tasks("alice", mine.id)] == ["milk"]


def test_task_id_from_other_list_does_not_match(lists):
    alice_list = lists.create_list("alice", "a")
    bob_list = lists.create_list("bob", "b")
    bob_task = lists.create_task("bob", bob_list.id, "secret")
    with pytest.raises(NotFoundError):
        lists.update_task("alice", alice_list.id, bob_task.id, title="mine now")
    with pytest.raises(NotFoundError):
        lists.delete_task("alice", alice_list.id, bob_task.id)


def test_update_task_fields(lists):
    mine = lists.create_list("alice", "groceries")
    task = lists.create_task("alice", mine.id, "milk")
    updated = lists.update_task("alice", mine.id, task.id, completed=True)
    assert updated.completed is True
    assert updated.title == "milk"
    with pytest.raises(ValidationError):
        lists.update_task("alice", mine.id, task.id)


def test_delete_list_removes_its_tasks(lists, store):
    mine = lists.create_list("alice", "groceries")
    keep = lists.create_list("alice", "other")
    lists.create_task("alice", mine.id, "milk")
    lists.create_task("alice", mine.id, "eggs")
    lists.create_task("alice", keep.id, "stay")

    lists.delete_list("alice", mine.id)
    assert store.find_many(TASKS, {"list_id": mine.id}) == []
    assert len(store.find_many(TASKS, {"list_id": keep.id})) == 1


def test_blank_titles_rejected(lists):
    with pytest.raises(ValidationError):
        lists.create_list("alice", "   ")
