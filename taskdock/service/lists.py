from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import List, Optional

from taskdock.logging import get_logger
from taskdock.service.errors import NotFoundError, StoreUnavailable, ValidationError
from taskdock.storage.common import DocumentStore
from taskdock.storage.models import LISTS, TASKS, Task, TaskList, new_id

logger = get_logger(__name__)


class LookupStatus(enum.Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass(frozen=True)
class Lookup:
    status: LookupStatus
    task_list: Optional[TaskList] = None
    error: Optional[StoreUnavailable] = None

    @property
    def found(self) -> bool:
        return self.status is LookupStatus.FOUND


class ListService:
    """Lists and tasks, always scoped to the owning user.

    Task operations resolve the list first (``id`` plus ``owner_id``) and only
    then touch tasks filtered by that list, so a task id from another user's
    list never matches.
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def resolve_owned_list(self, owner_id: str, list_id: str) -> Lookup:
        """Find a list by id and owner; store failures come back as ``ERROR``."""
        try:
            doc = self.store.find_one(LISTS, {"id": list_id, "owner_id": owner_id})
        except StoreUnavailable as exc:
            return Lookup(LookupStatus.ERROR, error=exc)
        if doc is None:
            return Lookup(LookupStatus.NOT_FOUND)
        return Lookup(LookupStatus.FOUND, TaskList.from_doc(doc))

    def _require_list(self, owner_id: str, list_id: str) -> TaskList:
        lookup = self.resolve_owned_list(owner_id, list_id)
        if lookup.error is not None:
            raise lookup.error
        if not lookup.found or lookup.task_list is None:
            raise NotFoundError("list not found", detail={"list_id": list_id})
        return lookup.task_list

    def list_lists(self, owner_id: str) -> List[TaskList]:
        return [TaskList.from_doc(doc) for doc in self.store.find_many(LISTS, {"owner_id": owner_id})]

    def create_list(self, owner_id: str, title: str) -> TaskList:
        title = _clean_title(title)
        task_list = TaskList(id=new_id(), title=title, owner_id=owner_id)
        self.store.save(LISTS, task_list.to_doc())
        logger.info("list_created", list_id=task_list.id, owner_id=owner_id)
        return task_list

    def update_list(self, owner_id: str, list_id: str, title: str) -> TaskList:
        title = _clean_title(title)
        matched = self.store.update_one(
            LISTS, {"id": list_id, "owner_id": owner_id}, {"$set": {"title": title}}
        )
        if not matched:
            raise NotFoundError("list not found", detail={"list_id": list_id})
        return self._require_list(owner_id, list_id)

    def delete_list(self, owner_id: str, list_id: str) -> TaskList:
        removed = self.store.delete_one(LISTS, {"id": list_id, "owner_id": owner_id})
        if removed is None:
            raise NotFoundError("list not found", detail={"list_id": list_id})
        dropped = self.store.delete_many(TASKS, {"list_id": list_id})
        logger.info("list_deleted", list_id=list_id, owner_id=owner_id, tasks_removed=dropped)
        return TaskList.from_doc(removed)

    def list_tasks(self, owner_id: str, list_id: str) -> List[Task]:
        task_list = self._require_list(owner_id, list_id)
        return [Task.from_doc(doc) for doc in self.store.find_many(TASKS, {"list_id": task_list.id})]

    def create_task(self, owner_id: str, list_id: str, title: str) -> Task:
        task_list = self._require_list(owner_id, list_id)
        task = Task(id=new_id(), title=_clean_title(title), list_id=task_list.id)
        self.store.save(TASKS, task.to_doc())
        return task

    def update_task(
        self,
        owner_id: str,
        list_id: str,
        task_id: str,
        *,
        title: Optional[str] = None,
        completed: Optional[bool] = None,
    ) -> Task:
        task_list = self._require_list(owner_id, list_id)
        changes: dict = {}
        if title is not None:
            changes["title"] = _clean_title(title)
        if completed is not None:
            changes["completed"] = bool(completed)
        if not changes:
            raise ValidationError("nothing to update")
        task_filter = {"id": task_id, "list_id": task_list.id}
        if not self.store.update_one(TASKS, task_filter, {"$set": changes}):
            raise NotFoundError("task not found", detail={"task_id": task_id})
        doc = self.store.find_one(TASKS, task_filter)
        if doc is None:
            raise NotFoundError("task not found", detail={"task_id": task_id})
        return Task.from_doc(doc)

    def delete_task(self, owner_id: str, list_id: str, task_id: str) -> Task:
        task_list = self._require_list(owner_id, list_id)
        removed = self.store.delete_one(TASKS, {"id": task_id, "list_id": task_list.id})
        if removed is None:
            raise NotFoundError("task not found", detail={"task_id": task_id})
        return Task.from_doc(removed)


def _clean_title(title: str) -> str:
    cleaned = (title or "").strip()
    if not cleaned:
        raise ValidationError("title must not be empty", detail={"field": "title"})
    return cleaned


__all__ = ["ListService", "Lookup", "LookupStatus"]
