from __future__ import annotations

import copy
import json
import threading
from pathlib import Path
from typing import Dict, List, Optional

from taskdock.logging import get_logger
from taskdock.storage.common import Document, apply_patch, matches, unique_conflict
from taskdock.storage.errors import ConstraintViolation


class MemoryStore:
    """In-memory document store, optionally snapshotted to a JSON file.

    Every operation runs under one re-entrant lock, so ``update_one`` patches
    (including ``$inc`` and ``$push``) are atomic with respect to each other.
    Callers always receive copies; mutating a returned document never changes
    stored state.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.collections: Dict[str, Dict[str, Document]] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _collection(self, name: str) -> Dict[str, Document]:
        return self.collections.setdefault(name, {})

    def find_one(self, collection: str, filter: Document) -> Optional[Document]:
        with self._data_lock:
            for doc in self._collection(collection).values():
                if matches(doc, filter):
                    return copy.deepcopy(doc)
            return None

    def find_many(self, collection: str, filter: Document) -> List[Document]:
        with self._data_lock:
            return [
                copy.deepcopy(doc)
                for doc in self._collection(collection).values()
                if matches(doc, filter)
            ]

    def save(self, collection: str, doc: Document) -> Document:
        if not doc.get("id"):
            raise ValueError("documents require an id")
        with self._data_lock:
            docs = self._collection(collection)
            conflict = unique_conflict(collection, doc, list(docs.values()))
            if conflict:
                raise ConstraintViolation(
                    f"{conflict} already exists", {"field": conflict}
                )
            docs[str(doc["id"])] = copy.deepcopy(doc)
            self._persist_state()
            return copy.deepcopy(doc)

    def insert(self, collection: str, doc: Document) -> Document:
        """Like ``save`` but refuses to replace an existing document."""
        if not doc.get("id"):
            raise ValueError("documents require an id")
        with self._data_lock:
            if str(doc["id"]) in self._collection(collection):
                raise ConstraintViolation("id already exists", {"field": "id"})
            return self.save(collection, doc)

    def update_one(self, collection: str, filter: Document, patch: Document) -> int:
        with self._data_lock:
            docs = self._collection(collection)
            for doc_id, doc in docs.items():
                if not matches(doc, filter):
                    continue
                updated = apply_patch(doc, patch)
                conflict = unique_conflict(collection, updated, list(docs.values()))
                if conflict:
                    raise ConstraintViolation(
                        f"{conflict} already exists", {"field": conflict}
                    )
                docs[doc_id] = updated
                self._persist_state()
                return 1
            return 0

    def delete_one(self, collection: str, filter: Document) -> Optional[Document]:
        with self._data_lock:
            docs = self._collection(collection)
            for doc_id, doc in docs.items():
                if matches(doc, filter):
                    removed = docs.pop(doc_id)
                    self._persist_state()
                    return removed
            return None

    def delete_many(self, collection: str, filter: Document) -> int:
        with self._data_lock:
            docs = self._collection(collection)
            stale = [doc_id for doc_id, doc in docs.items() if matches(doc, filter)]
            for doc_id in stale:
                docs.pop(doc_id, None)
            if stale:
                self._persist_state()
            return len(stale)

    def close(self) -> None:
        with self._data_lock:
            self._persist_state()

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        path = self._state_path()
        try:
            path.write_text(json.dumps(self.collections, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.collections = {
            name: {str(doc["id"]): doc for doc in docs.values()}
            for name, docs in data.items()
            if isinstance(docs, dict)
        }
        return True
