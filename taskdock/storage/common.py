"""Document matching and patch logic shared by the memory and postgres stores.

Filters are equality-only. A dotted key such as ``sessions.token`` addresses
a field inside an embedded list (any element may match) or nested object.
Patches use the operators ``$set``, ``$inc``, ``$push`` and ``$pull``.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Optional, Protocol

from taskdock.storage.errors import UnsupportedPatch

Document = Dict[str, Any]

_OPERATORS = ("$set", "$inc", "$push", "$pull")


class DocumentStore(Protocol):
    def find_one(self, collection: str, filter: Document) -> Optional[Document]: ...

    def find_many(self, collection: str, filter: Document) -> List[Document]: ...

    def save(self, collection: str, doc: Document) -> Document: ...

    def insert(self, collection: str, doc: Document) -> Document: ...

    def update_one(self, collection: str, filter: Document, patch: Document) -> int: ...

    def delete_one(self, collection: str, filter: Document) -> Optional[Document]: ...

    def delete_many(self, collection: str, filter: Document) -> int: ...

    def close(self) -> None: ...


# Fields that must be unique within a collection, checked on insert/replace
UNIQUE_FIELDS: Dict[str, tuple[str, ...]] = {
    "users": ("email",),
    "ip_records": ("address",),
}


def _lookup(value: Any, parts: List[str], expected: Any) -> bool:
    if not parts:
        return value == expected
    if isinstance(value, list):
        return any(_lookup(item, parts, expected) for item in value)
    if isinstance(value, dict) and parts[0] in value:
        return _lookup(value[parts[0]], parts[1:], expected)
    return False


def matches(doc: Document, filter: Document) -> bool:
    """Return True if every filter key equals the document's value."""
    return all(_lookup(doc, key.split("."), expected) for key, expected in filter.items())


def _section(value: Dict[str, Any]) -> Document:
    return value if isinstance(value, dict) else {}


def apply_patch(doc: Document, patch: Document) -> Document:
    """Apply an update patch to a copy of ``doc`` and return the copy."""
    unknown = [op for op in patch if op not in _OPERATORS]
    if unknown:
        raise UnsupportedPatch(f"unsupported update operators: {', '.join(unknown)}")
    updated = copy.deepcopy(doc)
    for key, value in _section(patch.get("$set")).items():
        if key == "id":
            raise UnsupportedPatch("document id cannot be changed")
        updated[key] = copy.deepcopy(value)
    for key, amount in _section(patch.get("$inc")).items():
        current = updated.get(key, 0)
        if not isinstance(current, (int, float)) or not isinstance(amount, (int, float)):
            raise UnsupportedPatch(f"$inc requires numeric values for {key}")
        updated[key] = current + amount
    for key, item in _section(patch.get("$push")).items():
        existing = updated.get(key)
        if existing is None:
            existing = []
        if not isinstance(existing, list):
            raise UnsupportedPatch(f"$push target {key} is not a list")
        updated[key] = existing + [copy.deepcopy(item)]
    for key, condition in _section(patch.get("$pull")).items():
        existing = updated.get(key) or []
        if not isinstance(condition, dict):
            updated[key] = [item for item in existing if item != condition]
        else:
            updated[key] = [
                item
                for item in existing
                if not (isinstance(item, dict) and matches(item, condition))
            ]
    return updated


def unique_conflict(
    collection: str, doc: Document, others: List[Document]
) -> Optional[str]:
    """Return the name of the first unique field ``doc`` shares with another document."""
    for field_name in UNIQUE_FIELDS.get(collection, ()):
        value = doc.get(field_name)
        if value is None:
            continue
        for other in others:
            if other.get("id") != doc.get("id") and other.get(field_name) == value:
                return field_name
    return None


__all__ = [
    "Document",
    "DocumentStore",
    "UNIQUE_FIELDS",
    "apply_patch",
    "matches",
    "unique_conflict",
]
