from __future__ import annotations

from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from taskdock.logging import get_logger
from taskdock.service.errors import StoreUnavailable
from taskdock.storage.common import UNIQUE_FIELDS, Document, apply_patch
from taskdock.storage.errors import ConstraintViolation


def containment_filter(filter: Document) -> Dict[str, Any]:
    """Translate an equality filter into a JSONB containment document.

    Dotted keys address embedded lists: ``{"sessions.token": t}`` becomes
    ``{"sessions": [{"token": t}]}``, which ``@>`` matches when any element
    of ``sessions`` carries that token.
    """
    result: Dict[str, Any] = {}
    for key, value in filter.items():
        head, _, rest = key.partition(".")
        if not rest:
            result[head] = value
            continue
        nested = containment_filter({rest: value})
        result.setdefault(head, []).append(nested)
    return result


class PostgresStore:
    """Document store backed by a single JSONB table."""

    def __init__(self, dsn: str, *, timeout: float = 5.0) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            timeout=timeout,
            open=True,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``documents`` table and unique indexes if missing."""

        with self._guard("ensure_schema"), self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    id TEXT NOT NULL,
                    body JSONB NOT NULL,
                    PRIMARY KEY (collection, id)
                )
                """
            )
            for collection, fields in UNIQUE_FIELDS.items():
                for field_name in fields:
                    conn.execute(
                        f"""
                        CREATE UNIQUE INDEX IF NOT EXISTS documents_{collection}_{field_name}_key
                        ON documents ((body->>'{field_name}'))
                        WHERE collection = '{collection}'
                        """
                    )

    def _guard(self, operation: str):
        return _OperationalGuard(self, operation)

    def find_one(self, collection: str, filter: Document) -> Optional[Document]:
        with self._guard("find_one"), self._connect() as conn:
            row = conn.execute(
                "SELECT body FROM documents WHERE collection = %s AND body @> %s LIMIT 1",
                (collection, Jsonb(containment_filter(filter))),
            ).fetchone()
        return dict(row["body"]) if row else None

    def find_many(self, collection: str, filter: Document) -> List[Document]:
        with self._guard("find_many"), self._connect() as conn:
            rows = conn.execute(
                "SELECT body FROM documents WHERE collection = %s AND body @> %s",
                (collection, Jsonb(containment_filter(filter))),
            ).fetchall()
        return [dict(row["body"]) for row in rows]

    def save(self, collection: str, doc: Document) -> Document:
        if not doc.get("id"):
            raise ValueError("documents require an id")
        try:
            with self._guard("save"), self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO documents (collection, id, body)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (collection, id) DO UPDATE SET body = EXCLUDED.body
                    """,
                    (collection, str(doc["id"]), Jsonb(doc)),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "unique field already exists", {"collection": collection}
            ) from exc
        return doc

    def insert(self, collection: str, doc: Document) -> Document:
        if not doc.get("id"):
            raise ValueError("documents require an id")
        try:
            with self._guard("insert"), self._connect() as conn:
                conn.execute(
                    "INSERT INTO documents (collection, id, body) VALUES (%s, %s, %s)",
                    (collection, str(doc["id"]), Jsonb(doc)),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "document already exists", {"collection": collection}
            ) from exc
        return doc

    def update_one(self, collection: str, filter: Document, patch: Document) -> int:
        # Row lock makes the read-patch-write atomic for concurrent $inc/$push
        try:
            with self._guard("update_one"), self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT id, body FROM documents
                    WHERE collection = %s AND body @> %s
                    LIMIT 1 FOR UPDATE
                    """,
                    (collection, Jsonb(containment_filter(filter))),
                ).fetchone()
                if not row:
                    return 0
                updated = apply_patch(dict(row["body"]), patch)
                conn.execute(
                    "UPDATE documents SET body = %s WHERE collection = %s AND id = %s",
                    (Jsonb(updated), collection, row["id"]),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "unique field already exists", {"collection": collection}
            ) from exc
        return 1

    def delete_one(self, collection: str, filter: Document) -> Optional[Document]:
        with self._guard("delete_one"), self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM documents
                WHERE (collection, id) IN (
                    SELECT collection, id FROM documents
                    WHERE collection = %s AND body @> %s
                    LIMIT 1
                )
                RETURNING body
                """,
                (collection, Jsonb(containment_filter(filter))),
            ).fetchone()
        return dict(row["body"]) if row else None

    def delete_many(self, collection: str, filter: Document) -> int:
        with self._guard("delete_many"), self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM documents WHERE collection = %s AND body @> %s",
                (collection, Jsonb(containment_filter(filter))),
            )
            return cur.rowcount

    def close(self) -> None:
        self.pool.close()


class _OperationalGuard:
    """Re-raise driver connectivity failures as ``StoreUnavailable``."""

    def __init__(self, store: PostgresStore, operation: str) -> None:
        self.store = store
        self.operation = operation

    def __enter__(self) -> "_OperationalGuard":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is not None and isinstance(exc, errors.OperationalError):
            self.store.logger.error(
                "postgres_operation_failed",
                operation=self.operation,
                error=str(exc),
            )
            raise StoreUnavailable("document store unavailable") from exc
        return False


__all__ = ["PostgresStore", "containment_filter"]
