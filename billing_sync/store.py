"""Document stores with upsert-merge semantics.

Accounts and the event ledger are both persisted as JSON documents keyed by a
string id.  ``upsert`` merges the given fields into the stored document:
top-level keys are overwritten, and object-valued keys are merged one level
deep so that ``{"subscription": {"status": "canceled"}}`` leaves the other
subscription fields untouched.  The merge is the store's own atomic
operation; no caller holds a lock around it.

Two implementations:
- InMemoryDocumentStore: dict + lock, for local runs and tests
- PostgresDocumentStore: one JSONB row per document (psycopg)
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Protocol, runtime_checkable

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from billing_sync.errors import StoreError, StoreWriteError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Document:
    """A stored document and its key."""

    key: str
    data: dict[str, Any]


@runtime_checkable
class DocumentStore(Protocol):
    def get(self, key: str) -> Document | None: ...

    def query(self, field: str, value: str) -> Document | None: ...

    def upsert(self, key: str, fields: dict[str, Any]) -> None: ...

    def ping(self) -> bool: ...


def merge_fields(existing: dict[str, Any], fields: dict[str, Any]) -> dict[str, Any]:
    """Return ``existing`` with ``fields`` merged in (one level deep for objects)."""
    merged = copy.deepcopy(existing)
    for key, value in fields.items():
        current = merged.get(key)
        if isinstance(value, dict) and isinstance(current, dict):
            current.update(copy.deepcopy(value))
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class InMemoryDocumentStore:
    """Thread-safe in-process document store."""

    def __init__(self, documents: dict[str, dict[str, Any]] | None = None):
        self._docs: dict[str, dict[str, Any]] = copy.deepcopy(documents or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Document | None:
        with self._lock:
            data = self._docs.get(key)
            return Document(key, copy.deepcopy(data)) if data is not None else None

    def query(self, field: str, value: str) -> Document | None:
        """First document (ascending key) whose top-level ``field`` equals ``value``."""
        with self._lock:
            for key in sorted(self._docs):
                if self._docs[key].get(field) == value:
                    return Document(key, copy.deepcopy(self._docs[key]))
        return None

    def upsert(self, key: str, fields: dict[str, Any]) -> None:
        with self._lock:
            self._docs[key] = merge_fields(self._docs.get(key, {}), fields)

    def ping(self) -> bool:
        return True

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Deep copy of every stored document, for inspection."""
        with self._lock:
            return copy.deepcopy(self._docs)


# One-level deep JSONB merge: shallow ``||`` first, then re-merge every
# object-valued key that was an object on both sides.
_UPSERT_SQL = """
INSERT INTO {table} (key, data, updated_at)
VALUES (%s, %s::jsonb, now())
ON CONFLICT (key) DO UPDATE SET
    data = {table}.data || EXCLUDED.data || (
        SELECT COALESCE(jsonb_object_agg(e.k, ({table}.data -> e.k) || e.v), '{{}}'::jsonb)
        FROM jsonb_each(EXCLUDED.data) AS e(k, v)
        WHERE jsonb_typeof(e.v) = 'object'
          AND jsonb_typeof({table}.data -> e.k) = 'object'
    ),
    updated_at = now()
"""


class PostgresDocumentStore:
    """JSONB-backed document store, one table per keyspace."""

    def __init__(
        self,
        database_url: str,
        table: str,
        connect: Callable[..., psycopg.Connection] | None = None,
    ):
        self._database_url = database_url
        self._table_name = table
        self._table = sql.Identifier(table)
        self._connect = connect or psycopg.connect

    def _get_conn(self) -> psycopg.Connection:
        return self._connect(self._database_url, autocommit=True, row_factory=dict_row)

    def init_table(self, index_fields: tuple[str, ...] = ()) -> None:
        """Create the backing table and expression indexes for queried fields.  Idempotent."""
        with self._get_conn() as conn:
            conn.execute(
                sql.SQL(
                    """
                    CREATE TABLE IF NOT EXISTS {table} (
                        key         TEXT PRIMARY KEY,
                        data        JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                        updated_at  TIMESTAMPTZ DEFAULT now()
                    )
                    """
                ).format(table=self._table)
            )
            for field in index_fields:
                conn.execute(
                    sql.SQL("CREATE INDEX IF NOT EXISTS {index} ON {table} ((data ->> {field}))").format(
                        index=sql.Identifier(f"{self._table_name}_{field}_idx"),
                        table=self._table,
                        field=sql.Literal(field),
                    )
                )
        logger.info("Document table %s initialized", self._table_name)

    def get(self, key: str) -> Document | None:
        try:
            with self._get_conn() as conn:
                row = conn.execute(
                    sql.SQL("SELECT key, data FROM {table} WHERE key = %s").format(
                        table=self._table
                    ),
                    (key,),
                ).fetchone()
        except psycopg.Error as e:
            raise StoreError(f"get failed: {e}", key=key) from e
        return Document(row["key"], row["data"] or {}) if row else None

    def query(self, field: str, value: str) -> Document | None:
        try:
            with self._get_conn() as conn:
                row = conn.execute(
                    sql.SQL(
                        "SELECT key, data FROM {table} WHERE data ->> %s = %s "
                        "ORDER BY key LIMIT 1"
                    ).format(table=self._table),
                    (field, value),
                ).fetchone()
        except psycopg.Error as e:
            raise StoreError(f"query on {field} failed: {e}") from e
        return Document(row["key"], row["data"] or {}) if row else None

    def upsert(self, key: str, fields: dict[str, Any]) -> None:
        try:
            with self._get_conn() as conn:
                conn.execute(
                    sql.SQL(_UPSERT_SQL).format(table=self._table),
                    (key, json.dumps(fields, default=str)),
                )
        except psycopg.Error as e:
            raise StoreWriteError(f"upsert failed: {e}", key=key) from e

    def ping(self) -> bool:
        try:
            with self._get_conn() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except psycopg.Error:
            logger.warning("Postgres ping failed", exc_info=True)
            return False
