"""
SQLite relation store for GrantDB.

This module manages a single SQLite database file holding one table per
asserted relation. Each table has:
- _URI TEXT PRIMARY KEY (store-assigned entity uri)
- one TEXT column per data field, with a CHECK on its length bound
- audit columns: created_by, created_at, updated_by, updated_at

Invariants:
    - Every put/delete batch is one transaction (all-or-nothing)
    - sqlite3 errors never escape; they are raised as StoreUnavailableError
    - Querying a relation whose table does not exist raises RelationNotFoundError

How to change safely:
    - Schema changes must be additive (CREATE ... IF NOT EXISTS)
    - Keep identifiers validated; they are interpolated into SQL
    - Use transactions for all write operations

Table schema (membership relation):
    _user_granted_authority:
        - _URI TEXT PRIMARY KEY
        - USER TEXT (indexed)
        - GRANTED_AUTHORITY TEXT
        - created_by TEXT
        - created_at INTEGER (Unix ms)
        - updated_by TEXT
        - updated_at INTEGER (Unix ms)
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Sequence

from .base import (
    DataField,
    Entity,
    EntityKey,
    FilterOperation,
    Relation,
    RelationNotFoundError,
    StoreUnavailableError,
    new_uri,
    now_ms,
)

logger = logging.getLogger(__name__)

AUDIT_COLUMNS = ("created_by", "created_at", "updated_by", "updated_at")


def _ident(name: str) -> str:
    """Quote an identifier after checking it is a plain name."""
    if not name or not all(c.isalnum() or c == "_" for c in name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


def _table(relation: Relation) -> str:
    return f"{_ident(relation.schema_name)}.{_ident(relation.table_name)}"


@contextmanager
def _translate_errors(relation: Relation | None = None) -> Iterator[None]:
    try:
        yield
    except sqlite3.OperationalError as e:
        if relation is not None and "no such table" in str(e):
            raise RelationNotFoundError(
                f"Relation not asserted: {relation.qualified_name}"
            ) from e
        raise StoreUnavailableError(f"SQLite operation failed: {e}") from e
    except sqlite3.Error as e:
        raise StoreUnavailableError(f"SQLite operation failed: {e}") from e


class SqliteQuery:
    """Query over one SQLite-backed relation."""

    def __init__(self, store: SqliteStore, relation: Relation) -> None:
        self._store = store
        self._relation = relation
        self._filters: list[tuple[DataField, FilterOperation, Any]] = []

    def add_filter(self, data_field: DataField, op: FilterOperation, value: Any) -> None:
        self._filters.append((data_field, op, value))

    def _where(self) -> tuple[str, list[Any]]:
        if not self._filters:
            return "", []
        clauses = []
        params: list[Any] = []
        for data_field, op, value in self._filters:
            if value is None:
                null_op = "IS" if op is FilterOperation.EQUAL else "IS NOT"
                clauses.append(f"{_ident(data_field.name)} {null_op} NULL")
            else:
                clauses.append(f"{_ident(data_field.name)} {op.value} ?")
                params.append(value)
        return " WHERE " + " AND ".join(clauses), params

    async def execute(self) -> list[Entity]:
        where, params = self._where()
        sql = f"SELECT * FROM {_table(self._relation)}{where}"
        with self._store._get_connection() as conn, _translate_errors(self._relation):
            rows = conn.execute(sql, params).fetchall()

        return [self._to_entity(row) for row in rows]

    async def execute_distinct_values(self, data_field: DataField) -> list[Any]:
        where, params = self._where()
        sql = f"SELECT DISTINCT {_ident(data_field.name)} FROM {_table(self._relation)}{where}"
        with self._store._get_connection() as conn, _translate_errors(self._relation):
            rows = conn.execute(sql, params).fetchall()

        return [row[0] for row in rows]

    def _to_entity(self, row: sqlite3.Row) -> Entity:
        pk = self._relation.primary_key.name
        return Entity(
            relation=self._relation,
            uri=row[pk],
            values={f.name: row[f.name] for f in self._relation.fields},
            created_by=row["created_by"],
            created_at=row["created_at"],
            updated_by=row["updated_by"],
            updated_at=row["updated_at"],
        )


class SqliteStore:
    """SQLite implementation of the Store protocol.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = SqliteStore("/var/lib/grantdb")
        >>> await store.assert_relation(relation, "system:bootstrap")
        >>> rows = await store.create_query(relation, "system:bootstrap").execute()
    """

    def __init__(
        self,
        data_dir: str,
        db_name: str = "grants.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the SQLite store.

        Args:
            data_dir: Directory for the database file
            db_name: Database file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_name
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()

    @property
    def default_schema_name(self) -> str:
        return "main"

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection to the database file.

        Yields:
            SQLite connection

        Raises:
            StoreUnavailableError: If the database cannot be opened
        """
        with _translate_errors():
            self.data_dir.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        conn.row_factory = sqlite3.Row

        try:
            with _translate_errors():
                conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
                if self.wal_mode:
                    conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA synchronous = NORMAL")

            yield conn
        finally:
            conn.close()

    def _create_table(self, conn: sqlite3.Connection, relation: Relation) -> None:
        table = _table(relation)
        pk = relation.primary_key
        columns = [f"{_ident(pk.name)} TEXT PRIMARY KEY"]
        for f in relation.fields:
            constraint = "" if f.nullable else " NOT NULL"
            columns.append(
                f"{_ident(f.name)} TEXT{constraint}"
                f" CHECK (length({_ident(f.name)}) <= {int(f.max_length)})"
            )
        columns += [
            "created_by TEXT",
            "created_at INTEGER NOT NULL",
            "updated_by TEXT",
            "updated_at INTEGER NOT NULL",
        ]
        conn.execute(f"CREATE TABLE IF NOT EXISTS {table} ({', '.join(columns)})")

        for f in relation.fields:
            if f.indexed:
                index = _ident(f"idx_{relation.table_name}_{f.name}".lower())
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS {_ident(relation.schema_name)}.{index}"
                    f" ON {_ident(relation.table_name)}({_ident(f.name)})"
                )

    async def assert_relation(self, relation: Relation, actor: str) -> None:
        """Create the relation's table and indexes if they do not exist."""
        async with self._lock:
            with self._get_connection() as conn, _translate_errors():
                conn.execute("BEGIN IMMEDIATE")
                try:
                    self._create_table(conn, relation)
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        logger.info(f"Asserted relation {relation.qualified_name} in {self.db_path}")

    def create_query(self, relation: Relation, actor: str) -> SqliteQuery:
        return SqliteQuery(self, relation)

    def create_entity(self, relation: Relation, actor: str) -> Entity:
        return Entity(relation=relation, uri=new_uri())

    async def put_entities(self, entities: Sequence[Entity], actor: str) -> None:
        """Upsert entities in one transaction."""
        if not entities:
            return

        now = now_ms()
        with self._get_connection() as conn:
            with _translate_errors(entities[0].relation):
                conn.execute("BEGIN IMMEDIATE")
                try:
                    for entity in entities:
                        self._upsert(conn, entity, actor, now)
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        for entity in entities:
            entity.created_by = entity.created_by or actor
            entity.created_at = entity.created_at or now
            entity.updated_by = actor
            entity.updated_at = now

        logger.debug(
            "Put entities",
            extra={"count": len(entities), "actor": actor, "db": str(self.db_path)},
        )

    def _upsert(self, conn: sqlite3.Connection, entity: Entity, actor: str, now: int) -> None:
        relation = entity.relation
        names = [f.name for f in relation.fields]
        columns = [relation.primary_key.name, *names, *AUDIT_COLUMNS]
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(
            f"{_ident(n)} = excluded.{_ident(n)}" for n in [*names, "updated_by", "updated_at"]
        )
        conn.execute(
            f"INSERT INTO {_table(relation)} ({', '.join(_ident(c) for c in columns)})"
            f" VALUES ({placeholders})"
            f" ON CONFLICT({_ident(relation.primary_key.name)}) DO UPDATE SET {updates}",
            (
                entity.uri,
                *(entity.values.get(n) for n in names),
                entity.created_by or actor,
                entity.created_at or now,
                actor,
                now,
            ),
        )

    async def delete_entities(self, keys: Sequence[EntityKey], actor: str) -> None:
        """Delete entities by key in one transaction."""
        if not keys:
            return

        with self._get_connection() as conn:
            with _translate_errors(keys[0].relation):
                conn.execute("BEGIN IMMEDIATE")
                try:
                    for key in keys:
                        conn.execute(
                            f"DELETE FROM {_table(key.relation)}"
                            f" WHERE {_ident(key.relation.primary_key.name)} = ?",
                            (key.uri,),
                        )
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        logger.debug(
            "Deleted entities",
            extra={"count": len(keys), "actor": actor, "db": str(self.db_path)},
        )

    async def close(self) -> None:
        """Nothing to release; connections are per-operation."""
        pass
