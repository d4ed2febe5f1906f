"""
In-memory relation store implementation for testing.

This module provides a simple in-memory store backend for:
- Unit tests
- Local development without a data directory

Invariants:
    - All data is lost on process exit
    - Batches are applied all-or-nothing, like the SQLite backend
    - Entities are copied on the way in and out; callers never alias storage

How to change safely:
    - Keep behavior identical to SqliteStore for every Store operation
    - Add testing helpers at the bottom, never change the protocol surface
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Sequence

from .base import (
    DataField,
    Entity,
    EntityKey,
    FilterOperation,
    Relation,
    RelationNotFoundError,
    new_uri,
    now_ms,
)

logger = logging.getLogger(__name__)


@dataclass
class InMemoryTable:
    """Rows of one relation keyed by uri, in insertion order."""

    relation: Relation
    rows: dict[str, Entity] = field(default_factory=dict)


def _column(entity: Entity, data_field: DataField) -> Any:
    if data_field.name == entity.relation.primary_key.name:
        return entity.uri
    return entity.values.get(data_field.name)


class InMemoryQuery:
    """Query over an InMemoryTable."""

    def __init__(self, store: InMemoryStore, relation: Relation) -> None:
        self._store = store
        self._relation = relation
        self._filters: list[tuple[DataField, FilterOperation, Any]] = []

    def add_filter(self, data_field: DataField, op: FilterOperation, value: Any) -> None:
        self._filters.append((data_field, op, value))

    async def execute(self) -> list[Entity]:
        rows = await self._store._select(self._relation, self._filters, "execute")
        return [copy.deepcopy(row) for row in rows]

    async def execute_distinct_values(self, data_field: DataField) -> list[Any]:
        rows = await self._store._select(self._relation, self._filters, "execute_distinct_values")
        values: list[Any] = []
        for row in rows:
            value = _column(row, data_field)
            if value not in values:
                values.append(value)
        return values


class InMemoryStore:
    """In-memory implementation of the Store protocol.

    Thread safety:
        Uses an asyncio lock around every batch. Safe to use from
        multiple coroutines.

    Example:
        >>> store = InMemoryStore()
        >>> await store.assert_relation(relation, "system:test")
        >>> query = store.create_query(relation, "system:test")
        >>> await query.execute()
        []
    """

    def __init__(self, schema_name: str = "memory", record_calls: bool = True) -> None:
        """Initialize the store.

        Args:
            schema_name: Schema reported as default_schema_name
            record_calls: Append every operation name to calls (testing helper).
                create_store() turns this off for long-running services.
        """
        self._schema_name = schema_name
        self._tables: dict[str, InMemoryTable] = {}
        self._lock = asyncio.Lock()
        self._failures: dict[str, list[Exception]] = defaultdict(list)
        self._record_calls = record_calls
        self.calls: list[str] = []

    @property
    def default_schema_name(self) -> str:
        return self._schema_name

    async def assert_relation(self, relation: Relation, actor: str) -> None:
        self._record_call("assert_relation")
        async with self._lock:
            if relation.qualified_name not in self._tables:
                self._tables[relation.qualified_name] = InMemoryTable(relation)
                logger.debug(
                    "Created in-memory relation",
                    extra={"relation": relation.qualified_name, "actor": actor},
                )

    def create_query(self, relation: Relation, actor: str) -> InMemoryQuery:
        return InMemoryQuery(self, relation)

    def create_entity(self, relation: Relation, actor: str) -> Entity:
        return Entity(relation=relation, uri=new_uri())

    async def put_entities(self, entities: Sequence[Entity], actor: str) -> None:
        self._record_call("put_entities")
        now = now_ms()
        async with self._lock:
            staged = []
            for entity in entities:
                table = self._table(entity.relation)
                stored = copy.deepcopy(entity)
                existing = table.rows.get(entity.uri)
                stored.created_by = existing.created_by if existing else actor
                stored.created_at = existing.created_at if existing else now
                stored.updated_by = actor
                stored.updated_at = now
                staged.append((table, entity, stored))
            for table, entity, stored in staged:
                table.rows[stored.uri] = stored
                entity.created_by = stored.created_by
                entity.created_at = stored.created_at
                entity.updated_by = actor
                entity.updated_at = now

        logger.debug("Put entities", extra={"count": len(entities), "actor": actor})

    async def delete_entities(self, keys: Sequence[EntityKey], actor: str) -> None:
        self._record_call("delete_entities")
        async with self._lock:
            tables = [self._table(key.relation) for key in keys]
            for table, key in zip(tables, keys):
                table.rows.pop(key.uri, None)

        logger.debug("Deleted entities", extra={"count": len(keys), "actor": actor})

    async def close(self) -> None:
        self._tables.clear()

    async def _select(
        self,
        relation: Relation,
        filters: list[tuple[DataField, FilterOperation, Any]],
        operation: str,
    ) -> list[Entity]:
        self._record_call(operation)
        async with self._lock:
            table = self._table(relation)
            return [
                row
                for row in table.rows.values()
                if all(op.matches(_column(row, f), value) for f, op, value in filters)
            ]

    def _table(self, relation: Relation) -> InMemoryTable:
        table = self._tables.get(relation.qualified_name)
        if table is None:
            raise RelationNotFoundError(f"Relation not asserted: {relation.qualified_name}")
        return table

    def _record_call(self, operation: str) -> None:
        if self._record_calls:
            self.calls.append(operation)
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    # Testing helpers

    def inject_failure(self, operation: str, exception: Exception) -> None:
        """Make the next call of an operation raise an exception.

        Args:
            operation: One of assert_relation, execute, execute_distinct_values,
                put_entities, delete_entities
            exception: Exception to raise
        """
        self._failures[operation].append(exception)

    def get_all_entities(self, relation: Relation) -> list[Entity]:
        """Get all stored entities of a relation (testing helper)."""
        table = self._tables.get(relation.qualified_name)
        if table is None:
            return []
        return [copy.deepcopy(row) for row in table.rows.values()]

    def mutation_calls(self) -> list[str]:
        """Recorded put/delete calls, in order (testing helper)."""
        return [c for c in self.calls if c in ("put_entities", "delete_entities")]

    def reset_calls(self) -> None:
        """Forget recorded calls (testing helper)."""
        self.calls.clear()
