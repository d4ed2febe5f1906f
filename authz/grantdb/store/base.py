"""
Base protocol and types for the relation store abstraction.

This module defines the Store and Query protocols that all backends must
implement, along with the relation/field/entity types they exchange and the
error hierarchy they raise.

Invariants:
    - Every entity is identified by an opaque, store-assigned uri
    - A relation must be asserted before it is queried or written
    - Backends never truncate string values; callers check bounds first
    - All backend failures surface as StoreError subclasses

How to change safely:
    - Protocol changes require updating all implementations
    - New filter operations must be supported by every backend
"""

from __future__ import annotations

import logging
import time
import uuid
from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:
    from ..config import StoreConfig

logger = logging.getLogger(__name__)

# Maximum length of uri-typed string columns.
URI_STRING_LEN = 80


class StoreError(Exception):
    """Base exception for relation store operations."""

    pass


class StoreUnavailableError(StoreError):
    """The underlying persistence substrate failed or is unreachable."""

    pass


class RelationNotFoundError(StoreError):
    """The relation has not been asserted in this store."""

    pass


class FilterOperation(Enum):
    """Comparison operators supported by Query.add_filter."""

    EQUAL = "="
    NOT_EQUAL = "!="

    def matches(self, stored: Any, value: Any) -> bool:
        if self is FilterOperation.EQUAL:
            return stored == value
        return stored != value


@dataclass(frozen=True)
class DataField:
    """A typed column of a relation.

    Attributes:
        name: Column name (upper-case by convention)
        max_length: Upper bound on string length
        nullable: Whether None may be stored
        indexed: Whether backends should index this column
    """

    name: str
    max_length: int = URI_STRING_LEN
    nullable: bool = True
    indexed: bool = False

    def fits(self, value: str | None) -> bool:
        """Whether a value can be stored without truncation."""
        if value is None:
            return self.nullable
        return len(value) <= self.max_length


# Every relation carries its entity uri as primary key.
PRIMARY_KEY = DataField("_URI", max_length=URI_STRING_LEN, nullable=False)


@dataclass(frozen=True)
class Relation:
    """Schema of a persisted table.

    Attributes:
        schema_name: Backend schema/namespace
        table_name: Table name within the schema
        fields: Data columns (excluding the primary key and audit columns)
    """

    schema_name: str
    table_name: str
    fields: tuple[DataField, ...]

    @property
    def primary_key(self) -> DataField:
        return PRIMARY_KEY

    @property
    def qualified_name(self) -> str:
        return f"{self.schema_name}.{self.table_name}"

    def field_named(self, name: str) -> DataField:
        if name == PRIMARY_KEY.name:
            return PRIMARY_KEY
        for data_field in self.fields:
            if data_field.name == name:
                return data_field
        raise KeyError(f"{self.qualified_name} has no field {name}")


@dataclass(frozen=True)
class EntityKey:
    """Identifies one entity of a relation for deletion."""

    relation: Relation
    uri: str


@dataclass
class Entity:
    """A row of a relation.

    Attributes:
        relation: Relation this entity belongs to
        uri: Store-assigned unique identifier
        values: Column values keyed by field name
        created_by: Actor that created the entity
        created_at: Creation timestamp (Unix ms)
        updated_by: Actor that last wrote the entity
        updated_at: Last write timestamp (Unix ms)
    """

    relation: Relation
    uri: str
    values: dict[str, str | None] = field(default_factory=dict)
    created_by: str | None = None
    created_at: int | None = None
    updated_by: str | None = None
    updated_at: int | None = None

    @property
    def key(self) -> EntityKey:
        return EntityKey(self.relation, self.uri)

    def get_string_field(self, data_field: DataField) -> str | None:
        return self.values.get(data_field.name)

    def set_string_field(self, data_field: DataField, value: str | None) -> bool:
        """Set a string column.

        Returns:
            False (leaving the entity untouched) if the value does not fit
        """
        if not data_field.fits(value):
            return False
        self.values[data_field.name] = value
        return True


def new_uri() -> str:
    """Generate an entity uri."""
    return f"uuid:{uuid.uuid4()}"


def now_ms() -> int:
    return int(time.time() * 1000)


@runtime_checkable
class Query(Protocol):
    """A filtered read against one relation."""

    @abstractmethod
    def add_filter(self, data_field: DataField, op: FilterOperation, value: Any) -> None:
        """Restrict the query; filters are combined with AND."""
        ...

    @abstractmethod
    async def execute(self) -> list[Entity]:
        """Return all matching entities.

        Raises:
            StoreError: If the backend fails
        """
        ...

    @abstractmethod
    async def execute_distinct_values(self, data_field: DataField) -> list[Any]:
        """Return the distinct values of one column among matching entities.

        Raises:
            StoreError: If the backend fails
        """
        ...


@runtime_checkable
class Store(Protocol):
    """Protocol for relation store backends.

    Every operation takes the acting principal, which backends record in
    audit columns and may use for permissioning.

    Example:
        >>> store = InMemoryStore()
        >>> await store.assert_relation(relation, "system:bootstrap")
        >>> entity = store.create_entity(relation, "system:bootstrap")
        >>> await store.put_entities([entity], "system:bootstrap")
    """

    @property
    @abstractmethod
    def default_schema_name(self) -> str:
        """Schema name new relations should be created in."""
        ...

    @abstractmethod
    async def assert_relation(self, relation: Relation, actor: str) -> None:
        """Create the relation's table if it does not exist.

        Raises:
            StoreUnavailableError: If the backend fails
        """
        ...

    @abstractmethod
    def create_query(self, relation: Relation, actor: str) -> Query:
        """Create an unfiltered query over a relation."""
        ...

    @abstractmethod
    def create_entity(self, relation: Relation, actor: str) -> Entity:
        """Create an empty, unsaved entity with a fresh uri."""
        ...

    @abstractmethod
    async def put_entities(self, entities: Sequence[Entity], actor: str) -> None:
        """Insert or replace entities as one batch.

        Raises:
            StoreError: If the backend fails; no entity of the batch is written
        """
        ...

    @abstractmethod
    async def delete_entities(self, keys: Sequence[EntityKey], actor: str) -> None:
        """Delete entities as one batch. Missing keys are ignored.

        Raises:
            StoreError: If the backend fails; no entity of the batch is deleted
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...


def create_store(config: "StoreConfig") -> Store:
    """Factory function to create a store from configuration.

    Args:
        config: Store configuration

    Returns:
        Appropriate Store implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend
    from .memory import InMemoryStore
    from .sqlite import SqliteStore

    if config.backend == StoreBackend.SQLITE:
        return SqliteStore(
            data_dir=config.data_dir,
            db_name=config.db_name,
            wal_mode=config.wal_mode,
            busy_timeout_ms=config.busy_timeout_ms,
        )
    elif config.backend == StoreBackend.MEMORY:
        return InMemoryStore(record_calls=False)
    else:
        raise ValueError(f"Unsupported store backend: {config.backend}")
