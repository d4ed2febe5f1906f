"""
Relation store abstraction for GrantDB.

This module provides a pluggable persistence backend supporting:
- SQLite (default, one database file per deployment)
- In-memory (for testing)

The store only knows about relations, entities and equality queries. It has
no notion of memberships; that lives in the membership package.

Invariants:
    - put_entities()/delete_entities() are all-or-nothing per batch
    - Failures surface as StoreError subclasses, never raw driver errors
    - Entity uris are assigned by the store and never reused

How to change safely:
    - New backends must implement the Store protocol
    - Run the shared store tests against every backend
"""

from .base import (
    PRIMARY_KEY,
    URI_STRING_LEN,
    DataField,
    Entity,
    EntityKey,
    FilterOperation,
    Query,
    Relation,
    RelationNotFoundError,
    Store,
    StoreError,
    StoreUnavailableError,
    create_store,
)
from .memory import InMemoryStore
from .sqlite import SqliteStore

__all__ = [
    # Protocol and types
    "Store",
    "Query",
    "Relation",
    "DataField",
    "Entity",
    "EntityKey",
    "FilterOperation",
    "PRIMARY_KEY",
    "URI_STRING_LEN",
    # Errors
    "StoreError",
    "StoreUnavailableError",
    "RelationNotFoundError",
    # Factory
    "create_store",
    # Implementations
    "InMemoryStore",
    "SqliteStore",
]
