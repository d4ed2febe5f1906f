"""
Lazily-asserted handle on the membership relation.

Invariants:
    - The relation is asserted in the store at most once per handle
    - Concurrent first callers all observe the same Relation object
    - A failed assertion caches nothing; the next call retries
"""

from __future__ import annotations

import asyncio
import logging

from ..store.base import Relation, Store
from .record import membership_relation

logger = logging.getLogger(__name__)


class RelationHandle:
    """Owns the one-time creation of the membership relation.

    A handle belongs to whoever owns the store (normally the Service) and is
    passed around inside CallingContext; there is no module-level instance.

    Example:
        >>> handle = RelationHandle()
        >>> relation = await handle.get(store, "system:grantdb")
    """

    def __init__(self) -> None:
        self._relation: Relation | None = None
        self._lock = asyncio.Lock()

    @property
    def is_ready(self) -> bool:
        return self._relation is not None

    async def get(self, store: Store, actor: str) -> Relation:
        """Return the membership relation, asserting it on first use.

        Raises:
            StoreError: If the store fails while creating the relation
        """
        if self._relation is not None:
            return self._relation

        async with self._lock:
            if self._relation is None:
                relation = membership_relation(store.default_schema_name)
                await store.assert_relation(relation, actor)
                self._relation = relation
                logger.info(f"Membership relation ready: {relation.qualified_name}")
        return self._relation
