"""Calling context threaded through every membership operation."""

from __future__ import annotations

import contextlib
import dataclasses
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncContextManager

from .locks import AnchorLocks
from .record import MembershipField
from .relation import RelationHandle

if TYPE_CHECKING:
    from ..store.base import Relation, Store
    from .notifier import ChangeNotifier


@dataclass(frozen=True)
class CallingContext:
    """Everything a membership operation needs, passed explicitly.

    Attributes:
        store: Relation store to read and write
        actor: Acting principal, passed through to the store for auditing
        notifier: Invalidated when memberships change
        relation: Handle on the membership relation
        locks: Per-anchor write locks
        serialize_writes: Whether writes hold the anchor lock
    """

    store: Store
    actor: str
    notifier: ChangeNotifier
    relation: RelationHandle = field(default_factory=RelationHandle)
    locks: AnchorLocks = field(default_factory=AnchorLocks)
    serialize_writes: bool = True

    def with_actor(self, actor: str) -> CallingContext:
        """Same collaborators, different acting principal."""
        return dataclasses.replace(self, actor=actor)

    async def membership_relation(self) -> Relation:
        return await self.relation.get(self.store, self.actor)

    def write_lock(self, anchor: MembershipField, value: str) -> AsyncContextManager[None]:
        """Lock for writes to one anchor, or a no-op when serialization is off."""
        if self.serialize_writes:
            return self.locks.hold(anchor, value)
        return contextlib.nullcontext()
