"""
Membership reconciliation: make stored pairings match a desired set.

One algorithm serves both directions. The anchor is the side held fixed (a
principal whose authorities are being set, or an authority whose members are
being set); the subject is the side whose set is reconciled.

    existing = records where anchor == A
    to_insert = desired - subjects(existing)
    to_delete = [r for r in existing if r.subject not in desired]

Invariants:
    - The caller's desired collection is snapshotted and never mutated
    - The whole diff is computed before any write is issued
    - Inserts are submitted before deletes; empty batches are not submitted
    - The notifier fires exactly once iff a non-empty mutation was attempted,
      even when the store fails part-way through
    - Records sharing a subject with an earlier record (duplicates) are
      reported, never deleted

How to change safely:
    - Keep plan_reconciliation() pure; it is the unit-tested core
    - Any new write path must go through notify_on_exit()
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from ..store.base import EntityKey, FilterOperation
from .context import CallingContext
from .notifier import notify_on_exit, safe_invalidate
from .queries import lookup
from .record import MembershipField, MembershipRecord, new_membership_entity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcilePlan:
    """The delta between stored records and a desired subject set.

    Attributes:
        to_insert: Subject values with no record yet
        to_delete: Records whose subject is not desired
        duplicates: Records whose subject an earlier record already covers
    """

    to_insert: frozenset[str]
    to_delete: tuple[MembershipRecord, ...]
    duplicates: tuple[MembershipRecord, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.to_insert or self.to_delete)


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation call.

    Attributes:
        anchor: Which side was held fixed
        anchor_value: The fixed principal or authority
        inserted: Subject values that received a new record
        deleted: Ids of the records removed
        duplicates: Ids of redundant records left in place
        changed: Whether any mutation was submitted
    """

    anchor: MembershipField
    anchor_value: str
    inserted: set[str] = field(default_factory=set)
    deleted: list[str] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    changed: bool = False


def plan_reconciliation(
    existing: Iterable[MembershipRecord],
    desired: frozenset[str],
    subject: MembershipField,
) -> ReconcilePlan:
    """Diff existing records against the desired subject values.

    Records are visited in id order so the choice of which duplicate counts
    as "first seen" is stable across calls.

    Args:
        existing: Records for one anchor
        desired: Subject values that should exist
        subject: Which side of each record is compared

    Returns:
        The plan; applying it leaves exactly the desired subjects stored
    """
    seen: set[str] = set()
    to_delete: list[MembershipRecord] = []
    duplicates: list[MembershipRecord] = []

    for record in sorted(existing, key=lambda r: r.id):
        value = record.value_of(subject)
        if value not in desired:
            to_delete.append(record)
        elif value in seen:
            duplicates.append(record)
        else:
            seen.add(value)

    return ReconcilePlan(
        to_insert=desired - seen,
        to_delete=tuple(to_delete),
        duplicates=tuple(duplicates),
    )


class Reconciler:
    """Applies desired membership state to the store.

    This class is stateless; everything it touches comes in through the
    CallingContext, so one instance can serve any number of contexts.

    Example:
        >>> reconciler = Reconciler()
        >>> result = await reconciler.reconcile_authorities_for_principal(
        ...     cc, "uid:alice", {"ROLE_USER", "ROLE_DATA_VIEWER"}
        ... )
        >>> result.changed
        True
    """

    async def reconcile_authorities_for_principal(
        self,
        cc: CallingContext,
        principal: str,
        desired_authorities: Iterable[str],
    ) -> ReconcileResult:
        """Make the principal hold exactly the desired authorities.

        Raises:
            ConstructionError: If an authority does not fit its field
            StoreError: If the store fails
        """
        return await self._reconcile(
            cc, MembershipField.PRINCIPAL, principal, frozenset(desired_authorities)
        )

    async def reconcile_principals_for_authority(
        self,
        cc: CallingContext,
        authority: str,
        desired_principals: Iterable[str],
    ) -> ReconcileResult:
        """Make the authority have exactly the desired members.

        Raises:
            ConstructionError: If a principal does not fit its field
            StoreError: If the store fails
        """
        return await self._reconcile(
            cc, MembershipField.AUTHORITY, authority, frozenset(desired_principals)
        )

    async def _reconcile(
        self,
        cc: CallingContext,
        anchor: MembershipField,
        anchor_value: str,
        desired: frozenset[str],
    ) -> ReconcileResult:
        subject = anchor.other
        logger.info(
            f"Reconciling {subject.value}s for {anchor.value} {anchor_value}",
            extra={"anchor": anchor.value, "anchor_value": anchor_value, "desired": len(desired)},
        )

        async with cc.write_lock(anchor, anchor_value):
            relation = await cc.membership_relation()
            existing = await lookup(cc, anchor, anchor_value)
            plan = plan_reconciliation(existing, desired, subject)

            inserts = []
            for value in sorted(plan.to_insert):
                if anchor is MembershipField.PRINCIPAL:
                    principal, authority = anchor_value, value
                else:
                    principal, authority = value, anchor_value
                inserts.append(
                    new_membership_entity(cc.store, relation, cc.actor, principal, authority)
                )
            deletes = [EntityKey(relation, r.id) for r in plan.to_delete]

            if plan.duplicates:
                logger.warning(
                    f"{len(plan.duplicates)} duplicate membership record(s) left in place "
                    f"for {anchor.value} {anchor_value}",
                    extra={"duplicate_ids": [r.id for r in plan.duplicates]},
                )

            with notify_on_exit(cc.notifier) as guard:
                if plan.changed:
                    guard.arm()
                if inserts:
                    await cc.store.put_entities(inserts, cc.actor)
                if deletes:
                    await cc.store.delete_entities(deletes, cc.actor)

        logger.info(
            f"Reconciled {anchor.value} {anchor_value}: "
            f"{len(inserts)} inserted, {len(deletes)} deleted",
            extra={"anchor": anchor.value, "anchor_value": anchor_value, "changed": plan.changed},
        )

        return ReconcileResult(
            anchor=anchor,
            anchor_value=anchor_value,
            inserted=set(plan.to_insert),
            deleted=[r.id for r in plan.to_delete],
            duplicates=[r.id for r in plan.duplicates],
            changed=plan.changed,
        )

    async def delete_all_for_principal(self, cc: CallingContext, principal: str) -> int:
        """Remove every membership of a principal.

        The notifier is invalidated afterwards whether or not anything was
        stored, and whether or not the delete succeeded.

        Returns:
            Number of records deleted

        Raises:
            StoreError: If the store fails
        """
        try:
            async with cc.write_lock(MembershipField.PRINCIPAL, principal):
                relation = await cc.membership_relation()
                query = cc.store.create_query(relation, cc.actor)
                query.add_filter(
                    MembershipField.PRINCIPAL.data_field, FilterOperation.EQUAL, principal
                )
                uris = await query.execute_distinct_values(relation.primary_key)
                keys = [EntityKey(relation, str(uri)) for uri in uris]
                if keys:
                    await cc.store.delete_entities(keys, cc.actor)
        finally:
            safe_invalidate(cc.notifier)

        logger.info(
            f"Deleted {len(keys)} membership(s) of principal {principal}",
            extra={"principal": principal, "count": len(keys)},
        )
        return len(keys)
