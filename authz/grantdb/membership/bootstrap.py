"""
Superuser bootstrap: pin the administrative authority to one principal.

Safe to run at every process start. One read of the admin authority's
records decides both steps:
1. Delete records held by anyone other than the superuser (stale admins),
   and every superuser record but the first by id
2. Insert (superuser, ADMIN_AUTHORITY) if the superuser held none

Invariants:
    - Afterwards exactly one record exists for ADMIN_AUTHORITY: the superuser's
    - A second run with unchanged state issues no writes
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..store.base import EntityKey
from .authority import ADMIN_AUTHORITY
from .context import CallingContext
from .notifier import notify_on_exit
from .queries import lookup
from .record import MembershipField, new_membership_entity

logger = logging.getLogger(__name__)


@dataclass
class BootstrapResult:
    """Outcome of ensure_superuser_admin().

    Attributes:
        superuser: Principal that now holds the admin authority
        had_role: Whether the superuser already held it
        removed: Ids of stale admin records deleted
    """

    superuser: str
    had_role: bool
    removed: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.removed) or not self.had_role


async def ensure_superuser_admin(cc: CallingContext, super_principal: str) -> BootstrapResult:
    """Guarantee the superuser, and only the superuser, is an access admin.

    Args:
        cc: Calling context
        super_principal: Principal that must hold ADMIN_AUTHORITY

    Returns:
        What was found and changed

    Raises:
        ConstructionError: If the principal does not fit its field
        StoreError: If the store fails
    """
    async with cc.write_lock(MembershipField.AUTHORITY, ADMIN_AUTHORITY):
        relation = await cc.membership_relation()

        had_role = False
        stale = []
        records = await lookup(cc, MembershipField.AUTHORITY, ADMIN_AUTHORITY)
        for record in sorted(records, key=lambda r: r.id):
            if record.principal == super_principal and not had_role:
                had_role = True
            else:
                stale.append(record)

        entity = None
        if not had_role:
            entity = new_membership_entity(
                cc.store, relation, cc.actor, super_principal, ADMIN_AUTHORITY
            )

        with notify_on_exit(cc.notifier) as guard:
            if stale:
                # Former superusers and duplicate superuser records; remove them.
                guard.arm()
                logger.warning(
                    f"Removing {ADMIN_AUTHORITY} via {len(stale)} stale record(s)",
                    extra={"principals": sorted(r.principal for r in stale)},
                )
                await cc.store.delete_entities(
                    [EntityKey(relation, r.id) for r in stale], cc.actor
                )

            if entity is not None:
                guard.arm()
                logger.info(f"Granting {ADMIN_AUTHORITY} to superuser {super_principal}")
                await cc.store.put_entities([entity], cc.actor)

    return BootstrapResult(
        superuser=super_principal,
        had_role=had_role,
        removed=sorted(r.id for r in stale),
    )
