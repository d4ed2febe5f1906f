"""
Membership module for GrantDB - principal/authority pairings.

This module handles:
- The membership record and its relation
- Read-only lookups in both directions
- Reconciliation of stored pairings against a desired set
- Change notification and the permissions cache
- The superuser bootstrap guarantor

Invariants:
    - Only the reconciler and the bootstrap guarantor write memberships
    - Every write path invalidates the change notifier when it mutated
    - Writes to one anchor are serialized when serialize_writes is on

How to change safely:
    - Add new write paths inside notify_on_exit()
    - Test both reconciliation directions for every behavior change
"""

from .authority import ADMIN_AUTHORITY, GrantedAuthorityNames
from .bootstrap import BootstrapResult, ensure_superuser_admin
from .context import CallingContext
from .locks import AnchorLocks
from .notifier import (
    CallbackNotifier,
    ChangeNotifier,
    CompositeNotifier,
    NullNotifier,
    PermissionsCache,
    notify_on_exit,
)
from .queries import distinct_values, get_granted_authorities, get_principals, lookup
from .reconciler import ReconcilePlan, ReconcileResult, Reconciler, plan_reconciliation
from .record import ConstructionError, MembershipField, MembershipRecord
from .relation import RelationHandle

__all__ = [
    "ADMIN_AUTHORITY",
    "GrantedAuthorityNames",
    "BootstrapResult",
    "ensure_superuser_admin",
    "CallingContext",
    "AnchorLocks",
    "CallbackNotifier",
    "ChangeNotifier",
    "CompositeNotifier",
    "NullNotifier",
    "PermissionsCache",
    "notify_on_exit",
    "distinct_values",
    "get_granted_authorities",
    "get_principals",
    "lookup",
    "ReconcilePlan",
    "ReconcileResult",
    "Reconciler",
    "plan_reconciliation",
    "ConstructionError",
    "MembershipField",
    "MembershipRecord",
    "RelationHandle",
]
