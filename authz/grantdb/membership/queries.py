"""
Read-only lookups over the membership relation.

Invariants:
    - Never mutates the store
    - Returns empty collections, never None, when nothing matches
    - Store errors propagate; there is no empty-result fallback
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..store.base import FilterOperation
from .record import MembershipField, MembershipRecord

if TYPE_CHECKING:
    from .context import CallingContext

logger = logging.getLogger(__name__)


async def lookup(
    cc: CallingContext,
    filter_field: MembershipField,
    filter_value: str,
) -> set[MembershipRecord]:
    """All records whose principal or authority equals a value.

    Args:
        cc: Calling context
        filter_field: Which side of the membership to filter on
        filter_value: Exact value to match

    Returns:
        Matching records; duplicates with distinct ids are kept apart
    """
    relation = await cc.membership_relation()
    query = cc.store.create_query(relation, cc.actor)
    query.add_filter(filter_field.data_field, FilterOperation.EQUAL, filter_value)
    entities = await query.execute()
    return {MembershipRecord.from_entity(e) for e in entities}


async def distinct_values(
    cc: CallingContext,
    field: MembershipField,
    filter_field: MembershipField,
    filter_value: str,
) -> set[str]:
    """Distinct values of one field among records matching a filter.

    Example:
        >>> await distinct_values(cc, MembershipField.AUTHORITY,
        ...                       MembershipField.PRINCIPAL, "uid:alice")
        {'ROLE_USER', 'ROLE_DATA_VIEWER'}
    """
    relation = await cc.membership_relation()
    query = cc.store.create_query(relation, cc.actor)
    query.add_filter(filter_field.data_field, FilterOperation.EQUAL, filter_value)
    values = await query.execute_distinct_values(field.data_field)
    return {str(v) for v in values}


async def get_granted_authorities(cc: CallingContext, principal: str | None) -> set[str]:
    """Authorities directly granted to a principal."""
    if principal is None:
        return set()
    return await distinct_values(
        cc, MembershipField.AUTHORITY, MembershipField.PRINCIPAL, principal
    )


async def get_principals(cc: CallingContext, authority: str | None) -> list[str]:
    """Principals holding an authority, sorted."""
    if authority is None:
        return []
    members = await distinct_values(
        cc, MembershipField.PRINCIPAL, MembershipField.AUTHORITY, authority
    )
    return sorted(members)
