"""
Membership record: one (principal, authority) pairing.

The relation stores each pairing as an entity with two bounded string
fields, USER and GRANTED_AUTHORITY. Records are only created through
new_membership_entity(), which refuses values that do not fit.

Invariants:
    - A record's id is the store-assigned entity uri and never changes
    - Field values are never truncated; overflow raises ConstructionError
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from ..store.base import URI_STRING_LEN, DataField, Entity, Relation, Store

TABLE_NAME = "_user_granted_authority"

USER = DataField("USER", max_length=URI_STRING_LEN, nullable=False, indexed=True)
GRANTED_AUTHORITY = DataField("GRANTED_AUTHORITY", max_length=URI_STRING_LEN, nullable=False)


class ConstructionError(ValueError):
    """A membership field value exceeds its storage bound."""

    def __init__(self, data_field: DataField, value: str | None):
        self.field_name = data_field.name
        self.value = value
        length = "None" if value is None else len(value)
        super().__init__(
            f"overflow {data_field.name}: length {length} exceeds {data_field.max_length}"
        )


class MembershipField(Enum):
    """The two sides of a membership, mapped to their columns."""

    PRINCIPAL = "principal"
    AUTHORITY = "authority"

    @property
    def data_field(self) -> DataField:
        return USER if self is MembershipField.PRINCIPAL else GRANTED_AUTHORITY

    @property
    def other(self) -> MembershipField:
        if self is MembershipField.PRINCIPAL:
            return MembershipField.AUTHORITY
        return MembershipField.PRINCIPAL


def membership_relation(schema_name: str) -> Relation:
    """Build the membership relation prototype for a schema."""
    return Relation(schema_name=schema_name, table_name=TABLE_NAME, fields=(USER, GRANTED_AUTHORITY))


@dataclass(frozen=True)
class MembershipRecord:
    """A stored pairing of one principal with one authority.

    Attributes:
        id: Store-assigned entity uri
        principal: User identifier
        authority: Role/group identifier
    """

    id: str
    principal: str
    authority: str

    @classmethod
    def from_entity(cls, entity: Entity) -> MembershipRecord:
        return cls(
            id=entity.uri,
            principal=entity.get_string_field(USER),
            authority=entity.get_string_field(GRANTED_AUTHORITY),
        )

    def value_of(self, which: MembershipField) -> str:
        return self.principal if which is MembershipField.PRINCIPAL else self.authority


def new_membership_entity(
    store: Store,
    relation: Relation,
    actor: str,
    principal: str,
    authority: str,
) -> Entity:
    """Create an unsaved membership entity.

    Raises:
        ConstructionError: If principal or authority does not fit its field
    """
    entity = store.create_entity(relation, actor)
    if not entity.set_string_field(USER, principal):
        raise ConstructionError(USER, principal)
    if not entity.set_string_field(GRANTED_AUTHORITY, authority):
        raise ConstructionError(GRANTED_AUTHORITY, authority)
    return entity
