"""Well-known authority names."""

from __future__ import annotations

from enum import Enum


class GrantedAuthorityNames(Enum):
    """Authorities the service itself knows about.

    Any other string is a valid authority too; these are the ones with
    built-in meaning.
    """

    ROLE_USER = "ROLE_USER"
    ROLE_DATA_COLLECTOR = "ROLE_DATA_COLLECTOR"
    ROLE_DATA_VIEWER = "ROLE_DATA_VIEWER"
    ROLE_FORM_ADMIN = "ROLE_FORM_ADMIN"
    ROLE_ACCESS_ADMIN = "ROLE_ACCESS_ADMIN"


# Held by exactly one principal: the configured superuser.
ADMIN_AUTHORITY = GrantedAuthorityNames.ROLE_ACCESS_ADMIN.value
