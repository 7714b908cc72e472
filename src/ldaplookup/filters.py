"""Construction of LDAP search filters.

Every value interpolated into a filter is escaped as described in
:rfc:`2254` so that a lookup value cannot change the structure of the
filter.
"""

from __future__ import annotations

from .config import LookupConfig
from .constants import ENTITY_PLACEHOLDER

__all__ = [
    "build_filter",
    "build_group_member_filter",
    "escape_filter_value",
]

_SPECIAL_CHARACTERS = {
    "*": "\\2a",
    "(": "\\28",
    ")": "\\29",
    "\\": "\\5c",
    "\0": "\\00",
}


def escape_filter_value(value: str | bytes) -> str:
    """Escape a value for use in an LDAP search filter.

    Parameters
    ----------
    value
        Value to escape. Strings have only the filter metacharacters escaped.
        Bytes are treated as binary data and every byte is escaped.

    Returns
    -------
    str
        Escaped value safe to use as an assertion value.
    """
    if isinstance(value, bytes):
        return "".join(f"\\{b:02x}" for b in value)
    return "".join(_SPECIAL_CHARACTERS.get(c, c) for c in value)


def build_filter(value: str | bytes, config: LookupConfig) -> str:
    """Build the filter used to find the user entry for a lookup value.

    Parameters
    ----------
    value
        Lookup value, usually an email address.
    config
        Lookup configuration.

    Returns
    -------
    str
        An equality filter on ``userSearchAttribute`` if one is configured,
        otherwise the advanced search filter with the escaped value
        substituted for every placeholder.
    """
    escaped = escape_filter_value(value)
    attribute = config.user_search_attribute.strip()
    if attribute:
        return f"({attribute}={escaped})"
    return config.search_filter.strip().replace(ENTITY_PLACEHOLDER, escaped)


def build_group_member_filter(group_dn: str, member_attribute: str) -> str:
    """Build the filter used to find the users belonging to a group.

    Parameters
    ----------
    group_dn
        Full DN of the group.
    member_attribute
        Attribute of a user entry holding its group DNs.

    Returns
    -------
    str
        Search filter matching user entries in that group.
    """
    escaped = escape_filter_value(group_dn)
    return f"(&(objectCategory=user)({member_attribute}={escaped}))"
