"""Expansion of LDAP groups into their member users."""

from __future__ import annotations

from structlog.stdlib import BoundLogger

from ..config import LookupConfig
from ..filters import build_group_member_filter
from ..lifecycle import ShutdownManager
from ..models.lookup import GroupMember, GroupMembers
from ..storage.ldap import LDAPStorage

__all__ = ["GroupService"]


def _first(value: str | list[str] | None) -> str | None:
    if isinstance(value, list):
        return value[0] if value else None
    return value


class GroupService:
    """Find the users belonging to a group.

    Parameters
    ----------
    config
        Lookup configuration.
    ldap
        The underlying LDAP query layer.
    shutdown
        Shutdown manager, consulted to detect an unreachable LDAP server.
    limit
        Maximum number of members to return.
    logger
        Logger to use.
    """

    def __init__(
        self,
        *,
        config: LookupConfig,
        ldap: LDAPStorage,
        shutdown: ShutdownManager,
        limit: int,
        logger: BoundLogger,
    ) -> None:
        self._config = config
        self._ldap = ldap
        self._shutdown = shutdown
        self._limit = limit
        self._logger = logger

    async def expand_group(self, group_dn: str) -> GroupMembers:
        """Get the users who are members of a group.

        Parameters
        ----------
        group_dn
            Full DN of the group.

        Returns
        -------
        GroupMembers
            Up to the configured limit of member users.

        Raises
        ------
        DirectoryError
            Raised if the search could not be performed.
        """
        if self._shutdown.error:
            raise self._shutdown.error
        name_attr = self._config.group_username_attribute
        mail_attr = self._config.group_mail_attribute
        search = build_group_member_filter(
            group_dn, self._config.group_membership_attribute
        )
        entries = await self._ldap.find_group_members(
            search, [name_attr, mail_attr], self._limit
        )
        self._logger.debug(
            "Expanded LDAP group", group=group_dn, count=len(entries)
        )
        users = [
            GroupMember(
                name=_first(e.get(name_attr)), mail=_first(e.get(mail_attr))
            )
            for e in entries
        ]
        return GroupMembers(users=users)
