"""Process-wide entry point for LDAP lookups.

The host environment calls the methods of `lookup_application`, passing the
lookup configuration with every call. The process context behind it (the
connection pool, failure counter, and caches) is created on first use and
shared by all calls in the process.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

import structlog

from .config import Config, LookupConfig, validate_configuration
from .exceptions import ConfigurationError
from .factory import Factory, ProcessContext
from .lifecycle import exit_process
from .models.lookup import ConfigProblem, GroupMembers, Identity, LookupResult

__all__ = ["LookupApplication", "lookup_application"]


class LookupApplication:
    """Owner of the per-process lookup state.

    Parameters
    ----------
    config
        Process settings. If not given, they are loaded from the environment
        with defaults for everything else.
    terminate
        Called to end the process after an unrecoverable LDAP outage.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        terminate: Callable[[], None] = exit_process,
    ) -> None:
        self._config = config
        self._terminate = terminate
        self._context: ProcessContext | None = None

    @property
    def config(self) -> Config:
        """Process settings, loaded on first use if not provided."""
        if not self._config:
            self._config = Config()
        return self._config

    @property
    def context(self) -> ProcessContext:
        """Process context, created on first use."""
        if not self._context:
            self._context = ProcessContext.from_config(
                self.config, terminate=self._terminate
            )
        return self._context

    async def aclose(self) -> None:
        """Close all LDAP connections and discard the process context."""
        if self._context:
            await self._context.aclose()
            self._context = None

    async def batch_lookup(
        self, identities: Iterable[Identity | str], config: LookupConfig
    ) -> list[LookupResult]:
        """Look up a batch of identities.

        Parameters
        ----------
        identities
            Identities to look up. Plain strings are treated as identities
            with no metadata.
        config
            Lookup configuration for this batch.

        Returns
        -------
        list of LookupResult
            One result per identity, in input order.

        Raises
        ------
        ConfigurationError
            Raised if the lookup configuration has problems.
        DirectoryUnavailableError
            Raised if the LDAP server is unreachable. The process shuts down
            after this error.
        """
        batch = [
            Identity(value=i) if isinstance(i, str) else i for i in identities
        ]
        factory = self._create_factory(config)
        lookup_service = factory.create_lookup_service()
        return await lookup_service.batch_lookup(batch)

    async def expand_group(
        self, group_dn: str, config: LookupConfig
    ) -> GroupMembers:
        """Find the users belonging to a group.

        Parameters
        ----------
        group_dn
            Full DN of the group.
        config
            Lookup configuration.

        Returns
        -------
        GroupMembers
            Members of the group, up to the configured limit.

        Raises
        ------
        ConfigurationError
            Raised if the lookup configuration has problems.
        DirectoryError
            Raised if the group could not be searched.
        """
        factory = self._create_factory(config)
        group_service = factory.create_group_service()
        return await group_service.expand_group(group_dn)

    def validate_configuration(
        self, config: LookupConfig
    ) -> list[ConfigProblem]:
        """Check a lookup configuration for problems.

        Parameters
        ----------
        config
            Lookup configuration to check.

        Returns
        -------
        list of ConfigProblem
            Every problem found, empty if the configuration is usable.
        """
        return validate_configuration(config)

    def _create_factory(self, config: LookupConfig) -> Factory:
        problems = validate_configuration(config)
        if problems:
            details = "; ".join(f"{p.field}: {p.message}" for p in problems)
            raise ConfigurationError(f"Invalid lookup options: {details}")
        logger = structlog.get_logger("ldaplookup")
        return Factory(self.context, config, logger)


lookup_application = LookupApplication()
"""The process-wide lookup application."""
