"""Create ldaplookup components."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Self

import structlog
from safir.slack.webhook import SlackWebhookClient
from structlog.stdlib import BoundLogger

from .cache import DisplayNameCache
from .config import Config, LookupConfig, PoolKey
from .lifecycle import ShutdownManager, exit_process
from .services.groups import GroupService
from .services.lookup import LookupService
from .storage.ldap import DirectoryClientFactory, LDAPStorage
from .storage.pool import ConnectionPool

__all__ = ["Factory", "ProcessContext"]


@dataclass(slots=True)
class ProcessContext:
    """Per-process application context.

    This object holds all of the per-process state that outlives a single
    batch: the LDAP connection factory with its failure counter, the
    connection pool, the display name cache, and the shutdown manager. Only
    one should exist per process. The connection pool is created on first
    use and replaced whenever a batch arrives with different connection or
    pool size settings.
    """

    config: Config
    """Process settings."""

    client_factory: DirectoryClientFactory
    """Factory for LDAP connections."""

    display_name_cache: DisplayNameCache
    """Cache of the parsed display name mapping."""

    shutdown: ShutdownManager
    """Handles shutdown if the LDAP server is unreachable."""

    logger: BoundLogger
    """Logger for process-level events."""

    pool: ConnectionPool | None = None
    """Current connection pool, if one has been created."""

    pool_key: PoolKey | None = None
    """Settings the current connection pool was created with."""

    _closing: set[asyncio.Task[None]] = field(default_factory=set)
    """Background tasks closing replaced connection pools."""

    @classmethod
    def from_config(
        cls,
        config: Config,
        *,
        terminate: Callable[[], None] = exit_process,
    ) -> Self:
        """Create a new process context from the process settings.

        Parameters
        ----------
        config
            Process settings.
        terminate
            Called to end the process after an unrecoverable outage.

        Returns
        -------
        ProcessContext
            Shared context for an ldaplookup process.
        """
        logger = structlog.get_logger("ldaplookup")
        slack_client = None
        if config.slack_webhook:
            slack_client = SlackWebhookClient(
                config.slack_webhook.get_secret_value(), "ldaplookup", logger
            )
        shutdown = ShutdownManager(
            delay=config.shutdown_delay,
            logger=logger,
            slack_client=slack_client,
            terminate=terminate,
        )
        client_factory = DirectoryClientFactory(
            connect_timeout=config.connect_timeout,
            retry_delay=config.retry_delay,
            logger=logger,
        )
        context = cls(
            config=config,
            client_factory=client_factory,
            display_name_cache=DisplayNameCache(),
            shutdown=shutdown,
            logger=logger,
        )
        shutdown.set_drain(context.close_pool)
        return context

    def get_pool(self, lookup: LookupConfig) -> ConnectionPool:
        """Return the connection pool for a lookup configuration.

        If the connection or sizing settings differ from those of the current
        pool, a new pool is created and the old one is closed in the
        background once its borrowed connections are returned.

        Parameters
        ----------
        lookup
            Lookup configuration for the current batch.

        Returns
        -------
        ConnectionPool
            Connection pool matching those settings.

        Raises
        ------
        DirectoryUnavailableError
            Raised if the process is shutting down because the LDAP server
            is unreachable.
        """
        if self.shutdown.error:
            raise self.shutdown.error
        if self.pool and self.pool_key == lookup.pool_key:
            return self.pool
        old_pool = self.pool
        self.pool = ConnectionPool(
            factory=self.client_factory,
            config=lookup,
            max_size=lookup.max_clients,
            acquire_timeout=self.config.acquire_timeout,
            max_create_failures=self.config.max_create_failures,
            logger=self.logger,
            on_fatal=self.shutdown.trigger,
        )
        self.pool_key = lookup.pool_key
        self.logger.info(
            "Created LDAP connection pool",
            max_size=self.pool.max_size,
            min_size=self.pool.min_size,
            max_waiting=self.pool.max_waiting,
        )
        if old_pool:
            self.logger.info("LDAP settings changed, replacing old pool")
            task = asyncio.create_task(old_pool.close())
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)
        return self.pool

    async def close_pool(self) -> None:
        """Drain and close the current connection pool, if any."""
        if self.pool:
            pool = self.pool
            self.pool = None
            self.pool_key = None
            await pool.close()

    async def aclose(self) -> None:
        """Clean up a process context.

        Called during shutdown, or before recreating the process context using
        a different configuration.
        """
        await self.close_pool()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        await self.display_name_cache.clear()


class Factory:
    """Build ldaplookup components for one batch.

    Uses the contents of a `ProcessContext` and the lookup configuration of
    the batch to construct services on demand.

    Parameters
    ----------
    context
        Shared process context.
    config
        Lookup configuration for this batch.
    logger
        Logger to use for errors.
    """

    def __init__(
        self,
        context: ProcessContext,
        config: LookupConfig,
        logger: BoundLogger,
    ) -> None:
        self._context = context
        self._config = config
        self._logger = logger

    def create_group_service(self) -> GroupService:
        """Create a service for expanding groups.

        Returns
        -------
        GroupService
            Newly-created group service.
        """
        return GroupService(
            config=self._config,
            ldap=self.create_ldap_storage(),
            shutdown=self._context.shutdown,
            limit=self._context.config.group_member_limit,
            logger=self._logger,
        )

    def create_ldap_storage(self) -> LDAPStorage:
        """Create the LDAP storage layer.

        Uses the shared connection pool if pooling is enabled.

        Returns
        -------
        LDAPStorage
            Newly-created LDAP storage.
        """
        pool = None
        if self._config.use_connection_pool:
            pool = self._context.get_pool(self._config)
        return LDAPStorage(
            config=self._config,
            client_factory=self._context.client_factory,
            pool=pool,
            shutdown=self._context.shutdown,
            max_create_failures=self._context.config.max_create_failures,
            search_timeout=self._context.config.search_timeout,
            logger=self._logger,
        )

    def create_lookup_service(self) -> LookupService:
        """Create a service for batch lookups.

        Returns
        -------
        LookupService
            Newly-created lookup service.
        """
        return LookupService(
            config=self._config,
            ldap=self.create_ldap_storage(),
            display_name_cache=self._context.display_name_cache,
            shutdown=self._context.shutdown,
            logger=self._logger,
        )
