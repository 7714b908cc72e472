"""LDAP storage layer for ldaplookup."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

import bonsai
from bonsai import LDAPClient, LDAPSearchScope
from bonsai.asyncio import AIOLDAPConnection
from structlog.stdlib import BoundLogger

from ..config import LookupConfig
from ..exceptions import (
    BindError,
    ConnectError,
    ConnectTimeoutError,
    DirectoryConnectionError,
    SearchError,
)
from ..lifecycle import ShutdownManager
from ..models.lookup import DirectoryEntry
from .pool import ConnectionPool

__all__ = [
    "DirectoryClientFactory",
    "LDAPStorage",
    "normalize_entry",
]


def _normalize_value(value: Any) -> str:
    if isinstance(value, bytes):
        try:
            return value.decode()
        except UnicodeDecodeError:
            return value.hex()
    return str(value)


def normalize_entry(entry: Mapping[str, Iterable[Any]]) -> DirectoryEntry:
    """Convert a search result entry into plain Python types.

    Parameters
    ----------
    entry
        Entry as returned by bonsai, mapping attribute names to lists of
        values.

    Returns
    -------
    dict
        Mapping of attribute names to a string for single-valued attributes
        or a list of strings for multi-valued attributes. Binary values are
        decoded as UTF-8 if possible and otherwise shown in hex.
    """
    result: DirectoryEntry = {}
    for name, values in entry.items():
        if name.lower() == "dn":
            continue
        normalized = [_normalize_value(v) for v in values]
        if len(normalized) == 1:
            result[name] = normalized[0]
        elif normalized:
            result[name] = normalized
    return result


class DirectoryClientFactory:
    """Create and destroy authenticated LDAP connections.

    The factory tracks how many connection attempts in a row have failed.
    That counter is process-wide state shared by the connection pool and by
    unpooled lookups. While it is non-zero, each new attempt first waits for
    the retry delay so that an LDAP server that is down is not hammered. A
    successful connection resets it.

    Parameters
    ----------
    connect_timeout
        Timeout for connecting and binding.
    retry_delay
        Cooldown before an attempt made after a failed attempt.
    logger
        Logger for debug messages and errors.
    """

    def __init__(
        self,
        *,
        connect_timeout: timedelta,
        retry_delay: timedelta,
        logger: BoundLogger,
    ) -> None:
        self._connect_timeout = connect_timeout.total_seconds()
        self._retry_delay = retry_delay.total_seconds()
        self._logger = logger
        self._failures = 0

    @property
    def consecutive_failures(self) -> int:
        """Number of connection attempts in a row that have failed."""
        return self._failures

    async def create(self, config: LookupConfig) -> AIOLDAPConnection:
        """Open and bind a new connection to the LDAP server.

        Parameters
        ----------
        config
            Lookup configuration with the server URL and bind credentials.

        Returns
        -------
        bonsai.asyncio.AIOLDAPConnection
            Bound connection.

        Raises
        ------
        BindError
            Raised if the server rejected the credentials.
        ConnectError
            Raised if the connection could not be established.
        ConnectTimeoutError
            Raised if connecting and binding took too long.
        """
        url = config.ldap_url
        logger = self._logger.bind(ldap_url=url)
        if self._failures > 0:
            logger.error(
                "Previous LDAP connection attempt failed, delaying retry",
                failures=self._failures,
                delay=self._retry_delay,
            )
            await asyncio.sleep(self._retry_delay)

        try:
            client = self._build_client(config, logger)
        except (ValueError, bonsai.LDAPError) as e:
            self._failures += 1
            msg = f"Invalid LDAP server URL {url}"
            logger.exception(msg, error=str(e))
            raise ConnectError(msg) from e
        logger.debug("Opening new LDAP connection")
        try:
            conn = await asyncio.wait_for(
                client.connect(is_async=True, timeout=self._connect_timeout),
                timeout=self._connect_timeout,
            )
        except bonsai.AuthenticationError as e:
            self._failures += 1
            msg = f"Cannot bind to LDAP server as {config.bind_dn}"
            logger.exception(msg, error=str(e))
            raise BindError(msg) from e
        except (bonsai.TimeoutError, TimeoutError) as e:
            self._failures += 1
            timeout = self._connect_timeout
            msg = f"Timed out after {timeout}s connecting to LDAP"
            logger.exception(msg, error=str(e))
            raise ConnectTimeoutError(msg) from e
        except bonsai.LDAPError as e:
            self._failures += 1
            msg = f"Cannot connect to LDAP server {url}"
            logger.exception(msg, error=str(e))
            raise ConnectError(msg) from e
        self._failures = 0
        logger.debug("New LDAP connection is bound")
        return conn

    async def destroy(self, conn: AIOLDAPConnection) -> None:
        """Unbind and close a connection.

        Errors are logged and otherwise ignored, since there is nothing the
        caller can do about a connection that cannot be closed cleanly.

        Parameters
        ----------
        conn
            Connection to close.
        """
        if conn.closed:
            return
        try:
            conn.close()
        except bonsai.LDAPError as e:
            self._logger.error("Cannot close LDAP connection", error=str(e))

    def validate(self, conn: AIOLDAPConnection) -> bool:
        """Check whether a connection is still usable.

        Parameters
        ----------
        conn
            Connection to check.

        Returns
        -------
        bool
            Whether the connection is still open.
        """
        return not conn.closed

    def _build_client(
        self, config: LookupConfig, logger: BoundLogger
    ) -> LDAPClient:
        client = LDAPClient(config.ldap_url)
        client.set_credentials(
            "SIMPLE",
            user=config.bind_dn,
            password=config.password.get_secret_value(),
        )
        client.set_server_chase_referrals(False)
        if config.is_secure:
            if config.verify_certificate:
                client.set_cert_policy("demand")
            else:
                logger.warning(
                    "TLS certificate verification is disabled for the LDAP"
                    " server, connections are vulnerable to interception"
                )
                client.set_cert_policy("never")
        return client


class LDAPStorage:
    """LDAP storage layer.

    Connections come from the connection pool if pooling is enabled and are
    otherwise opened for each search and closed afterwards.

    Parameters
    ----------
    config
        Lookup configuration.
    client_factory
        Factory for LDAP connections.
    pool
        Connection pool, or `None` to use unpooled connections.
    shutdown
        Shutdown manager, notified if unpooled connections keep failing.
    max_create_failures
        Consecutive connection failures that indicate a systemic outage.
    search_timeout
        Timeout for each search.
    logger
        Logger for debug messages and errors.
    """

    def __init__(
        self,
        *,
        config: LookupConfig,
        client_factory: DirectoryClientFactory,
        pool: ConnectionPool | None,
        shutdown: ShutdownManager,
        max_create_failures: int,
        search_timeout: timedelta,
        logger: BoundLogger,
    ) -> None:
        self._config = config
        self._client_factory = client_factory
        self._pool = pool
        self._shutdown = shutdown
        self._max_create_failures = max_create_failures
        self._search_timeout = search_timeout.total_seconds()
        self._logger = logger.bind(ldap_url=config.ldap_url)

    async def find_user(
        self, search: str, attributes: list[str]
    ) -> DirectoryEntry | None:
        """Find the first user entry matching a search filter.

        Parameters
        ----------
        search
            Escaped search filter.
        attributes
            Attributes to retrieve.

        Returns
        -------
        dict or None
            Normalized entry, or `None` if nothing matched.

        Raises
        ------
        DirectoryError
            Raised if no connection could be obtained or the search failed.
        """
        results = await self._query(search, attributes, limit=1)
        if not results:
            return None
        return normalize_entry(results[0])

    async def find_group_members(
        self, search: str, attributes: list[str], limit: int
    ) -> list[DirectoryEntry]:
        """Find user entries belonging to a group.

        Parameters
        ----------
        search
            Escaped search filter.
        attributes
            Attributes to retrieve.
        limit
            Maximum number of entries to return.

        Returns
        -------
        list of dict
            Normalized entries, at most ``limit`` of them.

        Raises
        ------
        DirectoryError
            Raised if no connection could be obtained or the search failed.
        """
        results = await self._query(search, attributes, limit=limit)
        return [normalize_entry(r) for r in results]

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[AIOLDAPConnection]:
        """Obtain a connection for the duration of a context.

        A pooled connection is released back to the pool if the context
        exits normally and destroyed if it exits with an exception, since
        its state can no longer be trusted. An unpooled connection is always
        closed.

        Raises
        ------
        DirectoryError
            Raised if no connection could be obtained.
        """
        if self._pool:
            conn = await self._pool.acquire()
            try:
                yield conn
            except BaseException:
                await self._pool.destroy(conn)
                raise
            await self._pool.release(conn)
        else:
            try:
                conn = await self._client_factory.create(self._config)
            except DirectoryConnectionError as e:
                failures = self._client_factory.consecutive_failures
                if failures >= self._max_create_failures:
                    self._shutdown.trigger(e)
                raise
            try:
                yield conn
            finally:
                await self._client_factory.destroy(conn)

    async def _query(
        self, search: str, attributes: list[str], *, limit: int
    ) -> list[Any]:
        """Perform an LDAP subtree search of the search DN.

        Only the first page of ``limit`` entries is read, so the server never
        sends more than that and further matches are ignored.

        Raises
        ------
        SearchError
            Raised if the search failed or timed out.
        """
        base = self._config.search_dn.strip()
        logger = self._logger.bind(
            ldap_attrs=attributes, ldap_base=base, ldap_search=search
        )
        async with self.connection() as conn:
            logger.debug("Querying LDAP")
            try:
                results = await conn.paged_search(
                    base=base,
                    scope=LDAPSearchScope.SUB,
                    filter_exp=search,
                    attrlist=attributes,
                    timeout=self._search_timeout,
                    sizelimit=0,
                    page_size=limit,
                )
                entries = []
                async for entry in results:
                    entries.append(entry)
                    if len(entries) >= limit:
                        break
            except bonsai.TimeoutError as e:
                msg = f"LDAP query timed out after {self._search_timeout}s"
                logger.error("Cannot query LDAP", error=msg)
                raise SearchError(msg) from e
            except bonsai.LDAPError as e:
                logger.exception("Cannot query LDAP", error=str(e))
                raise SearchError("Error querying LDAP") from e
            return entries
