"""Mock bonsai LDAP API for testing."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Iterator
from typing import Any
from unittest.mock import Mock, patch

import bonsai

from ldaplookup.storage import ldap

_SearchResults = list[dict[str, list[str]]]

__all__ = [
    "MockLDAP",
    "MockLDAPClient",
    "MockLDAPConnection",
    "MockPagedResults",
    "patch_ldap",
]


class MockLDAPConnection(Mock):
    """Mock bonsai LDAP connection for testing.

    All connections opened from the same `MockLDAP` server share its
    entries.
    """

    def __init__(self, server: MockLDAP | None = None, **kwargs: Any) -> None:
        super().__init__(spec=bonsai.LDAPConnection, **kwargs)
        self._server = server
        self.closed = False

    def close(self) -> None:
        self.closed = True

    async def paged_search(
        self,
        base: str,
        scope: bonsai.LDAPSearchScope,
        filter_exp: str,
        attrlist: list[str],
        timeout: float,
        sizelimit: int = 0,
        page_size: int = 1,
    ) -> MockPagedResults:
        assert self._server
        assert not self.closed, "Search on closed connection"
        assert scope == bonsai.LDAPSearchScope.SUB
        assert page_size >= 1
        return await self._server.paged_search(
            base, filter_exp, attrlist, sizelimit, page_size
        )


class MockPagedResults:
    """Mock results of a bonsai paged search.

    Iterating past the end of a page fetches the next one from the mock
    server, as bonsai does.
    """

    def __init__(
        self,
        server: MockLDAP,
        filter_exp: str,
        results: _SearchResults,
        page_size: int,
    ) -> None:
        self._server = server
        self._filter = filter_exp
        self._results = results
        self._page_size = page_size
        self._index = 0

    def __aiter__(self) -> MockPagedResults:
        return self

    async def __anext__(self) -> dict[str, list[str]]:
        if self._index >= len(self._results):
            raise StopAsyncIteration
        if self._index > 0 and self._index % self._page_size == 0:
            self._server.pages[self._filter] += 1
        result = self._results[self._index]
        self._index += 1
        return result


class MockLDAPClient:
    """Mock bonsai LDAP client that opens connections to a mock server.

    Parameters
    ----------
    server
        Mock server to connect to.
    url
        URL the client was created with.
    """

    def __init__(self, server: MockLDAP, url: str) -> None:
        self.url = url
        self.cert_policy: str | None = None
        self.chase_referrals: bool | None = None
        self.credentials: dict[str, Any] = {}
        self._server = server

    async def connect(
        self, *, is_async: bool, timeout: float
    ) -> MockLDAPConnection:
        assert is_async
        return await self._server.connect(self)

    def set_cert_policy(self, policy: str) -> None:
        self.cert_policy = policy

    def set_credentials(self, mechanism: str, **kwargs: Any) -> None:
        self.credentials = {"mechanism": mechanism, **kwargs}

    def set_server_chase_referrals(self, value: bool) -> None:
        self.chase_referrals = value


class MockLDAP:
    """Mock LDAP server for testing.

    Records every client and connection so that tests can check how the
    server was used, and can be told to fail connections or searches.
    """

    def __init__(self) -> None:
        self.clients: list[MockLDAPClient] = []
        self.connections: list[MockLDAPConnection] = []
        self.connect_attempts = 0
        self.connect_delay = 0.0
        self.search_delay = 0.0
        self.active_searches = 0
        self.max_active_searches = 0
        self._connect_error: Exception | None = None
        self._connect_failures: int | None = None
        self._entries: dict[tuple[str, str], _SearchResults] = {}
        self._search_errors: dict[str, Exception] = {}
        self._searches: defaultdict[str, int] = defaultdict(int)
        self.pages: defaultdict[str, int] = defaultdict(int)

    @property
    def open_connections(self) -> list[MockLDAPConnection]:
        """Connections that have not been closed."""
        return [c for c in self.connections if not c.closed]

    def add_entries_for_test(
        self, base_dn: str, filter_exp: str, entries: _SearchResults
    ) -> None:
        """Add LDAP entries for testing.

        Parameters
        ----------
        base_dn
            The base DN of a search that should return these entries.
        filter_exp
            The exact search filter that will be used to retrieve them.
        entries
            The entries returned by that search, which will be filtered by
            the attribute list. Each entry should include its ``dn``.
        """
        self._entries[(base_dn, filter_exp)] = entries

    def add_search_error(self, filter_exp: str, error: Exception) -> None:
        """Make searches with a given filter fail.

        Parameters
        ----------
        filter_exp
            Search filter that should fail.
        error
            Exception to raise from the search.
        """
        self._search_errors[filter_exp] = error

    def create_client(self, url: str) -> MockLDAPClient:
        """Create a client, used in place of `bonsai.LDAPClient`."""
        client = MockLDAPClient(self, url)
        self.clients.append(client)
        return client

    def fail_connect(
        self, error: Exception | None, count: int | None = None
    ) -> None:
        """Make connection attempts fail.

        Parameters
        ----------
        error
            Exception to raise from the connection attempt, or `None` to
            let connections succeed again.
        count
            Number of attempts that should fail, or `None` to fail all of
            them.
        """
        self._connect_error = error
        self._connect_failures = count

    def search_count(self, filter_exp: str) -> int:
        """Return how many times a search filter was used."""
        return self._searches[filter_exp]

    async def connect(self, client: MockLDAPClient) -> MockLDAPConnection:
        self.connect_attempts += 1
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self._connect_error:
            error = self._connect_error
            if self._connect_failures is not None:
                self._connect_failures -= 1
                if self._connect_failures <= 0:
                    self._connect_error = None
            raise error
        connection = MockLDAPConnection(self)
        self.connections.append(connection)
        return connection

    def page_count(self, filter_exp: str) -> int:
        """Return how many result pages were sent for a search filter."""
        return self.pages[filter_exp]

    async def paged_search(
        self,
        base: str,
        filter_exp: str,
        attrlist: list[str],
        sizelimit: int,
        page_size: int,
    ) -> MockPagedResults:
        self._searches[filter_exp] += 1
        self.active_searches += 1
        self.max_active_searches = max(
            self.max_active_searches, self.active_searches
        )
        try:
            if self.search_delay:
                await asyncio.sleep(self.search_delay)
            if filter_exp in self._search_errors:
                raise self._search_errors[filter_exp]
            entries = self._entries.get((base, filter_exp), [])
            if sizelimit and len(entries) > sizelimit:
                raise bonsai.SizeLimitError("Size limit exceeded")
            results = []
            for entry in entries:
                attributes = {a: entry[a] for a in attrlist if a in entry}
                if "dn" in entry:
                    attributes["dn"] = entry["dn"]
                results.append(attributes)
            self.pages[filter_exp] += 1
            return MockPagedResults(self, filter_exp, results, page_size)
        finally:
            self.active_searches -= 1


def patch_ldap() -> Iterator[MockLDAP]:
    """Mock the bonsai API for testing.

    Returns
    -------
    MockLDAP
        The mock LDAP server.
    """
    mock_ldap = MockLDAP()
    with patch.object(ldap, "LDAPClient", new=mock_ldap.create_client):
        yield mock_ldap
