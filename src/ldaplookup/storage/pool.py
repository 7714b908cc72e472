"""Bounded, health-checked pool of LDAP connections."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable, Coroutine
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from bonsai.asyncio import AIOLDAPConnection
from structlog.stdlib import BoundLogger

from ..config import LookupConfig
from ..exceptions import (
    AcquireTimeoutError,
    DirectoryConnectionError,
    PoolClosedError,
    PoolExhaustedError,
)

if TYPE_CHECKING:
    from .ldap import DirectoryClientFactory

__all__ = ["ConnectionPool"]

_Waiter = asyncio.Future[AIOLDAPConnection]


class ConnectionPool:
    """Pool of bound LDAP connections.

    The pool never has more than ``max_size`` live connections, counting idle
    connections, connections lent to callers, and connections being created.
    It tries to keep at least a quarter of that many connections around. A
    caller that cannot be served immediately waits in a FIFO queue, which
    holds at most twice ``max_size`` callers.

    Connections are created in background tasks, so a caller that gives up
    waiting does not abort a connection attempt that another caller can use.
    If connection attempts keep failing, the pool gives up permanently: the
    error is passed to ``on_fatal`` exactly once, every waiting caller fails
    with it, and so does every later `acquire`.

    All state changes happen between suspension points, so they are never
    interleaved with each other.

    Parameters
    ----------
    factory
        Factory used to create, check, and close connections.
    config
        Lookup configuration with the connection settings.
    max_size
        Maximum number of live connections.
    acquire_timeout
        How long `acquire` waits for a connection.
    max_create_failures
        Number of consecutive failed connection attempts that is treated as
        an unrecoverable outage.
    logger
        Logger to use.
    on_fatal
        Called with the connection error when the pool gives up.
    test_on_borrow
        Whether to check idle connections before lending them out. Closed
        connections are discarded and replaced.
    """

    def __init__(
        self,
        *,
        factory: DirectoryClientFactory,
        config: LookupConfig,
        max_size: int,
        acquire_timeout: timedelta,
        max_create_failures: int,
        logger: BoundLogger,
        on_fatal: Callable[[DirectoryConnectionError], None] | None = None,
        test_on_borrow: bool = True,
    ) -> None:
        self._factory = factory
        self._config = config
        self._max_size = max_size
        self._min_size = max_size // 4
        self._max_waiting = max_size * 2
        self._acquire_timeout = acquire_timeout.total_seconds()
        self._max_create_failures = max_create_failures
        self._logger = logger.bind(ldap_url=config.ldap_url)
        self._on_fatal = on_fatal
        self._test_on_borrow = test_on_borrow

        self._idle: deque[AIOLDAPConnection] = deque()
        self._borrowed: set[AIOLDAPConnection] = set()
        self._creating = 0
        self._waiters: deque[_Waiter] = deque()
        self._creations: set[asyncio.Task[None]] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._error: DirectoryConnectionError | None = None
        self._draining = False
        self._returned = asyncio.Event()

    @property
    def borrowed(self) -> int:
        """Number of connections currently lent to callers."""
        return len(self._borrowed)

    @property
    def closed(self) -> bool:
        """Whether the pool has been drained or closed."""
        return self._draining

    @property
    def error(self) -> DirectoryConnectionError | None:
        """Error that made the pool give up, if any."""
        return self._error

    @property
    def idle(self) -> int:
        """Number of idle connections."""
        return len(self._idle)

    @property
    def max_size(self) -> int:
        """Maximum number of live connections."""
        return self._max_size

    @property
    def max_waiting(self) -> int:
        """Maximum number of callers waiting for a connection."""
        return self._max_waiting

    @property
    def min_size(self) -> int:
        """Number of connections the pool tries to keep open."""
        return self._min_size

    @property
    def pending(self) -> int:
        """Number of connections being created."""
        return self._creating

    @property
    def size(self) -> int:
        """Number of live connections, including ones being created."""
        return len(self._idle) + len(self._borrowed) + self._creating

    @property
    def waiting(self) -> int:
        """Number of callers waiting for a connection."""
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self) -> AIOLDAPConnection:
        """Borrow a connection from the pool.

        Returns
        -------
        bonsai.asyncio.AIOLDAPConnection
            Connection for the exclusive use of the caller until it is passed
            to `release` or `destroy`.

        Raises
        ------
        AcquireTimeoutError
            Raised if no connection became available in time.
        DirectoryConnectionError
            Raised if the pool has given up on creating connections.
        PoolClosedError
            Raised if the pool has been closed.
        PoolExhaustedError
            Raised if too many callers are already waiting.
        """
        if self._draining:
            raise PoolClosedError("LDAP connection pool is closed")
        if self._error:
            raise self._error
        self._ensure_minimum()
        conn = self._take_idle()
        if conn is not None:
            return conn
        if self.waiting >= self._max_waiting:
            msg = "Too many lookups waiting for an LDAP connection"
            self._logger.warning(msg, waiting=self.waiting)
            raise PoolExhaustedError(msg)

        waiter: _Waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        self._dispense()
        try:
            async with asyncio.timeout(self._acquire_timeout):
                return await waiter
        except TimeoutError:
            self._abandon(waiter)
            msg = (
                "No LDAP connection available after"
                f" {self._acquire_timeout}s"
            )
            self._logger.warning(msg)
            raise AcquireTimeoutError(msg) from None
        except asyncio.CancelledError:
            self._abandon(waiter)
            raise

    async def release(self, conn: AIOLDAPConnection) -> None:
        """Return a borrowed connection to the pool.

        The connection is closed instead if the pool is shutting down or the
        connection is no longer open.

        Parameters
        ----------
        conn
            Connection previously returned by `acquire`.

        Raises
        ------
        ValueError
            Raised if the connection is not currently borrowed from this
            pool.
        """
        if conn not in self._borrowed:
            raise ValueError("Connection is not borrowed from this pool")
        self._borrowed.remove(conn)
        if self._draining or self._error or not self._factory.validate(conn):
            await self._factory.destroy(conn)
            self._after_removal()
            return
        self._idle.append(conn)
        self._dispense()
        self._notify_returned()

    async def destroy(self, conn: AIOLDAPConnection) -> None:
        """Remove a connection from the pool and close it.

        Used for connections whose state can no longer be trusted, such as
        after a failed search.

        Parameters
        ----------
        conn
            Connection previously returned by `acquire`.
        """
        self._borrowed.discard(conn)
        if conn in self._idle:
            self._idle.remove(conn)
        self._logger.debug("Destroying LDAP connection")
        await self._factory.destroy(conn)
        self._after_removal()

    async def drain(self) -> None:
        """Stop lending connections and wait for borrowed ones to return.

        Callers waiting for a connection fail with `PoolClosedError` and
        connections still being created are abandoned.
        """
        self._draining = True
        error = PoolClosedError("LDAP connection pool is closed")
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(error)
        for task in self._creations:
            task.cancel()
        while self._borrowed:
            self._returned.clear()
            await self._returned.wait()
        await asyncio.gather(*self._creations, return_exceptions=True)

        # Creations cancelled before they started never decrement the count.
        self._creating = 0

    async def clear(self) -> None:
        """Close all idle connections."""
        while self._idle:
            await self._factory.destroy(self._idle.popleft())
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def close(self) -> None:
        """Drain the pool and close every connection."""
        self._logger.info(
            "Closing LDAP connection pool",
            idle=self.idle,
            borrowed=self.borrowed,
            pending=self.pending,
        )
        await self.drain()
        await self.clear()

    def _abandon(self, waiter: _Waiter) -> None:
        """Clean up after a caller stopped waiting for a connection."""
        if waiter in self._waiters:
            self._waiters.remove(waiter)
        elif waiter.done() and not waiter.cancelled():
            if waiter.exception() is None:
                conn = waiter.result()
                self._borrowed.discard(conn)
                self._idle.append(conn)
                self._dispense()
                self._notify_returned()

    def _after_removal(self) -> None:
        self._notify_returned()
        if not self._draining:
            self._dispense()
            self._ensure_minimum()

    def _dispense(self) -> None:
        """Hand idle connections to waiters and create more if needed."""
        while self._waiters:
            waiter = self._waiters[0]
            if waiter.done():
                self._waiters.popleft()
                continue
            conn = self._take_idle()
            if conn is None:
                break
            self._waiters.popleft()
            waiter.set_result(conn)

        needed = self.waiting - self._creating
        while needed > 0 and self.size < self._max_size:
            self._start_create()
            needed -= 1

    def _ensure_minimum(self) -> None:
        if self._draining or self._error:
            return
        while self.size < self._min_size:
            self._start_create()

    def _notify_returned(self) -> None:
        if not self._borrowed:
            self._returned.set()

    def _take_idle(self) -> AIOLDAPConnection | None:
        while self._idle:
            conn = self._idle.popleft()
            if self._test_on_borrow and not self._factory.validate(conn):
                self._logger.debug("Discarding closed LDAP connection")
                self._spawn(self._factory.destroy(conn))
                continue
            self._borrowed.add(conn)
            return conn
        return None

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _start_create(self) -> None:
        self._creating += 1
        task = self._spawn(self._create())
        self._creations.add(task)
        task.add_done_callback(self._creations.discard)

    async def _create(self) -> None:
        conn = None
        error = None
        try:
            conn = await self._factory.create(self._config)
        except DirectoryConnectionError as e:
            error = e
        finally:
            self._creating -= 1

        if error:
            failures = self._factory.consecutive_failures
            if failures >= self._max_create_failures:
                self._fail(error)
            elif not self._draining:
                self._dispense()
            return
        assert conn is not None
        if self._draining or self._error:
            await self._factory.destroy(conn)
            return
        self._idle.append(conn)
        self._dispense()

    def _fail(self, error: DirectoryConnectionError) -> None:
        """Give up on the LDAP server.

        Only the first failure is reported. Every waiting caller fails with
        the error.
        """
        if self._error:
            return
        self._error = error
        self._logger.error(
            "LDAP connection pool cannot create connections",
            error=str(error),
            failures=self._factory.consecutive_failures,
        )
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(error)
        if self._on_fatal:
            self._on_fatal(error)
