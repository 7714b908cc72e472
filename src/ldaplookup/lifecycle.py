"""Orchestrated shutdown after an unrecoverable LDAP outage.

If connections to the LDAP server cannot be created at all, the problem is
treated as a broken configuration or environment rather than a transient
error. The error is reported once, the connection pool is drained, and the
process exits with a non-zero status so that whatever supervises it notices.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from datetime import timedelta

from safir.slack.webhook import SlackWebhookClient
from structlog.stdlib import BoundLogger

from .constants import FATAL_EXIT_STATUS
from .exceptions import DirectoryConnectionError, DirectoryUnavailableError

__all__ = ["ShutdownManager", "exit_process"]


def exit_process() -> None:
    """Flush logging and terminate the process immediately."""
    logging.shutdown()
    os._exit(FATAL_EXIT_STATUS)


class ShutdownManager:
    """Report a fatal LDAP error once and shut the process down.

    Parameters
    ----------
    delay
        Pause between draining connections and exiting, so that pending log
        messages are written.
    logger
        Logger to use.
    slack_client
        If set, the fatal error is also posted to Slack.
    terminate
        Called to end the process. Defaults to `exit_process`. Tests replace
        this to observe the shutdown without exiting.
    """

    def __init__(
        self,
        *,
        delay: timedelta,
        logger: BoundLogger,
        slack_client: SlackWebhookClient | None = None,
        terminate: Callable[[], None] = exit_process,
    ) -> None:
        self._delay = delay.total_seconds()
        self._logger = logger
        self._slack = slack_client
        self._terminate = terminate
        self._drain: Callable[[], Awaitable[None]] | None = None
        self._error: DirectoryUnavailableError | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def error(self) -> DirectoryUnavailableError | None:
        """The fatal error, if shutdown has been triggered."""
        return self._error

    @property
    def triggered(self) -> bool:
        """Whether shutdown has been triggered."""
        return self._error is not None

    def set_drain(self, drain: Callable[[], Awaitable[None]]) -> None:
        """Set the function that closes connections before exiting.

        Parameters
        ----------
        drain
            Coroutine function that closes all LDAP connections.
        """
        self._drain = drain

    def trigger(self, cause: DirectoryConnectionError) -> None:
        """Start shutdown because the LDAP server is unreachable.

        Only the first call has any effect. Later calls, from other failing
        lookups or the connection pool, are ignored.

        Parameters
        ----------
        cause
            Connection error that made the server look unreachable.
        """
        if self._error:
            return
        msg = "LDAP server is unreachable, shutting down"
        self._error = DirectoryUnavailableError(f"{msg}: {cause}", cause)
        self._logger.error(
            msg, error=str(cause), error_type=type(cause).__name__
        )
        self._task = asyncio.create_task(self._shutdown())

    async def wait(self) -> None:
        """Wait for a triggered shutdown to finish.

        Only returns if the terminate function returns, which the default
        one does not. Used by the test suite.
        """
        if self._task:
            await self._task

    async def _shutdown(self) -> None:
        assert self._error
        if self._slack:
            await self._slack.post_exception(self._error)
        if self._drain:
            self._logger.info("Draining LDAP connections")
            await self._drain()
            self._logger.info("LDAP connections are drained and closed")
        await asyncio.sleep(self._delay)
        self._logger.info("Exiting process")
        self._terminate()
