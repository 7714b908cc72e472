"""Exceptions for ldaplookup."""

from __future__ import annotations

from safir.slack.blockkit import SlackException, SlackMessage, SlackTextField

from .models.lookup import ErrorDetail

__all__ = [
    "AcquireTimeoutError",
    "BindError",
    "ConfigurationError",
    "ConnectError",
    "ConnectTimeoutError",
    "DirectoryConnectionError",
    "DirectoryError",
    "DirectoryUnavailableError",
    "PoolClosedError",
    "PoolError",
    "PoolExhaustedError",
    "SearchError",
]


class DirectoryError(SlackException):
    """Base class for all errors talking to the directory server.

    Parameters
    ----------
    message
        Exception string value.
    identity
        Identity being looked up when the error happened, if any.
    """

    def __init__(self, message: str, identity: str | None = None) -> None:
        super().__init__(message, identity)

    def to_error(self) -> ErrorDetail:
        """Describe the error for returning to the caller.

        Returns
        -------
        ErrorDetail
            Error class, message, and formatted traceback.
        """
        return ErrorDetail.from_exception(self)


class ConfigurationError(DirectoryError):
    """The lookup configuration is missing or invalid."""


class DirectoryConnectionError(DirectoryError):
    """A connection to the directory server could not be established."""


class ConnectError(DirectoryConnectionError):
    """The transport to the directory server could not be established."""


class BindError(DirectoryConnectionError):
    """The directory server rejected the bind credentials."""


class ConnectTimeoutError(DirectoryConnectionError):
    """Connecting or binding to the directory server took too long."""


class PoolError(DirectoryError):
    """A connection could not be obtained from the connection pool."""


class PoolExhaustedError(PoolError):
    """Too many callers are already waiting for a connection."""


class AcquireTimeoutError(PoolError):
    """No connection became available before the acquire timeout."""


class PoolClosedError(PoolError):
    """The connection pool has been closed."""


class SearchError(DirectoryError):
    """A directory search failed."""


class DirectoryUnavailableError(DirectoryError):
    """The directory server cannot be reached at all.

    Raised when connection attempts keep failing, which is treated as an
    unrecoverable environment problem. The process is shut down after this
    error is reported.

    Parameters
    ----------
    message
        Exception string value.
    cause
        The connection error that triggered the shutdown.
    """

    def __init__(
        self, message: str, cause: DirectoryConnectionError | None = None
    ) -> None:
        super().__init__(message)
        self.cause = cause

    def to_slack(self) -> SlackMessage:
        """Format the exception as a Slack message.

        Returns
        -------
        SlackMessage
            Slack message suitable for posting with the webhook client.
        """
        message = super().to_slack()
        if self.cause:
            name = type(self.cause).__name__
            message.fields.append(
                SlackTextField(heading="Cause", text=f"{name}: {self.cause}")
            )
        return message
