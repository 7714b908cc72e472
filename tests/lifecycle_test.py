"""Tests for shutdown after an unrecoverable LDAP outage."""

from __future__ import annotations

import json
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import bonsai
import pytest
from safir.slack.webhook import SlackWebhookClient
from safir.testing.slack import MockSlackWebhook
from structlog.stdlib import BoundLogger

from ldaplookup.exceptions import (
    BindError,
    ConnectError,
    DirectoryUnavailableError,
)
from ldaplookup.factory import ProcessContext
from ldaplookup.lifecycle import ShutdownManager

from .support.config import load_config
from .support.ldap import MockLDAP


@pytest.mark.asyncio
async def test_shutdown(logger: BoundLogger, terminate: Mock) -> None:
    drain = AsyncMock()
    shutdown = ShutdownManager(
        delay=timedelta(0), logger=logger, terminate=terminate
    )
    shutdown.set_drain(drain)
    assert not shutdown.triggered
    assert shutdown.error is None

    cause = ConnectError("Cannot connect to LDAP server ldap://ldap")
    shutdown.trigger(cause)
    shutdown.trigger(BindError("Cannot bind"))
    await shutdown.wait()

    assert shutdown.triggered
    assert isinstance(shutdown.error, DirectoryUnavailableError)
    assert shutdown.error.cause is cause
    assert str(shutdown.error) == (
        "LDAP server is unreachable, shutting down: Cannot connect to LDAP"
        " server ldap://ldap"
    )
    drain.assert_awaited_once_with()
    terminate.assert_called_once_with()


@pytest.mark.asyncio
async def test_slack_alert(
    logger: BoundLogger, terminate: Mock, mock_slack: MockSlackWebhook
) -> None:
    config = load_config("slack")
    assert config.slack_webhook
    slack = SlackWebhookClient(
        config.slack_webhook.get_secret_value(), "ldaplookup", logger
    )
    shutdown = ShutdownManager(
        delay=timedelta(0),
        logger=logger,
        slack_client=slack,
        terminate=terminate,
    )
    shutdown.trigger(BindError("Cannot bind to LDAP server as CN=lookup"))
    await shutdown.wait()

    assert len(mock_slack.messages) == 1
    message = json.dumps(mock_slack.messages[0])
    assert "LDAP server is unreachable" in message
    assert "BindError: Cannot bind to LDAP server as CN=lookup" in message
    terminate.assert_called_once_with()


@pytest.mark.asyncio
async def test_process_outage(
    terminate: Mock, mock_ldap: MockLDAP, mock_slack: MockSlackWebhook
) -> None:
    config = load_config("slack")
    assert config.lookup
    context = ProcessContext.from_config(config, terminate=terminate)
    mock_ldap.fail_connect(bonsai.ConnectionError("Can't contact server"))

    pool = context.get_pool(config.lookup)
    with pytest.raises(ConnectError):
        await pool.acquire()
    await context.shutdown.wait()

    assert pool.closed
    assert context.pool is None
    assert len(mock_slack.messages) == 1
    terminate.assert_called_once_with()
    with pytest.raises(DirectoryUnavailableError):
        context.get_pool(config.lookup)
    await context.aclose()
