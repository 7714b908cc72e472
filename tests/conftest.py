"""Test fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from unittest.mock import Mock

import pytest
import pytest_asyncio
import respx
import structlog
from safir.testing.slack import MockSlackWebhook, mock_slack_webhook
from structlog.stdlib import BoundLogger

from ldaplookup.config import Config, LookupConfig
from ldaplookup.main import LookupApplication
from ldaplookup.storage.ldap import DirectoryClientFactory

from .support.config import load_config
from .support.ldap import MockLDAP, patch_ldap


@pytest.fixture(autouse=True)
def environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Clear environment variables that would override test settings."""
    for name in (
        "LDAPLOOKUP_CONFIG_PATH",
        "LDAPLOOKUP_LDAP_PASSWORD",
        "LDAPLOOKUP_LOG_LEVEL",
        "LDAPLOOKUP_LOG_PROFILE",
        "LDAPLOOKUP_SLACK_WEBHOOK",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest_asyncio.fixture
async def application(
    config: Config, terminate: Mock, mock_ldap: MockLDAP
) -> AsyncIterator[LookupApplication]:
    """Return a lookup application that talks to the mock LDAP server.

    The application does not exit the process on a fatal error. It calls the
    ``terminate`` mock instead.
    """
    application = LookupApplication(config, terminate=terminate)
    yield application
    await application.aclose()


@pytest.fixture
def client_factory(
    config: Config, logger: BoundLogger
) -> DirectoryClientFactory:
    """Return a factory for connections to the mock LDAP server."""
    return DirectoryClientFactory(
        connect_timeout=config.connect_timeout,
        retry_delay=config.retry_delay,
        logger=logger,
    )


@pytest.fixture
def config() -> Config:
    """Return the default test configuration.

    Notes
    -----
    This fixture must not be async so that it can be used by the cli tests,
    which must not be async because the Click support starts its own asyncio
    loop.
    """
    return load_config("base")


@pytest.fixture
def logger() -> BoundLogger:
    """Return a logger for components created directly by tests."""
    return structlog.get_logger("ldaplookup")


@pytest.fixture
def lookup_config(config: Config) -> LookupConfig:
    """Return the lookup options of the default test configuration."""
    assert config.lookup
    return config.lookup


@pytest.fixture
def mock_ldap() -> Iterator[MockLDAP]:
    """Replace the bonsai LDAP API with a mock class."""
    yield from patch_ldap()


@pytest.fixture
def mock_slack(respx_mock: respx.Router) -> MockSlackWebhook:
    """Mock the Slack webhook used by the ``slack`` test configuration."""
    config = load_config("slack")
    assert config.slack_webhook
    webhook = config.slack_webhook.get_secret_value()
    return mock_slack_webhook(webhook, respx_mock)


@pytest.fixture
def terminate() -> Mock:
    """Return a replacement for the function that exits the process."""
    return Mock()
