"""Configuration for ldaplookup.

There are two layers of configuration. `LookupConfig` holds the options for
a batch of lookups and is supplied by the host environment with every batch,
so it may change between batches. `Config` holds process settings (logging,
timeouts, alerting) that are loaded once from a YAML file with environment
variable overrides for secrets, and optionally a default `LookupConfig` used
by the command-line interface.

`LookupConfig` deliberately accepts empty connection settings so that
`validate_configuration` can report every problem at once instead of
failing on the first one.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Self, override

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    model_validator,
)
from pydantic.alias_generators import to_camel
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)
from safir.logging import LogLevel, Profile, configure_logging
from safir.pydantic import HumanTimedelta

from .constants import (
    ENTITY_PLACEHOLDER,
    GROUP_MEMBER_LIMIT,
    LDAP_ACQUIRE_TIMEOUT,
    LDAP_CONNECT_TIMEOUT,
    LDAP_MAX_CREATE_FAILURES,
    LDAP_RETRY_DELAY,
    LDAP_SEARCH_TIMEOUT,
    SHUTDOWN_DELAY,
)
from .models.lookup import AttributeOption, ConfigProblem

__all__ = [
    "CamelCaseSettings",
    "Config",
    "EnvFirstSettings",
    "LookupConfig",
    "PoolKey",
    "validate_configuration",
]

PoolKey = tuple[str, str, str, bool, int]
"""Settings whose change requires a new connection pool."""


class LookupConfig(BaseModel):
    """Options for a batch of directory lookups."""

    model_config = ConfigDict(
        alias_generator=to_camel, extra="forbid", populate_by_name=True
    )

    url: str = Field(
        "",
        title="LDAP server URL",
        description="URL of the LDAP server, using ldap or ldaps",
        examples=["ldaps://dc.example.com"],
    )

    bind_dn: str = Field(
        "",
        title="Bind DN",
        description="DN used for the simple bind to the LDAP server",
        examples=["CN=lookup,OU=Service Accounts,DC=example,DC=com"],
    )

    password: SecretStr = Field(
        SecretStr(""),
        title="Bind password",
        description="Password for the simple bind",
    )

    search_dn: str = Field(
        "",
        title="Search base DN",
        description="Base DN of the subtree searched for users",
        examples=["OU=Users,DC=example,DC=com"],
    )

    user_search_attribute: str = Field(
        "userPrincipalName",
        title="User search attribute",
        description=(
            "Attribute compared for equality against the lookup value. If"
            " empty, ``searchFilter`` is used instead."
        ),
    )

    search_filter: str = Field(
        "",
        title="Advanced search filter",
        description=(
            f"Filter template in which every ``{ENTITY_PLACEHOLDER}`` is"
            " replaced by the escaped lookup value. Only used if"
            " ``userSearchAttribute`` is empty."
        ),
        examples=["(|(mail={{entity}})(sAMAccountName={{entity}}))"],
    )

    summary_user_attributes: list[AttributeOption] = Field(
        default_factory=lambda: [
            AttributeOption(value="displayName", display="Display Name")
        ],
        title="Summary attributes",
    )

    summary_custom_user_attributes: str = Field(
        "",
        title="Custom summary attributes",
        description="Comma-separated list of additional attribute names",
    )

    detailed_user_attributes: list[AttributeOption] = Field(
        default_factory=lambda: [
            AttributeOption(value="displayName", display="Display Name"),
            AttributeOption(
                value="distinguishedName", display="Distinguished Name"
            ),
        ],
        title="Detail attributes",
    )

    detailed_custom_user_attributes: str = Field(
        "",
        title="Custom detail attributes",
        description="Comma-separated list of additional attribute names",
    )

    display_name_mapping: str = Field(
        "",
        title="Display name mapping",
        description=(
            "Comma-separated ``attribute:Display Name`` pairs overriding the"
            " display label of structured and custom attributes"
        ),
        examples=["cn:Common Name, employeeID:Employee Number"],
    )

    max_clients: int = Field(
        10,
        title="Maximum connection pool size",
        description="Also the ceiling on concurrent lookups in a batch",
        ge=1,
    )

    use_connection_pool: bool = Field(
        True,
        title="Use connection pool",
        description=(
            "If false, every lookup opens and closes its own connection"
        ),
    )

    max_concurrent_lookups: int | None = Field(
        None,
        title="Concurrent lookups without pooling",
        description=(
            "Ceiling on concurrent lookups when the connection pool is not"
            " used. Defaults to ``maxClients``."
        ),
        ge=1,
    )

    verify_certificate: bool = Field(
        True,
        title="Verify TLS certificate",
        description=(
            "Whether to verify the server certificate for ldaps URLs."
            " Disabling this is insecure."
        ),
    )

    simplify_group_names: bool = Field(
        True,
        title="Simplify group names",
        description="Show only the leaf name of group DNs",
    )

    group_username_attribute: str = Field(
        "displayName",
        title="Group member name attribute",
        description="Attribute shown as the name of a group member",
    )

    group_mail_attribute: str = Field(
        "mail",
        title="Group member mail attribute",
        description="Attribute shown as the email address of a group member",
    )

    user_account_control_attribute: str = Field(
        "userAccountControl",
        title="Account control attribute",
        description="Attribute decoded as account control flags",
    )

    group_membership_attribute: str = Field(
        "memberOf",
        title="Group membership attribute",
        description="Attribute holding the DNs of the user's groups",
    )

    @property
    def is_secure(self) -> bool:
        """Whether the URL uses LDAP over TLS."""
        return self.ldap_url.lower().startswith("ldaps://")

    @property
    def ldap_url(self) -> str:
        """URL of the LDAP server without surrounding whitespace."""
        return self.url.strip()

    @property
    def lookup_concurrency(self) -> int:
        """Maximum number of lookups in flight for one batch."""
        if self.use_connection_pool:
            return self.max_clients
        return self.max_concurrent_lookups or self.max_clients

    @property
    def pool_key(self) -> PoolKey:
        """Settings that the current connection pool was built with."""
        return (
            self.ldap_url,
            self.bind_dn,
            self.password.get_secret_value(),
            self.verify_certificate,
            self.max_clients,
        )


def validate_configuration(config: LookupConfig) -> list[ConfigProblem]:
    """Check a lookup configuration for problems.

    Parameters
    ----------
    config
        Configuration to check.

    Returns
    -------
    list of ConfigProblem
        All problems found, empty if the configuration is usable.
    """
    problems = []
    url = config.url.strip()
    if not url:
        msg = "You must provide the URL of your LDAP server"
        problems.append(ConfigProblem(field="url", message=msg))
    elif not url.lower().startswith(("ldap://", "ldaps://")):
        msg = "The LDAP server URL must begin with ldap:// or ldaps://"
        problems.append(ConfigProblem(field="url", message=msg))
    if not config.search_dn.strip():
        msg = "You must provide the DN from which searches will start"
        problems.append(ConfigProblem(field="searchDn", message=msg))
    if not config.user_search_attribute.strip():
        search_filter = config.search_filter.strip()
        if not search_filter:
            msg = (
                "You must provide either a user search attribute or an"
                " advanced search filter"
            )
            problems.append(
                ConfigProblem(field="userSearchAttribute", message=msg)
            )
        elif ENTITY_PLACEHOLDER not in search_filter:
            msg = f"Advanced search filter must contain {ENTITY_PLACEHOLDER}"
            problems.append(ConfigProblem(field="searchFilter", message=msg))
    if not config.bind_dn.strip():
        msg = "You must provide the DN used to bind to the LDAP server"
        problems.append(ConfigProblem(field="bindDn", message=msg))
    if not config.password.get_secret_value():
        msg = "You must provide the password used to bind"
        problems.append(ConfigProblem(field="password", message=msg))
    return problems


class CamelCaseSettings(BaseSettings):
    """Base class for Pydantic settings supporting camel-case.

    This base class also forbids all extra attributes.
    """

    model_config = SettingsConfigDict(
        alias_generator=to_camel, extra="forbid", populate_by_name=True
    )


class EnvFirstSettings(CamelCaseSettings):
    """Base class for Pydantic settings with environment overrides.

    Classes that inherit from this base class will prioritize environment
    variables over arguments to the class constructor.
    """

    @override
    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Override the sources of settings.

        Deactivate :file:`.env` and secret file support. Allow environment
        variables to override init parameters, since init parameters come
        from the YAML configuration file and we want environment variables
        to take precedent.
        """
        return (env_settings, init_settings)


class Config(EnvFirstSettings):
    """Process settings for ldaplookup."""

    log_level: LogLevel = Field(
        LogLevel.INFO,
        title="Logging level",
        description="Python logging level",
        validation_alias=AliasChoices("LDAPLOOKUP_LOG_LEVEL", "logLevel"),
    )

    log_profile: Profile = Field(
        Profile.production,
        title="Logging profile",
        description="Use ``development`` for human-readable log output",
        validation_alias=AliasChoices(
            "LDAPLOOKUP_LOG_PROFILE", "logProfile"
        ),
    )

    slack_webhook: SecretStr | None = Field(
        None,
        title="Slack webhook for alerts",
        description=(
            "If set, an alert is posted to this Slack webhook before the"
            " process shuts down because the LDAP server is unreachable"
        ),
        validation_alias=AliasChoices(
            "LDAPLOOKUP_SLACK_WEBHOOK", "slackWebhook"
        ),
    )

    connect_timeout: HumanTimedelta = Field(
        LDAP_CONNECT_TIMEOUT,
        title="Connect timeout",
        description="Timeout for connecting and binding to the LDAP server",
    )

    search_timeout: HumanTimedelta = Field(
        LDAP_SEARCH_TIMEOUT,
        title="Search timeout",
        description="Timeout for a single LDAP search",
    )

    acquire_timeout: HumanTimedelta = Field(
        LDAP_ACQUIRE_TIMEOUT,
        title="Acquire timeout",
        description="How long a lookup waits for a pooled connection",
    )

    retry_delay: HumanTimedelta = Field(
        LDAP_RETRY_DELAY,
        title="Reconnect cooldown",
        description=(
            "Delay before a new connection attempt if the previous attempt"
            " failed"
        ),
    )

    max_create_failures: int = Field(
        LDAP_MAX_CREATE_FAILURES,
        title="Connection failures before shutdown",
        description=(
            "Number of consecutive failed connection attempts after which"
            " the LDAP server is considered unreachable and the process"
            " shuts down"
        ),
        ge=1,
    )

    shutdown_delay: HumanTimedelta = Field(
        SHUTDOWN_DELAY,
        title="Shutdown delay",
        description="Pause before exiting to let log output be written",
    )

    group_member_limit: int = Field(
        GROUP_MEMBER_LIMIT,
        title="Group member limit",
        description="Maximum number of users returned for a group",
        ge=1,
    )

    ldap_password: SecretStr | None = Field(
        None,
        title="LDAP bind password",
        description=(
            "Overrides the bind password of the ``lookup`` options so that"
            " it need not be stored in the configuration file"
        ),
        validation_alias=AliasChoices(
            "LDAPLOOKUP_LDAP_PASSWORD", "ldapPassword"
        ),
    )

    lookup: LookupConfig | None = Field(
        None,
        title="Lookup options",
        description="Options used by the command-line interface",
    )

    @model_validator(mode="after")
    def _apply_ldap_password(self) -> Self:
        if self.lookup and self.ldap_password:
            self.lookup = self.lookup.model_copy(
                update={"password": self.ldap_password}
            )
        return self

    @classmethod
    def from_file(cls, path: Path) -> Self:
        """Construct a Config object from a configuration file.

        Parameters
        ----------
        path
            Path to the configuration file in YAML.

        Returns
        -------
        Config
            The corresponding `Config` object.
        """
        with path.open("r") as f:
            data: dict[str, Any] = yaml.safe_load(f) or {}
        return cls.model_validate(data)

    def configure_logging(self) -> None:
        """Configure logging based on the configuration."""
        configure_logging(
            name="ldaplookup",
            log_level=self.log_level,
            profile=self.log_profile,
        )

