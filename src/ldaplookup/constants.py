"""Constants for ldaplookup."""

from datetime import timedelta

__all__ = [
    "ACCOUNT_CONTROL_FLAGS",
    "CONFIG_PATH",
    "ENTITY_PLACEHOLDER",
    "FATAL_EXIT_STATUS",
    "FILETIME_EPOCH_OFFSET_MS",
    "GENERALIZED_TIME_REGEX",
    "GROUP_MEMBER_LIMIT",
    "INTEGER8_REGEX",
    "LDAP_ACQUIRE_TIMEOUT",
    "LDAP_CONNECT_TIMEOUT",
    "LDAP_MAX_CREATE_FAILURES",
    "LDAP_RETRY_DELAY",
    "LDAP_SEARCH_TIMEOUT",
    "SHUTDOWN_DELAY",
    "UNPARSABLE_GROUP",
    "UNUSED_FLAG",
]

CONFIG_PATH = "/etc/ldaplookup/ldaplookup.yaml"
"""Default configuration path."""

ENTITY_PLACEHOLDER = "{{entity}}"
"""Token in an advanced search filter replaced by the escaped identity."""

LDAP_CONNECT_TIMEOUT = timedelta(seconds=5)
"""Default timeout for connecting and binding to the LDAP server."""

LDAP_SEARCH_TIMEOUT = timedelta(seconds=5)
"""Default timeout for a single LDAP search."""

LDAP_ACQUIRE_TIMEOUT = timedelta(seconds=5)
"""Default time a caller waits for a pooled connection."""

LDAP_RETRY_DELAY = timedelta(seconds=30)
"""Cooldown before connecting again after a failed connection attempt.

Connection attempts made while the previous attempt failed are delayed by
this long so that a directory server that is down is not hammered with
reconnects from every waiting lookup.
"""

LDAP_MAX_CREATE_FAILURES = 3
"""Consecutive connection failures that are treated as a systemic outage."""

SHUTDOWN_DELAY = timedelta(milliseconds=250)
"""Pause before exiting the process so that pending log output is written."""

FATAL_EXIT_STATUS = 1
"""Process exit status after an unrecoverable directory outage."""

GROUP_MEMBER_LIMIT = 25
"""Maximum number of users returned when expanding a group."""

GENERALIZED_TIME_REGEX = r"^\d{14}\.0Z$"
"""Directory generalized time with no fractional seconds."""

INTEGER8_REGEX = r"^\d{18}$"
"""Active Directory Integer8 timestamp (100ns intervals since 1601)."""

FILETIME_EPOCH_OFFSET_MS = 11644473600000
"""Milliseconds between 1601-01-01 and the Unix epoch."""

UNPARSABLE_GROUP = "Unable to parse group"
"""Placeholder shown for a group DN that cannot be simplified."""

UNUSED_FLAG = "NA"
"""Name of account control bits that have no assigned meaning."""

ACCOUNT_CONTROL_FLAGS = (
    "SCRIPT",
    "ACCOUNTDISABLE",
    UNUSED_FLAG,
    "HOMEDIR_REQUIRED",
    "LOCKOUT",
    "PASSWD_NOTREQD",
    "PASSWD_CANT_CHANGE",
    "ENCRYPTED_TEXT_PWD_ALLOWED",
    "TEMP_DUPLICATE_ACCOUNT",
    "NORMAL_ACCOUNT",
    UNUSED_FLAG,
    "INTERDOMAIN_TRUST_ACCOUNT",
    "WORKSTATION_TRUST_ACCOUNT",
    "SERVER_TRUST_ACCOUNT",
    UNUSED_FLAG,
    UNUSED_FLAG,
    "DONT_EXPIRE_PASSWORD",
    "MNS_LOGON_ACCOUNT",
    "SMARTCARD_REQUIRED",
    "TRUSTED_FOR_DELEGATION",
    "NOT_DELEGATED",
    "USE_DES_KEY_ONLY",
    "DONT_REQ_PREAUTH",
    "PASSWORD_EXPIRED",
    "TRUSTED_TO_AUTH_FOR_DELEGATION",
    "PARTIAL_SECRETS_ACCOUNT",
)
"""Names of the ``userAccountControl`` bits, indexed by bit position.

See
https://learn.microsoft.com/en-us/troubleshoot/windows-server/active-directory/useraccountcontrol-manipulate-account-properties
for the meaning of each flag.
"""
