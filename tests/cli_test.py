"""Tests for the command-line interface.

Be careful when writing tests in this framework because the click command
handling code spawns its own async worker pools when needed. None of these
tests can therefore be async.
"""

from __future__ import annotations

import json

import bonsai
from click.testing import CliRunner

from ldaplookup.cli import main

from .support.config import config_path, load_config
from .support.ldap import MockLDAP


def test_help() -> None:
    runner = CliRunner()
    result = runner.invoke(main, ["help"], catch_exceptions=False)
    assert result.exit_code == 0
    assert "Commands:" in result.output

    result = runner.invoke(main, ["help", "lookup"], catch_exceptions=False)
    assert result.exit_code == 0
    assert "Look up users" in result.output

    result = runner.invoke(main, ["help", "unknown"])
    assert result.exit_code != 0


def test_validate() -> None:
    runner = CliRunner()
    result = runner.invoke(
        main,
        ["validate", "--config-path", str(config_path("cli"))],
        catch_exceptions=False,
    )
    assert result.exit_code == 0
    assert json.loads(result.output) == []

    result = runner.invoke(
        main,
        ["validate"],
        catch_exceptions=False,
        env={"LDAPLOOKUP_CONFIG_PATH": str(config_path("invalid"))},
    )
    assert result.exit_code == 1
    problems = json.loads(result.output)
    assert [p["field"] for p in problems] == [
        "url",
        "searchDn",
        "searchFilter",
        "bindDn",
        "password",
    ]


def test_no_lookup_options() -> None:
    runner = CliRunner()
    result = runner.invoke(
        main, ["validate", "--config-path", str(config_path("process"))]
    )
    assert result.exit_code == 2
    assert "No lookup options" in result.output


def test_lookup(mock_ldap: MockLDAP) -> None:
    config = load_config("cli")
    assert config.lookup
    base = config.lookup.search_dn
    entry = {
        "dn": [f"CN=Alice,{base}"],
        "displayName": ["Alice Example"],
        "mail": ["alice@example.com"],
        "whenCreated": ["20230615120000.0Z"],
    }
    mock_ldap.add_entries_for_test(base, "(mail=alice@example.com)", [entry])

    runner = CliRunner()
    result = runner.invoke(
        main,
        [
            "lookup",
            "--config-path",
            str(config_path("cli")),
            "alice@example.com",
            "bob@example.com",
        ],
        catch_exceptions=False,
    )
    assert result.exit_code == 0
    results = json.loads(result.output)
    assert [r["identity"]["value"] for r in results] == [
        "alice@example.com",
        "bob@example.com",
    ]
    assert results[0]["found"] is True
    summary = results[0]["summary"]["attributeByName"]
    assert summary["displayName"]["value"] == "Alice Example"
    details = results[0]["details"]["attributeByName"]
    assert details["whenCreated"] == {
        "name": "whenCreated",
        "display": "Created",
        "value": "2023-06-15T12:00:00.000Z",
        "originalValue": "20230615120000.0Z",
        "type": "date",
    }
    assert results[1]["found"] is False
    assert results[1]["error"] is None
    assert mock_ldap.open_connections == []


def test_expand_group(mock_ldap: MockLDAP) -> None:
    config = load_config("cli")
    assert config.lookup
    base = config.lookup.search_dn
    group = "CN=Staff,OU=Groups,DC=example,DC=com"
    search = f"(&(objectCategory=user)(memberOf={group}))"
    entry = {
        "dn": [f"CN=Alice,{base}"],
        "displayName": ["Alice Example"],
        "mail": ["alice@example.com"],
    }
    mock_ldap.add_entries_for_test(base, search, [entry])

    runner = CliRunner()
    args = ["expand-group", "--config-path", str(config_path("cli")), group]
    result = runner.invoke(main, args, catch_exceptions=False)
    assert result.exit_code == 0
    assert json.loads(result.output) == {
        "users": [{"name": "Alice Example", "mail": "alice@example.com"}]
    }

    mock_ldap.add_search_error(search, bonsai.LDAPError("Broken"))
    result = runner.invoke(main, args, catch_exceptions=False)
    assert result.exit_code == 1
    assert '"name": "SearchError"' in result.output
    assert '"detail": "Error querying LDAP"' in result.output
