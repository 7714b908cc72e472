"""Command-line interface for ldaplookup."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import click
from pydantic import BaseModel
from safir.asyncio import run_with_asyncio
from safir.click import display_help

from .config import Config, LookupConfig, validate_configuration
from .constants import CONFIG_PATH
from .exceptions import DirectoryError, DirectoryUnavailableError
from .main import LookupApplication

__all__ = [
    "expand_group",
    "help",
    "lookup",
    "main",
    "validate",
]

_config_path_option = click.option(
    "--config-path",
    envvar="LDAPLOOKUP_CONFIG_PATH",
    type=click.Path(path_type=Path),
    default=CONFIG_PATH,
    help="Application configuration file.",
)


def _load_config(config_path: Path) -> tuple[Config, LookupConfig]:
    config = Config.from_file(config_path)
    config.configure_logging()
    if not config.lookup:
        msg = f"No lookup options in {config_path}"
        raise click.UsageError(msg)
    return config, config.lookup


def _print_json(data: BaseModel | list[Any]) -> None:
    if isinstance(data, BaseModel):
        output = data.model_dump(mode="json", by_alias=True)
    else:
        output = [d.model_dump(mode="json", by_alias=True) for d in data]
    click.echo(json.dumps(output, indent=2))


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(message="%(version)s")
def main() -> None:
    """Command-line interface for LDAP user lookups."""


@main.command()
@click.argument("topic", default=None, required=False, nargs=1)
@click.pass_context
def help(ctx: click.Context, topic: str | None) -> None:
    """Show help for any command."""
    display_help(main, ctx, topic)


@main.command()
@_config_path_option
def validate(*, config_path: Path) -> None:
    """Check the lookup options for problems."""
    _, lookup_config = _load_config(config_path)
    problems = validate_configuration(lookup_config)
    _print_json(problems)
    if problems:
        sys.exit(1)


@main.command()
@click.argument("values", nargs=-1, required=True)
@_config_path_option
@run_with_asyncio
async def lookup(*, values: tuple[str, ...], config_path: Path) -> None:
    """Look up users by email address or other search value."""
    config, lookup_config = _load_config(config_path)
    application = LookupApplication(config)
    try:
        results = await application.batch_lookup(values, lookup_config)
    except DirectoryError as e:
        _print_json(e.to_error())
        if isinstance(e, DirectoryUnavailableError):
            await application.context.shutdown.wait()
        sys.exit(1)
    finally:
        await application.aclose()
    _print_json(results)


@main.command("expand-group")
@click.argument("group_dn")
@_config_path_option
@run_with_asyncio
async def expand_group(*, group_dn: str, config_path: Path) -> None:
    """List the users that are members of a group."""
    config, lookup_config = _load_config(config_path)
    application = LookupApplication(config)
    try:
        members = await application.expand_group(group_dn, lookup_config)
    except DirectoryError as e:
        _print_json(e.to_error())
        sys.exit(1)
    finally:
        await application.aclose()
    _print_json(members)
