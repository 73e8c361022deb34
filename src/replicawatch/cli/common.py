"""Shared utilities for replicawatch CLI commands."""
import json
import logging
import sys
from typing import Any, NoReturn

import click

from replicawatch.config import load_settings
from replicawatch.errors import ConfigurationError, ReplicaWatchError
from replicawatch.services import Services, build_services
from replicawatch.store import CouchDBStore

logger = logging.getLogger(__name__)

# Verbosity levels
VERBOSITY_QUIET = 0
VERBOSITY_NORMAL = 1
VERBOSITY_VERBOSE = 2

LOG_LEVELS = {
    VERBOSITY_QUIET: logging.ERROR,
    VERBOSITY_NORMAL: logging.WARNING,
    VERBOSITY_VERBOSE: logging.DEBUG,
}

STATUS_COLORS = {
    "active": "green",
    "healthy": "green",
    "synced": "green",
    "running": "green",
    "completed": "green",
    "degraded": "yellow",
    "isolated": "yellow",
    "retrying": "yellow",
    "unknown": "yellow",
    "unreachable": "red",
    "critical": "red",
    "conflict": "red",
    "error": "red",
    "failed": "red",
}


def configure_logging(verbosity: int) -> None:
    logging.basicConfig(
        level=LOG_LEVELS.get(verbosity, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def colored(value: str, width: int = 0) -> str:
    """Color a status word by its meaning."""
    return click.style(value.ljust(width), fg=STATUS_COLORS.get(value))


def should_print(verbosity: int, message_level: int) -> bool:
    return verbosity >= message_level


def echo_verbose(message: str, verbosity: int) -> None:
    """Print a message only in verbose mode."""
    if should_print(verbosity, VERBOSITY_VERBOSE):
        click.echo(message)


def echo_normal(message: str, verbosity: int) -> None:
    """Print a message in normal and verbose modes."""
    if should_print(verbosity, VERBOSITY_NORMAL):
        click.echo(message)


def echo_quiet(message: str, verbosity: int) -> None:
    """Print a message that is shown even in quiet mode."""
    click.echo(message)


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def fail(message: str, code: int = 1) -> NoReturn:
    """Print an error to stderr and exit."""
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(code)


def get_services(ctx: click.Context) -> Services:
    """
    Build (once per invocation) the service graph from --config and the environment.

    A pre-built Services object in ctx.obj['services'] is used as is.
    """
    services = ctx.obj.get("services")
    if services is not None:
        return services

    try:
        settings = load_settings(ctx.obj.get("config_path"))
    except ConfigurationError as e:
        fail(f"Invalid configuration: {e}", code=2)

    services = build_services(settings)
    ctx.obj["services"] = services
    return services


def ensure_views(services: Services) -> None:
    """Create the CouchDB conflict view if the store needs one."""
    if not isinstance(services.store, CouchDBStore):
        return
    try:
        services.store.ensure_design_documents()
    except ReplicaWatchError as e:
        logger.warning(f"Could not ensure conflict view: {e}")
