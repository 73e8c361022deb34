"""replicawatch CLI - Operator tooling for isolation and conflict monitoring

Command groups are organized into separate modules:
- health.py: health, isolation
- conflicts.py: conflicts list, show, stats, resolve, retire
- monitor.py: reconcile, monitor
- common.py: shared utilities
"""
from pathlib import Path
import click

# Local imports
from .common import (
    VERBOSITY_NORMAL,
    VERBOSITY_QUIET,
    VERBOSITY_VERBOSE,
    configure_logging,
    get_services,
)
from .health import health_group
from .conflicts import conflicts_group
from .monitor import monitor_group

# CLI version - matches project version
__version__ = "0.1.0"


@click.group()
@click.version_option(version=__version__, prog_name="replicawatch")
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), default=None,
              envvar='REPLICAWATCH_CONFIG', help='YAML config file')
@click.option('--verbose', '-v', is_flag=True, default=False,
              help='Enable verbose output and debug logging')
@click.option('--quiet', '-q', is_flag=True, default=False,
              help='Suppress non-essential output')
@click.option('--json', 'json_output', is_flag=True, default=False,
              help='Output as JSON (for scripts)')
@click.pass_context
def cli(ctx, config_path, verbose, quiet, json_output):
    """replicawatch - isolation and conflict monitoring for a replicated identity store

    \b
    Key Commands:
        health            Poll replication status and show cluster health
        isolation         Is the cluster isolated, and since when
        conflicts         List, inspect and resolve conflicted records
        reconcile         Recompute record sync_status labels
        monitor           Run health checks and reconciliation continuously

    \b
    Examples:
        replicawatch health
        replicawatch --json isolation
        replicawatch conflicts list --kind account
        replicawatch conflicts resolve user:1234 --winner 3-abc
        replicawatch conflicts resolve user:1234 --merge
        replicawatch --config /etc/replicawatch.yaml monitor
    """
    ctx.ensure_object(dict)

    if verbose and quiet:
        raise click.UsageError("--verbose and --quiet are mutually exclusive")

    if quiet:
        ctx.obj['verbosity'] = VERBOSITY_QUIET
    elif verbose:
        ctx.obj['verbosity'] = VERBOSITY_VERBOSE
    else:
        ctx.obj['verbosity'] = VERBOSITY_NORMAL

    ctx.obj['config_path'] = Path(config_path) if config_path else None
    ctx.obj['json'] = json_output

    configure_logging(ctx.obj['verbosity'])


# Register health commands (health, isolation)
cli.add_command(health_group.commands['health'])
cli.add_command(health_group.commands['isolation'])

# Register conflicts command group (list, show, stats, resolve, retire)
cli.add_command(conflicts_group, name='conflicts')

# Register monitor commands (reconcile, monitor)
cli.add_command(monitor_group.commands['reconcile'])
cli.add_command(monitor_group.commands['monitor'])


def main():
    """Entry point for the CLI."""
    cli()


__all__ = [
    '__version__',
    'cli',
    'main',
    'get_services',
]
