"""replicawatch CLI - Health Commands

Cluster health and isolation reporting.
"""
import click

from replicawatch.consistency.cluster_health import HealthSnapshot

from .common import (
    VERBOSITY_NORMAL,
    colored,
    echo_json,
    echo_normal,
    echo_quiet,
    echo_verbose,
    get_services,
)


@click.group()
@click.pass_context
def health_group(ctx):
    """Cluster health commands."""
    ctx.ensure_object(dict)


def _print_snapshot(snapshot: HealthSnapshot, verbosity: int) -> None:
    summary = snapshot.summary

    echo_normal(click.style(f"Cluster Health (instance {snapshot.current_instance})", fg="cyan", bold=True), verbosity)
    echo_normal("=" * 50, verbosity)
    if snapshot.fallback:
        echo_normal(click.style("Health check failed; showing local instance only", fg="yellow"), verbosity)

    echo_quiet(
        f"Network: {colored(summary.network_health)}   "
        f"Replication: {summary.replication_health}%",
        verbosity,
    )
    echo_normal(
        f"Instances: {summary.total} total, {summary.healthy} healthy, {summary.unhealthy} unreachable",
        verbosity,
    )

    for instance in snapshot.instances:
        suffix = " (this instance)" if instance.is_current_instance else ""
        last_seen = instance.last_seen.isoformat() if instance.last_seen else "never"
        echo_normal(f"  {instance.id:20} {colored(instance.status, 12)}{suffix}", verbosity)
        if not instance.is_current_instance:
            echo_verbose(f"    location: {instance.location}  last seen: {last_seen}", verbosity)
        for link in instance.links:
            echo_verbose(
                f"    {link.direction:8} {link.id:36} {colored(link.state, 10)} "
                f"{link.state_reason} (pending: {link.changes_pending})",
                verbosity,
            )

    window = snapshot.isolation
    if window.is_open:
        echo_normal(
            click.style(
                f"\nIsolated since {window.started_at.isoformat()} "
                f"(peers: {', '.join(window.isolated_peer_ids)})",
                fg="yellow",
            ),
            verbosity,
        )


@health_group.command()
@click.pass_context
def health(ctx) -> None:
    """Poll replication status and show cluster health."""
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    services = get_services(ctx)

    snapshot = services.health.check_health()
    if ctx.obj.get('json'):
        echo_json(snapshot.to_dict())
        return
    _print_snapshot(snapshot, verbosity)


@health_group.command()
@click.pass_context
def isolation(ctx) -> None:
    """Show whether the cluster is isolated and what is at risk.

    \b
    Records written during isolation are counted across the tracked kinds.
    """
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    services = get_services(ctx)

    services.health.check_health()
    status = services.health.is_isolated()
    info = services.health.get_isolation_info()
    warning = services.health.get_isolation_warning()
    at_risk = services.health.count_isolated_records()

    if ctx.obj.get('json'):
        echo_json({
            "status": status.to_dict(),
            "window": info,
            "warning": warning,
            "records_modified_during_isolation": at_risk,
        })
        return

    if not status.isolated:
        echo_quiet(click.style("Connected: all instances reachable", fg="green"), verbosity)
        return

    echo_quiet(click.style(f"Isolated: {status.reason}", fg="yellow", bold=True), verbosity)
    if status.peers:
        echo_normal(f"Unreachable peers: {', '.join(status.peers)}", verbosity)
    if info["is_isolated"]:
        echo_normal(f"Since: {info['isolation_start_time']} ({info['duration_ms'] // 1000}s)", verbosity)
    if at_risk is not None:
        echo_normal(f"Records modified during isolation: {at_risk}", verbosity)

    if warning:
        echo_normal("", verbosity)
        echo_normal(warning["message"], verbosity)
        for recommendation in warning["recommendations"]:
            echo_verbose(f"  - {recommendation}", verbosity)
