"""replicawatch CLI - Monitor Commands

One-shot sync-status reconciliation and the long-running monitor loop.
"""
import threading

import click

from replicawatch.errors import RecordNotFoundError, ReplicaWatchError

from .common import (
    VERBOSITY_NORMAL,
    colored,
    echo_json,
    echo_normal,
    echo_quiet,
    echo_verbose,
    ensure_views,
    fail,
    get_services,
)


@click.group()
@click.pass_context
def monitor_group(ctx):
    """Monitoring loop commands."""
    ctx.ensure_object(dict)


@monitor_group.command()
@click.argument('record_id', required=False)
@click.option('--force', is_flag=True, default=False,
              help='Run even while the cluster is isolated')
@click.pass_context
def reconcile(ctx, record_id, force: bool) -> None:
    """Recompute sync_status for one record, or for every tracked record.

    \b
    The isolation start time lives in the long-running monitor's memory.
    A one-shot run during isolation would only know "isolated since now",
    so it refuses unless --force is given.
    """
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    services = get_services(ctx)

    services.health.check_health()
    status = services.health.is_isolated()
    if status.isolated and not force:
        fail(f"Cluster is isolated ({status.reason}); rerun with --force or use 'replicawatch monitor'")

    if record_id:
        try:
            result = services.reconciler.reconcile_one(record_id)
        except RecordNotFoundError:
            fail(f"Record {record_id} not found")
        except ReplicaWatchError as e:
            fail(str(e))

        if ctx.obj.get('json'):
            echo_json(result.to_dict())
            return
        previous = result.previous_status.value if result.previous_status else "-"
        echo_quiet(f"{record_id}: {colored(previous)} -> {colored(result.current_status.value)}", verbosity)
        if result.stale:
            echo_normal(click.style("Record changed concurrently; not written", fg="yellow"), verbosity)
        elif not result.updated:
            echo_verbose("Unchanged", verbosity)
        return

    try:
        summary = services.reconciler.run()
    except ReplicaWatchError as e:
        fail(f"Reconcile failed: {e}")

    if summary is None:
        fail("Another reconcile sweep is already running")
    if ctx.obj.get('json'):
        echo_json(summary.to_dict())
        return

    echo_quiet(
        f"Checked {summary.checked} records: {summary.updated} updated, "
        f"{summary.stale} stale, {summary.errors} errors",
        verbosity,
    )
    for status_name, count in sorted(summary.by_status.items()):
        echo_normal(f"  {colored(status_name, 10)} {count}", verbosity)


@monitor_group.command()
@click.option('--once', is_flag=True, default=False,
              help='Run one health check and one sweep, then exit')
@click.pass_context
def monitor(ctx, once: bool) -> None:
    """Run health checks and reconciliation until interrupted."""
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    services = get_services(ctx)
    settings = services.settings
    ensure_views(services)

    scheduler = services.scheduler()
    if once:
        for task in scheduler.tasks:
            task.run_once()
        failed = [task.name for task in scheduler.tasks if task.failures]
        if failed:
            fail(f"Failed: {', '.join(failed)}")
        echo_normal("Monitor cycle complete", verbosity)
        return

    echo_normal(click.style(f"Monitoring instance {settings.instance_id}", fg="cyan", bold=True), verbosity)
    echo_normal(
        f"Health check every {settings.health_check_interval:g}s, "
        f"reconcile every {settings.reconcile_interval:g}s "
        f"({', '.join(k.value for k in settings.tracked_kinds)})",
        verbosity,
    )

    stop = threading.Event()
    scheduler.start()
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        echo_normal("\nStopping...", verbosity)
    finally:
        scheduler.stop(timeout=settings.status_timeout * 2)
