"""replicawatch CLI - Conflict Commands

List, inspect and resolve records with competing revisions.
"""
import logging
from typing import Optional, Tuple

import click

from replicawatch.consistency.conflict_detector import ConflictReport, ResolutionResult
from replicawatch.errors import (
    NoConflictError,
    PartialResolutionError,
    RecordNotFoundError,
    ReplicaWatchError,
    StaleRevisionError,
)
from replicawatch.records import RecordKind
from replicawatch.services import Services

from .common import (
    VERBOSITY_NORMAL,
    echo_json,
    echo_normal,
    echo_quiet,
    echo_verbose,
    ensure_views,
    fail,
    get_services,
)

logger = logging.getLogger(__name__)

KIND_CHOICES = [kind.value for kind in RecordKind]


@click.group()
@click.pass_context
def conflicts_group(ctx):
    """Conflict detection and resolution.

    \b
    Examples:
        replicawatch conflicts list
        replicawatch conflicts show user:1234
        replicawatch conflicts resolve user:1234 --winner 3-abc
        replicawatch conflicts resolve user:1234 --merge
    """
    ctx.ensure_object(dict)


def _print_report(report: ConflictReport, verbosity: int) -> None:
    data = report.to_dict()
    analysis = report.analysis

    echo_normal(click.style(f"Conflict: {report.record_id} ({report.kind.value})", fg="cyan", bold=True), verbosity)
    echo_normal("=" * 50, verbosity)
    echo_normal(f"Type: {analysis.conflict_type.value}", verbosity)
    echo_normal(f"Competing revisions: {analysis.conflict_count}", verbosity)
    echo_normal(f"Instances involved: {', '.join(analysis.instances_involved) or '-'}", verbosity)
    if analysis.differing_fields:
        echo_normal(f"Differing fields: {', '.join(analysis.differing_fields)}", verbosity)
    if analysis.unverified_revision_ids:
        echo_normal(
            click.style(
                f"Unreadable revisions: {', '.join(analysis.unverified_revision_ids)}", fg="yellow"
            ),
            verbosity,
        )
    if analysis.requires_manual_resolution:
        echo_normal(click.style("Manual resolution required", fg="yellow"), verbosity)

    echo_normal("\nRevisions:", verbosity)
    for revision in data["revisions"]:
        metadata = revision["instance_metadata"]
        marker = " (current)" if revision["is_current"] else ""
        echo_normal(
            f"  {revision['revision']}{marker}  by {metadata['last_modified_by'] or '?'} "
            f"at {metadata['last_modified_at'] or '?'}",
            verbosity,
        )
        for key in analysis.differing_fields:
            echo_normal(f"    {key}: {revision['data'].get(key)!r}", verbosity)

    suggestion = data["suggested_resolution"]
    echo_normal("\nSuggested resolution:", verbosity)
    echo_normal(f"  keep most recent: {suggestion['keep_most_recent']['revision']}", verbosity)
    for key, values in suggestion["merge_collections"].items():
        echo_verbose(f"  merged {key}: {values}", verbosity)


def _print_result(result: ResolutionResult, verbosity: int) -> None:
    if result.new_revision_id:
        echo_normal(f"Winner {result.winning_revision_id} committed as {result.new_revision_id}", verbosity)
    if result.retired_revision_ids:
        echo_normal(f"Retired: {', '.join(result.retired_revision_ids)}", verbosity)
    if result.skipped_revision_ids:
        echo_verbose(f"Skipped (no longer live): {', '.join(result.skipped_revision_ids)}", verbosity)
    if result.failed_revision_ids:
        echo_quiet(
            click.style(f"Could not retire: {', '.join(result.failed_revision_ids)}", fg="red"),
            verbosity,
        )


@conflicts_group.command('list')
@click.option('--kind', 'kinds', multiple=True, type=click.Choice(KIND_CHOICES),
              help='Only this record kind (repeatable)')
@click.pass_context
def list_conflicts(ctx, kinds: Tuple[str, ...]) -> None:
    """List every record with competing revisions."""
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    services = get_services(ctx)
    ensure_views(services)

    selected = [RecordKind(k) for k in kinds] or None
    try:
        reports = services.detector.get_all_conflicts(selected)
    except ReplicaWatchError as e:
        fail(f"Could not list conflicts: {e}")

    if ctx.obj.get('json'):
        echo_json([r.to_dict() for r in reports])
        return

    if not reports:
        echo_quiet(click.style("No conflicts", fg="green"), verbosity)
        return

    echo_normal(click.style(f"{len(reports)} conflicted record(s)", fg="yellow", bold=True), verbosity)
    for report in reports:
        analysis = report.analysis
        echo_quiet(
            f"  {report.record_id:40} {report.kind.value:12} {analysis.conflict_type.value:18} "
            f"{analysis.conflict_count} competing  [{', '.join(analysis.instances_involved)}]",
            verbosity,
        )


@conflicts_group.command('show')
@click.argument('record_id')
@click.pass_context
def show_conflict(ctx, record_id: str) -> None:
    """Show revisions, differences and a suggested resolution for one record."""
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    services = get_services(ctx)

    try:
        report = services.detector.get_conflict(record_id)
    except RecordNotFoundError:
        fail(f"Record {record_id} not found")
    except ReplicaWatchError as e:
        fail(str(e))

    if ctx.obj.get('json'):
        echo_json(report.to_dict())
        return
    _print_report(report, verbosity)


@conflicts_group.command('stats')
@click.pass_context
def conflict_stats(ctx) -> None:
    """Count conflicts by record kind and by instance."""
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    services = get_services(ctx)
    ensure_views(services)

    try:
        stats = services.detector.get_conflict_stats()
    except ReplicaWatchError as e:
        fail(f"Could not compute conflict statistics: {e}")

    if ctx.obj.get('json'):
        echo_json(stats)
        return

    echo_quiet(f"Total conflicts: {stats['total']}", verbosity)
    echo_normal(f"Requiring manual resolution: {stats['requires_manual_resolution']}", verbosity)
    for kind, count in sorted(stats["by_kind"].items()):
        echo_normal(f"  {kind:14} {count}", verbosity)
    if stats["by_instance"]:
        echo_verbose("By instance:", verbosity)
        for instance, count in sorted(stats["by_instance"].items()):
            echo_verbose(f"  {instance:14} {count}", verbosity)


def _refresh_status(services: Services, record_id: str, verbosity: int) -> None:
    """Relabel a just-resolved record instead of waiting for the next sweep."""
    try:
        result = services.reconciler.reconcile_one(record_id)
    except ReplicaWatchError as e:
        logger.warning(f"Could not refresh sync_status for {record_id}: {e}")
        return
    echo_verbose(f"sync_status: {result.current_status.value}", verbosity)


@conflicts_group.command('resolve')
@click.argument('record_id')
@click.option('--winner', default=None, help='Revision whose content survives')
@click.option('--merge', is_flag=True, default=False,
              help='Write the union of every collection field (default base: current winner)')
@click.option('--loser', 'losers', multiple=True,
              help='Revision to retire (repeatable; default: every other live revision)')
@click.option('--yes', '-y', is_flag=True, default=False,
              help='Do not ask for confirmation while the cluster is isolated')
@click.pass_context
def resolve_conflict(
    ctx, record_id: str, winner: Optional[str], merge: bool, losers: Tuple[str, ...], yes: bool
) -> None:
    """Commit a winning revision, or a merge, and retire the losers."""
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    if not winner and not merge:
        raise click.UsageError("Give --winner, --merge, or both")
    services = get_services(ctx)

    services.health.check_health()
    warning = services.health.get_isolation_warning()
    if warning and not yes:
        click.echo(click.style(warning["message"], fg="yellow"), err=True)
        if not click.confirm("Resolve anyway?", default=False):
            fail("Aborted")

    losing: Optional[list] = list(losers) if losers else None
    try:
        if merge:
            merged = services.detector.get_conflict(record_id).suggestion.merged_collections
            if not merged:
                fail(f"Record {record_id} has no collection fields to merge; pick a --winner")
            echo_verbose(f"Merging: {merged}", verbosity)
            result = services.detector.resolve_merge(record_id, merged, winner, losing)
        else:
            result = services.detector.resolve(record_id, winner, losing)
    except NoConflictError as e:
        fail(str(e))
    except StaleRevisionError as e:
        fail(f"{e}. Run 'replicawatch conflicts show {record_id}' and retry")
    except PartialResolutionError as e:
        if ctx.obj.get('json'):
            echo_json(e.result.to_dict())
        else:
            _print_result(e.result, verbosity)
        failed = " ".join(e.result.failed_revision_ids)
        fail(f"Winner committed with residual conflicts. Retry: replicawatch conflicts retire {record_id} {failed}")
    except RecordNotFoundError:
        fail(f"Record {record_id} not found")
    except ReplicaWatchError as e:
        fail(str(e))

    _refresh_status(services, record_id, verbosity)
    if ctx.obj.get('json'):
        echo_json(result.to_dict())
        return
    echo_quiet(click.style(f"Resolved {record_id}", fg="green"), verbosity)
    _print_result(result, verbosity)


@conflicts_group.command('retire')
@click.argument('record_id')
@click.argument('revisions', nargs=-1, required=True)
@click.pass_context
def retire_revisions(ctx, record_id: str, revisions: Tuple[str, ...]) -> None:
    """Retry deleting losing revisions after a partial resolution."""
    verbosity = ctx.obj.get('verbosity', VERBOSITY_NORMAL)
    services = get_services(ctx)

    try:
        result = services.detector.retire_revisions(record_id, list(revisions))
    except NoConflictError as e:
        fail(str(e))
    except PartialResolutionError as e:
        _print_result(e.result, verbosity)
        fail(str(e))
    except ReplicaWatchError as e:
        fail(str(e))

    _refresh_status(services, record_id, verbosity)
    if ctx.obj.get('json'):
        echo_json(result.to_dict())
        return
    _print_result(result, verbosity)
