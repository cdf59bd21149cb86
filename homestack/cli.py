"""
Command Line Interface entry point using Typer.
"""
import json
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, List, Optional

import typer
from rich.panel import Panel

from . import __version__
from .audit import AuditLogger, get_audit_log
from .checks import build_default_registry
from .config import StackConfig, get_config_path, load_config, save_config, validate_registry
from .errors import HomestackError, NoBackupsAvailableError, ServiceUnavailableError
from .health import HealthAggregator
from .models import RestorePhase, RestoreRequest, RetentionPolicy, SnapshotKind
from .restore import RestoreManager
from .services import DockerComposeController, ServiceController
from .snapshot import SnapshotManager
from .store import SnapshotStore
from .ui import (
    build_archive_tree,
    confirm,
    console,
    render_banner,
    render_error,
    render_plan,
    render_progress,
    render_report,
    render_restore_summary,
    render_snapshot_detail,
    render_snapshots,
    render_status,
    render_table,
    render_tree,
    render_warning,
)
from .utils import cancel_on_signals, human_size

app = typer.Typer(
    help=(
        "[bold cyan]HOMESTACK[/]\n\n"
        "Configuration snapshots, restores and health checks for a containerised home media stack."
    ),
    no_args_is_help=True,
    rich_markup_mode="rich",
)
snapshot_app = typer.Typer(help="Create, inspect and prune configuration snapshots.", no_args_is_help=True)
config_app = typer.Typer(help="Inspect or initialise the homestack configuration.", no_args_is_help=True)
app.add_typer(snapshot_app, name="snapshot")
app.add_typer(config_app, name="config")


def build_controller(config: StackConfig) -> ServiceController:
    return DockerComposeController(config.compose_dir)


class Stack:
    """The components one CLI invocation works with."""

    def __init__(self, config: StackConfig):
        self.config = config
        self.audit = AuditLogger(config.audit_dir)
        self.controller = build_controller(config)
        self.store = SnapshotStore(config.backup_root)
        self.snapshots = SnapshotManager(config, self.store, self.controller, audit=self.audit)

    def aggregator(self, cancel_event=None) -> HealthAggregator:
        registry = build_default_registry(self.config, self.controller)
        return HealthAggregator(
            registry,
            timeout=self.config.check_timeout,
            max_workers=self.config.max_workers,
            audit=self.audit,
            cancel_event=cancel_event,
        )

    def restorer(self, validate: bool = True) -> RestoreManager:
        return RestoreManager(
            self.config,
            self.store,
            self.snapshots,
            self.controller,
            aggregator=self.aggregator() if validate else None,
            audit=self.audit,
            on_phase=_announce_phase,
        )


def _announce_phase(phase: RestorePhase) -> None:
    render_status("restore", f"Phase: {phase.value}", "cyan")

def _stack(ctx: typer.Context) -> Stack:
    path = (ctx.obj or {}).get("config_path")
    return Stack(load_config(path))

@contextmanager
def handle_errors() -> Generator[None, None, None]:
    """Render homestack errors as a panel and exit 2."""
    try:
        yield
    except HomestackError as e:
        result = getattr(e, "result", None)
        if result is not None:
            render_restore_summary(result)
        render_error(str(e))
        raise typer.Exit(2)


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.json"),
):
    ctx.obj = {"config_path": config_path}


# snapshot

@snapshot_app.command(name="create")
def snapshot_create(
    ctx: typer.Context,
    kind: SnapshotKind = typer.Option(SnapshotKind.STANDARD, "--kind", "-k", help="standard, quick or full"),
    services: List[str] = typer.Option([], "--service", "-s", help="Limit to a tracked service (repeatable)"),
    expire: bool = typer.Option(True, "--expire/--no-expire", help="Apply the retention policy afterwards"),
):
    """Archive the tracked service configuration directories, then apply retention."""
    if kind is SnapshotKind.SAFETY:
        render_error("Safety snapshots are only taken by restore.")
        raise typer.Exit(2)
    with handle_errors():
        stack = _stack(ctx)
        if kind.stops_services:
            render_warning("Services will be stopped while the snapshot is written.")
        with render_progress(f"Creating {kind.value} snapshot..."):
            snap = stack.snapshots.create(kind, services or None)
        render_status("success", f"Snapshot {snap.id} created ({human_size(snap.size_bytes)}, {snap.file_count} files)", "green")
        for record in snap.manifest:
            if not record.included:
                render_status("warn", f"{record.service}: config directory not found, skipped", "yellow")
        if expire:
            for snapshot_id in stack.snapshots.expire():
                render_status("delete", f"Expired {snapshot_id}")

@snapshot_app.command(name="list")
def snapshot_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Output in JSON format."),
):
    """List snapshots, newest first."""
    with handle_errors():
        stack = _stack(ctx)
        snapshots = stack.store.list()
        orphans = stack.store.orphans()

    if json_output:
        typer.echo(json.dumps([s.model_dump(mode="json") for s in snapshots], indent=2))
        return
    if not snapshots:
        render_status("info", "No snapshots found.")
    else:
        render_snapshots(snapshots)
    for name in stack.store.skipped:
        render_status("warn", f"Unreadable archive skipped: {name}", "yellow")
    for snapshot_id in orphans:
        render_status("warn", f"Manifest without archive: {snapshot_id}", "yellow")

@snapshot_app.command(name="show")
def snapshot_show(ctx: typer.Context, snapshot_id: str = typer.Argument(..., help="Snapshot ID")):
    """Show a snapshot's manifest and archive contents."""
    with handle_errors():
        stack = _stack(ctx)
        snap = stack.store.get(snapshot_id)
        members = stack.snapshots.read_members(snapshot_id)
    render_snapshot_detail(snap)
    render_tree(build_archive_tree(snap.archive_path.name, members))

@snapshot_app.command(name="verify")
def snapshot_verify(
    ctx: typer.Context,
    snapshot_id: Optional[str] = typer.Argument(None, help="Snapshot ID; all snapshots when omitted"),
):
    """Recompute archive digests and compare them with the recorded ones."""
    with handle_errors():
        stack = _stack(ctx)
        with render_progress("Verifying snapshot integrity..."):
            if snapshot_id:
                results = {snapshot_id: stack.snapshots.verify(snapshot_id)}
            else:
                results = stack.snapshots.verify_all()

    if not results:
        render_status("info", "No snapshots found.")
        return
    rows = [["[bold green]OK[/]" if ok else "[bold red]FAILED[/]", sid] for sid, ok in results.items()]
    render_table("Integrity Verification", ["Status", "Snapshot"], rows)
    if not all(results.values()):
        raise typer.Exit(2)

@snapshot_app.command(name="expire")
def snapshot_expire(
    ctx: typer.Context,
    max_age_days: Optional[int] = typer.Option(None, "--max-age-days", min=0, help="Override retention age"),
    max_count: Optional[int] = typer.Option(None, "--max-count", min=1, help="Override retention count"),
):
    """Apply the retention policy. The newest snapshot is always kept."""
    with handle_errors():
        stack = _stack(ctx)
        settings = stack.config.retention
        policy = RetentionPolicy.from_days(
            settings.max_age_days if max_age_days is None else max_age_days,
            settings.max_count if max_count is None else max_count,
        )
        deleted = stack.snapshots.expire(policy)
    if not deleted:
        render_status("info", "Nothing to expire.")
        return
    for snapshot_id in deleted:
        render_status("delete", f"Expired {snapshot_id}")
    render_status("success", f"{len(deleted)} snapshot(s) removed.", "green")

@snapshot_app.command(name="delete")
def snapshot_delete(
    ctx: typer.Context,
    snapshot_id: str = typer.Argument(..., help="Snapshot ID to delete"),
    force: bool = typer.Option(False, "--force", "-f", help="Do not ask for confirmation"),
):
    """Delete a snapshot's archive, digest and manifest."""
    if not force and not confirm(f"Delete snapshot {snapshot_id}?"):
        raise typer.Exit(0)
    with handle_errors():
        _stack(ctx).snapshots.delete(snapshot_id)
    render_status("delete", f"Snapshot {snapshot_id} deleted.")


# restore

def _choose_snapshot(stack: Stack) -> str:
    candidates = [s for s in stack.store.list() if s.trusted]
    if not candidates:
        raise NoBackupsAvailableError(f"No verified snapshots found in {stack.store.root}.")
    render_snapshots(candidates, numbered=True)
    choice = typer.prompt("Select snapshot number", type=int, default=1)
    if not 1 <= choice <= len(candidates):
        render_error(f"Invalid selection: {choice}")
        raise typer.Exit(2)
    return candidates[choice - 1].id

@app.command(name="restore")
def restore_cmd(
    ctx: typer.Context,
    snapshot_id: Optional[str] = typer.Option(None, "--id", help="Snapshot ID to restore"),
    latest: bool = typer.Option(False, "--latest", help="Restore the newest verified snapshot"),
    services: List[str] = typer.Option([], "--service", "-s", help="Restore only this service (repeatable)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be restored without changing anything"),
    no_safety_backup: bool = typer.Option(False, "--no-safety-backup", help="Skip the pre-restore safety snapshot"),
    force: bool = typer.Option(False, "--force", "-f", help="Do not ask for confirmation"),
    allow_unverified: bool = typer.Option(False, "--allow-unverified", help="Accept a snapshot without a digest file"),
    validate: bool = typer.Option(True, "--validate/--no-validate", help="Run scoped health checks afterwards"),
):
    """Restore service configuration from a snapshot."""
    if snapshot_id and latest:
        render_error("Use either --id or --latest, not both.")
        raise typer.Exit(2)
    if force and not (snapshot_id or latest):
        render_error("--force needs --id or --latest; the interactive choice is not available.")
        raise typer.Exit(2)

    with handle_errors():
        stack = _stack(ctx)
        if not snapshot_id and not latest:
            snapshot_id = _choose_snapshot(stack)

        request = RestoreRequest(
            snapshot_id=snapshot_id,
            latest=latest,
            services=services,
            dry_run=dry_run,
            skip_safety_backup=no_safety_backup,
            allow_unverified=allow_unverified,
            validate_after=validate,
        )
        manager = stack.restorer(validate=validate)
        plan = manager.plan(request)
        if dry_run:
            render_plan(plan)
            return

        if not force:
            render_plan(plan)
            names = ", ".join(o.service for o in plan.services)
            if not confirm(f"Stop {names} and restore configuration from {plan.snapshot.id}?"):
                raise typer.Exit(0)

        request = request.model_copy(update={"snapshot_id": plan.snapshot.id, "latest": False})
        result = manager.restore(request)

    render_restore_summary(result)
    render_status("success", f"Restored {len(result.succeeded)} service(s) from {result.snapshot_id}.", "green")
    if result.validation is not None and result.validation.exit_code:
        raise typer.Exit(result.validation.exit_code)

@app.command(name="rollback")
def rollback_cmd(
    ctx: typer.Context,
    safety_id: str = typer.Argument(..., help="Pre-restore safety snapshot ID"),
    services: List[str] = typer.Option([], "--service", "-s", help="Roll back only this service (repeatable)"),
    force: bool = typer.Option(False, "--force", "-f", help="Do not ask for confirmation"),
):
    """Apply a pre-restore safety snapshot."""
    if not force and not confirm(f"Roll back configuration to {safety_id}?"):
        raise typer.Exit(0)
    with handle_errors():
        result = _stack(ctx).restorer().rollback(safety_id, services or None)
    render_restore_summary(result)
    render_status("success", f"Rolled back to {safety_id}.", "green")


# health

@app.command(name="health")
def health_cmd(
    ctx: typer.Context,
    services: List[str] = typer.Option([], "--service", "-s", help="Limit to a tracked service (repeatable)"),
    json_output: bool = typer.Option(False, "--json", help="Output the report as JSON."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="No output, exit code only."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Include measured values."),
):
    """Run the health checks. Exit code 0 healthy, 1 warnings, 2 critical."""
    with handle_errors():
        stack = _stack(ctx)
        selected = stack.config.resolve_services(services) if services else None

        if verbose and not (quiet or json_output):
            try:
                unknown = validate_registry(stack.config, stack.controller.known_services())
            except ServiceUnavailableError:
                unknown = []
            for name in unknown:
                render_status("warn", f"{name} is tracked but not defined in the compose project", "yellow")

        aggregator = stack.aggregator()
        with cancel_on_signals(aggregator.cancel_event):
            if quiet or json_output:
                report = aggregator.run(services=selected)
            else:
                with render_progress("Running health checks..."):
                    report = aggregator.run(services=selected)

    if json_output:
        typer.echo(json.dumps(report.to_json(), indent=2))
    elif not quiet:
        render_report(report, verbose=verbose)
    raise typer.Exit(report.exit_code)


# scheduling, audit, config

@app.command(name="schedule")
def schedule_cmd(
    ctx: typer.Context,
    snapshot_interval: float = typer.Option(24.0, "--snapshot-interval", min=0.1, help="Hours between quick snapshots"),
    health_interval: float = typer.Option(15.0, "--health-interval", min=1.0, help="Minutes between health runs"),
    generate: bool = typer.Option(False, "--generate", help="Print a systemd unit instead of running"),
):
    """Run scheduled snapshots and health checks in the foreground."""
    from .scheduler import ScheduleRunner, generate_systemd_unit

    if generate:
        console.print(Panel(generate_systemd_unit(snapshot_interval, health_interval), title="Systemd Unit File", border_style="cyan"))
        return

    with handle_errors():
        stack = _stack(ctx)
        runner = ScheduleRunner(
            stack.config,
            stack.snapshots,
            aggregator_factory=stack.aggregator,
            snapshot_hours=snapshot_interval,
            health_minutes=health_interval,
            audit=stack.audit,
        )
    render_banner(__version__)
    render_status("schedule", f"Snapshots every {snapshot_interval:g}h, health every {health_interval:g}m", "cyan")
    try:
        runner.start()
    except RuntimeError as e:
        render_error(str(e))
        raise typer.Exit(2)

@app.command(name="audit")
def show_audit(
    ctx: typer.Context,
    last_n: int = typer.Option(50, "--last", "-n", help="Number of recent events to show"),
):
    """Show recent audit events."""
    with handle_errors():
        stack = _stack(ctx)
    events = get_audit_log(stack.config.audit_dir, last_n)
    if not events:
        render_status("info", "No audit events found.")
        return

    rows = [[e.get("timestamp", ""), e.get("event", ""), json.dumps(e.get("details", {}))] for e in events]
    render_table("Audit Log", ["Timestamp", "Event", "Details"], rows)

@config_app.command(name="show")
def config_show(ctx: typer.Context):
    """Print the effective configuration (file plus environment overrides)."""
    with handle_errors():
        config = _stack(ctx).config
    typer.echo(config.model_dump_json(indent=2))

@config_app.command(name="init")
def config_init(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing config file"),
):
    """Write a config file with the default settings."""
    path = (ctx.obj or {}).get("config_path") or get_config_path()
    if path.exists() and not force:
        render_error(f"{path} already exists. Use --force to overwrite it.")
        raise typer.Exit(2)
    save_config(StackConfig(), path)
    render_status("success", f"Wrote default configuration to {path}", "green")

@app.command(name="version")
def version_cmd():
    """Display homestack version information."""
    console.print(Panel(f"[bold cyan]HOMESTACK[/] v{__version__}", border_style="cyan", expand=False))


if __name__ == "__main__":
    app()
