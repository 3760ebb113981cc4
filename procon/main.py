"""
procon — CLI entrypoint.

Usage:
    procon --help
    procon plan
    procon apply
    procon run build -p web
    procon run-proxy web
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from procon import __version__
from procon.core.observability.logging_config import resolve_level, setup_logging

# Lock held by another apply (sysexits EX_TEMPFAIL): safe to retry.
EXIT_LOCKED = 75
EXIT_INTERRUPTED = 130

_STATUS_COLORS = {"ok": "green", "partial": "yellow", "failed": "red", "cancelled": "yellow"}
_CHANGE_MARKERS = {"added": ("+", "green"), "changed": ("~", "yellow"), "removed": ("-", "red")}


@click.group()
@click.version_option(version=__version__, prog_name="procon")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    envvar="PROCON_CONFIG",
    default=None,
    help="Path to procon.yml (default: search upward from the current directory).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """procon — declarative project lifecycle manager."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    setup_logging(level=resolve_level(debug=debug, verbose=verbose, quiet=quiet))


def _echo_json(data: dict) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _echo_lines(text: str, limit: int) -> None:
    for line in text.strip().split("\n")[:limit]:
        click.echo(f"     │ {line}")


# ═══════════════════════════════════════════════════════════════════
#  plan
# ═══════════════════════════════════════════════════════════════════


@cli.command()
@click.option("--project", "-p", "projects", multiple=True, help="Limit to these projects.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def plan(ctx: click.Context, projects: tuple[str, ...], as_json: bool) -> None:
    """Show what apply would change, without changing anything."""
    from procon.core.use_cases.plan import plan as compute_plan

    result = compute_plan(config_path=ctx.obj.get("config_path"), projects=list(projects) or None)

    if as_json:
        _echo_json(result.to_dict())
        sys.exit(1 if result.error else 0)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    changeset = result.changeset
    assert changeset is not None

    if not result.has_changes:
        click.secho(f"✅ No changes. {len(changeset.unchanged)} project(s) up to date.", fg="green")
    else:
        click.secho(
            f"\n📋 Plan: {len(changeset.added)} to add, {len(changeset.changed)} to change, "
            f"{len(changeset.removed)} to remove",
            fg="cyan",
            bold=True,
        )
        for change in changeset:
            marker, color = _CHANGE_MARKERS[change.kind.value]
            note = " (teardown first)" if change.teardown_first else ""
            click.echo()
            click.secho(f"   {marker} {change.name}", fg=color, bold=True, nl=False)
            click.echo(f"  [{change.kind.value}{note}]")
            for phase in change.phases:
                steps = result.steps.get(change.name, {}).get(phase, [])
                click.echo(f"     {phase}:")
                if not steps:
                    click.echo("       (no steps)")
                for step in steps:
                    text = step.get("command") or f"install {' '.join(step.get('packages', []))}"
                    click.echo(f"       • {text}")
            artifacts = result.artifacts.get(change.name, {})
            if artifacts.get("daemon"):
                click.echo("     ⚙️  service unit")
            if artifacts.get("proxy"):
                click.echo("     🌐 proxy entry")

    if result.stale_units or result.stale_entries:
        click.echo()
        click.secho("⚠️  Stale artifacts (not owned by any applied project):", fg="yellow")
        for path in [*result.stale_units, *result.stale_entries]:
            click.echo(f"   • {path}")

    click.echo()


# ═══════════════════════════════════════════════════════════════════
#  apply
# ═══════════════════════════════════════════════════════════════════


@cli.command()
@click.option("--project", "-p", "projects", multiple=True, help="Limit to these projects.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--wait", is_flag=True, help="Wait for a concurrent apply instead of failing.")
@click.option("--mock", is_flag=True, help="Use mock adapters (no real execution).")
@click.option("--safe", is_flag=True, help="Run steps, but do not touch systemd or the proxy.")
@click.pass_context
def apply(
    ctx: click.Context,
    projects: tuple[str, ...],
    as_json: bool,
    wait: bool,
    mock: bool,
    safe: bool,
) -> None:
    """Converge every project on its declared configuration."""
    from procon.core.use_cases.apply import apply as run_apply

    result = run_apply(
        config_path=ctx.obj.get("config_path"),
        projects=list(projects) or None,
        wait=wait,
        mock_mode=mock,
        safe_mode=safe,
    )

    exit_code = 0
    if result.lock_contention:
        exit_code = EXIT_LOCKED
    elif result.cancelled:
        exit_code = EXIT_INTERRUPTED
    elif not result.ok:
        exit_code = 1

    if as_json:
        _echo_json(result.to_dict())
        sys.exit(exit_code)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(exit_code)

    report = result.report
    assert report is not None

    if not report.outcomes:
        click.secho(f"✅ No changes. {len(report.unchanged)} project(s) up to date.", fg="green")
        return

    mode_label = "[mock] " if mock else "[safe] " if safe else ""
    click.secho(f"\n⚡ {mode_label}apply — {report.operation_id}", fg="cyan", bold=True)
    click.echo()

    for name in sorted(report.outcomes):
        outcome = report.outcomes[name]
        label = f"{outcome.change.kind.value} → {outcome.state.value}"
        if outcome.succeeded:
            click.secho(f"   ✓ {name}", fg="green", nl=False)
            click.echo(f"  {label}")
        elif outcome.failed:
            click.secho(f"   ✗ {name}", fg="red", nl=False)
            click.echo(f"  {label} (in {outcome.failed_phase})")
            if outcome.error:
                _echo_lines(outcome.error, 8)
        else:
            click.secho(f"   ⊘ {name}", fg="yellow", nl=False)
            click.echo(f"  {label}")

        if ctx.obj.get("verbose"):
            for phase in outcome.phases:
                for receipt in phase.receipts:
                    if receipt.output:
                        click.echo(f"     {phase.phase} {receipt.action_id.rsplit(':', 1)[-1]}:")
                        _echo_lines(receipt.output, 10)

    click.echo()
    click.secho(
        f"   Result: {len(report.succeeded)}/{report.total} succeeded ({report.duration_ms}ms)",
        fg=_STATUS_COLORS.get(report.status, "white"),
        bold=True,
    )
    click.echo()
    sys.exit(exit_code)


# ═══════════════════════════════════════════════════════════════════
#  run
# ═══════════════════════════════════════════════════════════════════


@cli.command()
@click.argument("phases", nargs=-1, required=True)
@click.option("--project", "-p", "projects", multiple=True, help="Limit to these projects.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--dry-run", is_flag=True, help="Resolve but don't execute.")
@click.option("--mock", is_flag=True, help="Use mock adapters (no real execution).")
@click.option("--safe", is_flag=True, help="Run steps, but do not touch systemd or the proxy.")
@click.pass_context
def run(
    ctx: click.Context,
    phases: tuple[str, ...],
    projects: tuple[str, ...],
    as_json: bool,
    dry_run: bool,
    mock: bool,
    safe: bool,
) -> None:
    """Run phases ad hoc. The applied state is not changed.

    Examples:

        procon run build

        procon run stop start -p web

        procon run deploy --dry-run
    """
    from procon.core.use_cases.run import run_phases

    result = run_phases(
        list(phases),
        config_path=ctx.obj.get("config_path"),
        projects=list(projects) or None,
        dry_run=dry_run,
        mock_mode=mock,
        safe_mode=safe,
    )

    exit_code = EXIT_INTERRUPTED if result.cancelled else 0 if result.ok else 1

    if as_json:
        _echo_json(result.to_dict())
        sys.exit(exit_code)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    mode_label = "[dry-run] " if dry_run else "[mock] " if mock else "[safe] " if safe else ""
    click.secho(f"\n⚡ {mode_label}{' '.join(result.phases)}", fg="cyan", bold=True)
    click.echo()

    for name in sorted(result.projects):
        project_run = result.projects[name]
        if project_run.ok:
            click.secho(f"   ✓ {name}", fg="green")
        elif project_run.cancelled:
            click.secho(f"   ⊘ {name} (cancelled)", fg="yellow")
        else:
            click.secho(f"   ✗ {name}", fg="red", nl=False)
            click.echo(f" (in {project_run.failed_phase})")
            if project_run.error:
                _echo_lines(project_run.error, 8)

        for action in project_run.service_actions:
            click.echo(f"     ⚙️  {action}")
        for phase in project_run.phases:
            for receipt in phase.receipts:
                step = receipt.action_id.rsplit(":", 1)[-1]
                if receipt.status == "skipped":
                    click.echo(f"     ⊘ {step}: {receipt.output}")
                elif ctx.obj.get("verbose") and receipt.output:
                    click.echo(f"     {step}:")
                    _echo_lines(receipt.output, 10)

    click.echo()
    sys.exit(exit_code)


# ═══════════════════════════════════════════════════════════════════
#  run-proxy
# ═══════════════════════════════════════════════════════════════════


@cli.command("run-proxy")
@click.argument("projects", nargs=-1)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output the final report as JSON.")
@click.option("--mock", is_flag=True, help="Fake systemctl when watching units.")
@click.pass_context
def run_proxy(ctx: click.Context, projects: tuple[str, ...], as_json: bool, mock: bool) -> None:
    """Supervise daemons in the foreground.

    With PROJECTS, run their start commands as child processes and
    restart them per their restart policy (this is what service units
    execute). Without, watch every installed unit and restart the ones
    that stop.
    """
    from procon.core.use_cases.run_proxy import run_proxy as supervise

    result = supervise(
        projects=list(projects) or None,
        config_path=ctx.obj.get("config_path"),
        mock_mode=mock,
    )

    if as_json:
        _echo_json(result.to_dict())
        sys.exit(0 if result.ok else 1)

    if result.report is not None and not ctx.obj.get("quiet"):
        for name, status in sorted(result.report.daemons.items()):
            color = "red" if status.state.value == "unhealthy" else "white"
            click.secho(
                f"   {name}: {status.state.value} (restarts: {status.restarts})",
                fg=color,
            )

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)


# ═══════════════════════════════════════════════════════════════════
#  status
# ═══════════════════════════════════════════════════════════════════


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show applied projects, the last operation, and pending changes."""
    from procon.core.use_cases.status import get_status

    result = get_status(config_path=ctx.obj.get("config_path"))

    if as_json:
        _echo_json(result.to_dict())
        sys.exit(1 if result.error else 0)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    snapshot = result.snapshot
    assert snapshot is not None

    click.secho(f"\n📋 Applied projects: {len(snapshot.entries)}", fg="cyan", bold=True)
    for name, entry in sorted(snapshot.entries.items()):
        click.echo(f"     • {name}  → {entry.project_dir}")
        if entry.daemon:
            click.echo(f"       ⚙️  {entry.daemon.unit_name}")
        if entry.proxy:
            click.echo(f"       🌐 {entry.proxy.domain} → 127.0.0.1:{entry.proxy.port}")

    op = snapshot.last_operation
    if op.operation_id:
        click.echo()
        click.secho("   Last operation:", fg="white", bold=True)
        click.echo(f"     {op.command} {op.operation_id} — ", nl=False)
        click.secho(op.status, fg=_STATUS_COLORS.get(op.status, "white"))
        if op.ended_at:
            click.echo(f"     at {op.ended_at}")
        for name, error in sorted(op.failures.items()):
            click.echo(f"     ✗ {name}: {error.splitlines()[0] if error else ''}")

    pending = result.pending
    if pending is not None and not pending.empty:
        click.echo()
        click.secho(f"   Pending changes: {len(pending)}", fg="yellow", bold=True)
        for change in pending:
            marker, color = _CHANGE_MARKERS[change.kind.value]
            click.secho(f"     {marker} {change.name}", fg=color)

    if result.lock_holder:
        click.echo()
        click.secho(f"   🔒 Apply in progress (pid {result.lock_holder})", fg="yellow")

    click.echo()


# ═══════════════════════════════════════════════════════════════════
#  clean
# ═══════════════════════════════════════════════════════════════════


@cli.command()
@click.option("--project", "-p", "projects", multiple=True, help="Clean these projects' artifacts.")
@click.option("--dry-run", is_flag=True, help="Report what would be removed.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def clean(ctx: click.Context, projects: tuple[str, ...], dry_run: bool, as_json: bool) -> None:
    """Remove rendered artifact copies of projects that are no longer applied."""
    from procon.core.use_cases.clean import clean as run_clean

    result = run_clean(
        config_path=ctx.obj.get("config_path"),
        projects=list(projects) or None,
        dry_run=dry_run,
    )
    exit_code = EXIT_LOCKED if result.lock_contention else 1 if result.error else 0

    if as_json:
        _echo_json(result.to_dict())
        sys.exit(exit_code)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(exit_code)

    if not result.removed:
        click.secho("✅ Nothing to clean.", fg="green")
        return

    verb = "Would remove" if dry_run else "Removed"
    click.secho(f"🧹 {verb} artifacts of {len(result.removed)} project(s):", fg="cyan")
    for name in result.removed:
        click.echo(f"   • {name}")


# ═══════════════════════════════════════════════════════════════════
#  config
# ═══════════════════════════════════════════════════════════════════


@cli.group()
def config() -> None:
    """Configuration commands."""


@config.command("check")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def config_check(ctx: click.Context, as_json: bool) -> None:
    """Validate procon.yml."""
    from procon.core.use_cases.config_check import check_config

    result = check_config(config_path=ctx.obj.get("config_path"))

    if as_json:
        _echo_json(result.to_dict())
        sys.exit(0 if result.valid else 1)

    if result.valid:
        assert result.config is not None
        click.secho("✅ Configuration is valid", fg="green", bold=True)
        click.echo(f"   Projects: {len(result.config.projects)}")
        click.echo(f"   Tasks: {len(result.config.tasks)}")
    else:
        click.secho("❌ Configuration errors:", fg="red", bold=True)
        for err in result.errors:
            click.echo(f"   • {err}")

    if result.warnings:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        for warn in result.warnings:
            click.echo(f"   • {warn}")

    if not result.valid:
        click.echo()
        sys.exit(1)

    click.echo()


@config.command("show")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def config_show(ctx: click.Context, as_json: bool) -> None:
    """Print the configuration as procon sees it (includes merged, defaults filled)."""
    import yaml

    from procon.core.errors import ConfigError
    from procon.core.use_cases.config_check import show_config

    try:
        data = show_config(config_path=ctx.obj.get("config_path"))
    except ConfigError as e:
        if as_json:
            _echo_json({"error": str(e)})
        else:
            click.secho(f"❌ {e}", fg="red")
        sys.exit(1)

    if as_json:
        _echo_json(data)
    else:
        click.echo(yaml.safe_dump(data, sort_keys=False, default_flow_style=False))


if __name__ == "__main__":
    cli()
