"""Command-line interface for oneshot."""

import functools
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from oneshot import __version__
from oneshot.config.loader import BACKENDS, ConfigError, Settings, read_settings
from oneshot.core.connection import connect
from oneshot.core.orchestrator import ScheduleRequest, run_schedule
from oneshot.core.validator import (
    ConfirmationDeclined,
    ValidationContext,
    ValidationError,
    instance_field,
    validate,
)
from oneshot.scheduler.agent import AgentScheduler
from oneshot.scheduler.base import PlanSummary, Scheduler, SchedulingError
from oneshot.scheduler.task import TaskScheduler

DEFAULT_CONFIG = Path.home() / ".config" / "oneshot" / "config.yaml"


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_settings(config: str) -> Settings:
    try:
        return read_settings(Path(config))
    except ConfigError as exc:
        click.echo(str(exc), err=True)
        sys.exit(1)


def _validation_context(settings: Settings) -> ValidationContext:
    return ValidationContext(
        connector=functools.partial(connect, settings=settings.connection),
        warn=lambda msg: click.echo(f"⚠  {msg}", err=True),
        confirm=lambda msg: click.confirm(msg, default=False),
    )


def make_scheduler(kind: str, vctx: ValidationContext, settings: Settings) -> Scheduler:
    """Build the backend named ``kind`` from settings."""
    if kind == "agent":
        return AgentScheduler(
            vctx,
            server_name=settings.agent.server_name,
            owner_login=settings.agent.owner_login,
        )
    return TaskScheduler(
        script_dir=settings.task.script_dir,
        python=settings.task.python or sys.executable,
        powershell=settings.task.powershell,
        run_as=settings.task.run_as,
        execution_time_limit_hours=settings.task.execution_time_limit_hours,
        sqlcmd=settings.task.sqlcmd,
        connection=settings.connection,
    )


def _ask(label: str, default: Optional[str]) -> str:
    if default is None:
        return click.prompt(label)
    return click.prompt(label, default=default, show_default=bool(default))


def _print_summary(summary: PlanSummary) -> None:
    when = summary.start.strftime("%Y-%m-%d %H:%M") if summary.start else "no trigger"
    click.echo(f"✓  {summary.kind} '{summary.identity}'")
    click.echo(f"   Runs:      {when} ({summary.schedule_type or '-'})")
    click.echo(f"   Enabled:   {'yes' if summary.enabled else 'no'}")
    if summary.schedule_name:
        click.echo(f"   Schedule:  {summary.schedule_name}")
    if summary.location:
        click.echo(f"   Location:  {summary.location}")
    if summary.description:
        click.echo(f"   About:     {summary.description}")
    click.echo("")
    click.echo(f"   {'#':<3} {'STEP':<32} {'ON SUCCESS':<12} {'ON FAILURE'}")
    click.echo("   " + "─" * 60)
    for number, step in enumerate(summary.steps, start=1):
        ok = f"→ {step.on_success + 1}" if step.on_success is not None else "end"
        fail = f"→ {step.on_failure + 1}" if step.on_failure is not None else "end"
        click.echo(f"   {number:<3} {step.name:<32} {ok:<12} {fail}")
        lines = step.command.strip().splitlines()
        first = lines[0] if lines else ""
        click.echo(f"       {first}{' …' if len(lines) > 1 else ''}")


# ── Root group ────────────────────────────────────────────────────────────────


@click.group()
@click.version_option(version=__version__, prog_name="oneshot")
@click.option(
    "--config",
    "-c",
    default=str(DEFAULT_CONFIG),
    envvar="ONESHOT_CONFIG",
    show_default=True,
    help="Path to oneshot config.yaml",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config: str, verbose: bool) -> None:
    """oneshot — schedule a one-off SQL Server backup that cleans up after itself."""
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


# ── schedule command ──────────────────────────────────────────────────────────


@main.command()
@click.option("--instance", "-S", help="SQL Server instance (host name)")
@click.option("--databases", "-d", help="Comma-separated database names")
@click.option("--destination", "-o", help="Backup directory (local or UNC)")
@click.option("--name", "-n", help="Task / job name")
@click.option("--at", "at", help="Run time, YYYY-MM-DD HH:MM (local time)")
@click.option("--backend", "-b", type=click.Choice(BACKENDS), help="task or agent")
@click.option("--description", help="Description stored with the task / job")
@click.pass_context
def schedule(
    ctx: click.Context,
    instance: Optional[str],
    databases: Optional[str],
    destination: Optional[str],
    name: Optional[str],
    at: Optional[str],
    backend: Optional[str],
    description: Optional[str],
) -> None:
    """Schedule a one-off backup. Missing values are prompted for."""
    settings = _load_settings(ctx.obj["config"])
    request = ScheduleRequest(
        instance=instance,
        databases=databases,
        destination=destination,
        name=name,
        at=at,
        description=description,
        backend=backend or settings.defaults.get("backend", "task"),
        defaults=settings.defaults,
    )
    vctx = _validation_context(settings)
    try:
        outcome = run_schedule(
            request,
            lambda kind, c: make_scheduler(kind, c, settings),
            vctx,
            _ask,
            click.echo,
        )
    except (SchedulingError, ConfirmationDeclined) as exc:
        click.echo(f"✗  {type(exc).__name__}: {exc}", err=True)
        sys.exit(1)
    finally:
        vctx.close()

    _print_summary(outcome.summary)

    from oneshot.notifications.notify import send_notification

    send_notification(outcome.summary, settings.raw)


# ── show / remove commands ────────────────────────────────────────────────────


def _lookup_scheduler(
    backend: Optional[str],
    instance: Optional[str],
    vctx: ValidationContext,
    settings: Settings,
) -> Scheduler:
    kind = backend or settings.defaults.get("backend", "task")
    if kind == "agent":
        instance = instance or settings.defaults.get("instance")
        if not instance:
            click.echo("--instance is required for the agent backend.", err=True)
            sys.exit(1)
        validate(instance_field(), instance, vctx)
    return make_scheduler(kind, vctx, settings)


@main.command()
@click.argument("name")
@click.option("--backend", "-b", type=click.Choice(BACKENDS), help="task or agent")
@click.option("--instance", "-S", help="SQL Server instance (agent backend)")
@click.pass_context
def show(ctx: click.Context, name: str, backend: Optional[str], instance: Optional[str]) -> None:
    """Show a scheduled task / job as the backend stores it."""
    settings = _load_settings(ctx.obj["config"])
    vctx = _validation_context(settings)
    try:
        scheduler = _lookup_scheduler(backend, instance, vctx, settings)
        summary = scheduler.describe(scheduler.handle_for(name))
    except (SchedulingError, ValidationError) as exc:
        click.echo(f"✗  {exc}", err=True)
        sys.exit(1)
    finally:
        vctx.close()
    _print_summary(summary)


@main.command()
@click.argument("name")
@click.option("--backend", "-b", type=click.Choice(BACKENDS), help="task or agent")
@click.option("--instance", "-S", help="SQL Server instance (agent backend)")
@click.pass_context
def remove(ctx: click.Context, name: str, backend: Optional[str], instance: Optional[str]) -> None:
    """Unregister a task / job, e.g. one left behind by a failed run."""
    settings = _load_settings(ctx.obj["config"])
    vctx = _validation_context(settings)
    try:
        scheduler = _lookup_scheduler(backend, instance, vctx, settings)
        if not scheduler.exists(name):
            click.echo(f"{scheduler.label.capitalize()} '{name}' not found.", err=True)
            sys.exit(1)
        scheduler.remove(scheduler.handle_for(name))
    except (SchedulingError, ValidationError) as exc:
        click.echo(f"✗  {exc}", err=True)
        sys.exit(1)
    finally:
        vctx.close()
    click.echo(f"Removed {scheduler.label} '{name}'.")


if __name__ == "__main__":
    main()
