# cli.py
from __future__ import annotations

import json
import logging
import signal
import sys
from pathlib import Path

import click

from .cache import DEFAULT_CACHE_DIR, FileCacheProvider
from .config import DEFAULT_CONFIG_FILES, discover_config, load_config
from .errors import ConfigError
from .model import EventDescriptor, PipelineConfig, PipelineRunReport, RunStatus
from .runner import Runner, select_job
from .triggers import event_from_environment, parse_event_kind, should_run
from .ui.console import Console, get_console, set_console

CONFIG_ERROR_EXIT = 2


def discover_pipeline(config_arg: str | None) -> Path:
    """
    Discover the pipeline definition from argument or default.

    Raises:
        SystemExit: If no definition can be found
    """
    console = get_console()

    if config_arg:
        config_path = Path(config_arg)
        if not config_path.exists():
            console.print_error(
                "Pipeline definition not found",
                f"Could not find pipeline file: {config_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  gateci run --config gateci.yml",
            )
            sys.exit(CONFIG_ERROR_EXIT)
        return config_path

    found = discover_config(".")
    if found is None:
        console.print_error(
            "No pipeline definition found",
            "Could not find any pipeline file.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_CONFIG_FILES)],
            suggestion="Create gateci.yml, or specify one explicitly:\n  gateci run --config my_pipeline.yml",
        )
        sys.exit(CONFIG_ERROR_EXIT)
    return found


def resolve_event(event_kind: str | None, branch: str | None) -> EventDescriptor:
    """CLI flags win; otherwise read the event from the hosting CI / git."""
    if event_kind is None:
        detected = event_from_environment()
        if branch is not None:
            return EventDescriptor(kind=detected.kind, branch=branch)
        return detected
    return EventDescriptor(kind=parse_event_kind(event_kind), branch=branch)


def _load(config_path: Path) -> PipelineConfig:
    console = get_console()
    try:
        return load_config(config_path)
    except ConfigError as e:
        errors = e.details.get("errors") or [f"{k}: {v}" for k, v in e.details.items()]
        console.print_error("Invalid pipeline definition", e.message, details=errors)
        sys.exit(CONFIG_ERROR_EXIT)


def _write_report(path: str, reports: list[PipelineRunReport]) -> None:
    data = [r.to_dict() for r in reports]
    Path(path).write_text(json.dumps(data if len(data) != 1 else data[0], indent=2), encoding="utf-8")


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """gateci - gated, fail-fast build pipeline runner."""
    console = Console(debug=debug)
    set_console(console)
    logging.getLogger("gateci").setLevel(logging.DEBUG if debug else logging.WARNING)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--config", "config_arg", default=None, help="Pipeline file (defaults to gateci.yml if present)")
@click.option("--event", "event_kind", type=click.Choice(["push", "pull_request"]), default=None,
              help="Triggering event (defaults to the CI environment, else a push)")
@click.option("--branch", default=None, help="Branch of the triggering event (defaults to the current branch)")
@click.option("--job", "job_name", default=None, help="Run a single job (defaults to every job in order)")
@click.option("--workspace", default=".", show_default=True, type=click.Path(file_okay=False), help="Workspace directory")
@click.option("--cache-dir", default=DEFAULT_CACHE_DIR, show_default=True, help="Cache directory")
@click.option("--no-cache", is_flag=True, default=False, help="Run cache steps as no-ops")
@click.option("--fail-fast/--no-fail-fast", default=True, help="Stop running further jobs after a failed job")
@click.option("--report-json", default=None, help="Write the machine-readable report to this file")
@click.pass_context
def run(ctx, config_arg, event_kind, branch, job_name, workspace, cache_dir, no_cache, fail_fast, report_json):
    """Run a pipeline for the triggering event."""
    console = get_console()
    config_path = discover_pipeline(config_arg)
    config = _load(config_path)

    runner = Runner(
        workspace=workspace,
        cache=None if no_cache else FileCacheProvider(cache_dir),
    )

    def _cancel(signum, frame):
        console.print_info(f"\nReceived signal {signum}, cancelling...")
        runner.cancel()

    previous = {s: signal.signal(s, _cancel) for s in (signal.SIGINT, signal.SIGTERM)}
    try:
        event = resolve_event(event_kind, branch)
        console.print_debug(f"event: {event.describe()}")
        if job_name is not None:
            reports = [runner.run(event, config, job_name)]
        else:
            reports = runner.run_all(event, config, fail_fast=fail_fast)
    except ConfigError as e:
        console.print_error("Invalid pipeline definition", e.message, details=[f"{k}: {v}" for k, v in e.details.items()])
        sys.exit(CONFIG_ERROR_EXIT)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)
    finally:
        for s, handler in previous.items():
            if handler is not None:
                signal.signal(s, handler)

    if report_json:
        _write_report(report_json, reports)

    statuses = [r.status for r in reports]
    if RunStatus.CANCELLED in statuses:
        sys.exit(130)
    if RunStatus.FAILED in statuses:
        sys.exit(1)


@cli.command()
@click.option("--config", "config_arg", default=None, help="Pipeline file (defaults to gateci.yml if present)")
@click.option("--event", "event_kind", type=click.Choice(["push", "pull_request"]), default=None,
              help="Also report whether this event would trigger a run")
@click.option("--branch", default=None, help="Branch of the event")
@click.option("--job", "job_name", default=None, help="Only show this job")
def check(config_arg, event_kind, branch, job_name):
    """Validate a pipeline definition and print its plan."""
    console = get_console()
    config_path = discover_pipeline(config_arg)
    config = _load(config_path)

    try:
        jobs = [select_job(config, job_name)] if job_name else list(config.jobs.values())
    except ConfigError as e:
        console.print_error("Invalid job selection", e.message, details=[f"{k}: {v}" for k, v in e.details.items()])
        sys.exit(CONFIG_ERROR_EXIT)

    console.print_info(f"{config_path.name}: OK")
    if config.toolchain:
        console.print_info(f"toolchain: {config.toolchain.version}")
    for j in jobs:
        console.print_plan(j.name, j.runs_on, j.steps)

    if event_kind is not None:
        event = EventDescriptor(kind=parse_event_kind(event_kind), branch=branch)
        verdict = "would run" if should_run(event, config.triggers) else "would be skipped"
        console.print_info(f"\n{event.describe()}: {verdict}")


@cli.group()
def cache():
    """Inspect and maintain the local cache."""


@cache.command()
@click.option("--cache-dir", default=DEFAULT_CACHE_DIR, show_default=True, help="Cache directory")
@click.option("--keep", default=3, show_default=True, type=click.IntRange(min=0), help="Number of newest entries to keep")
def prune(cache_dir, keep):
    """Delete all but the newest cache entries."""
    removed = FileCacheProvider(cache_dir).prune(keep=keep)
    get_console().print_info(f"removed {removed} cache entr{'y' if removed == 1 else 'ies'}")


def main() -> None:
    logging.basicConfig(format="%(levelname)s %(name)s: %(message)s")
    cli()


if __name__ == "__main__":
    main()
