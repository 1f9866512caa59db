from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click

from ioaudit.auditor import Auditor, parse_task_ref
from ioaudit.classify import ClassificationResult
from ioaudit.config import AuditConfig, load_config, save_config
from ioaudit.report import AuditReport
from ioaudit.taskgraph import (
    JsonTaskGraphCollector,
    NxTaskGraphCollector,
    SpecQueryError,
    TaskGraphCollector,
)
from ioaudit.tracers import BACKENDS, TracerError

logger = logging.getLogger("ioaudit")

BACKEND_CHOICES = ["auto", *BACKENDS]


def _resolve_config_path(workspace_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = workspace_root / config_path
    return config_path.resolve()


def _log_tracer_event(event: dict[str, Any]) -> None:
    logger.debug("tracer event %s", json.dumps(event, ensure_ascii=False, default=str))


def _build_collector(
    config: AuditConfig, workspace_root: Path, graph_file: str | None
) -> TaskGraphCollector:
    if graph_file:
        return JsonTaskGraphCollector.from_file(Path(graph_file))
    return NxTaskGraphCollector(
        workspace_root,
        binary=config.nx.binary,
        disable_daemon=config.nx.disable_daemon,
    )


def _parse_task(task_ref: str) -> tuple[str, str]:
    try:
        return parse_task_ref(task_ref)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="PROJECT:TARGET") from exc


def _echo_section(title: str, result: ClassificationResult, access: str) -> None:
    items = [item for item in result.classifications if item.access == access]
    click.echo("")
    click.echo(f"{title} ({len(items)}):")
    if not items:
        click.echo("  (none detected)")
        return
    for item in items:
        marker = "✓" if item.declared else "✗"
        suffix = ""
        if item.owner and not item.declared:
            suffix = f"  [{item.verdict.value}: {item.owner}]"
        click.echo(f"  {marker} {item.path}{suffix}")


def _echo_report(report: AuditReport) -> None:
    click.echo("=" * 60)
    click.echo("TRACING RESULTS")
    click.echo("=" * 60)
    if report.result is not None:
        _echo_section("FILES READ", report.result, "read")
        _echo_section("FILES WRITTEN", report.result, "write")

    click.echo("")
    if report.clean:
        click.echo("All I/O matches declared inputs/outputs")
    else:
        if report.undeclared_reads:
            click.echo("Undeclared inputs (files read but not in any task inputs):")
            for path in report.undeclared_reads:
                click.echo(f"  - {path}")
        if report.undeclared_writes:
            click.echo("Undeclared outputs (files written but not in any task outputs):")
            for path in report.undeclared_writes:
                click.echo(f"  - {path}")
        for label, entries in (
            ("reads", report.cross_project_reads),
            ("writes", report.cross_project_writes),
        ):
            if entries:
                click.echo(f"Cross-project {label} without a dependency-propagated pattern:")
                for entry in entries:
                    click.echo(f"  - {entry['path']} (from {entry['fromProject']})")
    for warning in report.warnings:
        click.echo(f"Warning: {warning}", err=True)

    click.echo("")
    click.echo("JSON OUTPUT:")
    click.echo(report.to_json())


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Audit build-task file I/O against declared inputs and outputs."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="[%(name)s] %(levelname)s %(message)s",
    )


@cli.command("init")
@click.option("--backend", type=click.Choice(BACKEND_CHOICES), default=None)
@click.option("--config", "config_value", default="ioaudit.toml", show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    workspace_root = Path.cwd().resolve()
    config_path = _resolve_config_path(workspace_root, config_value)
    config = load_config(config_path)
    if backend:
        config.tracer.backend = backend  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Config: {config_path}")
    click.echo(f"Trace backend: {config.tracer.backend}")


@cli.command(
    "trace",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.argument("task_ref", metavar="PROJECT:TARGET")
@click.argument("extra_args", nargs=-1, type=click.UNPROCESSED)
@click.option("--backend", type=click.Choice(BACKEND_CHOICES), default=None)
@click.option("--config", "config_value", default="ioaudit.toml", show_default=True)
@click.pass_context
def trace_command(
    ctx: click.Context,
    task_ref: str,
    extra_args: tuple[str, ...],
    backend: str | None,
    config_value: str,
) -> None:
    """Run PROJECT:TARGET under a file-access tracer; extra arguments go to the task."""
    project, target = _parse_task(task_ref)
    workspace_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(workspace_root, config_value))
    auditor = Auditor(
        config,
        workspace_root,
        _build_collector(config, workspace_root, None),
        event_hook=_log_tracer_event,
    )
    try:
        auditor.backend = auditor.build_backend(backend)
        report = asyncio.run(auditor.run(project, target, extra_args))
    except (TracerError, SpecQueryError) as exc:
        raise click.ClickException(str(exc)) from exc

    _echo_report(report)
    ctx.exit(report.exit_code)


@cli.command("analyze")
@click.argument("task_ref", metavar="PROJECT:TARGET")
@click.option(
    "--trace",
    "trace_file",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option(
    "--backend",
    type=click.Choice(sorted(BACKENDS)),
    required=True,
    help="Grammar of the captured trace.",
)
@click.option("--graph", "graph_file", default=None, help="Static task graph JSON.")
@click.option("--config", "config_value", default="ioaudit.toml", show_default=True)
def analyze_command(
    task_ref: str,
    trace_file: Path,
    backend: str,
    graph_file: str | None,
    config_value: str,
) -> None:
    """Classify a previously captured trace for PROJECT:TARGET."""
    project, target = _parse_task(task_ref)
    workspace_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(workspace_root, config_value))
    try:
        collector = _build_collector(config, workspace_root, graph_file)
        auditor = Auditor(config, workspace_root, collector)
        report = auditor.analyze(
            project,
            target,
            trace_file.read_text(encoding="utf-8", errors="replace"),
            backend=auditor.build_backend(backend),
        )
    except (TracerError, SpecQueryError) as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_report(report)


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(BACKEND_CHOICES))
@click.option("--config", "config_value", default="ioaudit.toml", show_default=True)
def backend_command(backend_name: str, config_value: str) -> None:
    workspace_root = Path.cwd().resolve()
    config_path = _resolve_config_path(workspace_root, config_value)
    config = load_config(config_path)
    config.tracer.backend = backend_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Trace backend set to {backend_name}")
