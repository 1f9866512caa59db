from __future__ import annotations

import logging
import os
from collections.abc import Callable, Sequence
from pathlib import Path

from ioaudit.access import CanonicalAccessSet, WorkspaceScope
from ioaudit.classify import (
    BookkeepingFilter,
    ClassificationEngine,
    ClassificationResult,
    resolve_task_patterns,
)
from ioaudit.config import AuditConfig
from ioaudit.report import AuditReport
from ioaudit.resolver import PatternResolver
from ioaudit.taskgraph import TaskGraph, TaskGraphCollector
from ioaudit.tracers import TimingContract, TraceBackend, TracerEventHook, select_backend

logger = logging.getLogger(__name__)


def parse_task_ref(value: str) -> tuple[str, str]:
    project, separator, target = value.partition(":")
    if not separator or not project or not target:
        raise ValueError(f"Expected <project>:<target>, got {value!r}")
    return project, target


def timing_from_config(config: AuditConfig) -> TimingContract:
    return TimingContract(
        startup_grace_ms=max(0, int(config.tracer.startup_grace_ms)),
        drain_grace_ms=max(0, int(config.tracer.drain_grace_ms)),
        stop_timeout_ms=max(0, int(config.tracer.stop_timeout_ms)),
        attach_timeout_ms=max(0, int(config.tracer.attach_timeout_ms)),
        pid_poll_interval_ms=max(10, int(config.tracer.pid_poll_interval_ms)),
    )


class Auditor:
    """Collect -> trace -> normalize -> resolve -> classify, once per invocation."""

    def __init__(
        self,
        config: AuditConfig,
        workspace_root: Path,
        collector: TaskGraphCollector,
        *,
        backend: TraceBackend | None = None,
        is_directory: Callable[[str], bool] | None = None,
        event_hook: TracerEventHook | None = None,
    ) -> None:
        self.config = config
        self.scope = WorkspaceScope.from_path(workspace_root, config.workspace.ignored_dirs)
        self.workspace_root = Path(self.scope.root)
        self.collector = collector
        self.backend = backend
        self.is_directory = is_directory
        self.event_hook = event_hook
        self.bookkeeping = BookkeepingFilter(
            config.bookkeeping.files, config.bookkeeping.patterns
        )

    def build_backend(self, name: str | None = None) -> TraceBackend:
        output_dir = Path(self.config.tracer.output_dir) if self.config.tracer.output_dir else None
        return select_backend(
            name or self.config.tracer.backend,
            self.scope,
            timing_from_config(self.config),
            output_dir=output_dir,
            event_hook=self.event_hook,
        )

    def task_command(self, project: str, target: str, extra_args: Sequence[str]) -> list[str]:
        command = [self.config.nx.binary, "nx", "run", f"{project}:{target}"]
        if self.config.nx.exclude_task_dependencies:
            command.append("--excludeTaskDependencies")
        command.extend(extra_args)
        return command

    def task_environment(self) -> dict[str, str]:
        env = os.environ.copy()
        if self.config.nx.disable_daemon:
            env["NX_DAEMON"] = "false"
        return env

    def classify(self, graph: TaskGraph, access: CanonicalAccessSet) -> ClassificationResult:
        resolver = PatternResolver(self.scope.root, graph.named_groups)
        tasks = resolve_task_patterns(resolver, graph)
        for patterns in tasks:
            for cycle in (*patterns.inputs.truncated_cycles, *patterns.outputs.truncated_cycles):
                logger.debug("%s: truncated named group cycle %s", patterns.task.task_id, cycle)
        engine = ClassificationEngine(
            self.scope,
            graph.projects,
            bookkeeping=self.bookkeeping,
            is_directory=self.is_directory,
        )
        return engine.classify(access, tasks)

    def _report(
        self,
        graph: TaskGraph,
        access: CanonicalAccessSet,
        *,
        exit_code: int,
        incomplete: bool,
        warnings: list[str],
    ) -> AuditReport:
        result = self.classify(graph, access)
        all_warnings = [*graph.warnings, *warnings]
        return AuditReport.build(
            graph,
            result,
            exit_code=exit_code,
            incomplete=incomplete or bool(all_warnings),
            warnings=all_warnings,
        )

    async def run(self, project: str, target: str, extra_args: Sequence[str] = ()) -> AuditReport:
        backend = self.backend or self.build_backend()
        graph = self.collector.collect(project, target)
        logger.info(
            "Tracing %s with %s (%d dependency task(s))",
            graph.task.task_id,
            backend.name,
            len(graph.dependencies),
        )
        if self.config.nx.warm_up:
            self.collector.warm_up()

        run = await backend.trace(
            self.task_command(project, target, extra_args),
            cwd=self.workspace_root,
            env=self.task_environment(),
        )
        if run.exit_code != 0:
            logger.info("Task %s exited with code %d", graph.task.task_id, run.exit_code)
        return self._report(
            graph,
            run.access,
            exit_code=run.exit_code,
            incomplete=run.incomplete,
            warnings=run.warnings,
        )

    def analyze(
        self,
        project: str,
        target: str,
        raw_text: str,
        *,
        backend: TraceBackend | None = None,
        exit_code: int = 0,
    ) -> AuditReport:
        """Classify an already captured trace without running anything."""
        graph = self.collector.collect(project, target)
        tracer = backend or self.backend or self.build_backend()
        access = tracer.normalize(raw_text)
        return self._report(graph, access, exit_code=exit_code, incomplete=False, warnings=[])
