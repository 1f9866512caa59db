from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Literal

from ioaudit.access import CanonicalAccessSet, WorkspaceScope
from ioaudit.config import DEFAULT_BOOKKEEPING_FILES, DEFAULT_BOOKKEEPING_PATTERNS
from ioaudit.resolver import PatternResolver, ResolvedPatternSet
from ioaudit.taskgraph import ProjectGraph, TaskGraph, TaskSpec

logger = logging.getLogger(__name__)

AccessKind = Literal["read", "write"]


class Verdict(str, Enum):
    DECLARED_INPUT = "DeclaredInput"
    DECLARED_OUTPUT = "DeclaredOutput"
    UNDECLARED_READ = "UndeclaredRead"
    UNDECLARED_WRITE = "UndeclaredWrite"
    CROSS_PROJECT = "CrossProjectViolation"


@dataclass(frozen=True, slots=True)
class Classification:
    path: str
    access: AccessKind
    verdict: Verdict
    owner: str | None = None

    @property
    def declared(self) -> bool:
        return self.verdict in {Verdict.DECLARED_INPUT, Verdict.DECLARED_OUTPUT}


@dataclass(frozen=True, slots=True)
class TaskPatterns:
    task: TaskSpec
    inputs: ResolvedPatternSet
    outputs: ResolvedPatternSet


@dataclass(slots=True)
class ClassificationResult:
    classifications: list[Classification] = field(default_factory=list)
    reads: list[str] = field(default_factory=list)
    writes: list[str] = field(default_factory=list)
    bookkeeping_skipped: int = 0
    directories_skipped: int = 0

    def _paths(self, access: AccessKind, verdict: Verdict) -> list[str]:
        return [
            item.path
            for item in self.classifications
            if item.access == access and item.verdict is verdict
        ]

    def _cross_project(self, access: AccessKind) -> list[dict[str, str]]:
        return [
            {"path": item.path, "fromProject": item.owner or ""}
            for item in self.classifications
            if item.access == access and item.verdict is Verdict.CROSS_PROJECT
        ]

    @property
    def declared_reads(self) -> list[str]:
        return self._paths("read", Verdict.DECLARED_INPUT)

    @property
    def declared_writes(self) -> list[str]:
        return self._paths("write", Verdict.DECLARED_OUTPUT)

    @property
    def undeclared_reads(self) -> list[str]:
        return self._paths("read", Verdict.UNDECLARED_READ)

    @property
    def undeclared_writes(self) -> list[str]:
        return self._paths("write", Verdict.UNDECLARED_WRITE)

    @property
    def cross_project_reads(self) -> list[dict[str, str]]:
        return self._cross_project("read")

    @property
    def cross_project_writes(self) -> list[dict[str, str]]:
        return self._cross_project("write")

    @property
    def has_violations(self) -> bool:
        return any(not item.declared for item in self.classifications)


class BookkeepingFilter:
    """Recognises files read by the build system itself rather than by task logic."""

    def __init__(
        self,
        files: Iterable[str] = DEFAULT_BOOKKEEPING_FILES,
        patterns: Iterable[str] = DEFAULT_BOOKKEEPING_PATTERNS,
    ) -> None:
        self.files = frozenset(files)
        self.patterns = tuple(re.compile(pattern) for pattern in patterns)

    def matches(self, relative_path: str) -> bool:
        if relative_path in self.files:
            return True
        return any(pattern.search(relative_path) for pattern in self.patterns)


class ClassificationEngine:
    def __init__(
        self,
        scope: WorkspaceScope,
        projects: ProjectGraph,
        *,
        bookkeeping: BookkeepingFilter | None = None,
        is_directory: Callable[[str], bool] | None = None,
    ) -> None:
        self.scope = scope
        self.projects = projects
        self.bookkeeping = bookkeeping or BookkeepingFilter()
        self.is_directory = is_directory or self._is_directory_on_disk

    def _is_directory_on_disk(self, relative_path: str) -> bool:
        return Path(self.scope.absolute(relative_path)).is_dir()

    @staticmethod
    def _claimant(
        absolute_path: str, access: AccessKind, tasks: Sequence[TaskPatterns]
    ) -> str | None:
        for index, patterns in enumerate(tasks):
            if access == "write":
                candidates = (patterns.outputs,)
            elif index == 0:
                candidates = (patterns.inputs,)
            else:
                # A dependency's outputs are legitimate inputs of its dependents.
                candidates = (patterns.inputs, patterns.outputs)
            if any(candidate.matches(absolute_path) for candidate in candidates):
                return patterns.task.task_id
        return None

    def classify_path(
        self, relative_path: str, access: AccessKind, tasks: Sequence[TaskPatterns]
    ) -> Classification:
        claimant = self._claimant(self.scope.absolute(relative_path), access, tasks)
        if claimant is not None:
            verdict = Verdict.DECLARED_INPUT if access == "read" else Verdict.DECLARED_OUTPUT
            return Classification(relative_path, access, verdict, claimant)

        owner = self.projects.owner_of(relative_path)
        if owner is not None and tasks and owner != tasks[0].task.project:
            return Classification(relative_path, access, Verdict.CROSS_PROJECT, owner)

        verdict = Verdict.UNDECLARED_READ if access == "read" else Verdict.UNDECLARED_WRITE
        return Classification(relative_path, access, verdict, None)

    def classify(
        self, access: CanonicalAccessSet, tasks: Sequence[TaskPatterns]
    ) -> ClassificationResult:
        """Classify every observed path; ``tasks`` starts with the task under test."""
        result = ClassificationResult()
        observed: list[tuple[str, AccessKind]] = [
            *((path, "read") for path in sorted(access.reads)),
            *((path, "write") for path in sorted(access.writes)),
        ]
        for relative_path, kind in observed:
            if self.bookkeeping.matches(relative_path):
                result.bookkeeping_skipped += 1
                continue
            (result.reads if kind == "read" else result.writes).append(relative_path)
            if self.is_directory(relative_path):
                result.directories_skipped += 1
                continue
            result.classifications.append(self.classify_path(relative_path, kind, tasks))
        return result


def resolve_task_patterns(resolver: PatternResolver, graph: TaskGraph) -> list[TaskPatterns]:
    """Resolve the task under test and each dependency; broken dependencies are skipped."""
    resolved = [
        TaskPatterns(
            task=graph.task,
            inputs=resolver.resolve_task(graph.task, "inputs", graph.projects, graph.dependencies),
            outputs=resolver.resolve_task(
                graph.task, "outputs", graph.projects, graph.dependencies
            ),
        )
    ]
    for dependency in graph.dependencies:
        try:
            resolved.append(
                TaskPatterns(
                    task=dependency,
                    inputs=resolver.resolve_task(dependency, "inputs", graph.projects),
                    outputs=resolver.resolve_task(dependency, "outputs", graph.projects),
                )
            )
        except (TypeError, ValueError, AttributeError, re.error) as exc:
            message = f"Skipping malformed dependency spec {dependency.task_id}: {exc}"
            logger.warning(message)
            graph.warnings.append(message)
    return resolved
