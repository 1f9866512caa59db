from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from ioaudit.classify import ClassificationResult
from ioaudit.taskgraph import TaskGraph


@dataclass(slots=True)
class AuditReport:
    tasks: list[str]
    reads: list[str]
    writes: list[str]
    undeclared_reads: list[str]
    undeclared_writes: list[str]
    cross_project_reads: list[dict[str, str]]
    cross_project_writes: list[dict[str, str]]
    exit_code: int
    incomplete: bool = False
    warnings: list[str] = field(default_factory=list)
    result: ClassificationResult | None = None

    @classmethod
    def build(
        cls,
        graph: TaskGraph,
        result: ClassificationResult,
        *,
        exit_code: int,
        incomplete: bool = False,
        warnings: list[str] | None = None,
    ) -> AuditReport:
        return cls(
            tasks=[task.task_id for task in graph.tasks],
            reads=list(result.reads),
            writes=list(result.writes),
            undeclared_reads=result.undeclared_reads,
            undeclared_writes=result.undeclared_writes,
            cross_project_reads=result.cross_project_reads,
            cross_project_writes=result.cross_project_writes,
            exit_code=exit_code,
            incomplete=incomplete,
            warnings=list(warnings or []),
            result=result,
        )

    @property
    def clean(self) -> bool:
        return not (
            self.undeclared_reads
            or self.undeclared_writes
            or self.cross_project_reads
            or self.cross_project_writes
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks": list(self.tasks),
            "reads": list(self.reads),
            "writes": list(self.writes),
            "undeclaredReads": list(self.undeclared_reads),
            "undeclaredWrites": list(self.undeclared_writes),
            "crossProjectReads": [dict(item) for item in self.cross_project_reads],
            "crossProjectWrites": [dict(item) for item in self.cross_project_writes],
            "exitCode": self.exit_code,
            "incomplete": self.incomplete,
            "warnings": list(self.warnings),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)
