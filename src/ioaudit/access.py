"""Canonical access sets and the workspace scope every trace is filtered through."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

Operation = Literal["R", "W"]


@dataclass(frozen=True, slots=True)
class TraceEvent:
    pid: int | None
    operation: Operation
    path: str


@dataclass(frozen=True, slots=True)
class WorkspaceScope:
    """Immutable workspace root plus the directory names excluded from every trace."""

    root: str
    ignored_dirs: tuple[str, ...] = ()

    @classmethod
    def from_path(
        cls, root: Path | str, ignored_dirs: list[str] | tuple[str, ...] = ()
    ) -> WorkspaceScope:
        normalized = posixpath.normpath(str(Path(root).resolve()).replace("\\", "/"))
        return cls(root=normalized, ignored_dirs=tuple(ignored_dirs))

    def relativize(self, absolute_path: str) -> str | None:
        """Return the workspace-relative form of ``absolute_path``, or None when filtered out."""
        if not absolute_path.startswith("/"):
            return None
        normalized = posixpath.normpath(absolute_path)
        prefix = self.root.rstrip("/") + "/"
        if not normalized.startswith(prefix):
            return None
        relative = normalized[len(prefix):]
        if not relative:
            return None
        directories = relative.split("/")[:-1]
        if any(segment in self.ignored_dirs for segment in directories):
            return None
        return relative

    def absolute(self, relative_path: str) -> str:
        return posixpath.join(self.root, relative_path)


@dataclass(slots=True)
class CanonicalAccessSet:
    reads: set[str] = field(default_factory=set)
    writes: set[str] = field(default_factory=set)

    def add(self, event: TraceEvent, scope: WorkspaceScope) -> bool:
        relative = scope.relativize(event.path)
        if relative is None:
            return False
        target = self.reads if event.operation == "R" else self.writes
        target.add(relative)
        return True

    def is_empty(self) -> bool:
        return not self.reads and not self.writes

    def to_dict(self) -> dict[str, Any]:
        return {"reads": sorted(self.reads), "writes": sorted(self.writes)}
