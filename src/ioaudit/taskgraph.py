from __future__ import annotations

import json
import logging
import os
import subprocess
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

PatternToken = str | dict[str, Any]
NamedGroupTable = Mapping[str, Sequence[PatternToken]]

# Nx applies these when a target declares no inputs of its own.
DEFAULT_TARGET_INPUTS: tuple[PatternToken, ...] = ("default", "^default")
DEFAULT_NAMED_GROUPS: dict[str, list[PatternToken]] = {"default": ["{projectRoot}/**/*"]}


class SpecQueryError(RuntimeError):
    """Raised when the requested project/target cannot be resolved."""


@dataclass(frozen=True, slots=True)
class TaskSpec:
    project: str
    target: str
    root: str
    inputs: tuple[PatternToken, ...] = ()
    outputs: tuple[PatternToken, ...] = ()
    depends_on: tuple[str, ...] = ()
    options: Mapping[str, Any] = field(default_factory=dict)

    @property
    def task_id(self) -> str:
        return f"{self.project}:{self.target}"


@dataclass(frozen=True, slots=True)
class ProjectGraph:
    roots: Mapping[str, str] = field(default_factory=dict)
    dependencies: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    def root_of(self, project: str) -> str | None:
        return self.roots.get(project)

    def dependency_roots(self, project: str) -> list[str]:
        roots: list[str] = []
        for dependency in self.dependencies.get(project, ()):
            root = self.roots.get(dependency)
            if root is not None and root not in roots:
                roots.append(root)
        return roots

    def owner_of(self, relative_path: str) -> str | None:
        """Project whose root is the longest prefix of ``relative_path``.

        Projects rooted at the workspace root never own anything here.
        """
        owner: str | None = None
        owner_root = ""
        for project, root in self.roots.items():
            root = root.strip("/")
            if root in {"", "."}:
                continue
            if relative_path == root or relative_path.startswith(root + "/"):
                if len(root) > len(owner_root):
                    owner, owner_root = project, root
        return owner


@dataclass(slots=True)
class TaskGraph:
    task: TaskSpec
    dependencies: list[TaskSpec]
    named_groups: NamedGroupTable
    projects: ProjectGraph
    warnings: list[str] = field(default_factory=list)

    @property
    def tasks(self) -> list[TaskSpec]:
        return [self.task, *self.dependencies]


def with_default_groups(
    groups: Mapping[str, Sequence[PatternToken]],
) -> dict[str, list[PatternToken]]:
    merged: dict[str, list[PatternToken]] = {
        name: list(tokens) for name, tokens in DEFAULT_NAMED_GROUPS.items()
    }
    for name, tokens in groups.items():
        # Malformed values are left for the resolver to reject.
        merged[name] = list(tokens) if isinstance(tokens, list) else tokens
    return merged


def _same_project_targets(depends_on: Sequence[Any]) -> list[str]:
    targets: list[str] = []
    for entry in depends_on:
        if isinstance(entry, str):
            if entry.startswith("^") or "*" in entry:
                continue
            targets.append(entry)
        elif isinstance(entry, dict):
            target = entry.get("target")
            if not isinstance(target, str) or entry.get("dependencies"):
                continue
            projects = entry.get("projects")
            if projects is not None and projects not in ("self", ["self"]):
                continue
            targets.append(target)
    return targets


def _list_field(target_config: Mapping[str, Any], key: str, task_id: str) -> list[Any] | None:
    value = target_config.get(key)
    if value is None or isinstance(value, list):
        return value
    raise SpecQueryError(f'Malformed "{key}" in {task_id}: expected a list, got {value!r}')


def task_from_project_config(project: str, target: str, config: Mapping[str, Any]) -> TaskSpec:
    """Build a TaskSpec; malformed target configuration raises SpecQueryError."""
    targets = config.get("targets")
    if not isinstance(targets, dict) or not isinstance(targets.get(target), dict):
        raise SpecQueryError(f'Target "{target}" not found in project "{project}"')
    target_config = targets[target]
    task_id = f"{project}:{target}"

    inputs = _list_field(target_config, "inputs", task_id)
    if inputs is None:
        inputs = list(DEFAULT_TARGET_INPUTS)
    outputs = _list_field(target_config, "outputs", task_id) or []
    depends_on = [
        f"{project}:{name}"
        for name in _same_project_targets(_list_field(target_config, "dependsOn", task_id) or [])
    ]
    options = target_config.get("options") or {}
    if not isinstance(options, dict):
        raise SpecQueryError(f'Malformed "options" in {task_id}: expected an object')
    root = config.get("root", "")
    if not isinstance(root, str):
        raise SpecQueryError(f'Malformed "root" in project "{project}"')

    return TaskSpec(
        project=project,
        target=target,
        root=root,
        inputs=tuple(inputs),
        outputs=tuple(outputs),
        depends_on=tuple(depends_on),
        options=dict(options),
    )


class TaskGraphCollector(ABC):
    @abstractmethod
    def collect(self, project: str, target: str) -> TaskGraph:
        """Return the task under test, its same-project dependencies and the project graph."""

    def warm_up(self) -> None:
        """Prime build-system caches before tracing; optional."""


class ProjectConfigCollector(TaskGraphCollector):
    """Builds a :class:`TaskGraph` from per-project configuration documents."""

    @abstractmethod
    def project_config(self, project: str) -> dict[str, Any]:
        """Return the resolved configuration of one project or raise SpecQueryError."""

    @abstractmethod
    def workspace_named_groups(self) -> Mapping[str, Sequence[PatternToken]]:
        ...

    @abstractmethod
    def project_graph(self) -> ProjectGraph:
        ...

    def collect(self, project: str, target: str) -> TaskGraph:
        config = self.project_config(project)
        task = task_from_project_config(project, target, config)

        named_groups = dict(self.workspace_named_groups())
        project_groups = config.get("namedInputs")
        if isinstance(project_groups, dict):
            named_groups.update(project_groups)

        warnings: list[str] = []
        dependencies = self._collect_dependencies(task, config, warnings)

        try:
            graph = self.project_graph()
        except SpecQueryError as exc:
            message = f"Project graph unavailable, cross-project detection limited: {exc}"
            logger.warning(message)
            warnings.append(message)
            graph = ProjectGraph()
        if graph.root_of(project) is None:
            graph = ProjectGraph({**graph.roots, project: task.root}, graph.dependencies)

        return TaskGraph(
            task=task,
            dependencies=dependencies,
            named_groups=with_default_groups(named_groups),
            projects=graph,
            warnings=warnings,
        )

    def _collect_dependencies(
        self, task: TaskSpec, config: Mapping[str, Any], warnings: list[str]
    ) -> list[TaskSpec]:
        dependencies: list[TaskSpec] = []
        visited = {task.task_id}
        queue = deque(task.depends_on)
        while queue:
            task_id = queue.popleft()
            if task_id in visited:
                continue
            visited.add(task_id)
            _, dep_target = task_id.split(":", 1)
            try:
                dependency = task_from_project_config(task.project, dep_target, config)
            except SpecQueryError as exc:
                message = f"Skipping dependency {task_id}: {exc}"
                logger.warning(message)
                warnings.append(message)
                continue
            dependencies.append(dependency)
            queue.extend(dependency.depends_on)
        return dependencies


CommandRunner = Callable[[Sequence[str], Path, Mapping[str, str]], str]


def _run_command(command: Sequence[str], cwd: Path, env: Mapping[str, str]) -> str:
    try:
        proc = subprocess.run(
            list(command),
            cwd=cwd,
            env=dict(env),
            text=True,
            capture_output=True,
        )
    except FileNotFoundError as exc:
        raise SpecQueryError(f"Command not found: {command[0]}") from exc
    if proc.returncode != 0:
        raise SpecQueryError(proc.stderr.strip() or proc.stdout.strip() or "command failed")
    return proc.stdout


class NxTaskGraphCollector(ProjectConfigCollector):
    def __init__(
        self,
        workspace_root: Path,
        *,
        binary: str = "npx",
        disable_daemon: bool = True,
        runner: CommandRunner | None = None,
    ) -> None:
        self.workspace_root = workspace_root
        self.binary = binary
        self.disable_daemon = disable_daemon
        self.runner = runner or _run_command

    def environment(self) -> dict[str, str]:
        env = os.environ.copy()
        if self.disable_daemon:
            env["NX_DAEMON"] = "false"
        return env

    def nx_command(self, *args: str) -> list[str]:
        return [self.binary, "nx", *args]

    def _nx_json(self, *args: str) -> Any:
        output = self.runner(self.nx_command(*args), self.workspace_root, self.environment())
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise SpecQueryError(f"nx {args[0]} returned invalid JSON: {exc}") from exc

    def project_config(self, project: str) -> dict[str, Any]:
        try:
            payload = self._nx_json("show", "project", project, "--json")
        except SpecQueryError as exc:
            raise SpecQueryError(f"Failed to get Nx project config: {exc}") from exc
        if not isinstance(payload, dict):
            raise SpecQueryError(f"Unexpected Nx project config for {project}")
        return payload

    def workspace_named_groups(self) -> Mapping[str, Sequence[PatternToken]]:
        nx_json = self.workspace_root / "nx.json"
        if not nx_json.exists():
            return {}
        try:
            payload = json.loads(nx_json.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not read %s: %s", nx_json, exc)
            return {}
        named = payload.get("namedInputs", {})
        return named if isinstance(named, dict) else {}

    def project_graph(self) -> ProjectGraph:
        payload = self._nx_json("graph", "--file=stdout")
        graph = payload.get("graph", {}) if isinstance(payload, dict) else {}
        roots: dict[str, str] = {}
        for name, node in graph.get("nodes", {}).items():
            if isinstance(node, dict):
                root = node.get("data", {}).get("root")
                if isinstance(root, str):
                    roots[name] = root
        dependencies: dict[str, tuple[str, ...]] = {}
        for name, edges in graph.get("dependencies", {}).items():
            if isinstance(edges, list):
                dependencies[name] = tuple(
                    edge["target"]
                    for edge in edges
                    if isinstance(edge, dict) and isinstance(edge.get("target"), str)
                )
        return ProjectGraph(roots, dependencies)

    def warm_up(self) -> None:
        try:
            self.runner(self.nx_command("report"), self.workspace_root, self.environment())
        except SpecQueryError as exc:
            logger.debug("Nx cache warm-up failed: %s", exc)


class JsonTaskGraphCollector(ProjectConfigCollector):
    """Answers task-graph queries from a static workspace description."""

    def __init__(self, data: Mapping[str, Any]) -> None:
        self.data = data

    @classmethod
    def from_file(cls, path: Path) -> JsonTaskGraphCollector:
        try:
            return cls(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError) as exc:
            raise SpecQueryError(f"Cannot load task graph from {path}: {exc}") from exc

    def _projects(self) -> Mapping[str, Any]:
        projects = self.data.get("projects", {})
        return projects if isinstance(projects, dict) else {}

    def project_config(self, project: str) -> dict[str, Any]:
        config = self._projects().get(project)
        if not isinstance(config, dict):
            raise SpecQueryError(f'Project "{project}" not found')
        return config

    def workspace_named_groups(self) -> Mapping[str, Sequence[PatternToken]]:
        named = self.data.get("namedInputs", {})
        return named if isinstance(named, dict) else {}

    def project_graph(self) -> ProjectGraph:
        roots: dict[str, str] = {}
        dependencies: dict[str, tuple[str, ...]] = {}
        for name, config in self._projects().items():
            if not isinstance(config, dict):
                continue
            roots[name] = str(config.get("root", ""))
            edges = config.get("dependencies")
            dependencies[name] = tuple(edges) if isinstance(edges, list) else ()
        return ProjectGraph(roots, dependencies)
