import json
from collections.abc import Mapping, Sequence
from pathlib import Path

import pytest

from ioaudit.taskgraph import (
    DEFAULT_TARGET_INPUTS,
    JsonTaskGraphCollector,
    NxTaskGraphCollector,
    ProjectGraph,
    SpecQueryError,
    task_from_project_config,
)

PROJECT_CONFIG = {
    "name": "web",
    "root": "apps/web",
    "namedInputs": {"production": ["default", "!{projectRoot}/**/*.spec.ts"]},
    "targets": {
        "build": {
            "inputs": ["production", "^production"],
            "outputs": ["{workspaceRoot}/dist/apps/web"],
            "dependsOn": [
                "^build",
                "codegen",
                {"target": "lint"},
                {"target": "types", "dependencies": True},
                {"target": "docs", "projects": ["other"]},
                "missing",
            ],
            "options": {"outputPath": "dist/apps/web"},
        },
        "codegen": {"outputs": ["{projectRoot}/src/generated"], "dependsOn": ["lint"]},
        "lint": {"inputs": ["default"]},
    },
}

GRAPH_OUTPUT = {
    "graph": {
        "nodes": {
            "web": {"name": "web", "type": "app", "data": {"root": "apps/web"}},
            "ui": {"name": "ui", "type": "lib", "data": {"root": "libs/ui"}},
        },
        "dependencies": {
            "web": [{"source": "web", "target": "ui", "type": "static"}],
            "ui": [],
        },
    }
}


class FakeNx:
    def __init__(self, *, graph_fails: bool = False) -> None:
        self.graph_fails = graph_fails
        self.calls: list[list[str]] = []
        self.envs: list[Mapping[str, str]] = []

    def __call__(self, command: Sequence[str], cwd: Path, env: Mapping[str, str]) -> str:
        self.calls.append(list(command))
        self.envs.append(env)
        if command[2] == "show":
            if command[4] != "web":
                raise SpecQueryError(f"Cannot find project '{command[4]}'")
            return json.dumps(PROJECT_CONFIG)
        if command[2] == "graph":
            if self.graph_fails:
                raise SpecQueryError("graph exploded")
            return json.dumps(GRAPH_OUTPUT)
        raise SpecQueryError("unsupported")


def test_task_from_project_config_parses_same_project_dependencies() -> None:
    task = task_from_project_config("web", "build", PROJECT_CONFIG)

    assert task.task_id == "web:build"
    assert task.root == "apps/web"
    assert task.inputs == ("production", "^production")
    assert task.outputs == ("{workspaceRoot}/dist/apps/web",)
    assert task.depends_on == ("web:codegen", "web:lint", "web:missing")
    assert task.options == {"outputPath": "dist/apps/web"}


def test_missing_inputs_fall_back_to_defaults() -> None:
    task = task_from_project_config("web", "codegen", PROJECT_CONFIG)

    assert task.inputs == DEFAULT_TARGET_INPUTS


def test_missing_target_raises() -> None:
    with pytest.raises(SpecQueryError, match="deploy"):
        task_from_project_config("web", "deploy", PROJECT_CONFIG)


def test_owner_of_prefers_longest_root() -> None:
    projects = ProjectGraph({"a": "libs/a", "ab": "libs/a/b", "workspace": "."})

    assert projects.owner_of("libs/a/b/x.ts") == "ab"
    assert projects.owner_of("libs/a/x.ts") == "a"
    assert projects.owner_of("libs/ab/x.ts") is None
    assert projects.owner_of("README.md") is None


def test_nx_collector_builds_task_graph(tmp_path: Path) -> None:
    (tmp_path / "nx.json").write_text(
        json.dumps({"namedInputs": {"sharedGlobals": ["{workspaceRoot}/babel.config.json"]}}),
        encoding="utf-8",
    )
    runner = FakeNx()
    collector = NxTaskGraphCollector(tmp_path, runner=runner)

    graph = collector.collect("web", "build")

    assert graph.task.task_id == "web:build"
    assert [task.task_id for task in graph.dependencies] == ["web:codegen", "web:lint"]
    assert graph.warnings and "web:missing" in graph.warnings[0]
    assert set(graph.named_groups) == {"default", "sharedGlobals", "production"}
    assert graph.projects.dependency_roots("web") == ["libs/ui"]
    assert runner.calls[0] == ["npx", "nx", "show", "project", "web", "--json"]
    assert all(env["NX_DAEMON"] == "false" for env in runner.envs)


def test_nx_collector_unknown_project_raises(tmp_path: Path) -> None:
    collector = NxTaskGraphCollector(tmp_path, runner=FakeNx())

    with pytest.raises(SpecQueryError, match="Failed to get Nx project config"):
        collector.collect("ghost", "build")


def test_nx_collector_survives_missing_project_graph(tmp_path: Path) -> None:
    collector = NxTaskGraphCollector(tmp_path, runner=FakeNx(graph_fails=True))

    graph = collector.collect("web", "build")

    assert graph.projects.roots == {"web": "apps/web"}
    assert any("Project graph unavailable" in warning for warning in graph.warnings)


def test_nx_warm_up_failure_is_not_fatal(tmp_path: Path) -> None:
    runner = FakeNx()
    NxTaskGraphCollector(tmp_path, binary="pnpm", runner=runner).warm_up()

    assert runner.calls == [["pnpm", "nx", "report"]]


def test_json_collector_reads_static_workspace(tmp_path: Path) -> None:
    path = tmp_path / "graph.json"
    path.write_text(
        json.dumps(
            {
                "namedInputs": {"default": ["{projectRoot}/src/**/*"]},
                "projects": {
                    "web": {**PROJECT_CONFIG, "dependencies": ["ui"]},
                    "ui": {"root": "libs/ui", "targets": {}},
                },
            }
        ),
        encoding="utf-8",
    )

    graph = JsonTaskGraphCollector.from_file(path).collect("web", "lint")

    assert graph.named_groups["default"] == ["{projectRoot}/src/**/*"]
    assert graph.projects.roots == {"web": "apps/web", "ui": "libs/ui"}
    assert graph.projects.dependency_roots("web") == ["libs/ui"]
    assert graph.dependencies == []


def test_json_collector_rejects_unreadable_file(tmp_path: Path) -> None:
    path = tmp_path / "graph.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(SpecQueryError):
        JsonTaskGraphCollector.from_file(path)


@pytest.mark.parametrize(
    "broken",
    [{"outputs": 7}, {"inputs": 5}, {"options": ["x"]}, {"dependsOn": "lint"}],
)
def test_malformed_dependency_target_is_skipped(broken: dict) -> None:
    collector = JsonTaskGraphCollector(
        {
            "projects": {
                "a": {
                    "root": "libs/a",
                    "targets": {
                        "build": {"inputs": ["default"], "dependsOn": ["codegen", "lint"]},
                        "codegen": broken,
                        "lint": {},
                    },
                }
            }
        }
    )

    graph = collector.collect("a", "build")

    assert [task.task_id for task in graph.dependencies] == ["a:lint"]
    assert len(graph.warnings) == 1
    assert "a:codegen" in graph.warnings[0]


def test_malformed_requested_target_raises() -> None:
    collector = JsonTaskGraphCollector(
        {"projects": {"a": {"root": "libs/a", "targets": {"build": {"outputs": "dist"}}}}}
    )

    with pytest.raises(SpecQueryError, match="outputs"):
        collector.collect("a", "build")


def test_named_group_values_are_not_split() -> None:
    collector = JsonTaskGraphCollector(
        {
            "namedInputs": {"prod": "{projectRoot}/src", "broken": None},
            "projects": {"a": {"root": "libs/a", "targets": {"build": {"inputs": ["prod"]}}}},
        }
    )

    graph = collector.collect("a", "build")

    assert graph.named_groups["prod"] == "{projectRoot}/src"
    assert graph.named_groups["broken"] is None
