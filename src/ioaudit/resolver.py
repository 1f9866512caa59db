"""Expansion of declared pattern tokens into compiled positive/negative globs.

Token forms:

* ``"{projectRoot}/src/**/*.ts"`` is a literal glob;
* ``"production"`` is a reference to a named group;
* ``"^production"`` is the group's patterns applied to dependency project roots;
* ``"!{projectRoot}/**/*.spec.ts"`` is a negation;
* Nx object tokens (``fileset``, ``input``, ``dependentTasksOutputFiles``);
  object tokens without file semantics (``env``, ``runtime``,
  ``externalDependencies``...) are dropped.
"""

from __future__ import annotations

import logging
import posixpath
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Literal

from ioaudit.globs import GlobPattern, compile_glob
from ioaudit.taskgraph import NamedGroupTable, PatternToken, ProjectGraph, TaskSpec

logger = logging.getLogger(__name__)

PatternKind = Literal["inputs", "outputs"]

PLACEHOLDER_PATTERN = re.compile(r"\{(projectRoot|workspaceRoot|projectName|options\.[^}]+)\}")


@dataclass(frozen=True, slots=True)
class ExpandedPattern:
    glob: str
    negated: bool = False
    propagated: bool = False


@dataclass(frozen=True, slots=True)
class Expansion:
    patterns: tuple[ExpandedPattern, ...]
    truncated_cycles: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ResolvedPatternSet:
    positive: tuple[GlobPattern, ...] = ()
    negative: tuple[GlobPattern, ...] = ()
    truncated_cycles: tuple[str, ...] = ()

    def matches(self, absolute_path: str) -> bool:
        if not any(pattern.matches(absolute_path) for pattern in self.positive):
            return False
        return not any(pattern.matches(absolute_path) for pattern in self.negative)

    def sources(self) -> dict[str, list[str]]:
        return {
            "positive": [pattern.source for pattern in self.positive],
            "negative": [pattern.source for pattern in self.negative],
        }


def _object_token(token: Mapping[str, Any]) -> str | None:
    fileset = token.get("fileset")
    if isinstance(fileset, str):
        return fileset
    name = token.get("input")
    if isinstance(name, str) and "projects" not in token:
        return f"^{name}" if token.get("dependencies") else name
    outputs = token.get("dependentTasksOutputFiles")
    if isinstance(outputs, str):
        return "^{projectRoot}/" + outputs.lstrip("/")
    return None


def expand_tokens(tokens: Sequence[PatternToken], named_groups: NamedGroupTable) -> Expansion:
    """Flatten group references depth-first with an explicit worklist.

    Every entry carries the chain of group names on its own expansion path;
    a reference to a name already on that chain is skipped, which bounds the
    expansion for cyclic group tables.
    """
    patterns: list[ExpandedPattern] = []
    truncated: list[str] = []
    stack: list[tuple[Any, tuple[str, ...], bool, bool]] = [
        (token, (), False, False) for token in reversed(tokens)
    ]
    while stack:
        token, chain, negated, propagated = stack.pop()
        if isinstance(token, Mapping):
            converted = _object_token(token)
            if converted is None:
                logger.debug("Dropping non-file pattern token %r", token)
                continue
            token = converted
        if not isinstance(token, str):
            logger.debug("Dropping non-file pattern token %r", token)
            continue

        token = token.strip()
        while token[:1] in {"!", "^"}:
            if token[0] == "!":
                negated = True
            else:
                propagated = True
            token = token[1:].strip()
        if not token:
            continue

        if token in named_groups:
            if token in chain:
                cycle = " -> ".join((*chain, token))
                logger.debug("Named group cycle truncated: %s", cycle)
                truncated.append(cycle)
                continue
            members = named_groups[token]
            if isinstance(members, str):
                members = [members]
            elif not isinstance(members, Sequence):
                logger.warning("Ignoring named group %s: expected a list, got %r", token, members)
                continue
            next_chain = (*chain, token)
            stack.extend((member, next_chain, negated, propagated) for member in reversed(members))
            continue

        patterns.append(ExpandedPattern(glob=token, negated=negated, propagated=propagated))
    return Expansion(patterns=tuple(patterns), truncated_cycles=tuple(truncated))


class PatternResolver:
    def __init__(self, workspace_root: str, named_groups: NamedGroupTable) -> None:
        self.workspace_root = workspace_root.rstrip("/") or "/"
        self.named_groups = named_groups
        self._cache: dict[tuple[str, PatternKind], ResolvedPatternSet] = {}

    def substitute(
        self,
        glob: str,
        *,
        project_root: str,
        project_name: str = "",
        options: Mapping[str, Any] | None = None,
    ) -> str | None:
        """Replace placeholders; None when one cannot be resolved."""
        unresolved: list[str] = []

        def _replace(match: re.Match[str]) -> str:
            name = match.group(1)
            if name == "projectRoot":
                return project_root.strip("/") or "."
            if name == "workspaceRoot":
                return self.workspace_root
            if name == "projectName":
                return project_name
            value = (options or {}).get(name.removeprefix("options."))
            if isinstance(value, str) and value:
                return value
            unresolved.append(match.group(0))
            return match.group(0)

        substituted = PLACEHOLDER_PATTERN.sub(_replace, glob)
        if unresolved:
            logger.warning("Dropping pattern %s: unresolved %s", glob, ", ".join(unresolved))
            return None
        return substituted

    def anchor(self, glob: str) -> str:
        if not glob.startswith("/"):
            glob = posixpath.join(self.workspace_root, glob)
        return posixpath.normpath(glob)

    def resolve(
        self,
        tokens: Sequence[PatternToken],
        *,
        project_root: str,
        dependency_roots: Sequence[str] = (),
        project_name: str = "",
        options: Mapping[str, Any] | None = None,
    ) -> ResolvedPatternSet:
        expansion = expand_tokens(tokens, self.named_groups)
        positive: dict[str, GlobPattern] = {}
        negative: dict[str, GlobPattern] = {}
        for item in expansion.patterns:
            roots = dependency_roots if item.propagated else (project_root,)
            target = negative if item.negated else positive
            for root in roots:
                glob = self.substitute(
                    item.glob, project_root=root, project_name=project_name, options=options
                )
                if glob is None:
                    continue
                absolute = self.anchor(glob)
                if absolute not in target:
                    target[absolute] = compile_glob(absolute)
        return ResolvedPatternSet(
            positive=tuple(positive.values()),
            negative=tuple(negative.values()),
            truncated_cycles=expansion.truncated_cycles,
        )

    def resolve_task(
        self,
        task: TaskSpec,
        kind: PatternKind,
        projects: ProjectGraph | None = None,
        dependencies: Sequence[TaskSpec] = (),
    ) -> ResolvedPatternSet:
        key = (task.task_id, kind)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        dependency_roots: list[str] = []
        if projects is not None:
            dependency_roots.extend(projects.dependency_roots(task.project))
        for dependency in dependencies:
            if dependency.root != task.root and dependency.root not in dependency_roots:
                dependency_roots.append(dependency.root)

        tokens = task.inputs if kind == "inputs" else task.outputs
        resolved = self.resolve(
            tokens,
            project_root=task.root,
            dependency_roots=dependency_roots,
            project_name=task.project,
            options=task.options,
        )
        self._cache[key] = resolved
        return resolved
