from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["auto", "strace", "fs_usage", "bpftrace", "dtruss"]

DEFAULT_IGNORED_DIRS = [
    "node_modules",
    ".nx",
    ".git",
    ".angular",
    ".pnpm-store",
    "proc",
    "dev",
    "sys",
    "private",
    "var",
    "tmp",
]

DEFAULT_BOOKKEEPING_FILES = [
    "nx.json",
    "package.json",
    "pnpm-lock.yaml",
    "package-lock.json",
    "yarn.lock",
    "tsconfig.base.json",
    "tsconfig.json",
    ".gitignore",
    ".nxignore",
]

DEFAULT_BOOKKEEPING_PATTERNS = [
    r"(^|/)project\.json$",
    r"(^|/)package\.json$",
    r"^\.nx",
    r"tsconfig\..*\.json$",
    r"tsconfig\.json$",
    r"jest\.config\.(ts|js|cts|mts|cjs|mjs)$",
    r"eslint\.config\.(ts|js|cts|mts|cjs|mjs)$",
    r"\.eslintrc",
    r"pnpm-workspace\.yaml$",
    r"rust-toolchain\.toml$",
    r"\.swcrc$",
    r"executors\.json$",
    r"generators\.json$",
    r"schema\.json$",
    r"\.gitignore$",
    r"\.gitattributes$",
    r"\.env",
    r"\.local\.env$",
    r"rspack\.config\.(ts|js|mjs|cjs)$",
    r"webpack\.config\.(ts|js|mjs|cjs)$",
    r"\.husky/",
]


@dataclass(slots=True)
class WorkspaceConfig:
    ignored_dirs: list[str] = field(default_factory=lambda: list(DEFAULT_IGNORED_DIRS))


@dataclass(slots=True)
class TracerConfig:
    backend: BackendName = "auto"
    startup_grace_ms: int = 500
    drain_grace_ms: int = 1000
    stop_timeout_ms: int = 2000
    attach_timeout_ms: int = 5000
    pid_poll_interval_ms: int = 100
    output_dir: str = ""


@dataclass(slots=True)
class NxConfig:
    binary: str = "npx"
    disable_daemon: bool = True
    warm_up: bool = True
    exclude_task_dependencies: bool = True


@dataclass(slots=True)
class BookkeepingConfig:
    files: list[str] = field(default_factory=lambda: list(DEFAULT_BOOKKEEPING_FILES))
    patterns: list[str] = field(default_factory=lambda: list(DEFAULT_BOOKKEEPING_PATTERNS))


@dataclass(slots=True)
class AuditConfig:
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    tracer: TracerConfig = field(default_factory=TracerConfig)
    nx: NxConfig = field(default_factory=NxConfig)
    bookkeeping: BookkeepingConfig = field(default_factory=BookkeepingConfig)

    @classmethod
    def default(cls) -> AuditConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> AuditConfig:
        return cls(
            workspace=WorkspaceConfig(**data.get("workspace", {})),
            tracer=TracerConfig(**data.get("tracer", {})),
            nx=NxConfig(**data.get("nx", {})),
            bookkeeping=BookkeepingConfig(**data.get("bookkeeping", {})),
        )

    def to_dict(self) -> dict:
        return {
            "workspace": {
                "ignored_dirs": list(self.workspace.ignored_dirs),
            },
            "tracer": {
                "backend": self.tracer.backend,
                "startup_grace_ms": self.tracer.startup_grace_ms,
                "drain_grace_ms": self.tracer.drain_grace_ms,
                "stop_timeout_ms": self.tracer.stop_timeout_ms,
                "attach_timeout_ms": self.tracer.attach_timeout_ms,
                "pid_poll_interval_ms": self.tracer.pid_poll_interval_ms,
                "output_dir": self.tracer.output_dir,
            },
            "nx": {
                "binary": self.nx.binary,
                "disable_daemon": self.nx.disable_daemon,
                "warm_up": self.nx.warm_up,
                "exclude_task_dependencies": self.nx.exclude_task_dependencies,
            },
            "bookkeeping": {
                "files": list(self.bookkeeping.files),
                "patterns": list(self.bookkeeping.patterns),
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: AuditConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["workspace", "tracer", "nx", "bookkeeping"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> AuditConfig:
    if not path.exists():
        return AuditConfig.default()
    return AuditConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: AuditConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
