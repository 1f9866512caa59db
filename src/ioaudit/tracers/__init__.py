from __future__ import annotations

import sys
from pathlib import Path

from ioaudit.access import WorkspaceScope
from ioaudit.tracers.base import (
    PlatformUnsupportedError,
    TimingContract,
    TraceBackend,
    TracerError,
    TracerEventHook,
    TracerLaunchError,
    TraceRun,
)
from ioaudit.tracers.bpftrace import BpftraceBackend
from ioaudit.tracers.dtruss import DtrussBackend
from ioaudit.tracers.fs_usage import FsUsageBackend
from ioaudit.tracers.strace import StraceBackend

BACKENDS: dict[str, type[TraceBackend]] = {
    "strace": StraceBackend,
    "fs_usage": FsUsageBackend,
    "bpftrace": BpftraceBackend,
    "dtruss": DtrussBackend,
}


def probe_backend_name(platform: str | None = None) -> str:
    current = platform or sys.platform
    if current == "darwin":
        return "fs_usage"
    if current.startswith("linux"):
        return "strace"
    raise PlatformUnsupportedError(
        f'Unsupported platform "{current}". Use macOS or Linux.'
    )


def select_backend(
    name: str,
    scope: WorkspaceScope,
    timing: TimingContract | None = None,
    *,
    platform: str | None = None,
    output_dir: Path | None = None,
    event_hook: TracerEventHook | None = None,
) -> TraceBackend:
    backend_name = probe_backend_name(platform) if name == "auto" else name
    backend_cls = BACKENDS.get(backend_name)
    if backend_cls is None:
        raise PlatformUnsupportedError(f"Unknown trace backend: {backend_name}")
    return backend_cls(scope, timing, output_dir=output_dir, event_hook=event_hook)


__all__ = [
    "BACKENDS",
    "BpftraceBackend",
    "DtrussBackend",
    "FsUsageBackend",
    "PlatformUnsupportedError",
    "StraceBackend",
    "TimingContract",
    "TraceBackend",
    "TraceRun",
    "TracerError",
    "TracerEventHook",
    "TracerLaunchError",
    "probe_backend_name",
    "select_backend",
]
