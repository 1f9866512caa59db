from __future__ import annotations

import asyncio
import logging
import signal
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from ioaudit.access import CanonicalAccessSet, TraceEvent, WorkspaceScope

logger = logging.getLogger(__name__)

TracerEventHook = Callable[[dict[str, Any]], None]


class TracerError(RuntimeError):
    """Raised when tracing cannot be performed at all."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code


class PlatformUnsupportedError(TracerError):
    """Raised when no trace backend exists for the host platform."""


class TracerLaunchError(TracerError):
    """Raised when the tracer subprocess fails to start."""


@dataclass(frozen=True, slots=True)
class TimingContract:
    """Fixed delays bracketing the traced task.

    The tracer must be attached before the task starts and stay attached
    until late file accesses have drained. Side-by-side tracers sleep for
    the grace periods; bpftrace waits for its attach banner instead,
    bounded by ``attach_timeout_ms``.
    """

    startup_grace_ms: int = 500
    drain_grace_ms: int = 1000
    stop_timeout_ms: int = 2000
    attach_timeout_ms: int = 5000
    pid_poll_interval_ms: int = 100


@dataclass(slots=True)
class TraceRun:
    exit_code: int
    access: CanonicalAccessSet
    incomplete: bool = False
    warnings: list[str] = field(default_factory=list)


class TraceBackend(ABC):
    name: str = "base"
    default_binary: str = ""

    def __init__(
        self,
        scope: WorkspaceScope,
        timing: TimingContract | None = None,
        *,
        binary: str | None = None,
        output_dir: Path | None = None,
        event_hook: TracerEventHook | None = None,
    ) -> None:
        self.scope = scope
        self.timing = timing or TimingContract()
        self.binary = binary or self.default_binary
        self.output_dir = output_dir
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook({"backend": self.name, **payload})

    @abstractmethod
    def parse_events(self, raw_text: str) -> Iterator[TraceEvent]:
        """Yield every file access recognised in the raw tracer output."""

    def normalize(self, raw_text: str) -> CanonicalAccessSet:
        access = CanonicalAccessSet()
        for event in self.parse_events(raw_text):
            access.add(event, self.scope)
        return access

    @abstractmethod
    async def trace(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None = None,
    ) -> TraceRun:
        """Run ``command`` under the tracer and return its normalized accesses."""

    def _output_path(self, suffix: str) -> Path:
        directory = self.output_dir or Path(tempfile.gettempdir())
        return directory / f"ioaudit-{self.name}-{uuid4().hex[:12]}{suffix}"

    async def _stop(self, tracer: asyncio.subprocess.Process) -> None:
        """Interrupt a side-by-side tracer so it flushes, killing it after the stop timeout."""
        if tracer.returncode is not None:
            return
        try:
            tracer.send_signal(signal.SIGINT)
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(tracer.wait(), timeout=self.timing.stop_timeout_ms / 1000)
        except TimeoutError:
            tracer.kill()
            await tracer.wait()

    async def _spawn(self, command: Sequence[str], **kwargs: Any) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(*command, **kwargs)
        except (FileNotFoundError, PermissionError) as exc:
            raise TracerLaunchError(
                f"Failed to launch {command[0]}: {exc}",
                backend=self.name,
            ) from exc

    def _read_trace_output(self, path: Path, run: TraceRun) -> str:
        try:
            raw_text = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            message = f"Failed to read {self.name} output {path}: {exc}"
            logger.warning(message)
            self._emit({"event": "trace_output_unreadable", "path": str(path), "error": str(exc)})
            run.incomplete = True
            run.warnings.append(message)
            return ""
        path.unlink(missing_ok=True)
        return raw_text
