from __future__ import annotations

import asyncio
import contextlib
import re
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path

from ioaudit.access import CanonicalAccessSet, TraceEvent
from ioaudit.tracers.base import TraceBackend, TraceRun, TracerLaunchError

EVENT_PATTERN = re.compile(r"^([RW]) (\d+) (.+)$")

# Reduces openat in the kernel to "<R|W> <pid> <path>" lines.
OPENAT_PROBE = r"""
tracepoint:syscalls:sys_enter_openat
{
  @flags[tid] = args->flags;
  @path[tid] = args->filename;
}

tracepoint:syscalls:sys_exit_openat
/@path[tid]/
{
  if (args->ret >= 0) {
    $mode = @flags[tid] & 3;
    if ($mode == 0 || $mode == 2) {
      printf("R %d %s\n", pid, str(@path[tid]));
    }
    if ($mode != 0 || (@flags[tid] & 0x240) != 0) {
      printf("W %d %s\n", pid, str(@path[tid]));
    }
  }
  delete(@flags[tid]);
  delete(@path[tid]);
}

END
{
  clear(@flags);
  clear(@path);
}
"""


class BpftraceBackend(TraceBackend):
    """Kernel tracepoint backend; events arrive pre-normalized and are filtered by pid."""

    name = "bpftrace"
    default_binary = "bpftrace"

    def __init__(self, *args, tracked_pids: set[int] | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.tracked_pids: set[int] = set(tracked_pids or ())

    def build_command(self, script_path: Path) -> list[str]:
        return [self.binary, str(script_path)]

    def parse_events(self, raw_text: str) -> Iterator[TraceEvent]:
        for line in raw_text.splitlines():
            match = EVENT_PATTERN.match(line.strip())
            if not match:
                continue
            operation, pid_text, path = match.groups()
            pid = int(pid_text)
            if self.tracked_pids and pid not in self.tracked_pids:
                continue
            yield TraceEvent(pid=pid, operation=operation, path=path)  # type: ignore[arg-type]

    async def _wait_for_attach(self, tracer: asyncio.subprocess.Process) -> None:
        assert tracer.stderr is not None
        async for raw_line in tracer.stderr:
            line = raw_line.decode("utf-8", errors="replace").strip()
            self._emit({"event": "tracer_stderr", "line": line[:200]})
            if "Attaching" in line:
                return
        raise TracerLaunchError(
            "bpftrace exited before attaching probes.",
            backend=self.name,
            exit_code=tracer.returncode,
        )

    @staticmethod
    async def _collect(stream: asyncio.StreamReader | None, sink: list[str]) -> None:
        if stream is None:
            return
        async for raw_line in stream:
            sink.append(raw_line.decode("utf-8", errors="replace"))

    async def _child_pids(self, pid: int) -> list[int]:
        try:
            process = await asyncio.create_subprocess_exec(
                "pgrep",
                "-P",
                str(pid),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError:
            return []
        stdout, _ = await process.communicate()
        return [int(item) for item in stdout.decode().split() if item.isdigit()]

    async def _poll_descendants(self) -> None:
        while True:
            for pid in list(self.tracked_pids):
                for child in await self._child_pids(pid):
                    if child not in self.tracked_pids:
                        self.tracked_pids.add(child)
                        self._emit({"event": "pid_tracked", "pid": child})
            await asyncio.sleep(self.timing.pid_poll_interval_ms / 1000)

    async def trace(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None = None,
    ) -> TraceRun:
        script_path = self._output_path(".bt")
        script_path.write_text(OPENAT_PROBE, encoding="utf-8")
        try:
            return await self._trace_with_script(script_path, command, cwd=cwd, env=env)
        finally:
            script_path.unlink(missing_ok=True)

    async def _trace_with_script(
        self,
        script_path: Path,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None,
    ) -> TraceRun:
        tracer = await self._spawn(
            self.build_command(script_path),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._emit({"event": "tracer_start", "pid": tracer.pid})
        try:
            await asyncio.wait_for(
                self._wait_for_attach(tracer), timeout=self.timing.attach_timeout_ms / 1000
            )
        except TimeoutError as exc:
            await self._stop(tracer)
            raise TracerLaunchError(
                f"bpftrace startup timeout ({self.timing.attach_timeout_ms} ms).",
                backend=self.name,
            ) from exc
        except TracerLaunchError:
            await self._stop(tracer)
            raise

        lines: list[str] = []
        stderr_lines: list[str] = []
        collector = asyncio.gather(
            self._collect(tracer.stdout, lines), self._collect(tracer.stderr, stderr_lines)
        )
        try:
            target = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd),
                env=dict(env) if env else None,
            )
        except (FileNotFoundError, PermissionError) as exc:
            await self._stop(tracer)
            collector.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await collector
            raise TracerLaunchError(
                f"Failed to launch {command[0]}: {exc}", backend=self.name
            ) from exc

        self.tracked_pids.add(target.pid)
        self._emit({"event": "target_start", "pid": target.pid})
        poller = asyncio.create_task(self._poll_descendants())

        exit_code = await target.wait()
        self._emit({"event": "target_exit", "exit_code": exit_code})
        await asyncio.sleep(self.timing.drain_grace_ms / 1000)

        poller.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await poller
        await self._stop(tracer)
        await collector

        run = TraceRun(exit_code=exit_code, access=CanonicalAccessSet())
        run.access = self.normalize("".join(lines))
        self._emit(
            {
                "event": "tracer_stop",
                "reads": len(run.access.reads),
                "writes": len(run.access.writes),
                "tracked_pids": sorted(self.tracked_pids),
            }
        )
        return run
