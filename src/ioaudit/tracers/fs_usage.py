from __future__ import annotations

import asyncio
import os
import re
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path

from ioaudit.access import CanonicalAccessSet, TraceEvent
from ioaudit.tracers.base import TraceBackend, TraceRun, TracerLaunchError

OPEN_PATTERN = re.compile(
    r"\bopen\s+F=\d+\s+\(([^)]+)\)\s+(/.+?)"
    r"(?:\s+\d+\.\d+(?:\s+W)?\s+(\S+))?\s*$"
)
PROCESS_PATTERN = re.compile(r"\.(\d+)$")


class FsUsageBackend(TraceBackend):
    """macOS filesystem monitor; runs alongside the task and is filtered by path."""

    name = "fs_usage"
    default_binary = "fs_usage"

    def build_command(self) -> list[str]:
        return [self.binary, "-w", "-f", "filesys"]

    def parse_events(self, raw_text: str) -> Iterator[TraceEvent]:
        for line in raw_text.splitlines():
            if not line.strip():
                continue
            match = OPEN_PATTERN.search(line)
            if not match:
                continue
            # The path may contain spaces; it ends where the elapsed-time column starts.
            flags, path, process = match.groups()
            process_match = PROCESS_PATTERN.search(process or "")
            pid = int(process_match.group(1)) if process_match else None

            # Fixed positions: 0 read-only, 1 read-write, 2 create, 4 truncate
            flags = flags.ljust(5, "_")
            if flags[0] == "R":
                yield TraceEvent(pid=pid, operation="R", path=path)
            if flags[1] == "W" or flags[2] == "C" or flags[4] == "T":
                yield TraceEvent(pid=pid, operation="W", path=path)

    async def trace(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None = None,
    ) -> TraceRun:
        if hasattr(os, "geteuid") and os.geteuid() != 0:
            raise TracerLaunchError("fs_usage requires root privileges.", backend=self.name)

        output_path = self._output_path(".fsusage")
        with output_path.open("wb") as output_file:
            tracer = await self._spawn(
                self.build_command(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=output_file,
                stderr=output_file,
            )
            self._emit({"event": "tracer_start", "pid": tracer.pid})
            await asyncio.sleep(self.timing.startup_grace_ms / 1000)

            try:
                target = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=str(cwd),
                    env=dict(env) if env else None,
                )
            except (FileNotFoundError, PermissionError) as exc:
                await self._stop(tracer)
                raise TracerLaunchError(
                    f"Failed to launch {command[0]}: {exc}", backend=self.name
                ) from exc
            self._emit({"event": "target_start", "pid": target.pid})

            exit_code = await target.wait()
            self._emit({"event": "target_exit", "exit_code": exit_code})

            await asyncio.sleep(self.timing.drain_grace_ms / 1000)
            await self._stop(tracer)

        run = TraceRun(exit_code=exit_code, access=CanonicalAccessSet())
        run.access = self.normalize(self._read_trace_output(output_path, run))
        self._emit(
            {
                "event": "tracer_stop",
                "reads": len(run.access.reads),
                "writes": len(run.access.writes),
            }
        )
        return run
