from __future__ import annotations

import os
import re
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path

from ioaudit.access import CanonicalAccessSet, TraceEvent
from ioaudit.tracers.base import TraceBackend, TraceRun, TracerLaunchError

# open_nocancel("/ws/a.txt\0", 0x601, 0x1B6)		 = 4 0
# openat(0xFFFFFFFFFFFFFFFE, "/ws/a.txt\0", 0x0, 0x0)		 = 3 0
OPEN_PATTERN = re.compile(
    r"\bopen(?:at)?(?:_nocancel)?\("
    r"(?:-?(?:0x[0-9a-fA-F]+|\d+),\s*)?"
    r'"([^"]*)",\s*(0x[0-9a-fA-F]+|\d+)'
    r"[^)]*\)\s*=\s*(-?\d+)"
)
PID_PATTERN = re.compile(r"^\s*(\d+)/")

ACCESS_MODE_MASK = 0x3
O_WRONLY = 0x1
O_RDWR = 0x2
O_APPEND = 0x8
O_CREAT = 0x200
O_TRUNC = 0x400


class DtrussBackend(TraceBackend):
    """macOS DTrace wrapper; follows forks of the task and reports open flags as hex words."""

    name = "dtruss"
    default_binary = "dtruss"

    def build_command(self, command: Sequence[str]) -> list[str]:
        return [self.binary, "-f", "-t", "open", "--", *command]

    def parse_events(self, raw_text: str) -> Iterator[TraceEvent]:
        for line in raw_text.splitlines():
            match = OPEN_PATTERN.search(line)
            if not match:
                continue
            path, raw_flags, result = match.groups()
            if int(result) < 0:
                continue
            path = path.removesuffix("\\0")
            pid_match = PID_PATTERN.match(line)
            pid = int(pid_match.group(1)) if pid_match else None

            flags = int(raw_flags, 16 if raw_flags.lower().startswith("0x") else 10)
            mode = flags & ACCESS_MODE_MASK
            if mode != O_WRONLY:
                yield TraceEvent(pid=pid, operation="R", path=path)
            if mode in {O_WRONLY, O_RDWR} or flags & (O_APPEND | O_CREAT | O_TRUNC):
                yield TraceEvent(pid=pid, operation="W", path=path)

    async def trace(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None = None,
    ) -> TraceRun:
        if hasattr(os, "geteuid") and os.geteuid() != 0:
            raise TracerLaunchError("dtruss requires root privileges.", backend=self.name)

        output_path = self._output_path(".dtruss")
        dtruss_command = self.build_command(command)
        # dtruss reports syscalls on stderr; the task keeps its own stdout.
        with output_path.open("wb") as output_file:
            self._emit({"event": "tracer_start", "command": dtruss_command[:6]})
            process = await self._spawn(
                dtruss_command,
                cwd=str(cwd),
                env=dict(env) if env else None,
                stderr=output_file,
            )
            self._emit({"event": "target_start", "pid": process.pid})
            exit_code = await process.wait()
            self._emit({"event": "target_exit", "exit_code": exit_code})

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
