from __future__ import annotations

import re
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path

from ioaudit.access import CanonicalAccessSet, TraceEvent
from ioaudit.tracers.base import TraceBackend, TraceRun

PATH_FIELD = r'"((?:[^"\\]|\\.)*)"'
OPENAT_PATTERN = re.compile(r"openat\(AT_FDCWD,\s*" + PATH_FIELD + r",\s*([^)]+)\)\s*=\s*(\d+)")
UNFINISHED_PATTERN = re.compile(
    r"openat\(AT_FDCWD,\s*" + PATH_FIELD + r",\s*(.+?)\s*<unfinished \.\.\.>"
)
RESUMED_PATTERN = re.compile(r"<\.\.\. openat resumed>.*\)\s*=\s*(\d+)")
PID_PATTERN = re.compile(r"^\s*(?:\[pid\s+)?(\d+)\]?\s")
ESCAPE_PATTERN = re.compile(rb"\\(?:([0-7]{1,3})|x([0-9a-fA-F]{2})|(.))", re.DOTALL)
SIMPLE_ESCAPES = {b"n": b"\n", b"t": b"\t", b"r": b"\r", b"v": b"\v", b"f": b"\f"}

WRITE_FLAGS = frozenset({"WRONLY", "RDWR", "CREAT", "TRUNC"})


def _unescape_path(path: str) -> str:
    """Undo strace's C-style quoting; octal escapes are raw bytes of a UTF-8 path."""
    if "\\" not in path:
        return path

    def _replace(match: re.Match[bytes]) -> bytes:
        octal, hexadecimal, char = match.groups()
        if octal is not None:
            return bytes([int(octal, 8) & 0xFF])
        if hexadecimal is not None:
            return bytes([int(hexadecimal, 16)])
        return SIMPLE_ESCAPES.get(char, char)

    raw = ESCAPE_PATTERN.sub(_replace, path.encode("utf-8", errors="surrogateescape"))
    return raw.decode("utf-8", errors="surrogateescape")


def _flag_tokens(raw_flags: str) -> set[str]:
    # The mode argument follows the flags after a comma: O_CREAT|O_WRONLY, 0666
    flag_field = raw_flags.split(",", 1)[0]
    tokens = set()
    for token in flag_field.split("|"):
        token = token.strip()
        if token.startswith("O_"):
            token = token[2:]
        if token:
            tokens.add(token)
    return tokens


def _events_for(pid: int | None, path: str, raw_flags: str) -> Iterator[TraceEvent]:
    path = _unescape_path(path)
    tokens = _flag_tokens(raw_flags)
    if tokens & WRITE_FLAGS:
        yield TraceEvent(pid=pid, operation="W", path=path)
    if "RDONLY" in tokens or "RDWR" in tokens or "WRONLY" not in tokens:
        yield TraceEvent(pid=pid, operation="R", path=path)


class StraceBackend(TraceBackend):
    """Linux syscall tracer wrapping the task: ``strace -f -e trace=openat``."""

    name = "strace"
    default_binary = "strace"

    def build_command(self, command: Sequence[str], output_path: Path) -> list[str]:
        return [
            self.binary,
            "-f",
            "-e",
            "trace=openat",
            "-o",
            str(output_path),
            "-s",
            "0",
            "--",
            *command,
        ]

    def parse_events(self, raw_text: str) -> Iterator[TraceEvent]:
        pending: dict[int | None, tuple[str, str]] = {}
        for line in raw_text.splitlines():
            pid_match = PID_PATTERN.match(line)
            pid = int(pid_match.group(1)) if pid_match else None

            match = OPENAT_PATTERN.search(line)
            if match:
                path, raw_flags, _fd = match.groups()
                yield from _events_for(pid, path, raw_flags)
                continue

            unfinished = UNFINISHED_PATTERN.search(line)
            if unfinished:
                pending[pid] = (unfinished.group(1), unfinished.group(2))
                continue

            if RESUMED_PATTERN.search(line) and pid in pending:
                path, raw_flags = pending.pop(pid)
                yield from _events_for(pid, path, raw_flags)
            elif "openat resumed>" in line:
                pending.pop(pid, None)

    async def trace(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None = None,
    ) -> TraceRun:
        output_path = self._output_path(".strace")
        strace_command = self.build_command(command, output_path)
        self._emit({"event": "tracer_start", "command": strace_command[:8]})
        process = await self._spawn(strace_command, cwd=str(cwd), env=dict(env) if env else None)
        self._emit({"event": "target_start", "pid": process.pid})

        exit_code = await process.wait()
        self._emit({"event": "target_exit", "exit_code": exit_code})

        run = TraceRun(exit_code=exit_code, access=CanonicalAccessSet())
        raw_text = self._read_trace_output(output_path, run)
        run.access = self.normalize(raw_text)
        self._emit(
            {
                "event": "tracer_stop",
                "reads": len(run.access.reads),
                "writes": len(run.access.writes),
            }
        )
        return run
