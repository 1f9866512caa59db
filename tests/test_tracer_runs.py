import asyncio
import os
import sys
from pathlib import Path
from typing import Any

import pytest

from ioaudit.access import WorkspaceScope
from ioaudit.tracers import (
    BpftraceBackend,
    DtrussBackend,
    FsUsageBackend,
    StraceBackend,
    TimingContract,
    TracerLaunchError,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")

FAST = TimingContract(
    startup_grace_ms=10,
    drain_grace_ms=10,
    stop_timeout_ms=2000,
    attach_timeout_ms=2000,
    pid_poll_interval_ms=10,
)


def _fake_binary(tmp_path: Path, name: str, body: str) -> str:
    path = tmp_path / name
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(0o755)
    return str(path)


def _workspace(tmp_path: Path) -> tuple[WorkspaceScope, Path, Path]:
    workspace = tmp_path / "ws"
    workspace.mkdir()
    output_dir = tmp_path / "out"
    output_dir.mkdir()
    return WorkspaceScope.from_path(workspace), workspace, output_dir


def test_strace_run_returns_task_exit_code(tmp_path: Path) -> None:
    scope, workspace, output_dir = _workspace(tmp_path)
    binary = _fake_binary(
        tmp_path,
        "strace",
        f"""
while [ "$1" != "--" ]; do
  if [ "$1" = "-o" ]; then out="$2"; shift; fi
  shift
done
shift
printf '%s\\n' '7  openat(AT_FDCWD, "{scope.root}/src/main.ts", O_RDONLY) = 3' > "$out"
printf '%s\\n' '7  openat(AT_FDCWD, "{scope.root}/dist/main.js", O_WRONLY, 0644) = 4' >>"$out"
exec "$@"
""",
    )
    events: list[dict[str, Any]] = []
    backend = StraceBackend(
        scope, FAST, binary=binary, output_dir=output_dir, event_hook=events.append
    )

    run = asyncio.run(backend.trace(["sh", "-c", "exit 3"], cwd=workspace))

    assert run.exit_code == 3
    assert run.access.reads == {"src/main.ts"}
    assert run.access.writes == {"dist/main.js"}
    assert run.incomplete is False
    assert list(output_dir.iterdir()) == []
    assert [event["event"] for event in events] == [
        "tracer_start",
        "target_start",
        "target_exit",
        "tracer_stop",
    ]


def test_fs_usage_run_captures_lines_flushed_on_interrupt(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(os, "geteuid", lambda: 0, raising=False)
    scope, workspace, output_dir = _workspace(tmp_path)
    write_line = (
        f"12:00:01.000000  open  F=4  (_WC_T_______)  {scope.root}/dist/out file.txt"
        "  0.000010   node.1"
    )
    read_line = (
        f"12:00:00.000000  open  F=3  (R___________)  {scope.root}/src/in.txt"
        "  0.000010   node.1"
    )
    binary = _fake_binary(
        tmp_path,
        "fs_usage",
        f"""
trap 'echo "{write_line}"; exit 0' INT
echo "{read_line}"
while true; do sleep 0.05; done
""",
    )
    events: list[dict[str, Any]] = []
    backend = FsUsageBackend(
        scope, FAST, binary=binary, output_dir=output_dir, event_hook=events.append
    )

    run = asyncio.run(backend.trace(["sh", "-c", "exit 0"], cwd=workspace))

    assert run.exit_code == 0
    assert run.access.reads == {"src/in.txt"}
    assert run.access.writes == {"dist/out file.txt"}
    assert [event["event"] for event in events] == [
        "tracer_start",
        "target_start",
        "target_exit",
        "tracer_stop",
    ]
    assert list(output_dir.iterdir()) == []


def test_fs_usage_is_killed_when_interrupt_is_ignored(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(os, "geteuid", lambda: 0, raising=False)
    scope, workspace, output_dir = _workspace(tmp_path)
    binary = _fake_binary(
        tmp_path,
        "fs_usage",
        f"""
trap '' INT
echo "12:00:00.000000  open  F=3  (R___________)  {scope.root}/src/in.txt  0.000010   node.1"
while true; do sleep 0.05; done
""",
    )
    timing = TimingContract(startup_grace_ms=10, drain_grace_ms=10, stop_timeout_ms=100)
    backend = FsUsageBackend(scope, timing, binary=binary, output_dir=output_dir)

    run = asyncio.run(backend.trace(["sh", "-c", "exit 0"], cwd=workspace))

    assert run.access.reads == {"src/in.txt"}


def test_fs_usage_requires_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(os, "geteuid", lambda: 501, raising=False)
    scope, workspace, _ = _workspace(tmp_path)

    with pytest.raises(TracerLaunchError, match="root"):
        asyncio.run(FsUsageBackend(scope).trace(["true"], cwd=workspace))


def test_bpftrace_run_keeps_only_tracked_pids(tmp_path: Path) -> None:
    scope, workspace, output_dir = _workspace(tmp_path)
    pid_file = tmp_path / "target.pid"
    binary = _fake_binary(
        tmp_path,
        "bpftrace",
        f"""
trap 'pid=$(cat "{pid_file}"); echo "R $pid {scope.root}/src/in.txt"; \
echo "W $pid {scope.root}/dist/out.txt"; echo "R 999999 {scope.root}/src/other.txt"; exit 0' INT
echo "Attaching 2 probes..." >&2
while true; do sleep 0.05; done
""",
    )
    backend = BpftraceBackend(scope, FAST, binary=binary, output_dir=output_dir)

    run = asyncio.run(
        backend.trace(["sh", "-c", f'echo $$ > "{pid_file}"'], cwd=workspace)
    )

    assert run.exit_code == 0
    assert run.access.reads == {"src/in.txt"}
    assert run.access.writes == {"dist/out.txt"}
    assert int(pid_file.read_text(encoding="utf-8")) in backend.tracked_pids
    assert list(output_dir.iterdir()) == []


def test_bpftrace_attach_timeout_raises(tmp_path: Path) -> None:
    scope, workspace, output_dir = _workspace(tmp_path)
    binary = _fake_binary(
        tmp_path,
        "bpftrace",
        """
trap 'exit 0' INT
while true; do sleep 0.05; done
""",
    )
    timing = TimingContract(attach_timeout_ms=100, stop_timeout_ms=1000)
    backend = BpftraceBackend(scope, timing, binary=binary, output_dir=output_dir)

    with pytest.raises(TracerLaunchError, match="startup timeout"):
        asyncio.run(backend.trace(["true"], cwd=workspace))

    assert list(output_dir.iterdir()) == []


def test_bpftrace_exit_before_attach_raises(tmp_path: Path) -> None:
    scope, workspace, output_dir = _workspace(tmp_path)
    binary = _fake_binary(
        tmp_path,
        "bpftrace",
        """
echo "ERROR: permission denied" >&2
exit 1
""",
    )
    backend = BpftraceBackend(scope, FAST, binary=binary, output_dir=output_dir)

    with pytest.raises(TracerLaunchError, match="before attaching"):
        asyncio.run(backend.trace(["true"], cwd=workspace))


def test_dtruss_run_reads_syscalls_from_stderr(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(os, "geteuid", lambda: 0, raising=False)
    scope, workspace, output_dir = _workspace(tmp_path)
    binary = _fake_binary(
        tmp_path,
        "dtruss",
        f"""
shift 4
printf '%s\\n' ' 7/0x1:  open("{scope.root}/src/in.txt\\0", 0x0, 0x0)   = 3 0' >&2
exec "$@"
""",
    )
    backend = DtrussBackend(scope, FAST, binary=binary, output_dir=output_dir)

    run = asyncio.run(backend.trace(["sh", "-c", "exit 2"], cwd=workspace))

    assert run.exit_code == 2
    assert run.access.reads == {"src/in.txt"}
    assert list(output_dir.iterdir()) == []
