from __future__ import annotations

import os
from pathlib import Path

import pytest

from prewarm.runtime.snapshot import TTY_ENV, EnvironmentSnapshot, StdioHandles


def test_capture_records_invocation(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.chdir(tmp_path)
    snap = EnvironmentSnapshot.capture(["python", "-c", "pass"], env={"A": "1", TTY_ENV: "/dev/pts/9"})
    assert snap.argv == ["python", "-c", "pass"]
    assert snap.env["A"] == "1"
    assert snap.cwd == str(tmp_path)
    assert snap.pgid == os.getpgrp()
    assert snap.tty_path == "/dev/pts/9"


def test_snapshot_round_trips_through_dict(tmp_path: Path) -> None:
    snap = EnvironmentSnapshot(argv=["pytest", "-x"], env={"K": "v"}, cwd=str(tmp_path), pgid=123)
    assert EnvironmentSnapshot.from_dict(snap.to_dict()) == snap


def test_snapshot_is_immutable(tmp_path: Path) -> None:
    snap = EnvironmentSnapshot(argv=["x"], env={}, cwd=str(tmp_path), pgid=1)
    with pytest.raises(Exception):
        snap.cwd = "/"  # type: ignore[misc]


@pytest.mark.parametrize(
    "obj",
    [
        {"argv": "python", "env": {}, "cwd": "/"},
        {"argv": ["python"], "env": [], "cwd": "/"},
        {"argv": ["python"], "env": {}, "cwd": ""},
    ],
)
def test_from_dict_rejects_malformed_snapshot(obj: dict) -> None:  # type: ignore[type-arg]
    with pytest.raises(ValueError):
        EnvironmentSnapshot.from_dict(obj)


def test_stdio_handles_open_tty_file(tmp_path: Path) -> None:
    """tty 路径可打开时附带为第 4 个 fd，且 close() 只关闭自行打开的 fd。"""

    tty = tmp_path / "tty.log"
    tty.write_text("", encoding="utf-8")
    handles = StdioHandles.from_current_process(str(tty))
    try:
        assert handles.has_tty
        assert len(handles.fds) == 4
        os.write(handles.fds[3], b"diag\n")
    finally:
        handles.close()
    assert tty.read_text(encoding="utf-8") == "diag\n"
    os.fstat(1)  # 进程自身的 stdout 不受影响


def test_stdio_handles_ignore_unopenable_tty(tmp_path: Path) -> None:
    handles = StdioHandles.from_current_process(str(tmp_path / "missing" / "tty"))
    try:
        assert not handles.has_tty
        assert len(handles.fds) == 3
    finally:
        handles.close()
