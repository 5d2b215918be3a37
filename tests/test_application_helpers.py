from __future__ import annotations

import os
import signal
import subprocess
import sys
from pathlib import Path

import pytest

from prewarm.runtime.application import exit_status, loaded_source_files, system_exit_code


def _wait_status(code: str) -> int:
    pid = os.fork()
    if pid == 0:  # pragma: no cover - child
        exec(code)  # noqa: S102
        os._exit(0)
    _, status = os.waitpid(pid, 0)
    return status


@pytest.mark.skipif(not hasattr(os, "fork"), reason="requires fork")
def test_exit_status_normal_and_signalled() -> None:
    """正常退出返回 exit code；被信号杀死返回 128 + signum。"""

    assert exit_status(_wait_status("os._exit(5)")) == 5
    assert exit_status(_wait_status("os.kill(os.getpid(), signal.SIGKILL)")) == 128 + signal.SIGKILL
    assert exit_status(_wait_status("os.kill(os.getpid(), signal.SIGTERM)")) == 128 + signal.SIGTERM


@pytest.mark.parametrize(
    "code,expected",
    [(None, 0), (0, 0), (3, 3), (256 + 2, 2), (True, 1), (False, 0)],
)
def test_system_exit_code(code, expected) -> None:  # type: ignore[no-untyped-def]
    assert system_exit_code(SystemExit(code)) == expected


def test_system_exit_code_with_message(capsys) -> None:  # type: ignore[no-untyped-def]
    assert system_exit_code(SystemExit("fatal: nope")) == 1
    assert "fatal: nope" in capsys.readouterr().err


def test_loaded_source_files_reports_modules_under_root(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    pkg = tmp_path / "mypkg_for_watch"
    pkg.mkdir()
    (pkg / "__init__.py").write_text("", encoding="utf-8")
    (pkg / "models.py").write_text("VALUE = 1\n", encoding="utf-8")
    venv_mod = tmp_path / "venv" / "lib" / "site-packages" / "vendored_for_watch.py"
    venv_mod.parent.mkdir(parents=True)
    venv_mod.write_text("X = 1\n", encoding="utf-8")

    monkeypatch.syspath_prepend(str(tmp_path))
    monkeypatch.syspath_prepend(str(venv_mod.parent))
    __import__("mypkg_for_watch.models")
    __import__("vendored_for_watch")
    try:
        files = loaded_source_files(tmp_path)
    finally:
        for name in ("mypkg_for_watch.models", "mypkg_for_watch", "vendored_for_watch"):
            sys.modules.pop(name, None)

    assert str((pkg / "__init__.py").resolve()) in files
    assert str((pkg / "models.py").resolve()) in files
    assert all("site-packages" not in f for f in files)
    assert not any(f.endswith(os.path.join("runtime", "application.py")) for f in files)


def test_application_module_requires_fd_argument() -> None:
    p = subprocess.run(  # noqa: S603
        [sys.executable, "-m", "prewarm.runtime.application"],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        timeout=30,
        env={**os.environ, "PYTHONPATH": os.pathsep.join(sys.path)},
    )
    assert p.returncode == 2
    assert "--fd" in p.stderr
