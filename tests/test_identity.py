from __future__ import annotations

from pathlib import Path

from prewarm.identity import (
    collect_dependency_entries,
    current_identity,
    dependency_fingerprint,
    resolve_identity,
    runtime_version,
)


def test_resolve_identity_is_deterministic(tmp_path: Path) -> None:
    a = resolve_identity(tmp_path, "fp", "cpython-3.12")
    b = resolve_identity(str(tmp_path), "fp", "cpython-3.12")
    assert a == b
    assert len(a.token) == 16


def test_resolve_identity_normalizes_root_spelling(tmp_path: Path) -> None:
    (tmp_path / "sub").mkdir()
    a = resolve_identity(tmp_path, "fp", "rt")
    b = resolve_identity(tmp_path / "sub" / "..", "fp", "rt")
    assert a.token == b.token


def test_different_inputs_produce_different_tokens(tmp_path: Path) -> None:
    base = resolve_identity(tmp_path, "fp", "rt")
    assert resolve_identity(tmp_path / "other", "fp", "rt").token != base.token
    assert resolve_identity(tmp_path, "fp2", "rt").token != base.token
    assert resolve_identity(tmp_path, "fp", "rt2").token != base.token


def test_dependency_fingerprint_ignores_enumeration_order() -> None:
    """依赖指纹与条目顺序、重复条目无关。"""

    a = dependency_fingerprint(["b:2", "a:1", "c:3"])
    b = dependency_fingerprint(["c:3", "a:1", "b:2", "a:1"])
    assert a == b
    assert dependency_fingerprint(["a:1"]) != dependency_fingerprint(["a:2"])


def test_collect_dependency_entries_skips_missing_files(tmp_path: Path) -> None:
    (tmp_path / "requirements.txt").write_text("pyyaml\n", encoding="utf-8")
    entries = collect_dependency_entries(tmp_path, ["requirements.txt", "poetry.lock"])
    labels = [e.split(":", 1)[0] for e in entries]
    assert "requirements.txt" in labels
    assert "poetry.lock" not in labels
    assert any(e.startswith("prefix:") for e in entries)


def test_current_identity_changes_when_dependency_file_changes(tmp_path: Path) -> None:
    home = tmp_path / "home"
    home.mkdir()
    app = tmp_path / "app"
    app.mkdir()
    before = current_identity(app, home=home)
    assert current_identity(app, home=home) == before

    (app / "requirements.txt").write_text("requests==2.0\n", encoding="utf-8")
    after = current_identity(app, home=home)
    assert after.token != before.token


def test_current_identity_includes_config_files(tmp_path: Path) -> None:
    """项目与全局配置文件都参与指纹：改配置即换 server。"""

    home = tmp_path / "home"
    home.mkdir()
    app = tmp_path / "app"
    app.mkdir()
    t0 = current_identity(app, home=home).token

    (app / ".prewarm.yaml").write_text("application:\n  entry: main.py\n", encoding="utf-8")
    t1 = current_identity(app, home=home).token
    (home / ".prewarm.yaml").write_text("server:\n  log_level: DEBUG\n", encoding="utf-8")
    t2 = current_identity(app, home=home).token
    assert len({t0, t1, t2}) == 3


def test_runtime_version_mentions_interpreter() -> None:
    import sys

    assert sys.executable in runtime_version()
