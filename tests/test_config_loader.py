from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from prewarm.config.defaults import load_default_config_dict
from prewarm.config.loader import PrewarmConfig, config_paths, load_config, load_config_dicts


def test_default_config_is_valid() -> None:
    cfg = load_config_dicts([load_default_config_dict()])
    assert cfg.application.entry == "app.py"
    assert cfg.application.env_var == "APP_ENV"
    assert cfg.watch.strategy == "polling"
    assert cfg.after_fork == []


def test_load_config_layers_global_then_project(tmp_path: Path) -> None:
    """全局 < 项目：标量覆盖，after_fork 按层拼接（全局在前）。"""

    home = tmp_path / "home"
    home.mkdir()
    app = tmp_path / "app"
    app.mkdir()
    (home / ".prewarm.yaml").write_text(
        "\n".join(
            [
                "after_fork:",
                '  - "global_hooks:reset"',
                "server:",
                "  idle_timeout_sec: 60",
                "  log_level: DEBUG",
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    (app / ".prewarm.yaml").write_text(
        "\n".join(
            [
                "application:",
                "  entry: boot.py",
                "after_fork:",
                '  - "hooks:reconnect"',
                "server:",
                "  idle_timeout_sec: 5",
            ]
        )
        + "\n",
        encoding="utf-8",
    )

    cfg = load_config(app, home=home)

    assert cfg.application.entry == "boot.py"
    assert cfg.application.default_env == "development"
    assert cfg.after_fork == ["global_hooks:reset", "hooks:reconnect"]
    assert cfg.server.idle_timeout_sec == 5
    assert cfg.server.log_level == "DEBUG"
    assert cfg.sources == [str((home / ".prewarm.yaml").resolve()), str((app / ".prewarm.yaml").resolve())]


def test_config_paths_skips_missing_files(tmp_path: Path) -> None:
    home = tmp_path / "home"
    home.mkdir()
    assert config_paths(tmp_path, home=home) == []


def test_commands_accept_short_form() -> None:
    cfg = PrewarmConfig.model_validate({"commands": {"lint": "tasks.lint:main", "db": {"handler": "tasks:db", "env": "test"}}})
    assert cfg.commands["lint"].handler == "tasks.lint:main"
    assert cfg.commands["lint"].env is None
    assert cfg.commands["db"].env == "test"


@pytest.mark.parametrize(
    "overlay",
    [
        {"unknown_section": {}},
        {"application": {"entry": ""}},
        {"watch": {"strategy": "fsevents"}},
        {"watch": {"interval_ms": 1}},
        {"after_fork": ["not-a-ref"]},
        {"commands": {"bad name": "tasks:run"}},
        {"commands": {"ok": {"handler": "tasks"}}},
    ],
)
def test_invalid_config_is_rejected(overlay: dict) -> None:  # type: ignore[type-arg]
    with pytest.raises(ValidationError):
        load_config_dicts([load_default_config_dict(), overlay])


def test_yaml_root_must_be_mapping(tmp_path: Path) -> None:
    home = tmp_path / "home"
    home.mkdir()
    (tmp_path / ".prewarm.yaml").write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(tmp_path, home=home)


def test_after_fork_must_be_a_list() -> None:
    with pytest.raises(ValueError):
        load_config_dicts([{"after_fork": "hooks:one"}])
