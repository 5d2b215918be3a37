from __future__ import annotations

import sys
from pathlib import Path

import pytest

from prewarm.config.loader import PrewarmConfig
from prewarm.core.errors import UnknownCommandError
from prewarm.runtime.commands import CommandRegistry, resolve_import_ref, run_python, select_environment


def _config(**overrides) -> PrewarmConfig:  # type: ignore[no-untyped-def]
    return PrewarmConfig.model_validate(overrides)


@pytest.mark.parametrize(
    "argv,client_env,expected_env,expected_argv",
    [
        (["python", "-e", "staging", "-c", "pass"], {}, "staging", ["python", "-c", "pass"]),
        (["python", "--environment=ci", "x.py"], {"APP_ENV": "prod"}, "ci", ["python", "x.py"]),
        (["python", "-c", "pass"], {"APP_ENV": "prod"}, "prod", ["python", "-c", "pass"]),
        (["python", "-c", "pass"], {}, "development", ["python", "-c", "pass"]),
        (["pytest", "-x"], {"APP_ENV": "prod"}, "test", ["pytest", "-x"]),
        # 只识别前导选项：脚本自己的 -e 原样保留
        (["python", "x.py", "-e", "staging"], {}, "development", ["python", "x.py", "-e", "staging"]),
    ],
)
def test_select_environment_precedence(argv, client_env, expected_env, expected_argv) -> None:  # type: ignore[no-untyped-def]
    env_name, out = select_environment(argv, client_env, _config())
    assert env_name == expected_env
    assert out == expected_argv


def test_custom_command_environment_wins_over_client_env() -> None:
    cfg = _config(commands={"migrate": {"handler": "tasks:migrate", "env": "db"}, "lint": "tasks:lint"})
    assert select_environment(["migrate"], {"APP_ENV": "prod"}, cfg) == ("db", ["migrate"])
    assert select_environment(["lint"], {"APP_ENV": "prod"}, cfg) == ("prod", ["lint"])


def test_resolve_import_ref() -> None:
    assert resolve_import_ref("os.path:join") is __import__("os").path.join
    with pytest.raises(ValueError):
        resolve_import_ref("os.path")
    with pytest.raises(AttributeError):
        resolve_import_ref("os:no_such_attr")


def test_registry_resolves_builtins_and_custom(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """自定义命令在构造时导入；同名时覆盖内置命令。"""

    (tmp_path / "my_tasks.py").write_text(
        "\n".join(
            [
                "CALLS = []",
                "def hello(args):",
                "    CALLS.append(list(args))",
                "    return 7",
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    monkeypatch.syspath_prepend(str(tmp_path))
    cfg = _config(commands={"hello": "my_tasks:hello", "pytest": "my_tasks:hello"})
    reg = CommandRegistry(cfg)

    assert reg.names() == ["hello", "pytest", "python"]
    assert reg.resolve("hello").run(["a", "b"]) == 7
    assert reg.resolve("pytest").handler is sys.modules["my_tasks"].hello
    assert sys.modules["my_tasks"].CALLS == [["a", "b"]]


def test_registry_unknown_command() -> None:
    reg = CommandRegistry(_config())
    with pytest.raises(UnknownCommandError) as ei:
        reg.resolve("deploy")
    assert ei.value.message == "unknown command: deploy"


def test_registry_fails_fast_on_missing_handler() -> None:
    with pytest.raises(ImportError):
        CommandRegistry(_config(commands={"x": "prewarm_no_such_module:run"}))


def test_run_python_code_string(capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setattr(sys, "argv", list(sys.argv))
    assert run_python(["-c", "import sys; print('argv', sys.argv[1:])", "one", "two"]) == 0
    assert capsys.readouterr().out == "argv ['one', 'two']\n"


def test_run_python_script(tmp_path: Path, capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setattr(sys, "argv", list(sys.argv))
    monkeypatch.setattr(sys, "path", list(sys.path))
    script = tmp_path / "hello.py"
    script.write_text("import sys\nprint(__name__, sys.argv[1])\n", encoding="utf-8")
    assert run_python([str(script), "world"]) == 0
    assert capsys.readouterr().out == "__main__ world\n"


def test_run_python_propagates_system_exit(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setattr(sys, "argv", list(sys.argv))
    with pytest.raises(SystemExit) as ei:
        run_python(["-c", "raise SystemExit(4)"])
    assert ei.value.code == 4


def test_run_python_requires_argument_for_c() -> None:
    with pytest.raises(ValueError):
        run_python(["-c"])
