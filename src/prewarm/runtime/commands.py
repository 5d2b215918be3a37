"""
命令注册表：把 client 请求的命令名解析为 worker 内要执行的 handler。

说明：
- 内置命令：`python`（脚本/模块/-c/交互式）与 `pytest`；
- 自定义命令来自配置 `commands`（`name -> "module:callable"`），同名时覆盖内置命令；
- handler 在 boot 时导入（其源码文件因此进入 watched file set），在 dispatch 时按名字查找；
- 环境选择（`select_environment`）在 server 侧完成，决定请求交给哪个 preloader。
"""

from __future__ import annotations

import builtins
import code
import importlib
import os
import runpy
import sys
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from prewarm.config.loader import PrewarmConfig
from prewarm.core.errors import UnknownCommandError

Handler = Callable[[List[str]], Optional[int]]

_ENV_FLAGS = ("-e", "--environment")


def resolve_import_ref(ref: str) -> Any:
    """
    解析 `package.module:attr.path` 形式的导入引用。

    异常：
    - ImportError / AttributeError：模块或属性不存在
    - ValueError：引用格式错误
    """

    module_name, sep, attr_path = str(ref).partition(":")
    if not sep or not module_name or not attr_path:
        raise ValueError(f"invalid import reference: {ref!r}")
    obj: Any = importlib.import_module(module_name)
    for part in attr_path.split("."):
        obj = getattr(obj, part)
    return obj


def _split_env_flag(args: Sequence[str]) -> Tuple[Optional[str], List[str]]:
    """从参数前缀中取出 `-e ENV` / `--environment ENV` / `--environment=ENV`（只识别前导选项）。"""

    rest = list(args)
    env_name: Optional[str] = None
    while rest:
        head = rest[0]
        if head in _ENV_FLAGS and len(rest) >= 2:
            env_name = rest[1]
            rest = rest[2:]
            continue
        if head.startswith("--environment="):
            env_name = head.split("=", 1)[1]
            rest = rest[1:]
            continue
        break
    return (env_name or None), rest


def select_environment(
    argv: Sequence[str],
    client_env: Mapping[str, str],
    config: PrewarmConfig,
) -> Tuple[str, List[str]]:
    """
    为一次调用选择应用环境名。

    优先级：
    1. `python` 命令的 `-e/--environment` 前导选项（选项会从 argv 中移除）
    2. 命令声明的环境（`pytest` -> `application.test_env`；自定义命令的 `env`）
    3. client 环境变量 `application.env_var`
    4. `application.default_env`

    返回：
    - (env_name, argv)：argv 为去掉环境选项后的命令行
    """

    args = list(argv)
    app = config.application
    if not args:
        return app.default_env, args
    name = args[0]
    custom = config.commands.get(name)
    if custom is None and name == "python":
        flag_env, rest = _split_env_flag(args[1:])
        args = [name] + rest
        if flag_env:
            return flag_env, args
    if custom is not None and custom.env:
        return custom.env, args
    if custom is None and name == "pytest":
        return app.test_env, args
    from_client = str(client_env.get(app.env_var) or "").strip()
    if from_client:
        return from_client, args
    return app.default_env, args


def run_python(args: List[str], *, namespace: Optional[Dict[str, Any]] = None) -> Optional[int]:
    """
    内置 `python` 命令：在 warm 解释器里执行脚本/模块/代码。

    形式：
    - `python -c CODE [ARGS]`
    - `python -m MODULE [ARGS]`
    - `python SCRIPT [ARGS]`
    - `python`（无参数）：基于 warm 命名空间的交互式 console
    """

    if not args:
        local = dict(namespace or {})
        local["__name__"] = "__console__"
        sys.argv = [""]
        code.interact(banner=f"Python {sys.version} (prewarm)", local=local, exitmsg="")
        return 0
    head = args[0]
    if head == "-c":
        if len(args) < 2:
            raise ValueError("argument expected for the -c option")
        sys.argv = ["-c"] + args[2:]
        globs: Dict[str, Any] = {"__name__": "__main__", "__builtins__": builtins}
        exec(compile(args[1], "<string>", "exec"), globs)  # noqa: S102
        return 0
    if head == "-m":
        if len(args) < 2:
            raise ValueError("argument expected for the -m option")
        sys.argv = [args[1]] + args[2:]
        runpy.run_module(args[1], run_name="__main__", alter_sys=True)
        return 0
    sys.argv = list(args)
    sys.path.insert(0, os.path.dirname(os.path.abspath(head)))
    runpy.run_path(head, run_name="__main__")
    return 0


def run_pytest(args: List[str]) -> Optional[int]:
    """内置 `pytest` 命令：`pytest.main(args)`（pytest 在首次使用时导入，可通过 preload 提前加载）。"""

    import pytest

    sys.argv = ["pytest"] + list(args)
    return int(pytest.main(list(args)))


@dataclass(frozen=True)
class Command:
    """已解析的命令。"""

    name: str
    handler: Handler
    env: Optional[str] = None
    description: str = ""

    def run(self, args: List[str]) -> Optional[int]:
        """执行命令（返回 exit code；None 视为 0）。"""

        return self.handler(list(args))


class CommandRegistry:
    """
    name -> Command 映射（application 进程内构造一次）。

    参数：
    - config：校验后的配置（自定义命令来源）
    - namespace：入口文件执行后的全局命名空间（`python` 交互式 console 使用）
    """

    def __init__(self, config: PrewarmConfig, *, namespace: Optional[Dict[str, Any]] = None) -> None:
        """创建注册表并立即导入所有自定义 handler（导入失败直接抛出）。"""

        self._commands: Dict[str, Command] = {
            "python": Command(
                name="python",
                handler=partial(run_python, namespace=namespace),
                description="Run a script, module or code string in the warm interpreter.",
            ),
            "pytest": Command(
                name="pytest",
                handler=run_pytest,
                env=config.application.test_env,
                description="Run pytest in the warm interpreter.",
            ),
        }
        for name, cmd_cfg in config.commands.items():
            handler = resolve_import_ref(cmd_cfg.handler)
            if not callable(handler):
                raise TypeError(f"command handler is not callable: {cmd_cfg.handler}")
            self._commands[name] = Command(name=name, handler=handler, env=cmd_cfg.env, description=cmd_cfg.description)

    def names(self) -> List[str]:
        """已注册的命令名（排序）。"""

        return sorted(self._commands)

    def resolve(self, name: str) -> Command:
        """
        按名字查找命令。

        异常：
        - UnknownCommandError：名字未注册
        """

        cmd = self._commands.get(str(name))
        if cmd is None:
            raise UnknownCommandError(str(name))
        return cmd
