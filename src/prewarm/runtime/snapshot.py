"""
Environment Snapshot：把一次 client 调用的执行环境打包成可传输单元。

说明：
- 可 JSON 序列化的部分（argv/env/cwd/pgid/tty_path）放在消息体里；
- stdio / tty 句柄本身不能序列化，由 `StdioHandles` 收集后作为 SCM_RIGHTS 附带发送；
- 快照一旦发送即不可变（frozen dataclass）。
"""

from __future__ import annotations

import os
import signal
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

TTY_ENV = "PREWARM_TTY"
# run 期间 client 捕获并经连接转发给 worker 的信号
FORWARDED_SIGNALS = frozenset({signal.SIGINT, signal.SIGQUIT, signal.SIGTERM, signal.SIGHUP, signal.SIGWINCH})


@dataclass(frozen=True)
class EnvironmentSnapshot:
    """一次调用的执行环境（不含句柄本身）。"""

    argv: List[str]
    env: Dict[str, str]
    cwd: str
    pgid: int
    tty_path: Optional[str] = None

    @classmethod
    def capture(cls, argv: Sequence[str], *, env: Optional[Mapping[str, str]] = None) -> "EnvironmentSnapshot":
        """
        采集当前进程的执行环境。

        参数：
        - argv：要在 worker 中执行的命令（命令名 + 参数）
        - env：环境变量（默认 os.environ）
        """

        e = dict(os.environ if env is None else env)
        tty = str(e.get(TTY_ENV) or "").strip() or None
        return cls(argv=[str(a) for a in argv], env=e, cwd=os.getcwd(), pgid=os.getpgrp(), tty_path=tty)

    def to_dict(self) -> Dict[str, Any]:
        """投影为可 JSON 序列化的 dict。"""

        return {
            "argv": list(self.argv),
            "env": dict(self.env),
            "cwd": self.cwd,
            "pgid": int(self.pgid),
            "tty_path": self.tty_path,
        }

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> "EnvironmentSnapshot":
        """
        从 dict 还原快照（server/application 侧使用）。

        异常：
        - ValueError：字段缺失或类型不符
        """

        argv = obj.get("argv")
        env = obj.get("env")
        cwd = obj.get("cwd")
        if not isinstance(argv, list) or not all(isinstance(x, str) for x in argv):
            raise ValueError("snapshot.argv must be list[str]")
        if not isinstance(env, dict):
            raise ValueError("snapshot.env must be object")
        if not isinstance(cwd, str) or not cwd:
            raise ValueError("snapshot.cwd must be non-empty string")
        tty_path = obj.get("tty_path")
        return cls(
            argv=list(argv),
            env={str(k): str(v) for k, v in env.items()},
            cwd=cwd,
            pgid=int(obj.get("pgid") or 0),
            tty_path=str(tty_path) if tty_path else None,
        )


@dataclass
class StdioHandles:
    """
    随快照一起发送的句柄（stdin/stdout/stderr + 可选 tty）。

    说明：
    - 当前进程的 0/1/2 若已关闭（例如被父进程 `in: :close` 启动），以 /dev/null 代替；
    - `opened` 记录本对象自行打开的 fd，`close()` 只关闭这些。
    """

    fds: List[int]
    has_tty: bool = False
    opened: List[int] = field(default_factory=list)

    @classmethod
    def from_current_process(cls, tty_path: Optional[str] = None) -> "StdioHandles":
        """收集当前进程的 stdio（以及 `tty_path` 指向的终端，若给出）。"""

        fds: List[int] = []
        opened: List[int] = []
        for fd, flags in ((0, os.O_RDONLY), (1, os.O_WRONLY), (2, os.O_WRONLY)):
            try:
                os.fstat(fd)
                fds.append(fd)
            except OSError:
                nfd = os.open(os.devnull, flags)
                fds.append(nfd)
                opened.append(nfd)
        has_tty = False
        if tty_path:
            try:
                tfd = os.open(tty_path, os.O_WRONLY | os.O_APPEND | os.O_NOCTTY)
            except OSError:
                tfd = -1
            if tfd >= 0:
                fds.append(tfd)
                opened.append(tfd)
                has_tty = True
        return cls(fds=fds, has_tty=has_tty, opened=opened)

    def close(self) -> None:
        """关闭本对象自行打开的 fd（best-effort）。"""

        for fd in self.opened:
            try:
                os.close(fd)
            except OSError:
                pass
        self.opened = []
