"""
Application 进程：持有 warm 应用状态，并为每个请求 fork 一个 worker。

生命周期：
- 由 preloader 以 `python -m prewarm.runtime.application --fd N` 启动，N 为 socketpair 的一端；
- 首条消息必须是 `boot{root, env_name, config}`：执行入口文件、导入 preload 模块、解析 hooks 与命令，
  成功回复 `booted{files}`（本次 boot 加载的、位于应用根目录下的源码文件），失败回复 `boot_failed{kind, error}` 后退出；
- 之后循环处理 `run{id, snapshot}`（附 stdio fds）：fork worker，回复 `spawned{id, pid}`，
  worker 退出后回复 `exited{id, pid, status}`；未知命令回复 `rejected{id, kind, error}`；
- `drain`：不再接受新请求，等待 in-flight worker 全部退出并上报后退出（watcher 判定 stale 后使用）。

约束：
- 本进程保持单线程（fork 安全）；SIGCHLD 通过 `signal.set_wakeup_fd` 唤醒 select 循环；
- worker 只读取 fork 得到的状态副本，绝不回写本进程。
"""

from __future__ import annotations

import argparse
import contextlib
import importlib
import logging
import os
import random
import runpy
import select
import signal
import socket
import sys
import traceback
from pathlib import Path
from typing import Any, Callable, Dict, List, NoReturn, Optional, Sequence

from prewarm.config.loader import PrewarmConfig
from prewarm.core.errors import BootFailure, FrameworkError, MissingEntryPoint, ProtocolError, UnknownCommandError
from prewarm.runtime.commands import Command, CommandRegistry, resolve_import_ref
from prewarm.runtime.protocol import Connection, Message, close_fds
from prewarm.runtime.snapshot import EnvironmentSnapshot

logger = logging.getLogger(__name__)

_PACKAGE_DIR = Path(__file__).resolve().parent.parent
_TERMINAL_SIGNALS = (signal.SIGINT, signal.SIGQUIT, signal.SIGHUP)


def exit_status(wait_status: int) -> int:
    """
    把 `waitpid` 状态转换为 exit code。

    说明：
    - 正常退出：返回进程 exit code；
    - 被信号杀死：返回 `128 + signum`（与 shell 约定一致，保证非 0 且可区分）。
    """

    code = os.waitstatus_to_exitcode(wait_status)
    if code < 0:
        return 128 + (-code)
    return code


def system_exit_code(exc: SystemExit) -> int:
    """按解释器的约定把 SystemExit 映射为 exit code（非整数 code 打印到 stderr 并返回 1）。"""

    code = exc.code
    if code is None:
        return 0
    if isinstance(code, bool):
        return int(code)
    if isinstance(code, int):
        return code & 0xFF
    print(code, file=sys.stderr)
    return 1


def loaded_source_files(root: Path) -> List[str]:
    """
    返回当前解释器已加载的、位于 root 下的模块源码文件。

    说明：
    - 排除 site-packages / dist-packages（root 内的虚拟环境）以及 prewarm 自身；
    - 结果即 watched file set 的主体（按 boot 动态发现，不做静态枚举）。
    """

    base = Path(root).resolve()
    out: set[str] = set()
    for mod in list(sys.modules.values()):
        f = getattr(mod, "__file__", None)
        if not f:
            continue
        try:
            p = Path(f).resolve()
        except (OSError, RuntimeError):
            continue
        if not p.is_relative_to(base) or p.is_relative_to(_PACKAGE_DIR):
            continue
        if "site-packages" in p.parts or "dist-packages" in p.parts:
            continue
        out.add(str(p))
    return sorted(out)


class ApplicationProcess:
    """
    application 进程的状态与主循环。

    参数：
    - conn：与 preloader 之间的控制通道
    """

    def __init__(self, conn: Connection) -> None:
        """创建 application 进程对象（尚未 boot）。"""

        self._conn = conn
        self._config: Optional[PrewarmConfig] = None
        self._env_name = ""
        self._namespace: Dict[str, Any] = {}
        self._hooks: List[Callable[[], Any]] = []
        self._commands: Optional[CommandRegistry] = None
        self._children: Dict[int, str] = {}
        self._draining = False
        self._conn_open = True
        self._wakeup_r = -1
        self._wakeup_w = -1

    def boot(self, *, root: Path, env_name: str, config: PrewarmConfig) -> List[str]:
        """
        执行一次 boot，返回 watched file set（入口文件 + 加载的源码文件）。

        异常：
        - MissingEntryPoint：入口文件不存在
        - BootFailure：入口/preload/hook/命令 handler 加载失败（message 为 traceback 文本）
        """

        app = config.application
        root = Path(root).resolve()
        self._config = config
        self._env_name = env_name
        os.chdir(root)
        os.environ[app.env_var] = env_name
        for i, rel in enumerate(app.python_path):
            p = str((root / rel).resolve())
            if p not in sys.path:
                sys.path.insert(i, p)

        entry = (root / app.entry).resolve()
        if not entry.is_file():
            raise MissingEntryPoint(app.entry, root=str(root))
        try:
            self._namespace = runpy.run_path(str(entry), run_name="__prewarm_app__")
            for name in app.preload:
                importlib.import_module(name)
            self._hooks = [resolve_import_ref(ref) for ref in config.after_fork]
            self._commands = CommandRegistry(config, namespace=self._namespace)
        except (Exception, SystemExit):
            raise BootFailure(traceback.format_exc(), details={"entry": str(entry)}) from None
        files = set(loaded_source_files(root))
        files.add(str(entry))
        logger.info("booted env=%s entry=%s files=%d", env_name, entry, len(files))
        return sorted(files)

    # ---- 主循环 ----

    def serve(self) -> int:
        """处理 boot 与后续请求，直到 drain 完成或控制通道关闭。"""

        for sig in _TERMINAL_SIGNALS:
            signal.signal(sig, signal.SIG_IGN)
        got = self._conn.receive()
        if got is None:
            return 1
        msg, fds = got
        close_fds(fds)
        if msg.get("type") != "boot":
            logger.error("expected boot message, got %r", msg.get("type"))
            return 1
        try:
            config = PrewarmConfig.model_validate(msg.get("config") or {})
            files = self.boot(root=Path(str(msg.get("root"))), env_name=str(msg.get("env_name")), config=config)
        except MissingEntryPoint as e:
            self._conn.send({"type": "boot_failed", "kind": "missing_entry", "error": e.message, "entry": e.details.get("entry")})
            return 1
        except BootFailure as e:
            self._conn.send({"type": "boot_failed", "kind": "boot", "error": e.message})
            return 1
        except Exception as e:
            self._conn.send({"type": "boot_failed", "kind": "boot", "error": f"{type(e).__name__}: {e}"})
            return 1
        self._conn.send({"type": "booted", "pid": os.getpid(), "files": files})
        self._install_sigchld()
        try:
            self._loop()
        finally:
            signal.set_wakeup_fd(-1)
        return 0

    def _install_sigchld(self) -> None:
        """SIGCHLD 写入 wakeup pipe，唤醒 select。"""

        r, w = os.pipe()
        os.set_blocking(r, False)
        os.set_blocking(w, False)
        self._wakeup_r, self._wakeup_w = r, w
        signal.signal(signal.SIGCHLD, lambda signum, frame: None)
        signal.set_wakeup_fd(w)

    def _loop(self) -> None:
        """select 循环：控制通道消息 + 子进程回收。"""

        while True:
            if (self._draining or not self._conn_open) and not self._children:
                return
            watch: List[Any] = [self._wakeup_r]
            if self._conn_open:
                watch.append(self._conn)
            readable, _, _ = select.select(watch, [], [], 1.0)
            if self._wakeup_r in readable:
                with contextlib.suppress(BlockingIOError):
                    while os.read(self._wakeup_r, 512):
                        pass
            self._reap()
            if self._conn_open and self._conn in readable:
                try:
                    got = self._conn.receive()
                except ProtocolError as e:
                    logger.warning("control channel error: %s", e)
                    got = None
                if got is None:
                    # preloader 已放弃本进程：等待 in-flight worker 结束后退出
                    self._conn_open = False
                    continue
                msg, fds = got
                self._handle(msg, fds)

    def _send(self, message: Message) -> None:
        """向 preloader 发送消息（控制通道已关闭时仅记录日志）。"""

        if not self._conn_open:
            return
        try:
            self._conn.send(message)
        except ProtocolError as e:
            logger.warning("cannot report %s: %s", message.get("type"), e)
            self._conn_open = False

    def _handle(self, msg: Message, fds: List[int]) -> None:
        """分发一条控制消息。"""

        kind = msg.get("type")
        if kind == "drain":
            logger.info("draining with %d in-flight worker(s)", len(self._children))
            self._draining = True
            close_fds(fds)
            return
        if kind != "run":
            logger.warning("ignoring unexpected message type %r", kind)
            close_fds(fds)
            return
        rid = str(msg.get("id") or "")
        try:
            if self._draining:
                raise FrameworkError(code="DRAINING", message="application is draining")
            snapshot = EnvironmentSnapshot.from_dict(msg.get("snapshot") or {})
            if not snapshot.argv:
                raise FrameworkError(code="EMPTY_COMMAND", message="no command given")
            assert self._commands is not None
            command = self._commands.resolve(snapshot.argv[0])
        except UnknownCommandError as e:
            close_fds(fds)
            self._send({"type": "rejected", "id": rid, "kind": "unknown_command", "error": e.message})
            return
        except (FrameworkError, ValueError) as e:
            close_fds(fds)
            kind_s = "draining" if isinstance(e, FrameworkError) and e.code == "DRAINING" else "validation"
            self._send({"type": "rejected", "id": rid, "kind": kind_s, "error": getattr(e, "message", str(e))})
            return
        pid = self._fork_worker(snapshot, fds, command)
        close_fds(fds)
        self._children[pid] = rid
        self._send({"type": "spawned", "id": rid, "pid": pid})

    def _reap(self) -> None:
        """回收所有已退出的 worker 并上报。"""

        while self._children:
            try:
                pid, status = os.waitpid(-1, os.WNOHANG)
            except ChildProcessError:
                return
            if pid == 0:
                return
            rid = self._children.pop(pid, None)
            if rid is None:
                continue
            code = exit_status(status)
            logger.debug("worker pid=%s exited status=%s", pid, code)
            self._send({"type": "exited", "id": rid, "pid": pid, "status": code})

    # ---- worker ----

    def _fork_worker(self, snapshot: EnvironmentSnapshot, fds: Sequence[int], command: Command) -> int:
        """fork 一个 worker（父进程返回 pid；子进程永不返回）。"""

        for stream in (sys.stdout, sys.stderr):
            with contextlib.suppress(Exception):
                stream.flush()
        pid = os.fork()
        if pid == 0:
            self._worker_main(snapshot, list(fds), command)
        return pid

    def _worker_main(self, snapshot: EnvironmentSnapshot, fds: List[int], command: Command) -> NoReturn:
        """worker 入口：应用快照、执行 hooks 与命令，以命令的 exit code 退出。"""

        code = 1
        try:
            self._join_client_group(snapshot.pgid)
            self._reset_signals()
            self._detach_from_parent()
            self._apply_stdio(fds)
            code = self._apply_and_run(snapshot, command)
        except SystemExit as e:
            code = system_exit_code(e)
        except KeyboardInterrupt:
            code = 128 + signal.SIGINT
        except BaseException:
            with contextlib.suppress(Exception):
                traceback.print_exc()
            code = 1
        finally:
            for stream in (sys.stdout, sys.stderr):
                with contextlib.suppress(Exception):
                    stream.flush()
            os._exit(code)

    @staticmethod
    def _join_client_group(pgid: int) -> None:
        """加入 client 的进程组（客户端的终端信号因此直接到达 worker）。"""

        if pgid <= 0:
            return
        try:
            os.setpgid(0, pgid)
        except OSError as e:
            # 不同 session 的 client 无法加入；终端信号改由 client 经连接转发
            logger.info("cannot join process group %s: %s", pgid, e)

    def _reset_signals(self) -> None:
        """恢复解释器默认的信号处理。"""

        signal.set_wakeup_fd(-1)
        signal.signal(signal.SIGINT, signal.default_int_handler)
        for sig in (signal.SIGQUIT, signal.SIGHUP, signal.SIGTERM, signal.SIGCHLD):
            signal.signal(sig, signal.SIG_DFL)

    def _detach_from_parent(self) -> None:
        """关闭从 application 进程继承来的控制通道与 wakeup pipe。"""

        self._conn.close()
        for fd in (self._wakeup_r, self._wakeup_w):
            with contextlib.suppress(OSError):
                os.close(fd)

    @staticmethod
    def _apply_stdio(fds: List[int]) -> None:
        """把 client 的 stdin/stdout/stderr 装到 0/1/2，并重建 `sys.std*`。"""

        for target, fd in zip((0, 1, 2), fds[:3]):
            os.dup2(fd, target)
        close_fds([fd for fd in fds if fd > 2])
        sys.stdin = open(0, "r", closefd=False)
        sys.stdout = open(1, "w", buffering=1 if os.isatty(1) else -1, closefd=False)
        sys.stderr = open(2, "w", buffering=1, closefd=False)

    def _apply_and_run(self, snapshot: EnvironmentSnapshot, command: Command) -> int:
        """应用 env / cwd，执行 after-fork hooks 与命令。"""

        assert self._config is not None
        os.environ.clear()
        os.environ.update(snapshot.env)
        os.environ[self._config.application.env_var] = self._env_name
        os.chdir(snapshot.cwd)
        random.seed()
        for hook in self._hooks:
            hook()
        result = command.run(snapshot.argv[1:])
        return 0 if result is None else int(result) & 0xFF


def _build_parser() -> argparse.ArgumentParser:
    """构建 application 进程的参数 parser。"""

    parser = argparse.ArgumentParser(prog="prewarm-application")
    parser.add_argument("--fd", type=int, required=True, help="Control socket file descriptor.")
    parser.add_argument("--log-level", default="INFO", help="Logging level.")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """模块入口：接管控制 socket 并进入 boot / serve。"""

    args = _build_parser().parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(
        level=str(args.log_level).upper(),
        format=f"%(asctime)s %(levelname)s [app {os.getpid()}] %(name)s: %(message)s",
    )
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM, fileno=int(args.fd))
    conn = Connection(sock)
    try:
        return ApplicationProcess(conn).serve()
    finally:
        conn.close()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
