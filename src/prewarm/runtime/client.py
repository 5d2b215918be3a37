"""
Preload client：计算 Identity，连接（或拉起）对应 server，并代理一次命令调用。

说明：
- client 不加载配置（保持轻量：只做哈希与 socket 通信）；
- `start()` 幂等：per-identity 锁文件上的 `fcntl.flock` 串行化并发启动者，后到者复用同一 server；
- `run()` 把 argv / env / cwd / pgid 与 stdio（以及 `PREWARM_TTY` 指向的终端）一并发送，
  然后阻塞直到收到 `exit{status}`，期间把 `output` 写到对应的本地流，并把捕获的终端信号转发给 server。
"""

from __future__ import annotations

import contextlib
import fcntl
import os
import queue
import signal
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

import prewarm
from prewarm.core.errors import ProtocolError, ServerStartError
from prewarm.identity import CONFIG_FILE_NAME, Identity, current_identity
from prewarm.runtime.paths import SERVER_ROOT_ENV, SERVER_TOKEN_ENV, RuntimePaths, ensure_runtime_dir, get_runtime_paths
from prewarm.runtime.protocol import Connection, close_fds, connect
from prewarm.runtime.registry import ProcessRegistry
from prewarm.runtime.snapshot import FORWARDED_SIGNALS, TTY_ENV, EnvironmentSnapshot, StdioHandles

_ROOT_MARKERS = (CONFIG_FILE_NAME, "pyproject.toml")


def find_root(start: Optional[Path] = None) -> Path:
    """
    从 start（默认 cwd）向上查找应用根目录。

    规则：
    - 最近的包含 `.prewarm.yaml` 的祖先目录；
    - 否则最近的包含 `pyproject.toml` 的祖先目录；
    - 否则 start 本身。
    """

    base = Path(start or Path.cwd()).resolve()
    for marker in _ROOT_MARKERS:
        for d in (base, *base.parents):
            if (d / marker).is_file():
                return d
    return base


def _read_log_tail(path: Path, limit: int = 2000) -> str:
    """读取 server 日志尾部（用于启动失败诊断）。"""

    try:
        b = path.read_bytes()
    except OSError:
        return ""
    return b[-limit:].decode("utf-8", errors="replace").strip()


def _trap_signals(pending: "queue.SimpleQueue[Optional[int]]") -> Dict[int, Any]:
    """
    为 `FORWARDED_SIGNALS` 安装只入队的处理器（仅主线程可调用）。

    返回：
    - 信号 -> 原处理器（用于恢复）
    """

    def _handler(signum: int, frame: Any) -> None:
        """信号处理器：只入队，发送由转发线程完成。"""

        pending.put(signum)

    previous: Dict[int, Any] = {}
    for sig in sorted(FORWARDED_SIGNALS):
        previous[sig] = signal.signal(sig, _handler)
    return previous


def _forward_signals(conn: Connection, pending: "queue.SimpleQueue[Optional[int]]") -> None:
    """转发线程：把入队的信号以 `signal{signum}` 帧发给 server，收到 None 时退出。"""

    while True:
        signum = pending.get()
        if signum is None:
            return
        try:
            conn.send({"type": "signal", "signum": int(signum)})
        except (ProtocolError, OSError):
            return


class PreloadClient:
    """
    单个应用根目录的 client。

    参数：
    - root：应用根目录
    - env：环境变量（默认 os.environ；决定 runtime 目录等）
    - start_timeout_sec：拉起 server 的最长等待时间
    """

    def __init__(
        self,
        *,
        root: Path,
        env: Optional[Mapping[str, str]] = None,
        start_timeout_sec: float = 10.0,
    ) -> None:
        """创建 client 并计算 Identity。"""

        self._root = Path(root).resolve()
        self._env: Dict[str, str] = dict(os.environ if env is None else env)
        self._start_timeout = float(start_timeout_sec)
        home = self._env.get("HOME")
        self._identity = current_identity(self._root, home=Path(home) if home else None)
        self._paths = get_runtime_paths(self._identity, env=self._env)
        self._registry = ProcessRegistry(self._paths)

    @property
    def identity(self) -> Identity:
        """本 client 的 Identity。"""

        return self._identity

    @property
    def paths(self) -> RuntimePaths:
        """Identity 对应的 runtime 路径。"""

        return self._paths

    def connect(self) -> Optional[Connection]:
        """连接已运行的 server；未运行返回 None（NotRunning）。"""

        return connect(self._paths.socket_path, timeout=2.0)

    def _server_env(self) -> Dict[str, str]:
        """拉起 server 用的环境变量（保证后台进程能 import 到 prewarm）。"""

        env = dict(self._env)
        env[SERVER_ROOT_ENV] = str(self._root)
        env[SERVER_TOKEN_ENV] = self._identity.token
        env.pop(TTY_ENV, None)

        # 测试/嵌入式调用场景下，prewarm 可能经由 sys.path 加载而环境变量里没有 PYTHONPATH；
        # server 的 cwd 是应用根目录，相对路径会失效，这里统一补成绝对路径。
        pkg_base = str(Path(prewarm.__file__).resolve().parent.parent)
        parts = []
        for raw in str(env.get("PYTHONPATH") or "").split(os.pathsep):
            if not raw:
                continue
            p = Path(raw)
            if not p.is_absolute():
                p = (Path.cwd() / p).resolve()
            parts.append(str(p))
        installed = any(x in Path(pkg_base).parts for x in ("site-packages", "dist-packages"))
        if not installed and pkg_base not in parts:
            parts.append(pkg_base)
        env["PYTHONPATH"] = os.pathsep.join(parts)
        return env

    def start(self) -> Connection:
        """
        确保 server 在运行并返回一条新连接（幂等）。

        异常：
        - ServerStartError：超时内 server 未就绪（消息附带 server 日志尾部）
        """

        conn = self.connect()
        if conn is not None:
            return conn
        ensure_runtime_dir(self._paths)
        with open(self._paths.lock_path, "a+") as lock_f:
            fcntl.flock(lock_f.fileno(), fcntl.LOCK_EX)
            try:
                # 持锁期间再确认一次：并发启动者可能已经拉起 server
                conn = self.connect()
                if conn is not None:
                    return conn
                self._registry.cleanup_stale()
                return self._spawn_and_wait()
            finally:
                fcntl.flock(lock_f.fileno(), fcntl.LOCK_UN)

    def _spawn_and_wait(self) -> Connection:
        """后台拉起 server 并等待 endpoint 可连接。"""

        # 为了可观测性（避免 “start timeout 但无日志”），把 stdout/stderr 追加写到 per-identity 日志。
        # 不使用 start_new_session：server 必须与 client 同 session，worker 才能加入 client 的进程组。
        with open(self._paths.log_path, "ab") as log_f:
            proc = subprocess.Popen(  # noqa: S603
                [sys.executable, "-m", "prewarm.runtime.server"],
                cwd=str(self._root),
                env=self._server_env(),
                stdin=subprocess.DEVNULL,
                stdout=log_f,
                stderr=log_f,
                close_fds=True,
            )

        deadline = time.monotonic() + self._start_timeout
        while time.monotonic() < deadline:
            conn = self.connect()
            if conn is not None:
                return conn
            if proc.poll() is not None:
                break
            time.sleep(0.05)

        msg = "prewarm server failed to start"
        if proc.poll() is None:
            msg = "prewarm server start timeout"
        tail = _read_log_tail(self._paths.log_path)
        if tail:
            msg += f"; server log tail:\n{tail}"
        raise ServerStartError(msg)

    def run(self, argv: Sequence[str], *, stdout: Any = None, stderr: Any = None) -> int:
        """
        在 warm server 中执行一条命令并返回其 exit code。

        参数：
        - argv：命令名 + 参数
        - stdout / stderr：output 消息的写入目标（二进制流；默认当前进程的 stdout/stderr）

        说明：
        - worker 直接写 client 的原始 stdout/stderr（fd 传递），output 消息只承载 server 侧诊断；
        - 等待期间捕获 `FORWARDED_SIGNALS` 并以 `signal{signum}` 帧转发，由 server 交给 worker；
          worker 未能加入本进程组（client 与 server 不在同一 session）时 Ctrl-C 也因此生效。
        """

        out_stream = stdout if stdout is not None else sys.stdout.buffer
        err_stream = stderr if stderr is not None else sys.stderr.buffer
        conn = self.start()
        snapshot = EnvironmentSnapshot.capture(argv, env=self._env)
        handles = StdioHandles.from_current_process(snapshot.tty_path)
        tty_fd = handles.fds[3] if handles.has_tty else None
        try:
            with conn:
                conn.send({"type": "run", "snapshot": snapshot.to_dict(), "has_tty": handles.has_tty}, handles.fds)
                pending: "queue.SimpleQueue[Optional[int]]" = queue.SimpleQueue()
                forwarder = threading.Thread(
                    target=_forward_signals, args=(conn, pending), name="prewarm-signals", daemon=True
                )
                forwarder.start()
                restore: Dict[int, Any] = {}
                try:
                    if threading.current_thread() is threading.main_thread():
                        restore = _trap_signals(pending)
                    return self._relay(conn, out_stream, err_stream, tty_fd)
                finally:
                    for sig, previous in restore.items():
                        signal.signal(sig, previous)
                    pending.put(None)
                    forwarder.join(timeout=1.0)
        finally:
            handles.close()

    def _relay(self, conn: Connection, out_stream: Any, err_stream: Any, tty_fd: Optional[int]) -> int:
        """读取 server 回传的 output / exit，直到得到 exit code（连接中断视为 1）。"""

        while True:
            try:
                got = conn.receive()
            except ProtocolError:
                got = None
            if got is None:
                self._write(err_stream, None, "prewarm: lost connection to server\n")
                return 1
            msg, fds = got
            close_fds(fds)
            kind = msg.get("type")
            if kind == "output":
                channel = str(msg.get("channel") or "stderr")
                data = str(msg.get("data") or "")
                if channel == "stdout":
                    self._write(out_stream, None, data)
                else:
                    self._write(err_stream, tty_fd if channel == "tty" else None, data)
            elif kind == "exit":
                return int(msg.get("status") or 0)
            elif kind == "error":
                self._write(err_stream, None, f"prewarm: {msg.get('error')}\n")
                return 1

    @staticmethod
    def _write(stream: Any, fd: Optional[int], text: str) -> None:
        """写一段诊断输出（给出 fd 时直接写 fd，例如 tty）。"""

        data = text.encode("utf-8", errors="replace")
        if fd is not None:
            with contextlib.suppress(OSError):
                os.write(fd, data)
                return
        stream.write(data)
        stream.flush()

    def status(self) -> Dict[str, Any]:
        """
        查询 server 状态。

        返回：
        - `{"running": False}`：未运行
        - server 的 status 文档：运行中
        """

        if not self._registry.is_running():
            return {"running": False, "root": str(self._root), "token": self._identity.token}
        conn = self.connect()
        if conn is None:
            return {"running": False, "root": str(self._root), "token": self._identity.token}
        with conn:
            try:
                conn.settimeout(5.0)
                resp = conn.request({"type": "status"})
            except (ProtocolError, OSError):
                return {"running": False, "root": str(self._root), "token": self._identity.token}
        resp.pop("type", None)
        return resp

    def is_running(self) -> bool:
        """server 是否在运行。"""

        return self._registry.is_running()

    def stop(self) -> bool:
        """停止 server（幂等；返回调用前是否在运行）。"""

        return self._registry.stop()
