"""
Preload server：每个 Identity 一个常驻进程，持有各应用环境的 warm 状态并为每个请求 fork worker。

行为：
- 监听 `prewarm-<token>.sock`（0600），启动后写入 registry 条目；
- 每个连接一个线程：`run` / `status` / `stop` / `ping`；
- run 期间 client 可发送 `signal{signum}` 帧，server 转发给对应 worker；
- 空闲（无 in-flight 请求且超过 `server.idle_timeout_sec`）自动退出；
- 依赖文件或配置文件变化导致 Identity 漂移时自动退出（下一个 client 会以新 Identity 启动新 server）；
- 退出时终止 application 进程与 in-flight worker，最后删除 registry 条目与 endpoint。
"""

from __future__ import annotations

import contextlib
import dataclasses
import logging
import os
import select
import signal
import socket
import stat
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from prewarm.config.loader import PrewarmConfig, load_config
from prewarm.core.errors import BootFailure, FrameworkError, ProtocolError
from prewarm.identity import Identity, current_identity
from prewarm.runtime.commands import select_environment
from prewarm.runtime.paths import (
    LOG_LEVEL_ENV,
    SERVER_ROOT_ENV,
    SERVER_TOKEN_ENV,
    RuntimePaths,
    ensure_runtime_dir,
    get_runtime_paths,
)
from prewarm.runtime.preloader import Preloader, RunTicket
from prewarm.runtime.protocol import Connection, Message, close_fds, connect
from prewarm.runtime.registry import ProcessRegistry
from prewarm.runtime.snapshot import FORWARDED_SIGNALS, EnvironmentSnapshot

logger = logging.getLogger(__name__)

_IDENTITY_CHECK_SEC = 2.0
_HANGUP_POLL_SEC = 0.2


class PreloadServer:
    """
    Identity 级 preload server（Unix socket + 帧协议）。

    参数：
    - identity：本 server 服务的 Identity
    - paths：runtime 路径（endpoint / registry / log）
    - config：校验后的配置（显式传给各 preloader）
    - log_level：application 进程日志级别
    """

    def __init__(self, *, identity: Identity, paths: RuntimePaths, config: PrewarmConfig, log_level: str = "INFO") -> None:
        """创建 server（不做 I/O）。"""

        self._identity = identity
        self._root = Path(identity.root)
        self._paths = paths
        self._config = config
        self._log_level = log_level
        self._registry = ProcessRegistry(paths)
        self._preloaders: Dict[str, Preloader] = {}
        self._preloaders_lock = threading.Lock()
        self._shutdown = threading.Event()
        self._in_flight = 0
        self._in_flight_lock = threading.Lock()
        self._started_monotonic = time.monotonic()

    @property
    def registry(self) -> ProcessRegistry:
        """本 server 的 registry 视图。"""

        return self._registry

    def request_shutdown(self) -> None:
        """请求 accept 循环退出（线程安全，可在信号处理中调用）。"""

        self._shutdown.set()

    def _preloader_for(self, env_name: str) -> Preloader:
        """获取（必要时创建）某应用环境的 preloader。"""

        with self._preloaders_lock:
            p = self._preloaders.get(env_name)
            if p is None:
                p = Preloader(root=self._root, env_name=env_name, config=self._config, log_level=self._log_level)
                self._preloaders[env_name] = p
            return p

    # ---- 请求处理 ----

    def _format_error(self, e: Exception) -> Dict[str, Any]:
        """
        把异常映射为稳定的错误结构。

        返回：
        - error_kind：validation|not_found|internal
        - error：可读错误信息
        """

        kind = "internal"
        if isinstance(e, ValueError):
            kind = "validation"
        elif isinstance(e, KeyError):
            kind = "not_found"
        msg = e.message if isinstance(e, FrameworkError) else str(e)
        return {"type": "error", "error_kind": kind, "error": msg or kind}

    def _handle_connection(self, sock: socket.socket) -> None:
        """连接线程入口：读取一条请求并处理。"""

        conn = Connection(sock)
        with self._in_flight_lock:
            self._in_flight += 1
        try:
            got = conn.receive()
            if got is None:
                return
            msg, fds = got
            self._registry.record_activity()
            kind = msg.get("type")
            try:
                if kind == "run":
                    self._handle_run(conn, msg, fds)
                    return
                close_fds(fds)
                if kind == "ping":
                    conn.send({"type": "pong", "pid": os.getpid()})
                elif kind == "status":
                    conn.send(self.status())
                elif kind == "stop":
                    logger.info("stop requested")
                    conn.send({"type": "stopped", "pid": os.getpid()})
                    self._shutdown.set()
                else:
                    raise ValueError(f"unknown request type: {kind}")
            except ProtocolError:
                raise
            except Exception as e:
                logger.debug("request %r failed", kind, exc_info=True)
                conn.send(self._format_error(e))
        except ProtocolError as e:
            logger.debug("connection dropped: %s", e)
        finally:
            conn.close()
            with self._in_flight_lock:
                self._in_flight -= 1
            self._registry.record_activity()

    def _handle_run(self, conn: Connection, msg: Message, fds: List[int]) -> None:
        """处理 run：选择环境 -> 确保 warm -> fork worker -> 等待退出并回传 exit。"""

        channel = "tty" if bool(msg.get("has_tty")) and len(fds) > 3 else "stderr"
        try:
            snapshot = EnvironmentSnapshot.from_dict(msg.get("snapshot") or {})
            if not snapshot.argv:
                raise ValueError("no command given")
            if len(fds) < 3:
                raise ValueError("run request must carry stdin/stdout/stderr descriptors")
            env_name, argv = select_environment(snapshot.argv, snapshot.env, self._config)
            snapshot = dataclasses.replace(snapshot, argv=argv)
            ticket = self._preloader_for(env_name).start_run(snapshot, fds)
        except (BootFailure, FrameworkError, ValueError) as e:
            text = e.message if isinstance(e, FrameworkError) else str(e)
            if not text.endswith("\n"):
                text += "\n"
            conn.send({"type": "output", "channel": channel, "data": text})
            conn.send({"type": "exit", "status": 1})
            return
        finally:
            close_fds(fds)
        self._registry.add_worker(ticket.pid)
        try:
            status = self._await_worker(conn, ticket, client_pgid=snapshot.pgid)
        finally:
            self._registry.remove_worker(ticket.pid)
        conn.send({"type": "exit", "status": status})

    def _await_worker(self, conn: Connection, ticket: RunTicket, *, client_pgid: int) -> int:
        """
        等待 worker 退出，期间处理 client 发来的 `signal` 帧。

        说明：
        - client 挂断（连接 EOF）时向 worker 发送 SIGTERM；
        - 转发规则见 `_forward_signal`。

        返回：
        - worker 的 exit code（application 进程意外退出时为 1）
        """

        hung_up = False
        while True:
            event = ticket.wait(timeout=_HANGUP_POLL_SEC)
            if event is not None:
                if event.get("type") == "exited":
                    return int(event.get("status") or 0)
                with contextlib.suppress(ProtocolError):
                    conn.send({"type": "output", "channel": "stderr", "data": "prewarm: application process exited unexpectedly\n"})
                return 1
            if hung_up:
                continue
            gone, signums = self._poll_client(conn)
            for signum in signums:
                _forward_signal(ticket.pid, signum, client_pgid)
            if gone:
                hung_up = True
                logger.info("client hung up; terminating worker pid=%s", ticket.pid)
                with contextlib.suppress(ProcessLookupError, PermissionError):
                    os.kill(ticket.pid, signal.SIGTERM)

    @staticmethod
    def _poll_client(conn: Connection) -> Tuple[bool, List[int]]:
        """
        非阻塞读取 client 在 run 期间发来的帧。

        返回：
        - (gone, signums)：gone 表示连接已 EOF 或损坏；signums 为收到的 `signal` 帧
        """

        signums: List[int] = []
        while True:
            try:
                readable, _, _ = select.select([conn], [], [], 0)
                if not readable:
                    return False, signums
                got = conn.receive()
            except (ProtocolError, OSError):
                return True, signums
            if got is None:
                return True, signums
            msg, fds = got
            close_fds(fds)
            if msg.get("type") == "signal":
                with contextlib.suppress(TypeError, ValueError):
                    signums.append(int(msg.get("signum")))
            else:
                logger.debug("ignoring %r frame during run", msg.get("type"))

    def status(self) -> Dict[str, Any]:
        """status 文档（`prewarm status --json` 输出）。"""

        with self._preloaders_lock:
            preloaders = {name: p.status() for name, p in self._preloaders.items()}
        entry = self._registry.read_entry()
        return {
            "type": "status",
            "running": True,
            "pid": os.getpid(),
            "root": self._identity.root,
            "token": self._identity.token,
            "endpoint": str(self._paths.socket_path),
            "started_at": entry.started_at if entry is not None else None,
            "uptime_sec": round(time.monotonic() - self._started_monotonic, 3),
            "idle_sec": round(self._registry.idle_seconds(), 3),
            "worker_pids": entry.worker_pids if entry is not None else [],
            "preloaders": preloaders,
        }

    # ---- 生命周期 ----

    def _identity_drifted(self) -> bool:
        """依赖/配置文件变化导致 Identity 改变。"""

        try:
            return current_identity(self._root).token != self._identity.token
        except OSError:
            return False

    def _idle_expired(self) -> bool:
        """无 in-flight 请求且空闲超时。"""

        with self._in_flight_lock:
            busy = self._in_flight > 0
        return not busy and self._registry.idle_seconds() > self._config.server.idle_timeout_sec

    def serve_forever(self) -> None:
        """
        监听 endpoint 并处理请求，直到 stop、SIGTERM、空闲超时或 Identity 漂移。
        """

        ensure_runtime_dir(self._paths)
        # 另一个 server 已在服务同一 endpoint：直接退出
        existing = connect(self._paths.socket_path, timeout=0.5)
        if existing is not None:
            existing.close()
            logger.info("another server is already listening on %s", self._paths.socket_path)
            return
        with contextlib.suppress(FileNotFoundError):
            self._paths.socket_path.unlink()

        s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            s.bind(str(self._paths.socket_path))
            os.chmod(self._paths.socket_path, stat.S_IRUSR | stat.S_IWUSR)  # 0600
            s.listen(64)
            s.settimeout(0.2)
            self._registry.register(self._identity)
            logger.info("server pid=%s listening on %s (root=%s)", os.getpid(), self._paths.socket_path, self._root)

            next_identity_check = time.monotonic() + _IDENTITY_CHECK_SEC
            while not self._shutdown.is_set():
                if self._idle_expired():
                    logger.info("idle for more than %ss; exiting", self._config.server.idle_timeout_sec)
                    break
                if time.monotonic() >= next_identity_check:
                    next_identity_check = time.monotonic() + _IDENTITY_CHECK_SEC
                    if self._identity_drifted():
                        logger.info("dependency or configuration files changed; exiting")
                        break
                try:
                    client, _ = s.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    logger.warning("accept failed: %s", e)
                    continue
                client.settimeout(None)
                t = threading.Thread(target=self._handle_connection, args=(client,), name="prewarm-conn", daemon=True)
                t.start()
        finally:
            with self._preloaders_lock:
                preloaders = list(self._preloaders.values())
            for p in preloaders:
                with contextlib.suppress(Exception):
                    p.stop()
            with contextlib.suppress(OSError):
                s.close()
            # 删除 registry 条目与 endpoint 是最后一步
            self._registry.unregister()
            logger.info("server pid=%s stopped", os.getpid())


def _forward_signal(pid: int, signum: int, client_pgid: int) -> None:
    """
    把 client 转发来的信号交给 worker。

    规则：
    - 只接受 `FORWARDED_SIGNALS` 中的信号；
    - SIGINT / SIGQUIT / SIGWINCH 在 worker 已加入 client 进程组时跳过（终端已直接送达，避免重复）；
    - SIGTERM / SIGHUP 总是转发（它们可能只发给了 client 进程本身）。
    """

    if signum not in FORWARDED_SIGNALS:
        logger.debug("ignoring forwarded signal %s", signum)
        return
    if signum not in (signal.SIGTERM, signal.SIGHUP):
        try:
            if client_pgid > 0 and os.getpgid(pid) == client_pgid:
                return
        except ProcessLookupError:
            return
    logger.debug("forwarding signal %s to worker pid=%s", signum, pid)
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.kill(pid, signum)


def _join_session_group() -> None:
    """
    加入 session leader 的进程组。

    说明：
    - server 不能位于 client 的前台进程组（否则 Ctrl-C 会打到 server）；
    - 又必须留在 client 的 session 内，worker 才能 `setpgid` 加入 client 的进程组。
    """

    try:
        sid = os.getsid(0)
        if os.getpgrp() != sid:
            os.setpgid(0, sid)
    except OSError as e:
        logger.warning("cannot join session process group: %s", e)


def _install_signal_handlers(server: PreloadServer) -> None:
    """终端信号忽略（属于 worker）；SIGTERM 触发有序退出。"""

    for sig in (signal.SIGINT, signal.SIGQUIT, signal.SIGHUP):
        signal.signal(sig, signal.SIG_IGN)
    signal.signal(signal.SIGTERM, lambda signum, frame: server.request_shutdown())


def main() -> int:
    """
    模块入口：从环境变量读取 root / token 并启动 server。

    环境变量：
    - `PREWARM_SERVER_ROOT`：应用根目录（默认 cwd）
    - `PREWARM_SERVER_TOKEN`：client 期望的 Identity token（不一致说明文件在启动间隙发生变化，直接退出）
    - `PREWARM_LOG_LEVEL`：日志级别覆盖
    """

    root = Path(str(os.environ.get(SERVER_ROOT_ENV) or "").strip() or Path.cwd()).resolve()
    expected = str(os.environ.get(SERVER_TOKEN_ENV) or "").strip()
    env_level = str(os.environ.get(LOG_LEVEL_ENV) or "").strip().upper()
    logging.basicConfig(
        level=env_level or "INFO",
        format=f"%(asctime)s %(levelname)s [server {os.getpid()}] %(name)s: %(message)s",
    )

    identity = current_identity(root)
    if expected and expected != identity.token:
        logger.error("identity changed while starting (expected %s, got %s)", expected, identity.token)
        return 1
    config = load_config(root)
    level = env_level or config.server.log_level
    logging.getLogger().setLevel(level)

    paths = get_runtime_paths(identity)
    server = PreloadServer(identity=identity, paths=paths, config=config, log_level=level)
    _join_session_group()
    _install_signal_handlers(server)
    server.serve_forever()
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
