"""
Preloader：server 内单个应用环境（development / test ...）的 warm 状态机。

状态：
- cold -> booting -> warm -> stale -> booting -> ...
- booting -> crashed -> booting（下一次 run 从头重试）
- 任意状态 -> stopped（server 停止）

约束：
- boot 锁保证同一时刻最多一个 boot；boot 期间到达的 run 在锁上排队，boot 结束（warm/crashed）后依次处理；
- warm 期间的 run 只在“发送 run 消息”这一步持锁（微秒级），等待 worker 退出不持锁，因此并发 run 彼此独立；
- stale 转换严格先于下一次 boot：旧 application 进程收到 `drain` 后处理完 in-flight worker 再退出。
"""

from __future__ import annotations

import contextlib
import enum
import logging
import os
import queue
import signal
import socket
import subprocess
import sys
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from prewarm.config.loader import PrewarmConfig
from prewarm.core.errors import BootFailure, FrameworkError, MissingEntryPoint, ProtocolError, UnknownCommandError
from prewarm.runtime.paths import SERVER_ROOT_ENV, SERVER_TOKEN_ENV
from prewarm.runtime.protocol import Connection, Message, close_fds
from prewarm.runtime.snapshot import EnvironmentSnapshot
from prewarm.runtime.watcher import Watcher, build_watcher

logger = logging.getLogger(__name__)

_SPAWN_TIMEOUT_SEC = 30.0


class ApplicationState(str, enum.Enum):
    """preloader 状态。"""

    COLD = "cold"
    BOOTING = "booting"
    WARM = "warm"
    STALE = "stale"
    CRASHED = "crashed"
    STOPPED = "stopped"


def watched_paths(root: Path, config: PrewarmConfig, loaded_files: Sequence[str]) -> List[Path]:
    """
    组装 watched file set：application 报告的已加载文件 + 入口文件 + `watch.paths`。

    说明：
    - `watch.paths` 中含通配符的条目按 glob 展开；不含通配符的条目即使当前不存在也加入（创建即视为变化）。
    """

    base = Path(root).resolve()
    out = {Path(p) for p in loaded_files}
    out.add((base / config.application.entry).resolve())
    for pattern in config.watch.paths:
        if any(ch in pattern for ch in "*?["):
            out.update(p.resolve() for p in base.glob(pattern) if p.is_file())
        else:
            out.add((base / pattern).resolve())
    return sorted(out)


@dataclass
class RunTicket:
    """一次已 fork 的 run（server 凭此等待 worker 退出）。"""

    id: str
    pid: int
    events: "queue.Queue[Message]"

    def wait(self, timeout: Optional[float] = None) -> Optional[Message]:
        """等待终止事件（`exited` / `lost`）；超时返回 None。"""

        try:
            return self.events.get(timeout=timeout)
        except queue.Empty:
            return None


class _ApplicationHandle:
    """
    一个 application 进程及其控制通道。

    说明：
    - 读线程把 `spawned/exited/rejected` 按请求 id 路由到各自的队列；
    - 控制通道 EOF（进程退出）时向所有未完成的请求投递 `lost`，保证 server 侧等待方不会挂住。
    """

    def __init__(self, proc: subprocess.Popen, conn: Connection, *, on_exit: Callable[["_ApplicationHandle"], None]) -> None:
        """包装已完成 boot 的 application 进程并启动读线程。"""

        self.proc = proc
        self.conn = conn
        self._on_exit = on_exit
        self._lock = threading.Lock()
        self._pending: Dict[str, "queue.Queue[Message]"] = {}
        self._workers: Dict[str, int] = {}
        self._reader = threading.Thread(target=self._read_loop, name=f"prewarm-app-{proc.pid}", daemon=True)
        self._reader.start()

    @property
    def pid(self) -> int:
        """application 进程 pid。"""

        return int(self.proc.pid)

    def register(self, rid: str) -> "queue.Queue[Message]":
        """为请求 id 分配事件队列。"""

        q: "queue.Queue[Message]" = queue.Queue()
        with self._lock:
            self._pending[rid] = q
        return q

    def forget(self, rid: str) -> None:
        """放弃请求 id（发送失败时）。"""

        with self._lock:
            self._pending.pop(rid, None)
            self._workers.pop(rid, None)

    def worker_pids(self) -> List[int]:
        """尚未上报退出的 worker pid。"""

        with self._lock:
            return list(self._workers.values())

    def _read_loop(self) -> None:
        """读线程：路由事件直到控制通道关闭。"""

        while True:
            try:
                got = self.conn.receive()
            except ProtocolError as e:
                logger.warning("application pid=%s control channel error: %s", self.pid, e)
                got = None
            if got is None:
                break
            msg, fds = got
            close_fds(fds)
            rid = str(msg.get("id") or "")
            kind = msg.get("type")
            with self._lock:
                q = self._pending.get(rid)
                if kind == "spawned":
                    self._workers[rid] = int(msg.get("pid") or 0)
                elif kind in ("exited", "rejected"):
                    self._pending.pop(rid, None)
                    self._workers.pop(rid, None)
            if q is not None:
                q.put(msg)
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
            self._workers.clear()
        for q in pending:
            q.put({"type": "lost"})
        with contextlib.suppress(Exception):
            self.proc.wait(timeout=5.0)
        self.conn.close()
        self._on_exit(self)

    def drain(self) -> None:
        """请求进程在 in-flight worker 结束后退出。"""

        try:
            self.conn.send({"type": "drain"})
        except ProtocolError as e:
            logger.warning("cannot drain application pid=%s: %s", self.pid, e)

    def terminate(self, *, grace: float = 1.0) -> None:
        """终止进程及其 in-flight worker（SIGTERM，超时后 SIGKILL）。"""

        targets = self.worker_pids()
        for wpid in targets:
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.kill(wpid, signal.SIGTERM)
        with contextlib.suppress(ProcessLookupError):
            self.proc.terminate()
        try:
            self.proc.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            with contextlib.suppress(ProcessLookupError):
                self.proc.kill()
        for wpid in targets:
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.kill(wpid, signal.SIGKILL)
        self.conn.close()


class Preloader:
    """
    单个应用环境的 warm 状态持有者。

    参数：
    - root：应用根目录
    - env_name：应用环境名
    - config：校验后的配置（显式传入，不使用全局单例）
    - watcher：可注入的 watcher（默认按 `config.watch` 构造）
    - log_level：传给 application 进程的日志级别
    """

    def __init__(
        self,
        *,
        root: Path,
        env_name: str,
        config: PrewarmConfig,
        watcher: Optional[Watcher] = None,
        log_level: str = "INFO",
    ) -> None:
        """创建 preloader（cold；首次 run 时 boot）。"""

        self._root = Path(root).resolve()
        self._env_name = str(env_name)
        self._config = config
        self._log_level = str(log_level)
        self._watcher = watcher if watcher is not None else build_watcher(config.watch, on_change=self._on_watch_change)
        self._boot_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = ApplicationState.COLD
        self._app: Optional[_ApplicationHandle] = None
        self._retired: List[_ApplicationHandle] = []
        self._watched: List[Path] = []
        self._boot_count = 0
        self._last_error: Optional[str] = None

    @property
    def env_name(self) -> str:
        """应用环境名。"""

        return self._env_name

    @property
    def state(self) -> ApplicationState:
        """当前状态。"""

        with self._state_lock:
            return self._state

    @property
    def boot_count(self) -> int:
        """成功 boot 的次数。"""

        return self._boot_count

    def _set_state(self, state: ApplicationState) -> None:
        """切换状态（stopped 为终态）。"""

        with self._state_lock:
            if self._state is ApplicationState.STOPPED:
                return
            if self._state is not state:
                logger.info("preloader env=%s: %s -> %s", self._env_name, self._state.value, state.value)
            self._state = state

    def _on_watch_change(self) -> None:
        """watcher 回调：warm -> stale。"""

        with self._state_lock:
            if self._state is ApplicationState.WARM:
                logger.info("preloader env=%s: warm -> stale", self._env_name)
                self._state = ApplicationState.STALE

    def _on_app_exit(self, handle: _ApplicationHandle) -> None:
        """application 进程退出回调（当前进程意外退出时回到 cold）。"""

        with self._state_lock:
            if handle in self._retired:
                self._retired.remove(handle)
            is_current = self._app is handle
            if is_current:
                self._app = None
        if is_current and self.state in (ApplicationState.WARM, ApplicationState.STALE):
            logger.warning("application pid=%s exited unexpectedly (env=%s)", handle.pid, self._env_name)
            self._set_state(ApplicationState.COLD)

    # ---- boot ----

    def _ensure_warm_locked(self) -> _ApplicationHandle:
        """在 boot 锁内确保 warm（必要时 drain 旧进程并重新 boot）。"""

        state = self.state
        if state is ApplicationState.STOPPED:
            raise FrameworkError(code="SERVER_STOPPING", message="server is stopping")
        if state is ApplicationState.WARM and self._watcher.changed():
            self._on_watch_change()
            state = self.state
        if state is ApplicationState.WARM and self._app is not None:
            return self._app
        old = self._app
        if old is not None:
            with self._state_lock:
                self._app = None
                self._retired.append(old)
            logger.info("draining application pid=%s before reboot", old.pid)
            old.drain()
        return self._boot()

    def _spawn_application(self) -> tuple[subprocess.Popen, Connection]:
        """启动一个 application 进程，返回 (Popen, 控制通道)。"""

        parent_sock, child_sock = socket.socketpair(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            env = dict(os.environ)
            for key in (SERVER_ROOT_ENV, SERVER_TOKEN_ENV):
                env.pop(key, None)
            proc = subprocess.Popen(  # noqa: S603
                [
                    sys.executable,
                    "-m",
                    "prewarm.runtime.application",
                    "--fd",
                    str(child_sock.fileno()),
                    "--log-level",
                    self._log_level,
                ],
                cwd=str(self._root),
                env=env,
                stdin=subprocess.DEVNULL,
                pass_fds=(child_sock.fileno(),),
                close_fds=True,
            )
        except OSError:
            parent_sock.close()
            raise
        finally:
            child_sock.close()
        return proc, Connection(parent_sock)

    def _boot(self) -> _ApplicationHandle:
        """
        执行一次 boot（调用方持有 boot 锁）。

        异常：
        - MissingEntryPoint / BootFailure：boot 失败（状态已置为 crashed）
        """

        self._set_state(ApplicationState.BOOTING)
        self._watcher.stop()
        started = time.monotonic()
        try:
            proc, conn = self._spawn_application()
        except OSError as e:
            self._set_state(ApplicationState.CRASHED)
            raise BootFailure(f"cannot start application process: {e}") from e
        reply: Optional[Message] = None
        try:
            conn.send(
                {
                    "type": "boot",
                    "root": str(self._root),
                    "env_name": self._env_name,
                    "config": self._config.model_dump(mode="json"),
                }
            )
            conn.settimeout(self._config.server.boot_timeout_sec)
            got = conn.receive()
            conn.settimeout(None)
            if got is not None:
                reply, fds = got
                close_fds(fds)
        except ProtocolError as e:
            logger.warning("boot of env=%s failed at protocol level: %s", self._env_name, e)
            reply = None
        if reply is None or reply.get("type") != "booted":
            conn.close()
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            status = proc.wait()
            self._set_state(ApplicationState.CRASHED)
            err = self._boot_error(reply, status, time.monotonic() - started)
            self._last_error = err.message
            raise err
        handle = _ApplicationHandle(proc, conn, on_exit=self._on_app_exit)
        files = [str(x) for x in (reply.get("files") or [])]
        self._watched = watched_paths(self._root, self._config, files)
        self._watcher.observe(self._watched)
        self._watcher.start()
        with self._state_lock:
            self._app = handle
        self._boot_count += 1
        self._last_error = None
        self._set_state(ApplicationState.WARM)
        logger.info(
            "booted env=%s pid=%s in %.3fs (%d watched files)",
            self._env_name,
            handle.pid,
            time.monotonic() - started,
            len(self._watched),
        )
        return handle

    def _boot_error(self, reply: Optional[Message], status: int, elapsed: float) -> BootFailure:
        """把 boot 失败回复（或缺失的回复）投影为异常。"""

        if reply is not None and reply.get("type") == "boot_failed":
            if reply.get("kind") == "missing_entry":
                return MissingEntryPoint(str(reply.get("entry") or self._config.application.entry), root=str(self._root))
            return BootFailure(str(reply.get("error") or "boot failed"))
        if elapsed >= self._config.server.boot_timeout_sec:
            return BootFailure(f"application boot timed out after {self._config.server.boot_timeout_sec:g}s")
        return BootFailure(f"application process exited during boot (status {status})")

    # ---- run ----

    def start_run(self, snapshot: EnvironmentSnapshot, fds: Sequence[int]) -> RunTicket:
        """
        把一次 run 交给 warm 的 application 进程（必要时先 boot），返回已 fork 的 worker 票据。

        异常：
        - MissingEntryPoint / BootFailure：boot 失败
        - UnknownCommandError：命令名未注册
        - FrameworkError：application 进程拒绝或意外退出
        """

        for _attempt in range(3):
            rid = uuid.uuid4().hex
            with self._boot_lock:
                handle = self._ensure_warm_locked()
                events = handle.register(rid)
                try:
                    handle.conn.send({"type": "run", "id": rid, "snapshot": snapshot.to_dict()}, list(fds)[:3])
                except ProtocolError as e:
                    handle.forget(rid)
                    raise FrameworkError(code="APPLICATION_LOST", message=f"cannot reach application process: {e}") from e
            try:
                msg = events.get(timeout=_SPAWN_TIMEOUT_SEC)
            except queue.Empty:
                handle.forget(rid)
                raise FrameworkError(code="SPAWN_TIMEOUT", message="worker did not start in time") from None
            kind = msg.get("type")
            if kind == "spawned":
                return RunTicket(id=rid, pid=int(msg.get("pid") or 0), events=events)
            if kind == "rejected":
                if msg.get("kind") == "unknown_command":
                    raise UnknownCommandError(snapshot.argv[0] if snapshot.argv else "")
                if msg.get("kind") == "draining":
                    continue
                raise FrameworkError(code="RUN_REJECTED", message=str(msg.get("error") or "run rejected"))
            # lost：application 进程在 fork 前退出，下一轮重新 boot
            logger.warning("application process lost before spawning worker (env=%s)", self._env_name)
        raise FrameworkError(code="APPLICATION_LOST", message="application process exited unexpectedly")

    # ---- 观测与停止 ----

    def status(self) -> Dict[str, Any]:
        """状态摘要（用于 `status --json`）。"""

        app = self._app
        return {
            "env": self._env_name,
            "state": self.state.value,
            "boot_count": self._boot_count,
            "app_pid": app.pid if app is not None else None,
            "watched_files": len(self._watched),
            "last_error": self._last_error,
        }

    def worker_pids(self) -> List[int]:
        """所有 application 进程下尚未退出的 worker pid。"""

        with self._state_lock:
            handles = ([self._app] if self._app is not None else []) + list(self._retired)
        out: List[int] = []
        for h in handles:
            out.extend(h.worker_pids())
        return out

    def stop(self) -> None:
        """停止 watcher，终止 application 进程与 in-flight worker（幂等）。"""

        with self._state_lock:
            self._state = ApplicationState.STOPPED
            handles = ([self._app] if self._app is not None else []) + list(self._retired)
            self._app = None
            self._retired = []
        self._watcher.stop()
        for h in handles:
            h.terminate()
