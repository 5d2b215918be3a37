"""
Process Registry：记录每个 Identity 的 server（pid / endpoint / 活跃时间 / worker pids）。

说明：
- 条目以 JSON 落盘在 endpoint 旁（`prewarm-<token>.json`，0600），原子写入（tmp + replace）；
- server 进程持有并修改条目；client 只读取（判活 / stop）；
- 判活 = 条目存在 + pid 存活 + endpoint 能回应 ping；任何一项不满足即视为残留并清理；
- stop 幂等：对已停止的 identity 调用是 no-op；删除条目与 endpoint 永远是最后一步。
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import signal
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from prewarm.core.errors import ProtocolError
from prewarm.identity import Identity
from prewarm.runtime.paths import RuntimePaths
from prewarm.runtime.protocol import connect

logger = logging.getLogger(__name__)


@dataclass
class RegistryEntry:
    """registry 条目（server 视角的可持久化状态）。"""

    token: str
    root: str
    pid: int
    endpoint: str
    started_at: float
    last_activity_at: float
    worker_pids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """投影为 JSON dict。"""

        return asdict(self)

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "RegistryEntry":
        """从 JSON dict 还原（字段缺失/类型错误抛 ValueError）。"""

        try:
            return cls(
                token=str(obj["token"]),
                root=str(obj["root"]),
                pid=int(obj["pid"]),
                endpoint=str(obj["endpoint"]),
                started_at=float(obj["started_at"]),
                last_activity_at=float(obj["last_activity_at"]),
                worker_pids=[int(x) for x in (obj.get("worker_pids") or [])],
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"invalid registry entry: {e}") from e


def _pid_alive(pid: int) -> bool:
    """
    判断 pid 是否存活（best-effort）。

    说明：
    - 若 pid 是当前进程的子进程且已退出，先 `waitpid(WNOHANG)` 回收；
    - 其它进程的 zombie（父进程未回收）同样视为已退出。
    """

    if pid <= 0:
        return False
    with contextlib.suppress(ChildProcessError, OSError):
        done, _ = os.waitpid(pid, os.WNOHANG)
        if done == pid:
            return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return not _is_zombie(pid)


def _is_zombie(pid: int) -> bool:
    """pid 是否为未被回收的 zombie（读取 /proc；不可用时返回 False）。"""

    try:
        raw = Path(f"/proc/{pid}/stat").read_text(encoding="utf-8", errors="replace")
    except OSError:
        return False
    # 格式：pid (comm) state ...；comm 可能含空格与括号
    tail = raw.rpartition(")")[2].split()
    return bool(tail) and tail[0] == "Z"


def _signal_pid(pid: int, sig: int) -> None:
    """向 pid 发送信号（进程不存在时忽略）。"""

    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.kill(pid, sig)


class ProcessRegistry:
    """
    单个 Identity 的 registry 视图。

    参数：
    - paths：该 Identity 的 runtime 路径集合
    """

    def __init__(self, paths: RuntimePaths) -> None:
        """创建 registry 视图（不做任何 I/O）。"""

        self._paths = paths
        self._lock = threading.Lock()
        self._entry: Optional[RegistryEntry] = None

    @property
    def paths(self) -> RuntimePaths:
        """对应的 runtime 路径。"""

        return self._paths

    # ---- server 侧（写） ----

    def register(self, identity: Identity, *, pid: Optional[int] = None) -> RegistryEntry:
        """写入本 server 的条目（server 启动并绑定 endpoint 后调用）。"""

        now = time.time()
        entry = RegistryEntry(
            token=identity.token,
            root=identity.root,
            pid=int(pid if pid is not None else os.getpid()),
            endpoint=str(self._paths.socket_path),
            started_at=now,
            last_activity_at=now,
        )
        with self._lock:
            self._entry = entry
            self._write_locked()
        return entry

    def _write_locked(self) -> None:
        """原子写入当前条目（调用方持有 `_lock`）。"""

        if self._entry is None:
            return
        p = self._paths.registry_path
        tmp = p.with_name(p.name + f".{os.getpid()}.tmp")
        data = json.dumps(self._entry.to_dict(), ensure_ascii=False)
        fd = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
        os.replace(tmp, p)

    def record_activity(self) -> None:
        """刷新 last_activity_at（每个请求调用一次）。"""

        with self._lock:
            if self._entry is None:
                return
            self._entry.last_activity_at = time.time()
            self._write_locked()

    def add_worker(self, pid: int) -> None:
        """记录一个 in-flight worker pid。"""

        with self._lock:
            if self._entry is None or int(pid) in self._entry.worker_pids:
                return
            self._entry.worker_pids.append(int(pid))
            self._write_locked()

    def remove_worker(self, pid: int) -> None:
        """移除一个已结束的 worker pid。"""

        with self._lock:
            if self._entry is None or int(pid) not in self._entry.worker_pids:
                return
            self._entry.worker_pids.remove(int(pid))
            self._entry.last_activity_at = time.time()
            self._write_locked()

    def idle_seconds(self) -> float:
        """距上次活动的秒数（未注册时为 0）。"""

        with self._lock:
            if self._entry is None:
                return 0.0
            return max(0.0, time.time() - self._entry.last_activity_at)

    def unregister(self) -> None:
        """删除条目与 endpoint（幂等；server 退出的最后一步）。"""

        with self._lock:
            self._entry = None
        self._remove_files()

    def _remove_files(self) -> None:
        """删除 registry 文件与 socket 文件（不存在则忽略）。"""

        for p in (self._paths.registry_path, self._paths.socket_path):
            with contextlib.suppress(FileNotFoundError):
                p.unlink()

    # ---- client 侧（读） ----

    def read_entry(self) -> Optional[RegistryEntry]:
        """
        读取落盘条目。

        返回：
        - RegistryEntry：文件存在且可解析
        - None：文件不存在或内容损坏
        """

        try:
            raw = self._paths.registry_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            obj = json.loads(raw)
            if not isinstance(obj, dict):
                return None
            return RegistryEntry.from_dict(obj)
        except ValueError:
            return None

    def _ping(self, timeout: float = 1.0) -> bool:
        """endpoint 是否回应 ping。"""

        conn = connect(self._paths.socket_path, timeout=timeout)
        if conn is None:
            return False
        with conn:
            try:
                conn.settimeout(timeout)
                resp = conn.request({"type": "ping"})
            except (ProtocolError, OSError):
                return False
        return resp.get("type") == "pong"

    def is_running(self) -> bool:
        """
        判断该 Identity 的 server 是否在运行。

        说明：
        - 条目指向的 pid 已死或 endpoint 不回应 ping：视为残留，清理条目与 socket 并返回 False。
        """

        entry = self.read_entry()
        if entry is None:
            return False
        if _pid_alive(entry.pid) and self._ping():
            return True
        if not _pid_alive(entry.pid):
            logger.info("removing stale registry entry for pid %s", entry.pid)
            self._remove_files()
        return False

    def cleanup_stale(self) -> None:
        """若条目存在但 pid 已死，则清理条目与 socket（client 启动 server 前调用）。"""

        entry = self.read_entry()
        if entry is None or not _pid_alive(entry.pid):
            self._remove_files()

    def stop(self, *, timeout: float = 5.0) -> bool:
        """
        停止该 Identity 的 server 及其 in-flight workers（幂等）。

        步骤：
        1. 通过协议发送 `stop`，等待 server 自行退出；
        2. 超时则 SIGTERM，再超时则 SIGKILL（server 与记录的 worker）；
        3. 无条件删除条目与 endpoint。

        返回：
        - bool：调用前 server 是否在运行
        """

        entry = self.read_entry()
        if entry is None:
            self._remove_files()
            return False
        was_running = _pid_alive(entry.pid)
        try:
            if was_running:
                self._request_stop()
                if not self._wait_exit(entry.pid, timeout):
                    logger.warning("server pid %s did not stop in time; sending SIGTERM", entry.pid)
                    _signal_pid(entry.pid, signal.SIGTERM)
                    if not self._wait_exit(entry.pid, 1.0):
                        _signal_pid(entry.pid, signal.SIGKILL)
                        self._wait_exit(entry.pid, 1.0)
            # server 异常退出时 worker 可能仍在运行
            latest = self.read_entry() or entry
            for wpid in latest.worker_pids:
                if _pid_alive(wpid):
                    _signal_pid(wpid, signal.SIGTERM)
            deadline = time.monotonic() + 1.0
            while time.monotonic() < deadline and any(_pid_alive(w) for w in latest.worker_pids):
                time.sleep(0.05)
            for wpid in latest.worker_pids:
                if _pid_alive(wpid):
                    _signal_pid(wpid, signal.SIGKILL)
        finally:
            self._remove_files()
        return was_running

    def _request_stop(self) -> None:
        """通过协议请求 server 停止（连接失败忽略，由信号兜底）。"""

        conn = connect(self._paths.socket_path, timeout=1.0)
        if conn is None:
            return
        with conn:
            try:
                conn.settimeout(2.0)
                conn.request({"type": "stop"})
            except (ProtocolError, OSError) as e:
                logger.debug("stop request failed: %s", e)

    @staticmethod
    def _wait_exit(pid: int, timeout: float) -> bool:
        """等待 pid 退出；返回是否已退出。"""

        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not _pid_alive(pid):
                return True
            time.sleep(0.05)
        return not _pid_alive(pid)
