"""
Watcher：监听 warm 状态依赖的文件集合，检测到变化后把对应 preloader 标记为 stale。

两种可互换实现（构造时选择，同一接口）：
- `PollingWatcher`：后台线程按固定间隔重新 stat 每个路径，与保存的签名比较；
- `InotifyWatcher`：通过 `inotify_simple` 订阅所在目录的事件，再映射回被监听路径（仅 Linux）。

约束：
- `observe()` 整体替换被监听集合（原子：后台线程只会看到旧的完整集合或新的完整集合），并清除 changed 标记；
- 路径消失/重新出现都视为变化；目录不可监听只记录日志，不中断其余路径的监听。
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Protocol, Tuple, Union, runtime_checkable

from prewarm.config.loader import WatchConfig
from prewarm.core.errors import WatcherError

logger = logging.getLogger(__name__)

Signature = Union[Tuple[int, int], str, None]


@runtime_checkable
class Watcher(Protocol):
    """watcher 抽象接口（polling / events 两种实现）。"""

    def observe(self, paths: Iterable[Path]) -> None:
        """替换被监听的路径集合，并清除 changed 标记。"""

        ...

    def changed(self) -> bool:
        """自上次 `observe()` 以来是否检测到变化。"""

        ...

    def start(self) -> None:
        """启动后台监听（幂等）。"""

        ...

    def stop(self) -> None:
        """停止后台监听（幂等）。"""

        ...


def _stat_signature(path: Path) -> Signature:
    """mtime + size 签名；路径不存在返回 None。"""

    try:
        st = path.stat()
    except OSError:
        return None
    return (int(st.st_mtime_ns), int(st.st_size))


def _digest_signature(path: Path) -> Signature:
    """内容 sha256 签名；路径不存在/不可读返回 None。"""

    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except OSError:
        return None


@dataclass(frozen=True)
class _PollState:
    """一次 observe 的完整快照（只读，整体替换）。"""

    generation: int
    signatures: Dict[Path, Signature] = field(default_factory=dict)


class _BaseWatcher:
    """两种实现共用的 changed 标记与后台线程管理。"""

    _JOIN_TIMEOUT_SEC = 2.0

    def __init__(self, *, on_change: Optional[Callable[[], None]] = None) -> None:
        """创建 watcher（`on_change` 在首次检测到变化时于后台线程回调）。"""

        self._on_change = on_change
        self._lock = threading.Lock()
        self._changed = threading.Event()
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._generation = 0

    def changed(self) -> bool:
        """自上次 `observe()` 以来是否检测到变化。"""

        return self._changed.is_set()

    def _mark_changed(self, generation: int, path: Path) -> None:
        """标记变化（仅当变化属于当前 generation，避免旧集合的结果污染新集合）。"""

        with self._lock:
            if generation != self._generation or self._changed.is_set():
                return
            self._changed.set()
        logger.info("watched file changed: %s", path)
        if self._on_change is not None:
            try:
                self._on_change()
            except Exception:
                logger.warning("watcher on_change callback failed", exc_info=True)

    def start(self) -> None:
        """
        启动后台线程（幂等）。

        说明：
        - 每个线程持有自己的 stop 事件与资源；`stop()` 超时未退出的旧线程不会被后续 `start()` 复活。
        """

        if self._thread is not None:
            return
        stopping = threading.Event()
        resources = self._open_resources()
        t = threading.Thread(
            target=self._run,
            args=(stopping, resources),
            name=f"prewarm-{type(self).__name__}",
            daemon=True,
        )
        self._stopping = stopping
        self._thread = t
        t.start()

    def stop(self) -> None:
        """停止后台线程（幂等；最多等待 `_JOIN_TIMEOUT_SEC` 秒）。"""

        self._stopping.set()
        t = self._thread
        self._thread = None
        if t is not None and t is not threading.current_thread():
            t.join(timeout=self._JOIN_TIMEOUT_SEC)
            if t.is_alive():
                logger.warning("watcher thread %s still running after stop", t.name)

    def _open_resources(self) -> Any:
        """为新线程创建专属资源（默认无）。"""

        return None

    def _run(self, stopping: threading.Event, resources: Any) -> None:
        """后台线程入口（子类实现；`stopping` 为本线程专属的 stop 事件）。"""

        raise NotImplementedError


class PollingWatcher(_BaseWatcher):
    """
    轮询实现：每 `interval_sec` 重新计算所有路径签名并与基线比较。

    参数：
    - interval_sec：轮询间隔（默认亚秒级）
    - signature：`stat`（mtime+size）或 `digest`（内容 sha256）
    """

    def __init__(
        self,
        *,
        interval_sec: float = 0.2,
        signature: str = "stat",
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        """创建轮询 watcher（未 observe 前监听空集合）。"""

        super().__init__(on_change=on_change)
        self._interval = float(interval_sec)
        self._sign = _digest_signature if signature == "digest" else _stat_signature
        self._state = _PollState(generation=0)

    def observe(self, paths: Iterable[Path]) -> None:
        """计算新基线并整体替换状态。"""

        resolved = sorted({Path(p) for p in paths})
        sigs = {p: self._sign(p) for p in resolved}
        with self._lock:
            self._generation += 1
            self._state = _PollState(generation=self._generation, signatures=sigs)
            self._changed.clear()

    def check(self) -> bool:
        """同步执行一次比较（后台线程每轮调用；测试也可直接调用）。"""

        state = self._state
        for path, old in state.signatures.items():
            if self._sign(path) != old:
                self._mark_changed(state.generation, path)
                return True
        return False

    def _run(self, stopping: threading.Event, resources: Any) -> None:
        """后台轮询循环。"""

        while not stopping.wait(self._interval):
            if self._changed.is_set():
                continue
            try:
                self.check()
            except Exception:
                logger.warning("polling watcher check failed", exc_info=True)


@dataclass(frozen=True)
class _EventState:
    """inotify 模式下的被监听集合快照。"""

    generation: int
    paths: FrozenSet[Path] = frozenset()
    dirs: FrozenSet[Path] = frozenset()


@dataclass
class _InotifyHandle:
    """单个后台线程专属的 inotify 实例与 watch 映射（线程退出时关闭）。"""

    inotify: Any
    wds: Dict[int, Path] = field(default_factory=dict)
    watched_dirs: Dict[Path, int] = field(default_factory=dict)

    def close(self) -> None:
        """关闭 inotify 实例（重复关闭忽略）。"""

        try:
            self.inotify.close()
        except (OSError, ValueError):
            pass
        self.wds.clear()
        self.watched_dirs.clear()


class InotifyWatcher(_BaseWatcher):
    """
    事件订阅实现（Linux inotify，基于 `inotify_simple`）。

    说明：
    - 监听的是被监听文件所在的目录（文件被替换/重建时仍能收到事件）；
    - 无法监听的目录（不存在/无权限）记录 warning，并在后台周期性重试；
    - inotify 实例在 `start()` 时创建并交给后台线程独占，线程退出时关闭。
    """

    _RETRY_SEC = 1.0

    def __init__(self, *, on_change: Optional[Callable[[], None]] = None) -> None:
        """创建 inotify watcher。"""

        super().__init__(on_change=on_change)
        self._state = _EventState(generation=0)

    def observe(self, paths: Iterable[Path]) -> None:
        """整体替换被监听集合；目录 watch 的增删在后台线程内完成。"""

        ps = frozenset(Path(p) for p in paths)
        dirs = frozenset(p.parent for p in ps)
        with self._lock:
            self._generation += 1
            self._state = _EventState(generation=self._generation, paths=ps, dirs=dirs)
            self._changed.clear()

    def _open_resources(self) -> _InotifyHandle:
        """在调用线程内创建 inotify 实例（导入/创建失败直接抛给 `start()` 的调用方）。"""

        from inotify_simple import INotify

        return _InotifyHandle(inotify=INotify())

    def _mask(self) -> int:
        """目录 watch 关注的事件集合。"""

        from inotify_simple import flags

        return int(
            flags.MODIFY
            | flags.ATTRIB
            | flags.CLOSE_WRITE
            | flags.MOVED_FROM
            | flags.MOVED_TO
            | flags.CREATE
            | flags.DELETE
            | flags.DELETE_SELF
            | flags.MOVE_SELF
        )

    def _sync_watches(self, handle: _InotifyHandle, state: _EventState) -> None:
        """使 inotify 目录 watch 与当前集合一致（多删少补）。"""

        for d in list(handle.watched_dirs):
            if d not in state.dirs:
                wd = handle.watched_dirs.pop(d)
                handle.wds.pop(wd, None)
                try:
                    handle.inotify.rm_watch(wd)
                except OSError:
                    pass  # 目录已被内核移除
        for d in state.dirs:
            if d in handle.watched_dirs:
                continue
            try:
                wd = handle.inotify.add_watch(str(d), self._mask())
            except OSError as e:
                logger.warning("%s", WatcherError(f"cannot watch directory {d}: {e}"))
                continue
            handle.watched_dirs[d] = wd
            handle.wds[wd] = d

    def _run(self, stopping: threading.Event, resources: Any) -> None:
        """后台事件循环。"""

        from inotify_simple import flags

        handle: _InotifyHandle = resources
        synced_generation = -1
        retry_at = 0.0
        try:
            while not stopping.is_set():
                state = self._state
                if state.generation != synced_generation or (
                    time.monotonic() >= retry_at and len(handle.watched_dirs) < len(state.dirs)
                ):
                    self._sync_watches(handle, state)
                    synced_generation = state.generation
                    retry_at = time.monotonic() + self._RETRY_SEC
                try:
                    events = handle.inotify.read(timeout=200)
                except OSError:
                    logger.warning("inotify read failed", exc_info=True)
                    break
                for event in events:
                    d = handle.wds.get(event.wd)
                    if d is None:
                        continue
                    if event.mask & flags.IGNORED:
                        # 目录被删除/卸载：内核已移除 watch，等待重试
                        handle.wds.pop(event.wd, None)
                        handle.watched_dirs.pop(d, None)
                        continue
                    target = d / event.name if event.name else d
                    if target in state.paths or (not event.name and any(p.parent == d for p in state.paths)):
                        self._mark_changed(state.generation, target)
        finally:
            handle.close()


def build_watcher(config: WatchConfig, *, on_change: Optional[Callable[[], None]] = None) -> Watcher:
    """
    按配置构造 watcher（策略在构造时确定，之后不再分支）。

    参数：
    - config：`watch` 配置段
    - on_change：检测到变化时的回调（后台线程内调用）
    """

    if config.strategy == "events":
        return InotifyWatcher(on_change=on_change)
    return PollingWatcher(
        interval_sec=config.interval_ms / 1000.0,
        signature=config.signature,
        on_change=on_change,
    )
