from __future__ import annotations

import sys
import threading
import time
from pathlib import Path

import pytest

from prewarm.config.loader import WatchConfig
from prewarm.runtime.watcher import InotifyWatcher, PollingWatcher, Watcher, build_watcher


def _touch_bigger(p: Path) -> None:
    with p.open("a", encoding="utf-8") as f:
        f.write("# changed\n")


def test_polling_detects_content_change(tmp_path: Path) -> None:
    a = tmp_path / "a.py"
    a.write_text("x = 1\n", encoding="utf-8")
    w = PollingWatcher(interval_sec=0.05)
    w.observe([a])
    assert w.check() is False
    _touch_bigger(a)
    assert w.check() is True
    assert w.changed() is True


def test_polling_treats_disappear_and_reappear_as_change(tmp_path: Path) -> None:
    a = tmp_path / "a.py"
    a.write_text("x = 1\n", encoding="utf-8")
    missing = tmp_path / "later.py"

    w = PollingWatcher()
    w.observe([a, missing])
    a.unlink()
    assert w.check() is True

    w.observe([missing])
    assert w.changed() is False
    missing.write_text("y = 2\n", encoding="utf-8")
    assert w.check() is True


def test_observe_replaces_set_and_clears_flag(tmp_path: Path) -> None:
    """observe() 之后只比较新集合；旧集合中的变化不再触发。"""

    a = tmp_path / "a.py"
    b = tmp_path / "b.py"
    a.write_text("a\n", encoding="utf-8")
    b.write_text("b\n", encoding="utf-8")
    w = PollingWatcher()
    w.observe([a])
    _touch_bigger(a)
    assert w.check() is True

    w.observe([b])
    assert w.changed() is False
    _touch_bigger(a)
    assert w.check() is False
    _touch_bigger(b)
    assert w.check() is True


def test_digest_signature_ignores_touch(tmp_path: Path) -> None:
    import os

    a = tmp_path / "a.py"
    a.write_text("same\n", encoding="utf-8")
    w = PollingWatcher(signature="digest")
    w.observe([a])
    st = a.stat()
    os.utime(a, ns=(st.st_atime_ns, st.st_mtime_ns + 5_000_000_000))
    assert w.check() is False
    a.write_text("different\n", encoding="utf-8")
    assert w.check() is True


def test_polling_background_thread_invokes_callback(tmp_path: Path) -> None:
    a = tmp_path / "a.py"
    a.write_text("x = 1\n", encoding="utf-8")
    fired = threading.Event()
    w = PollingWatcher(interval_sec=0.02, on_change=fired.set)
    w.observe([a])
    w.start()
    try:
        _touch_bigger(a)
        assert fired.wait(timeout=3.0)
        assert w.changed()
    finally:
        w.stop()


def test_callback_failure_does_not_break_watcher(tmp_path: Path) -> None:
    a = tmp_path / "a.py"
    a.write_text("x\n", encoding="utf-8")

    def _boom() -> None:
        raise RuntimeError("callback failed")

    w = PollingWatcher(on_change=_boom)
    w.observe([a])
    _touch_bigger(a)
    assert w.check() is True
    assert w.changed() is True


def test_build_watcher_selects_strategy() -> None:
    polling = build_watcher(WatchConfig(strategy="polling", interval_ms=50))
    events = build_watcher(WatchConfig(strategy="events"))
    assert isinstance(polling, PollingWatcher)
    assert isinstance(events, InotifyWatcher)
    assert isinstance(polling, Watcher) and isinstance(events, Watcher)


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="inotify is Linux-only")
def test_inotify_detects_change(tmp_path: Path) -> None:
    pytest.importorskip("inotify_simple")

    a = tmp_path / "a.py"
    other = tmp_path / "unrelated.txt"
    a.write_text("x = 1\n", encoding="utf-8")
    fired = threading.Event()
    w = InotifyWatcher(on_change=fired.set)
    w.observe([a])
    w.start()
    try:
        time.sleep(0.3)  # 等待后台线程完成目录 watch
        other.write_text("noise\n", encoding="utf-8")
        assert not fired.wait(timeout=0.5)
        _touch_bigger(a)
        assert fired.wait(timeout=3.0)
    finally:
        w.stop()


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="inotify is Linux-only")
def test_inotify_tolerates_missing_directory(tmp_path: Path) -> None:
    """目录不存在只记录日志；目录出现后重试并继续监听。"""

    pytest.importorskip("inotify_simple")

    d = tmp_path / "late"
    target = d / "mod.py"
    fired = threading.Event()
    w = InotifyWatcher(on_change=fired.set)
    w.observe([target])
    w.start()
    try:
        time.sleep(0.3)
        d.mkdir()
        time.sleep(InotifyWatcher._RETRY_SEC + 0.5)
        target.write_text("x = 1\n", encoding="utf-8")
        assert fired.wait(timeout=3.0)
    finally:
        w.stop()


class _GatedPollingWatcher(PollingWatcher):
    """check 在 gate 打开前阻塞，用来模拟 stop 超时仍未退出的后台线程。"""

    _JOIN_TIMEOUT_SEC = 0.05

    def __init__(self, gate: threading.Event, **kwargs) -> None:
        super().__init__(**kwargs)
        self.gate = gate
        self.entered = threading.Event()

    def check(self) -> bool:
        self.entered.set()
        self.gate.wait(timeout=5.0)
        return super().check()


def _alive_threads(name: str) -> int:
    return sum(1 for t in threading.enumerate() if t.name == name and t.is_alive())


def test_restart_after_slow_stop_does_not_revive_old_thread(tmp_path: Path) -> None:
    a = tmp_path / "a.py"
    a.write_text("x = 1\n", encoding="utf-8")
    gate = threading.Event()
    fired = threading.Event()
    w = _GatedPollingWatcher(gate, interval_sec=0.02, on_change=fired.set)
    name = "prewarm-_GatedPollingWatcher"
    w.observe([a])
    w.start()
    try:
        assert w.entered.wait(timeout=2.0)
        w.stop()  # 旧线程卡在 check 中，join 超时
        w.start()
        gate.set()

        deadline = time.monotonic() + 3.0
        while time.monotonic() < deadline and _alive_threads(name) > 1:
            time.sleep(0.02)
        assert _alive_threads(name) == 1

        _touch_bigger(a)
        assert fired.wait(timeout=3.0)
    finally:
        gate.set()
        w.stop()


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="inotify is Linux-only")
def test_inotify_restart_keeps_watching(tmp_path: Path) -> None:
    pytest.importorskip("inotify_simple")

    a = tmp_path / "a.py"
    a.write_text("x = 1\n", encoding="utf-8")
    fired = threading.Event()
    w = InotifyWatcher(on_change=fired.set)
    w.observe([a])
    w.start()
    w.stop()
    w.start()
    try:
        time.sleep(0.3)
        _touch_bigger(a)
        assert fired.wait(timeout=3.0)
    finally:
        w.stop()
