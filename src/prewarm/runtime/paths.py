"""
Runtime 路径：每个 Identity 的 endpoint / registry / 锁 / 日志文件位置（runtime 目录 0700）。
"""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import os
from pathlib import Path
import tempfile
from typing import Mapping, Optional

from prewarm.identity import Identity

TMPPATH_ENV = "PREWARM_TMPPATH"
LOG_LEVEL_ENV = "PREWARM_LOG_LEVEL"
# client 拉起 server 时传递的参数
SERVER_ROOT_ENV = "PREWARM_SERVER_ROOT"
SERVER_TOKEN_ENV = "PREWARM_SERVER_TOKEN"


@dataclass(frozen=True)
class RuntimePaths:
    """单个 Identity 对应的 runtime 文件路径集合。"""

    runtime_dir: Path
    socket_path: Path
    registry_path: Path
    lock_path: Path
    log_path: Path


def get_runtime_dir(env: Optional[Mapping[str, str]] = None) -> Path:
    """
    解析 per-user runtime 目录。

    优先级：
    - `PREWARM_TMPPATH`（显式覆盖）
    - `$XDG_RUNTIME_DIR/prewarm`
    - `<tempdir>/prewarm-<uid>`
    """

    e = os.environ if env is None else env
    override = str(e.get(TMPPATH_ENV) or "").strip()
    if override:
        return Path(override).expanduser().resolve()
    xdg = str(e.get("XDG_RUNTIME_DIR") or "").strip()
    if xdg and Path(xdg).is_dir():
        return (Path(xdg) / "prewarm").resolve()
    return (Path(tempfile.gettempdir()) / f"prewarm-{os.getuid()}").resolve()


def get_runtime_paths(identity: Identity, *, env: Optional[Mapping[str, str]] = None) -> RuntimePaths:
    """
    获取 Identity 对应的 endpoint / registry / lock / log 路径。

    参数：
    - identity：应用身份（token 决定文件名）
    - env：环境变量（默认 os.environ；测试可注入）
    """

    runtime_dir = get_runtime_dir(env)
    stem = f"prewarm-{identity.token}"
    socket_path = runtime_dir / f"{stem}.sock"
    # AF_UNIX 路径长度有上限（Linux 108 / macOS 104 bytes）。
    # runtime_dir 较深时降级到 tempdir 下的短路径。
    if len(str(socket_path)) > 100:
        h = hashlib.sha256(str(runtime_dir).encode("utf-8", errors="replace")).hexdigest()[:8]
        socket_path = Path(tempfile.gettempdir()) / f"pw-{h}-{identity.token}.sock"
    return RuntimePaths(
        runtime_dir=runtime_dir,
        socket_path=socket_path,
        registry_path=runtime_dir / f"{stem}.json",
        lock_path=runtime_dir / f"{stem}.lock",
        log_path=runtime_dir / f"{stem}.log",
    )


def ensure_runtime_dir(paths: RuntimePaths) -> None:
    """创建 runtime 目录（0700；已存在则不改动权限）。"""

    paths.runtime_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
