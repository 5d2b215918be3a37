"""
Identity Resolver：为“某个应用 + 某个运行环境”派生稳定身份。

说明：
- token 由 root 路径、依赖指纹、运行时版本三者哈希得到；
- 相同输入必得相同 token（跨进程稳定），不同输入不共享 endpoint；
- 依赖指纹与条目枚举顺序无关（先排序再哈希）；
- 本模块无副作用（只读文件，不写任何东西）。
"""

from __future__ import annotations

import hashlib
import platform
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Sequence

DEFAULT_DEPENDENCY_FILES: tuple[str, ...] = (
    "requirements.txt",
    "requirements-dev.txt",
    "pyproject.toml",
    "setup.cfg",
    "setup.py",
    "poetry.lock",
    "Pipfile.lock",
    "uv.lock",
)

CONFIG_FILE_NAME = ".prewarm.yaml"

_TOKEN_LEN = 16


@dataclass(frozen=True)
class Identity:
    """应用身份（用于命名 endpoint 与 registry 条目）。"""

    root: str
    dependency_fingerprint: str
    runtime_version: str
    token: str


def dependency_fingerprint(entries: Iterable[str]) -> str:
    """
    计算依赖集合指纹（与枚举顺序无关）。

    参数：
    - entries：依赖条目（例如 `requirements.txt:<sha256>`、`prefix:/venv`）

    返回：
    - sha256 hex 字符串
    """

    h = hashlib.sha256()
    for item in sorted(set(str(e) for e in entries)):
        h.update(item.encode("utf-8", errors="replace"))
        h.update(b"\0")
    return h.hexdigest()


def config_file_candidates(root: Path, *, home: Optional[Path] = None) -> list[Path]:
    """返回可能存在的配置文件路径（全局在前、项目在后；不检查是否存在）。"""

    home_dir = Path.home() if home is None else Path(home)
    return [home_dir / CONFIG_FILE_NAME, Path(root) / CONFIG_FILE_NAME]


def collect_dependency_entries(
    root: Path,
    files: Sequence[str] = DEFAULT_DEPENDENCY_FILES,
    *,
    extra_files: Iterable[Path] = (),
) -> list[str]:
    """
    收集 root 下依赖声明文件的内容摘要，以及当前解释器的安装前缀。

    参数：
    - root：应用根目录
    - files：依赖声明文件名（相对 root；不存在的跳过）
    - extra_files：额外参与指纹的文件（绝对路径；例如配置文件）
    """

    out: list[str] = [f"prefix:{Path(sys.prefix).resolve()}"]
    base = Path(root)
    targets = [(name, base / name) for name in files]
    targets.extend((str(p), Path(p)) for p in extra_files)
    for label, p in targets:
        try:
            data = p.read_bytes()
        except OSError:
            continue
        out.append(f"{label}:{hashlib.sha256(data).hexdigest()}")
    return out


def runtime_version() -> str:
    """返回运行时版本串（实现名 + 版本 + 解释器路径）。"""

    return f"{sys.implementation.name}-{platform.python_version()}:{sys.executable}"


def resolve_identity(root: Path | str, fingerprint: str, runtime: str) -> Identity:
    """
    由 (root, 依赖指纹, 运行时版本) 派生 Identity（纯函数）。

    参数：
    - root：应用根目录（会做 resolve，保证同一目录的不同写法得到同一 token）
    - fingerprint：`dependency_fingerprint()` 的结果
    - runtime：`runtime_version()` 的结果
    """

    root_s = str(Path(root).resolve())
    h = hashlib.sha256()
    for part in (root_s, fingerprint, runtime):
        h.update(part.encode("utf-8", errors="replace"))
        h.update(b"\n")
    return Identity(
        root=root_s,
        dependency_fingerprint=fingerprint,
        runtime_version=runtime,
        token=h.hexdigest()[:_TOKEN_LEN],
    )


def current_identity(
    root: Path,
    dependency_files: Sequence[str] = DEFAULT_DEPENDENCY_FILES,
    *,
    home: Optional[Path] = None,
) -> Identity:
    """
    计算“当前解释器 + root”的 Identity（client 每次调用都会计算一次）。

    说明：
    - 配置文件（全局 + 项目）也计入依赖指纹：配置变化即身份变化，旧 server 随后自行退出。
    """

    entries = collect_dependency_entries(root, dependency_files, extra_files=config_file_candidates(root, home=home))
    fp = dependency_fingerprint(entries)
    return resolve_identity(root, fp, runtime_version())
