"""
UTF-8 启动健壮性工具（CLI 入口用）。

说明：
- 在 `C` locale 下 stdout/stderr 默认编码可能为 ASCII，诊断输出包含非 ASCII 字符（例如路径）时会触发 `UnicodeEncodeError`；
- 入口应尽早调用（在 argparse 或任何 print 之前）。
"""

from __future__ import annotations

import sys


def ensure_utf8_stdio() -> None:
    """
    best-effort 将 stdout/stderr reconfigure 为 UTF-8。

    行为：
    - 流对象支持 `reconfigure()` 时设置 `encoding="utf-8", errors="replace"`；
    - 流已被替换或已关闭时跳过（不阻断程序启动）。
    """

    for stream in (sys.stdout, sys.stderr):
        reconfigure = getattr(stream, "reconfigure", None)
        if not callable(reconfigure):
            continue
        try:
            reconfigure(encoding="utf-8", errors="replace")
        except (ValueError, OSError):
            continue
