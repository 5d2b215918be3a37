"""
prewarm：应用预加载 server（Python）。

说明：
- 一个长驻 server 持有已 boot 的应用，每条命令从 warm 快照 fork 一个 worker 执行；
- 组成：Identity Resolver（`prewarm.identity`）、Environment Snapshot / 连接协议 / server / watcher /
  registry（`prewarm.runtime`）、配置（`prewarm.config`）与 CLI（`prewarm.cli`）；
- 本模块保持轻量：client 侧只应付出 import 哈希与 socket 的成本。
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.3.0"
