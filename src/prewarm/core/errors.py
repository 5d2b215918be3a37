"""
prewarm 内部错误分类（异常类型）。

说明：
- “单次请求内”的失败（BootFailure / MissingEntryPoint / UnknownCommandError）不得拖垮 server；
- 异常仅用于进程内控制流与测试断言；跨进程传递时统一投影为 `error_kind` + `error` 文本。
"""

from __future__ import annotations

from typing import Any, Dict


class PrewarmError(Exception):
    """prewarm 错误基类（不建议直接抛出）。"""


class FrameworkError(PrewarmError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"


class BootFailure(FrameworkError):
    """
    应用 boot 失败（加载入口/预加载模块时抛错）。

    说明：
    - `message` 为捕获到的错误输出（traceback 文本），原样转发给发起请求的 client；
    - server 进入 crashed 状态但保持存活，下一次 run 会从头重试 boot。
    """

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        """创建 `BootFailure`（`message` 为原样错误输出）。"""

        super().__init__(code="BOOT_FAILURE", message=message, details=details)


class MissingEntryPoint(BootFailure):
    """必需的应用入口文件不存在。"""

    def __init__(self, entry: str, *, root: str = "") -> None:
        """
        创建 `MissingEntryPoint`。

        参数：
        - entry：入口文件（相对应用根目录的路径）
        - root：应用根目录（仅用于 details）
        """

        super().__init__(f"unable to find your {entry}", details={"entry": entry, "root": root})
        self.code = "MISSING_ENTRY_POINT"


class UnknownCommandError(FrameworkError):
    """命令名无法在内置/自定义命令表中解析。"""

    def __init__(self, name: str) -> None:
        """创建 `UnknownCommandError`（`name` 为请求的命令名）。"""

        super().__init__(code="UNKNOWN_COMMAND", message=f"unknown command: {name}", details={"command": name})


class ProtocolError(PrewarmError):
    """client/server 帧协议错误（连接被拒、帧损坏、连接中途断开等）。"""


class WatcherError(PrewarmError):
    """watcher 内部错误（例如被监听目录消失）；仅记录日志，不中断监听。"""


class ServerStartError(PrewarmError):
    """client 无法在超时内拉起 server。"""
