"""
Connection Protocol：client / server / application 进程之间的帧协议。

帧格式：
- 4 字节大端长度 + UTF-8 JSON object；
- 需要传递的 fd 通过 `socket.send_fds` 附在帧头上（SCM_RIGHTS），接收端用 `socket.recv_fds` 取出；
- 单帧上限 `MAX_FRAME_BYTES`，超限视为协议错误（避免恶意/损坏输入耗尽内存）。

消息（type 字段）：
- client -> server：`run{snapshot, has_tty}`（命令即 snapshot.argv；附 stdio fds 与可选 tty fd）、`status`、`stop`、`ping`
- client -> server（run 进行中，同一连接）：`signal{signum}`
- server -> client：`output{channel, data}`（0..n 条）+ 终止的 `exit{status}`；`status`；`stopped`；`pong`；`error`
- server <-> application：`boot`/`booted`/`boot_failed`、`run`/`spawned`/`exited`/`rejected`、`drain`
"""

from __future__ import annotations

import json
import os
import socket
import struct
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from prewarm.core.errors import ProtocolError

MAX_FRAME_BYTES = 16 * 1024 * 1024
MAX_FDS = 8

_HEADER = struct.Struct(">I")

Message = Dict[str, Any]


def send_message(sock: socket.socket, message: Message, fds: Sequence[int] = ()) -> None:
    """
    发送一帧消息（可附带 fd）。

    参数：
    - sock：已连接的 AF_UNIX stream socket
    - message：JSON object
    - fds：随帧发送的文件描述符（接收端得到的是新的 fd 副本）
    """

    body = json.dumps(message, ensure_ascii=False).encode("utf-8")
    if len(body) > MAX_FRAME_BYTES:
        raise ProtocolError(f"frame too large: {len(body)} bytes")
    header = _HEADER.pack(len(body))
    try:
        if fds:
            socket.send_fds(sock, [header], list(fds))
        else:
            sock.sendall(header)
        sock.sendall(body)
    except OSError as e:
        raise ProtocolError(f"send failed: {e}") from e


def _recv_exact(sock: socket.socket, n: int) -> bytes:
    """读满 n 字节；中途 EOF 抛 ProtocolError。"""

    chunks: List[bytes] = []
    remaining = n
    while remaining > 0:
        b = sock.recv(min(remaining, 65536))
        if not b:
            raise ProtocolError("connection closed mid-frame")
        chunks.append(b)
        remaining -= len(b)
    return b"".join(chunks)


def recv_message(sock: socket.socket) -> Optional[Tuple[Message, List[int]]]:
    """
    接收一帧消息。

    返回：
    - (message, fds)：fds 为随帧收到的新 fd（调用方负责关闭）
    - None：对端在帧边界处正常关闭连接

    异常：
    - ProtocolError：帧损坏/超限/中途断开
    """

    try:
        head, fds, _flags, _addr = socket.recv_fds(sock, _HEADER.size, MAX_FDS)
    except OSError as e:
        raise ProtocolError(f"receive failed: {e}") from e
    if not head:
        close_fds(fds)
        return None
    try:
        if len(head) < _HEADER.size:
            head += _recv_exact(sock, _HEADER.size - len(head))
        (length,) = _HEADER.unpack(head)
        if length > MAX_FRAME_BYTES:
            raise ProtocolError(f"frame too large: {length} bytes")
        body = _recv_exact(sock, length)
        obj = json.loads(body.decode("utf-8", errors="replace"))
    except ProtocolError:
        close_fds(fds)
        raise
    except (OSError, ValueError) as e:
        close_fds(fds)
        raise ProtocolError(f"invalid frame: {e}") from e
    if not isinstance(obj, dict):
        close_fds(fds)
        raise ProtocolError("frame payload must be a JSON object")
    return obj, list(fds)


def close_fds(fds: Sequence[int]) -> None:
    """关闭一组 fd（best-effort；供 server/application 释放收到的句柄）。"""

    for fd in fds:
        try:
            os.close(fd)
        except OSError:
            pass


class Connection:
    """
    一条帧协议连接（对 socket 的轻量封装）。

    说明：
    - `send()` 带发送锁，允许多个线程共用同一连接发送（server -> application 控制通道）；
    - `receive()` 不加锁，约定只有一个读者线程。
    """

    def __init__(self, sock: socket.socket) -> None:
        """包装一个已连接的 socket。"""

        self._sock = sock
        self._send_lock = threading.Lock()

    @property
    def sock(self) -> socket.socket:
        """底层 socket（用于 select）。"""

        return self._sock

    def fileno(self) -> int:
        """底层 fd（使对象可直接传给 select）。"""

        return self._sock.fileno()

    def send(self, message: Message, fds: Sequence[int] = ()) -> None:
        """发送一帧消息（线程安全）。"""

        with self._send_lock:
            send_message(self._sock, message, fds)

    def receive(self) -> Optional[Tuple[Message, List[int]]]:
        """接收一帧消息（EOF 返回 None）。"""

        return recv_message(self._sock)

    def request(self, message: Message) -> Message:
        """
        发送一条请求并读取一条响应（用于 status/stop/ping）。

        异常：
        - ProtocolError：连接在响应前关闭
        """

        self.send(message)
        got = self.receive()
        if got is None:
            raise ProtocolError("connection closed before response")
        resp, fds = got
        close_fds(fds)
        return resp

    def settimeout(self, timeout: Optional[float]) -> None:
        """设置底层 socket 超时。"""

        self._sock.settimeout(timeout)

    def close(self) -> None:
        """关闭连接（幂等）。"""

        try:
            self._sock.close()
        except OSError:
            pass

    def __enter__(self) -> "Connection":
        """上下文管理：返回自身。"""

        return self

    def __exit__(self, *exc: Any) -> None:
        """上下文管理：关闭连接。"""

        self.close()


def connect(socket_path: Path, *, timeout: Optional[float] = None) -> Optional[Connection]:
    """
    连接到 endpoint。

    返回：
    - Connection：连接成功
    - None：NotRunning（socket 不存在、被拒绝或已是残留文件）
    """

    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    if timeout is not None:
        s.settimeout(timeout)
    try:
        s.connect(str(socket_path))
    except OSError:
        # FileNotFoundError / ConnectionRefusedError / timeout 均视为未运行
        s.close()
        return None
    s.settimeout(None)
    return Connection(s)
