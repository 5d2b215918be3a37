"""
prewarm CLI。

用法：
- `prewarm [--root DIR] COMMAND [ARGS...]`：首个 token 不是保留字时等价于 `run`
- `prewarm run COMMAND [ARGS...]` / `prewarm stop` / `prewarm status [--json]` / `prewarm help`

约束：
- 使用 argparse（不引入第三方 CLI 依赖）；
- `main()` 返回 exit code，不直接 sys.exit（便于测试）。
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from prewarm import __version__
from prewarm.core.errors import ServerStartError
from prewarm.core.utf8 import ensure_utf8_stdio
from prewarm.runtime.client import PreloadClient, find_root

USAGE = """Usage: prewarm COMMAND [ARGS]

Commands:
  run COMMAND [ARGS]   Run COMMAND in a worker forked from the warm application
                       (default when COMMAND is not one of the words below)
  status [--json]      Print "running" or "not running" for this application
  stop                 Stop the server of this application
  help                 Print this message

Options:
  --root DIR           Application root (default: nearest directory with .prewarm.yaml or pyproject.toml)
  --version            Print the version and exit
"""

_RESERVED = ("run", "stop", "status", "help")
_HELP_TOKENS = ("help", "-h", "--help")


def _build_parser() -> argparse.ArgumentParser:
    """构建全局选项 parser（只解析 COMMAND 之前的选项）。"""

    parser = argparse.ArgumentParser(prog="prewarm", add_help=False)
    parser.add_argument("--root", default=None, help="Application root directory.")
    parser.add_argument("--version", action="version", version=f"prewarm {__version__}")
    return parser


def _split_global_options(argv: Sequence[str]) -> Tuple[List[str], List[str]]:
    """
    把 argv 切成（全局选项, 命令部分）。

    说明：
    - 命令部分原样交给 worker，其中的 `-e` / `-c` 等不能被本 CLI 误解析。
    """

    head: List[str] = []
    i = 0
    while i < len(argv):
        tok = argv[i]
        if tok == "--root":
            head.extend(argv[i : i + 2])
            i += 2
            continue
        if tok.startswith("--root=") or tok == "--version":
            head.append(tok)
            i += 1
            continue
        break
    return head, list(argv[i:])


def _handle_status(client: PreloadClient, args: Sequence[str]) -> int:
    """`status [--json]`。"""

    as_json = "--json" in args
    doc = client.status()
    if as_json:
        print(json.dumps(doc, ensure_ascii=False, sort_keys=True))
    else:
        print("running" if doc.get("running") else "not running")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts、`python -m prewarm` 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]。

    返回：
    - int：exit code（run 为 worker 命令的退出码）。
    """

    ensure_utf8_stdio()

    raw = list(argv) if argv is not None else sys.argv[1:]
    head, rest = _split_global_options(raw)
    try:
        opts = _build_parser().parse_args(head)
    except SystemExit as exc:
        code = getattr(exc, "code", 2)
        return 2 if code is None else int(code)

    if not rest or rest[0] in _HELP_TOKENS:
        sys.stdout.write(USAGE)
        return 0

    command, args = rest[0], rest[1:]
    if command not in _RESERVED:
        command, args = "run", rest
    if command == "run" and not args:
        sys.stderr.write(USAGE)
        return 2

    root = Path(opts.root).expanduser().resolve() if opts.root else find_root()
    try:
        client = PreloadClient(root=root)
        if command == "stop":
            client.stop()
            return 0
        if command == "status":
            return _handle_status(client, args)
        return client.run(args)
    except ServerStartError as e:
        sys.stderr.write(f"prewarm: {e}\n")
        return 1
    except OSError as e:
        sys.stderr.write(f"prewarm: {e}\n")
        return 1
