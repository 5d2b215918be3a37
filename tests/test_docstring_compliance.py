from __future__ import annotations

import ast
from pathlib import Path
from typing import Dict, List, Optional

import pytest

PKG_ROOT = Path(__file__).resolve().parents[1] / "src" / "prewarm"
MODULES = sorted(PKG_ROOT.rglob("*.py"))

# 对外运行时 API：docstring 必须包含对应的段落标记
REQUIRED_SECTIONS = [
    ("identity.py", "resolve_identity", "参数："),
    ("runtime/protocol.py", "recv_message", "异常："),
    ("runtime/protocol.py", "connect", "返回："),
    ("runtime/client.py", "PreloadClient", "参数："),
    ("runtime/client.py", "PreloadClient.start", "异常："),
    ("runtime/client.py", "PreloadClient.run", "参数："),
    ("runtime/client.py", "PreloadClient.status", "返回："),
    ("runtime/registry.py", "ProcessRegistry.stop", "返回："),
    ("runtime/preloader.py", "Preloader.start_run", "异常："),
    ("runtime/server.py", "PreloadServer", "参数："),
    ("runtime/watcher.py", "build_watcher", "参数："),
]


def _rel(path: Path) -> str:
    return path.relative_to(PKG_ROOT).as_posix()


def _definitions(tree: ast.Module) -> Dict[str, ast.AST]:
    """按限定名收集模块内所有 class/def（含嵌套）。"""

    out: Dict[str, ast.AST] = {}

    def _walk(node: ast.AST, prefix: str) -> None:
        for child in ast.iter_child_nodes(node):
            if isinstance(child, (ast.ClassDef, ast.FunctionDef, ast.AsyncFunctionDef)):
                name = f"{prefix}{child.name}"
                out[name] = child
                _walk(child, name + ".")
            else:
                _walk(child, prefix)

    _walk(tree, "")
    return out


def _parse(rel: str) -> ast.Module:
    path = PKG_ROOT / rel
    return ast.parse(path.read_text(encoding="utf-8"), filename=str(path))


@pytest.mark.parametrize("path", MODULES, ids=_rel)
def test_module_and_definitions_have_docstrings(path: Path) -> None:
    tree = _parse(_rel(path))
    assert ast.get_docstring(tree), f"{_rel(path)}: missing module docstring"
    missing = [
        f"{_rel(path)}:{node.lineno} {name}"
        for name, node in _definitions(tree).items()
        if ast.get_docstring(node) is None
    ]
    assert not missing, "missing docstrings:\n" + "\n".join(missing)


@pytest.mark.parametrize(("rel", "qualname", "marker"), REQUIRED_SECTIONS)
def test_public_runtime_api_documents_sections(rel: str, qualname: str, marker: str) -> None:
    node = _definitions(_parse(rel)).get(qualname)
    assert node is not None, f"{rel}: {qualname} not found"
    doc: Optional[str] = ast.get_docstring(node)
    assert doc and marker in doc, f"{rel}: {qualname} docstring lacks {marker}"


@pytest.mark.parametrize("path", MODULES, ids=_rel)
def test_module_loggers_are_named_after_module(path: Path) -> None:
    tree = _parse(_rel(path))
    bad: List[str] = []
    for stmt in tree.body:
        if not isinstance(stmt, ast.Assign):
            continue
        if not any(isinstance(t, ast.Name) and t.id == "logger" for t in stmt.targets):
            continue
        call = stmt.value
        ok = (
            isinstance(call, ast.Call)
            and isinstance(call.func, ast.Attribute)
            and call.func.attr == "getLogger"
            and len(call.args) == 1
            and isinstance(call.args[0], ast.Name)
            and call.args[0].id == "__name__"
        )
        if not ok:
            bad.append(f"{_rel(path)}:{stmt.lineno}")
    assert not bad, "logger must be logging.getLogger(__name__): " + ", ".join(bad)
