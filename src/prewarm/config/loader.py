"""
配置加载器（YAML）。

设计目标：
- 分层加载：内置默认 < 全局 `~/.prewarm.yaml` < 项目 `<root>/.prewarm.yaml`，按顺序深度合并（后者覆盖前者）；
- `after_fork` 例外：各层列表按顺序拼接（全局 hooks 先于项目 hooks 执行）；
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误被静默吞掉）；
- 校验后的 `PrewarmConfig` 在 server 启动时构造一次，并显式传给 preloader / watcher / application 进程（不做全局单例）。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
import re
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional, Sequence

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from prewarm.config.defaults import load_default_config_dict
from prewarm.identity import config_file_candidates

_IMPORT_REF_RE = re.compile(r"^[A-Za-z_][\w.]*:[A-Za-z_][\w.]*$")
_COMMAND_NAME_RE = re.compile(r"^[A-Za-z0-9][\w.-]*$")


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型（含 list）：overlay 直接覆盖
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


def _validate_import_ref(value: str) -> str:
    """校验 `module:callable` 形式的导入引用。"""

    s = str(value or "").strip()
    if not _IMPORT_REF_RE.match(s):
        raise ValueError(f"import reference must look like 'package.module:callable', got: {value!r}")
    return s


class ApplicationConfig(BaseModel):
    """应用 boot 相关配置。"""

    model_config = ConfigDict(extra="forbid")

    entry: str = Field(default="app.py", min_length=1)
    preload: List[str] = Field(default_factory=list)
    python_path: List[str] = Field(default_factory=lambda: ["."])
    env_var: str = Field(default="APP_ENV", min_length=1)
    default_env: str = Field(default="development", min_length=1)
    test_env: str = Field(default="test", min_length=1)


class CommandConfig(BaseModel):
    """自定义命令（name -> handler）。"""

    model_config = ConfigDict(extra="forbid")

    handler: str
    env: Optional[str] = None
    description: str = ""

    @field_validator("handler")
    @classmethod
    def _check_handler(cls, v: str) -> str:
        """handler 必须为导入引用。"""

        return _validate_import_ref(v)


class WatchConfig(BaseModel):
    """watcher 策略选择与参数。"""

    model_config = ConfigDict(extra="forbid")

    strategy: Literal["polling", "events"] = Field(default="polling")
    interval_ms: int = Field(default=200, ge=10)
    signature: Literal["stat", "digest"] = Field(default="stat")
    paths: List[str] = Field(default_factory=list)


class ServerConfig(BaseModel):
    """server 生命周期参数。"""

    model_config = ConfigDict(extra="forbid")

    idle_timeout_sec: float = Field(default=1800, gt=0)
    boot_timeout_sec: float = Field(default=120, gt=0)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")


class PrewarmConfig(BaseModel):
    """配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    application: ApplicationConfig = Field(default_factory=ApplicationConfig)
    after_fork: List[str] = Field(default_factory=list)
    commands: Dict[str, CommandConfig] = Field(default_factory=dict)
    watch: WatchConfig = Field(default_factory=WatchConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    # 实际参与合并的配置文件（绝对路径）；由 loader 填写，仅用于 status 展示。
    sources: List[str] = Field(default_factory=list)

    @field_validator("after_fork")
    @classmethod
    def _check_after_fork(cls, v: List[str]) -> List[str]:
        """after_fork 每一项必须为导入引用。"""

        return [_validate_import_ref(x) for x in v]

    @field_validator("commands", mode="before")
    @classmethod
    def _normalize_commands(cls, v: Any) -> Any:
        """允许 `name: "module:callable"` 简写。"""

        if not isinstance(v, dict):
            return v
        out: Dict[str, Any] = {}
        for name, item in v.items():
            if not _COMMAND_NAME_RE.match(str(name)):
                raise ValueError(f"invalid command name: {name!r}")
            out[str(name)] = {"handler": item} if isinstance(item, str) else item
        return out


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping(dict): {path}")
    return data


def load_config_dicts(config_dicts: Sequence[Dict[str, Any]]) -> PrewarmConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `PrewarmConfig`。

    参数：
    - config_dicts：按顺序合并（后者覆盖前者；`after_fork` 按顺序拼接）
    """

    merged: Dict[str, Any] = {}
    hooks: List[Any] = []
    for overlay in config_dicts:
        if not overlay:
            continue
        layer = dict(overlay)
        layer_hooks = layer.pop("after_fork", None)
        if layer_hooks is not None:
            if not isinstance(layer_hooks, list):
                raise ValueError("after_fork must be a list")
            hooks.extend(layer_hooks)
        _deep_merge(merged, layer)
    merged["after_fork"] = hooks
    return PrewarmConfig.model_validate(merged)


def config_paths(root: Path, *, home: Optional[Path] = None) -> List[Path]:
    """
    返回存在的配置文件路径（全局在前、项目在后）。

    参数：
    - root：应用根目录
    - home：用户 home（默认 `Path.home()`；测试可注入）
    """

    out: List[Path] = []
    for p in config_file_candidates(root, home=home):
        rp = p.resolve()
        if rp.is_file() and rp not in out:
            out.append(rp)
    return out


def load_config(root: Path, *, home: Optional[Path] = None) -> PrewarmConfig:
    """
    加载 root 对应的有效配置（内置默认 + 全局 + 项目）。

    异常：
    - pydantic.ValidationError：schema 校验失败
    - ValueError：YAML 根节点不是 mapping
    """

    paths = config_paths(root, home=home)
    overlays: List[Dict[str, Any]] = [load_default_config_dict()]
    for p in paths:
        overlays.append(_load_yaml_file(p))
    cfg = load_config_dicts(overlays)
    cfg.sources = [str(p) for p in paths]
    return cfg
