"""
CLI 模块。

说明：
- 对外入口为 `prewarm ...`（由 `pyproject.toml` 的 `[project.scripts]` 注册），也可 `python -m prewarm`；
- CLI 只做参数切分与 client 调用，不复制 runtime 逻辑。
"""
