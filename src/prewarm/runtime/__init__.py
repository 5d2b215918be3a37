"""
Runtime：client / server / application 进程与其协作件。

说明：
- 子模块按进程划分依赖：client 侧（`client`/`protocol`/`snapshot`/`registry`/`paths`）不依赖 pydantic；
- 因此本包不在 `__init__` 中做聚合导入。
"""
