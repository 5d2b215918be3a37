"""
配置模块。

说明：
- 内置默认（`prewarm/assets/default.yaml`）< 全局 `~/.prewarm.yaml` < 项目 `<root>/.prewarm.yaml`；
- 加载后经 pydantic 校验为 `PrewarmConfig`，由 server 显式传递（不做全局单例）。
"""
