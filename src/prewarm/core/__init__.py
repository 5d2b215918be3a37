"""核心工具：错误类型与 stdio 编码。"""
