"""
sing-box 引擎: 订阅转换、配置合成、进程托管
"""
from miao.lib.engine.manager import EngineManager

__all__ = ["EngineManager"]
