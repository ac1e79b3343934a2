"""
Schema & 类型定义

集中管理:
- ProxyKind: 支持转换的代理协议
- SupervisorState: 进程托管状态机
- UpgradeStep: 自升级各步骤（用于错误定位与回滚评估）
- EngineAction / CheckSource: 运行记录的分类
"""
from enum import Enum


# ============================================================
# 代理协议
# ============================================================
class ProxyKind(str, Enum):
    """可转换为 sing-box outbound 的协议"""
    HYSTERIA2 = "hysteria2"
    ANYTLS = "anytls"
    SHADOWSOCKS = "shadowsocks"

    @classmethod
    def parse(cls, raw: str) -> "ProxyKind":
        """解析协议名，兼容 Clash 的简写 (ss)"""
        value = (raw or "").strip().lower()
        if value == "ss":
            value = cls.SHADOWSOCKS.value
        return cls(value)


# ============================================================
# 进程托管状态
# ============================================================
class SupervisorState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


# ============================================================
# 自升级步骤
# ============================================================
class UpgradeStep(str, Enum):
    """
    升级流程的步骤标识。

    REPLACE 及之后的步骤会修改磁盘上的可执行文件 (destructive)，
    失败时需要评估回滚结果；BACKUP 只新增 .bak 副本，不改动原文件。
    """
    CHECK = "check"
    RESOLVE = "resolve"
    DOWNLOAD = "download"
    VERIFY = "verify"
    STOP = "stop"
    BACKUP = "backup"
    REPLACE = "replace"
    PERMISSION = "permission"
    EXEC = "exec"

    @property
    def destructive(self) -> bool:
        return self in (UpgradeStep.REPLACE, UpgradeStep.PERMISSION, UpgradeStep.EXEC)


# ============================================================
# 运行记录
# ============================================================
class EngineAction(str, Enum):
    START = "start"
    STOP = "stop"


class CheckSource(str, Enum):
    """连通性检测的触发方式"""
    AUTO = "auto"      # 后台定时
    MANUAL = "manual"  # /api/net-check
